"""Tests for staged model loading with tier fallback."""

from __future__ import annotations

import asyncio
import threading

import pytest

from drivesense.core.llm.loader import (
    DEFAULT_TIERS_PATH,
    INCOMPATIBLE_REASON,
    UNAVAILABLE_REASON,
    LoadStatus,
    ModelLoader,
    ModelTier,
    load_tier_file,
)
from drivesense.core.llm.runtime import ModelLoadError
from drivesense.core.llm.runtimes.llama_cpp import LlamaCppRuntime
from drivesense.core.llm.runtimes.mock import MockRuntime


def _run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestTierFile:
    def test_packaged_tiers(self):
        tiers = load_tier_file(DEFAULT_TIERS_PATH)
        assert [t.name for t in tiers] == [
            "primary_full",
            "primary_reduced",
            "primary_minimal",
            "secondary",
        ]
        assert all(t.runtime == "llama_cpp" for t in tiers)
        assert tiers[0].asset == tiers[2].asset != tiers[3].asset
        assert tiers[0].config["max_tokens"] > tiers[1].config["max_tokens"]

    def test_custom_tier_file(self, tmp_path):
        path = tmp_path / "tiers.yaml"
        path.write_text(
            "tiers:\n"
            "  - name: remote\n"
            "    runtime: anthropic\n"
            "    model: claude-test\n"
        )
        (tier,) = load_tier_file(path)
        assert tier == ModelTier(name="remote", runtime="anthropic", model="claude-test")


class TestLoadSequence:
    def test_first_tier_loads_and_asset_is_cached(self, make_loader, tmp_path):
        runtime = MockRuntime()
        loader = make_loader(runtime)
        state = _run(loader.load())

        assert state.status is LoadStatus.LOADED
        assert state.tier.name == "primary_full"
        assert loader.attempted_tiers == ["primary_full"]
        assert (tmp_path / "cache" / "primary.gguf").read_bytes() == b"GGUF primary"
        assert loader.unavailability_reason is None

    def test_missing_primary_skips_to_secondary(self, make_loader, model_bundle):
        (model_bundle / "primary.gguf").unlink()
        loader = make_loader(MockRuntime())
        state = _run(loader.load())

        assert state.tier.name == "secondary"
        assert loader.attempted_tiers == ["primary_full", "secondary"]

    def test_load_failure_retries_reduced_settings(self, make_loader):
        runtime = MockRuntime(fail_paths={"primary.gguf"})
        loader = make_loader(runtime)
        state = _run(loader.load())

        assert state.tier.name == "secondary"
        assert loader.attempted_tiers == [
            "primary_full",
            "primary_reduced",
            "primary_minimal",
            "secondary",
        ]
        assert len(runtime.loaded_paths) == 4

    def test_all_tiers_exhausted(self, make_loader, tmp_path):
        empty = tmp_path / "nothing-here"
        empty.mkdir()
        loader = make_loader(MockRuntime(), bundle_dir=empty)
        state = _run(loader.load())

        assert state.status is LoadStatus.PERMANENTLY_UNAVAILABLE
        assert loader.unavailability_reason == UNAVAILABLE_REASON
        assert loader.attempted_tiers == ["primary_full", "secondary"]

        # No second attempt within the same run.
        again = _run(loader.load())
        assert again.status is LoadStatus.PERMANENTLY_UNAVAILABLE
        assert loader.attempted_tiers == ["primary_full", "secondary"]

    def test_reentrant_load_returns_while_loading(self, make_loader):
        gate = threading.Event()
        runtime = MockRuntime(load_gate=gate)
        loader = make_loader(runtime)

        async def _check():
            first = asyncio.create_task(loader.load())
            await asyncio.sleep(0.05)
            second = await loader.load()
            gate.set()
            return await first, second

        first, second = _run(_check())
        assert second.status is LoadStatus.LOADING
        assert first.status is LoadStatus.LOADED
        assert loader.attempted_tiers == ["primary_full"]
        assert len(runtime.loaded_paths) == 1

    def test_incompatible_format_reason(self, tmp_path):
        bundle = tmp_path / "bundle-bin"
        bundle.mkdir()
        (bundle / "model.bin").write_bytes(b"not gguf")
        loader = ModelLoader(
            [ModelTier("legacy", "llama_cpp", asset="model.bin")],
            {"llama_cpp": LlamaCppRuntime()},
            bundle_dir=bundle,
            cache_dir=tmp_path / "cache",
        )
        state = _run(loader.load())

        assert state.status is LoadStatus.PERMANENTLY_UNAVAILABLE
        assert loader.unavailability_reason == INCOMPATIBLE_REASON

    def test_existing_cache_copy_is_reused(self, tmp_path, tiers):
        cache = tmp_path / "warm-cache"
        cache.mkdir()
        (cache / "primary.gguf").write_bytes(b"cached")
        loader = ModelLoader(
            tiers,
            {"mock": MockRuntime()},
            bundle_dir=tmp_path / "no-bundle",
            cache_dir=cache,
        )
        state = _run(loader.load())

        assert state.tier.name == "primary_full"
        assert (cache / "primary.gguf").read_bytes() == b"cached"

    def test_unknown_runtime_advances(self, make_loader):
        tiers = [
            ModelTier("exotic", "does_not_exist", model="x"),
            ModelTier("fallback", "mock", model="mock-model"),
        ]
        runtime = MockRuntime()
        loader = make_loader(runtime, tiers=tiers)
        state = _run(loader.load())

        assert state.tier.name == "fallback"
        assert runtime.loaded_paths == ["mock-model"]


class TestGeneration:
    def test_generate_requires_loaded_model(self, make_loader):
        loader = make_loader(MockRuntime())
        with pytest.raises(ModelLoadError):
            loader.generate("hello")

    def test_generate_and_close(self, make_loader):
        runtime = MockRuntime(response_content="Risk Level: LOW")
        loader = make_loader(runtime)
        _run(loader.load())

        assert loader.generate("prompt") == "Risk Level: LOW"
        assert runtime.last_prompt == "prompt"

        loader.close()
        assert loader.state.status is LoadStatus.UNLOADED
        with pytest.raises(ModelLoadError):
            loader.generate("prompt")
