"""Shared test fixtures for DriveSense tests."""

from __future__ import annotations

import sys
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("MODEL_TIERS_PATH", "")
    monkeypatch.setenv("MODEL_BUNDLE_DIR", str(tmp_path / "empty-bundle"))
    monkeypatch.setenv("MODEL_CACHE_DIR", str(tmp_path / "model-cache"))

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from drivesense.core.llm.loader import ModelLoader, ModelTier  # noqa: E402
from drivesense.core.llm.runtimes.mock import MockRuntime  # noqa: E402
from drivesense.domains.driving.connectors.mock_data import make_series  # noqa: E402
from drivesense.domains.driving.models import HealthSnapshot, VitalKind  # noqa: E402

FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def build_snapshot(
    captured_at: datetime = FIXED_NOW,
    **readings: list[float],
) -> HealthSnapshot:
    """Snapshot from keyword series, e.g. ``build_snapshot(heartRate=[72, 118])``."""
    return HealthSnapshot(
        captured_at=captured_at,
        series={
            VitalKind(name): make_series(VitalKind(name), values, end=captured_at)
            for name, values in readings.items()
        },
    )


@pytest.fixture
def snapshot() -> Callable[..., HealthSnapshot]:
    """Factory fixture: ``snapshot(heartRate=[118])``."""
    return build_snapshot


@pytest.fixture
def normal_snapshot() -> HealthSnapshot:
    return build_snapshot(
        heartRate=[72, 74],
        hrv=[48],
        bloodOxygen=[0.98],
        respiratoryRate=[15],
    )


# ---------------------------------------------------------------------------
# Model loading
# ---------------------------------------------------------------------------

PRIMARY_ASSET = "primary.gguf"
SECONDARY_ASSET = "secondary.gguf"


def make_tiers(runtime: str = "mock") -> list[ModelTier]:
    """Four tiers shaped like the packaged tier list: 3 x primary, 1 x secondary."""
    return [
        ModelTier("primary_full", runtime, asset=PRIMARY_ASSET, config={"max_tokens": 1024}),
        ModelTier("primary_reduced", runtime, asset=PRIMARY_ASSET, config={"max_tokens": 512}),
        ModelTier("primary_minimal", runtime, asset=PRIMARY_ASSET, config={"max_tokens": 256}),
        ModelTier("secondary", runtime, asset=SECONDARY_ASSET, config={"max_tokens": 512}),
    ]


@pytest.fixture
def tiers() -> list[ModelTier]:
    return make_tiers()


@pytest.fixture
def model_bundle(tmp_path: Path) -> Path:
    """A bundle directory holding both (fake) model assets."""
    bundle = tmp_path / "bundle"
    bundle.mkdir()
    (bundle / PRIMARY_ASSET).write_bytes(b"GGUF primary")
    (bundle / SECONDARY_ASSET).write_bytes(b"GGUF secondary")
    return bundle


@pytest.fixture
def mock_runtime() -> MockRuntime:
    return MockRuntime()


@pytest.fixture
def make_loader(tmp_path: Path, model_bundle: Path) -> Callable[..., ModelLoader]:
    """Factory for a ModelLoader over the fake bundle with a mock runtime."""

    def _make(
        runtime: MockRuntime,
        *,
        tiers: list[ModelTier] | None = None,
        bundle_dir: Path | None = None,
    ) -> ModelLoader:
        return ModelLoader(
            make_tiers() if tiers is None else tiers,
            {"mock": runtime},
            bundle_dir=bundle_dir or model_bundle,
            cache_dir=tmp_path / "cache",
        )

    return _make
