"""Staged model loading with tier fallback.

ModelLoader walks an ordered list of tiers (model asset + configuration),
most capable first, until one loads. Asset and runtime failures are never
fatal: they advance to the next tier. When every tier fails the loader
settles in ``PERMANENTLY_UNAVAILABLE`` for the rest of the process and
the orchestrator uses the rule engine from then on.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from drivesense.core.llm.runtime import (
    ModelAssetError,
    ModelFormatError,
    ModelHandle,
    ModelLoadError,
    ModelRuntime,
)

logger = logging.getLogger(__name__)

DEFAULT_TIERS_PATH = Path(__file__).resolve().parent / "tiers.yaml"

UNAVAILABLE_REASON = (
    "AI model temporarily unavailable. "
    "Using intelligent rule-based analysis for driving safety."
)
INCOMPATIBLE_REASON = (
    "AI model format not compatible. "
    "Using intelligent rule-based analysis for driving safety."
)


class LoadStatus(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    PERMANENTLY_UNAVAILABLE = "permanently_unavailable"


@dataclass(frozen=True)
class ModelTier:
    """One candidate (asset, configuration) pair.

    Local runtimes name an ``asset`` file in the bundle directory; remote
    runtimes name a ``model`` identifier instead.
    """

    name: str
    runtime: str
    asset: str = ""
    model: str = ""
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelLoadState:
    status: LoadStatus
    tier: ModelTier | None = None

    @property
    def is_loaded(self) -> bool:
        return self.status is LoadStatus.LOADED


def load_tier_file(path: str | Path = DEFAULT_TIERS_PATH) -> list[ModelTier]:
    """Parse a YAML tier list into ModelTier instances (order preserved)."""
    with open(path) as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}

    tiers = [
        ModelTier(
            name=entry["name"],
            runtime=entry["runtime"],
            asset=entry.get("asset", ""),
            model=entry.get("model", ""),
            config=dict(entry.get("config") or {}),
        )
        for entry in data.get("tiers", [])
    ]
    logger.info("Loaded %d model tiers from %s", len(tiers), path)
    return tiers


class ModelLoader:
    """Brings a model runtime online by trying tiers in order.

    Usage::

        loader = ModelLoader(load_tier_file(), {"llama_cpp": LlamaCppRuntime()},
                             bundle_dir="models", cache_dir="~/.cache/drivesense")
        state = await loader.load()
        if state.is_loaded:
            text = loader.generate(prompt)   # blocking; run off the event loop
    """

    def __init__(
        self,
        tiers: list[ModelTier],
        runtimes: Mapping[str, ModelRuntime],
        *,
        bundle_dir: str | Path,
        cache_dir: str | Path,
    ) -> None:
        self._tiers = list(tiers)
        self._runtimes = dict(runtimes)
        self._bundle_dir = Path(bundle_dir).expanduser()
        self._cache_dir = Path(cache_dir).expanduser()
        self._state = ModelLoadState(LoadStatus.UNLOADED)
        self._runtime: ModelRuntime | None = None
        self._handle: ModelHandle | None = None
        self._unavailability_reason: str | None = None
        self.attempted_tiers: list[str] = []

    @property
    def state(self) -> ModelLoadState:
        return self._state

    @property
    def unavailability_reason(self) -> str | None:
        """User-facing explanation once every tier has failed."""
        return self._unavailability_reason

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> ModelLoadState:
        """Run the tier sequence once.

        Calls made while a sequence is running, after a tier has loaded, or
        after every tier has failed return the current state immediately.
        """
        if self._state.status is not LoadStatus.UNLOADED:
            return self._state

        reason = UNAVAILABLE_REASON
        failed_assets: set[str] = set()
        try:
            for tier in self._tiers:
                if tier.asset and tier.asset in failed_assets:
                    logger.info("Skipping tier %s: asset %s already failed", tier.name, tier.asset)
                    continue

                self._state = ModelLoadState(LoadStatus.LOADING, tier)
                self.attempted_tiers.append(tier.name)
                logger.info("Loading model tier %s (runtime=%s)", tier.name, tier.runtime)

                try:
                    runtime, handle = await asyncio.to_thread(self._try_tier, tier)
                except ModelFormatError as exc:
                    logger.warning("Tier %s: incompatible model format: %s", tier.name, exc)
                    failed_assets.add(tier.asset)
                    reason = INCOMPATIBLE_REASON
                    continue
                except ModelAssetError as exc:
                    logger.warning("Tier %s: model asset unavailable: %s", tier.name, exc)
                    failed_assets.add(tier.asset)
                    continue
                except Exception as exc:
                    logger.warning("Tier %s failed to load: %s", tier.name, exc)
                    continue

                self._runtime = runtime
                self._handle = handle
                self._unavailability_reason = None
                self._state = ModelLoadState(LoadStatus.LOADED, tier)
                logger.info("Model tier %s loaded", tier.name)
                return self._state
        except asyncio.CancelledError:
            self._state = ModelLoadState(LoadStatus.UNLOADED)
            raise

        self._unavailability_reason = reason
        self._state = ModelLoadState(LoadStatus.PERMANENTLY_UNAVAILABLE)
        logger.warning("All model tiers failed; falling back to rule-based analysis")
        return self._state

    def _try_tier(self, tier: ModelTier) -> tuple[ModelRuntime, ModelHandle]:
        runtime = self._runtimes.get(tier.runtime)
        if runtime is None:
            raise ModelLoadError(f"No runtime registered for {tier.runtime!r}")
        path = str(self._prepare_asset(tier.asset)) if tier.asset else tier.model
        return runtime, runtime.load(path, dict(tier.config))

    def _prepare_asset(self, asset: str) -> Path:
        """Copy ``asset`` into the writable cache unless a copy already exists."""
        destination = self._cache_dir / asset
        if destination.exists():
            logger.debug("Model %s already cached at %s", asset, destination)
            return destination

        source = self._bundle_dir / asset
        if not source.is_file():
            raise ModelAssetError(f"Model not found in bundle: {source}")

        partial = destination.with_name(destination.name + ".partial")
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, partial)
            partial.replace(destination)
        except OSError as exc:
            raise ModelAssetError(f"Error copying model {asset}: {exc}") from exc

        logger.info("Copied model %s to cache %s", asset, destination)
        return destination

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def generate(self, prompt: str) -> str:
        """Blocking generation with the loaded tier."""
        if self._runtime is None or self._handle is None:
            raise ModelLoadError("No model loaded")
        return self._runtime.generate(self._handle, prompt)

    def close(self) -> None:
        """Release the loaded handle. A failed loader stays unavailable."""
        handle, self._handle, self._runtime = self._handle, None, None
        if handle is not None:
            closer = getattr(handle.model, "close", None)
            if callable(closer):
                closer()
        if self._state.is_loaded:
            self._state = ModelLoadState(LoadStatus.UNLOADED)
