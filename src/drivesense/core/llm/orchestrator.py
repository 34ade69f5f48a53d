"""Single-flight driving-risk analysis with fallback.

Owns the model loader and the in-flight flag. Every public entry point
ends in an assessment: model output when a tier is loaded and its text
parses, otherwise the deterministic rule engine.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable

from drivesense.core.llm.loader import ModelLoader, ModelLoadState
from drivesense.core.llm.response import parse_model_response
from drivesense.domains.driving import rule_engine
from drivesense.domains.driving.models import HealthSnapshot, RiskAssessment
from drivesense.domains.driving.prompts import build_risk_prompt

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_MAX_POLLS = 30
DEFAULT_CACHE_TTL_SECONDS = 5.0


class InferenceOrchestrator:
    """Serializes analysis requests onto at most one model invocation.

    Lifecycle: construct, ``await start()`` (kicks off tier loading in the
    background), call :meth:`assess_driving_risk` any number of times, then
    ``await shutdown()``. Also usable as an async context manager.

    Concurrent callers that arrive while an inference is in flight poll for
    its completion (``max_polls`` ticks of ``poll_interval`` seconds). If it
    finishes and its result is younger than ``cache_ttl`` seconds they share
    it; if it is still running when the polls run out they get a rule-engine
    result and the in-flight inference is left to finish and refresh the
    cache.
    """

    def __init__(
        self,
        loader: ModelLoader,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_polls: int = DEFAULT_MAX_POLLS,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._cache_ttl = cache_ttl
        self._clock = clock

        self._lock = asyncio.Lock()
        self._in_flight = False
        self._inference_task: asyncio.Task[RiskAssessment] | None = None
        self._cached: RiskAssessment | None = None
        self._cached_at = float("-inf")
        self._load_task: asyncio.Task[ModelLoadState] | None = None
        self._closed = False
        self.model_invocations = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def model_state(self) -> ModelLoadState:
        return self._loader.state

    @property
    def unavailability_reason(self) -> str | None:
        return self._loader.unavailability_reason

    @property
    def cached_assessment(self) -> RiskAssessment | None:
        return self._cached

    async def start(self, *, wait: bool = False) -> ModelLoadState:
        """Begin loading model tiers; idempotent.

        With ``wait=True`` the call returns once the tier sequence settles.
        """
        if self._closed:
            raise RuntimeError("InferenceOrchestrator has been shut down")
        if self._load_task is None:
            self._load_task = asyncio.create_task(self._loader.load())
        if wait:
            return await self._load_task
        return self._loader.state

    async def shutdown(self) -> None:
        self._closed = True
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._load_task
        if self._inference_task is not None and not self._inference_task.done():
            with contextlib.suppress(Exception):
                await self._inference_task
        self._loader.close()
        logger.info("Inference orchestrator shut down")

    async def __aenter__(self) -> InferenceOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def assess_driving_risk(self, snapshot: HealthSnapshot) -> RiskAssessment:
        """Assess driving risk for ``snapshot``. Never raises (except on cancel)."""
        try:
            return await self._assess(snapshot)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Risk assessment failed unexpectedly; using rule engine")
            return rule_engine.assess(snapshot)

    # ------------------------------------------------------------------
    # Single-flight
    # ------------------------------------------------------------------

    async def _assess(self, snapshot: HealthSnapshot) -> RiskAssessment:
        if not await self._claim():
            logger.info("Analysis already in progress, waiting for completion")
            if not await self._wait_for_in_flight():
                logger.warning(
                    "Analysis still running after %d polls; using rule engine",
                    self._max_polls,
                )
                return rule_engine.assess(snapshot)

            cached = self._fresh_cached()
            if cached is not None:
                logger.info("Using cached result from the in-flight analysis")
                return cached

            if not await self._claim():
                logger.info("Another request claimed the model; using rule engine")
                return rule_engine.assess(snapshot)

        # Runs as its own task so a caller that stops waiting does not cancel
        # the inference; it still completes and refreshes the cache.
        self._inference_task = asyncio.create_task(self._produce_and_cache(snapshot))
        self._inference_task.add_done_callback(self._inference_done)
        return await asyncio.shield(self._inference_task)

    @staticmethod
    def _inference_done(task: asyncio.Task[RiskAssessment]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background inference failed", exc_info=task.exception())

    async def _claim(self) -> bool:
        async with self._lock:
            if self._in_flight:
                return False
            self._in_flight = True
            return True

    async def _release(self) -> None:
        async with self._lock:
            self._in_flight = False

    async def _wait_for_in_flight(self) -> bool:
        for _ in range(self._max_polls):
            if not self._in_flight:
                return True
            await asyncio.sleep(self._poll_interval)
        return not self._in_flight

    def _fresh_cached(self) -> RiskAssessment | None:
        if self._cached is None:
            return None
        if self._clock() - self._cached_at >= self._cache_ttl:
            return None
        return self._cached

    async def _produce_and_cache(self, snapshot: HealthSnapshot) -> RiskAssessment:
        try:
            assessment = await self._produce(snapshot)
            self._cached = assessment
            self._cached_at = self._clock()
            return assessment
        finally:
            await self._release()

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    async def _produce(self, snapshot: HealthSnapshot) -> RiskAssessment:
        prompt = build_risk_prompt(snapshot)

        state = self._loader.state
        if not state.is_loaded:
            logger.info("Model not loaded (%s); using rule engine", state.status.value)
            return rule_engine.assess(snapshot)

        self.model_invocations += 1
        try:
            response = await asyncio.to_thread(self._loader.generate, prompt)
            assessment = parse_model_response(response, snapshot)
        except Exception as exc:
            logger.warning("Model inference failed, using rule engine: %s", exc)
            return rule_engine.assess(snapshot)

        logger.info(
            "Model analysis complete: tier=%s, level=%s, factors=%d, recommendations=%d",
            state.tier.name if state.tier else "?",
            assessment.level.label,
            len(assessment.factors),
            len(assessment.recommendations),
        )
        return assessment
