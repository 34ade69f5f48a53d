"""DriveSense companion MCP server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import FastMCP

from drivesense.core.config.settings import Settings, get_settings
from drivesense.core.llm.loader import (
    DEFAULT_TIERS_PATH,
    ModelLoader,
    ModelTier,
    load_tier_file,
)
from drivesense.core.llm.orchestrator import InferenceOrchestrator
from drivesense.core.llm.runtime import ModelRuntime, create_runtime
from drivesense.core.pairing.protocol import (
    ExchangeProtocol,
    MessageFormatError,
    decode_health_data,
    encode_risk_assessment,
    error_reply,
)
from drivesense.domains.driving.state import DeviceState

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def build_tiers(settings: Settings) -> list[ModelTier]:
    """On-device tiers from YAML, then remote tiers for configured API keys."""
    tiers = load_tier_file(settings.model_tiers_path or DEFAULT_TIERS_PATH)
    if settings.anthropic_api_key:
        tiers.append(ModelTier(name="remote_anthropic", runtime="anthropic",
                               model=settings.anthropic_model))
    if settings.openai_api_key:
        tiers.append(ModelTier(name="remote_openai", runtime="openai",
                               model=settings.openai_model))
    return tiers


def build_orchestrator(
    settings: Settings,
    *,
    tiers: list[ModelTier] | None = None,
    runtimes: Mapping[str, ModelRuntime] | None = None,
) -> InferenceOrchestrator:
    """Wire a ModelLoader and InferenceOrchestrator from settings."""
    tiers = build_tiers(settings) if tiers is None else tiers
    if runtimes is None:
        api_keys = {
            "anthropic": settings.anthropic_api_key,
            "openai": settings.openai_api_key,
        }
        runtimes = {
            name: create_runtime(name, api_key=api_keys.get(name, ""))
            for name in {tier.runtime for tier in tiers}
        }

    loader = ModelLoader(
        tiers,
        runtimes,
        bundle_dir=settings.model_bundle_dir,
        cache_dir=settings.model_cache_dir,
    )
    return InferenceOrchestrator(
        loader,
        poll_interval=settings.inference_poll_interval_seconds,
        max_polls=settings.inference_max_polls,
        cache_ttl=settings.inference_cache_ttl_seconds,
    )


def create_app(
    *,
    orchestrator_override: InferenceOrchestrator | None = None,
    tiers_override: list[ModelTier] | None = None,
    runtimes_override: Mapping[str, ModelRuntime] | None = None,
    state_override: DeviceState | None = None,
) -> FastMCP:
    """Create and configure the DriveSense companion MCP server.

    This is the main application factory. It:
    1. Builds the model loader and inference orchestrator
    2. Creates the companion-side exchange protocol
    3. Registers the tools and a lifespan that loads model tiers on startup
    """
    settings = get_settings()

    # --- Initialize inference ---
    if orchestrator_override is not None:
        orchestrator = orchestrator_override
    else:
        orchestrator = build_orchestrator(
            settings, tiers=tiers_override, runtimes=runtimes_override
        )

    # MCP calls are request/response; results the wearable does not wait
    # for stay in the companion's device state.
    protocol = ExchangeProtocol(
        None,
        orchestrator=orchestrator,
        state=state_override or DeviceState(),
    )

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        await orchestrator.start()
        logger.info("Model tier loading started")
        try:
            yield
        finally:
            await protocol.drain()

    # --- Server instance ---
    server = FastMCP(
        "DriveSense Companion",
        instructions=(
            "DriveSense companion server. Receives vital-sign snapshots from a "
            "paired wearable and returns driving-risk assessments produced by an "
            "on-device language model, or by clinical rules when no model is available."
        ),
        lifespan=lifespan,
    )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and report the model load state."""
        model_state = orchestrator.model_state
        return {
            "status": "ok",
            "server": "DriveSense Companion",
            "version": VERSION,
            "model_status": model_state.status.value,
            "model_tier": model_state.tier.name if model_state.tier else None,
            "unavailability_reason": orchestrator.unavailability_reason,
        }

    @server.tool
    async def assess_driving_risk(health_data: dict[str, Any]) -> dict:
        """Assess driving risk for a health_data payload.

        Args:
            health_data: Wire-format snapshot ({timestamp, heartRate: [...], ...}).

        Returns:
            A risk_assessment_result payload, or {status: error, message} when
            the payload is malformed.
        """
        try:
            snapshot, _ = decode_health_data(health_data)
        except MessageFormatError as exc:
            return error_reply(str(exc))
        protocol.state.latest_snapshot.set(snapshot)
        assessment = await protocol.analyze(snapshot)
        return {"type": "risk_assessment_result", **encode_risk_assessment(assessment)}

    @server.tool
    async def pairing_message(message: dict[str, Any], expects_reply: bool = True) -> dict:
        """Deliver a pairing message from the wearable to the companion dispatcher.

        Args:
            message: A wire message with a ``type`` field.
            expects_reply: Whether the wearable waits for a reply.
        """
        reply = await protocol.handle_message(message, expects_reply)
        return reply or {}

    logger.info("Companion tools registered")
    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
