"""Integration tests for the DriveSense companion MCP server."""

from __future__ import annotations

import asyncio

from fastmcp import Client

from drivesense.core.config.settings import Settings
from drivesense.core.llm.orchestrator import InferenceOrchestrator
from drivesense.core.llm.runtimes.mock import MockRuntime
from drivesense.core.pairing.channel import MCPPairingChannel
from drivesense.core.pairing.protocol import (
    ExchangeProtocol,
    ExchangeState,
    encode_health_data,
)
from drivesense.core.server.app import create_app
from drivesense.core.server.main import sync_with_companion
from drivesense.domains.driving.connectors.providers import MockSnapshotSource
from drivesense.domains.driving.models import RiskLevel


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


ALL_EXPECTED_TOOLS = [
    "health_check",
    "assess_driving_risk",
    "pairing_message",
]


async def _ready_orchestrator(loader) -> InferenceOrchestrator:
    orchestrator = InferenceOrchestrator(loader, poll_interval=0.01)
    await orchestrator.start(wait=True)
    return orchestrator


def test_server_starts_and_lists_tools(make_loader):
    """Server should start and expose all registered tools."""
    async def _check():
        orchestrator = await _ready_orchestrator(make_loader(MockRuntime()))
        async with Client(create_app(orchestrator_override=orchestrator)) as client:
            tools = await client.list_tools()
            tool_names = [t.name for t in tools]
            for expected in ALL_EXPECTED_TOOLS:
                assert expected in tool_names, f"Missing tool: {expected}"
    _run(_check())


def test_health_check_reports_loaded_tier(make_loader):
    async def _check():
        orchestrator = await _ready_orchestrator(make_loader(MockRuntime()))
        async with Client(create_app(orchestrator_override=orchestrator)) as client:
            result = await client.call_tool("health_check", {})
            return result.data

    data = _run(_check())
    assert data["status"] == "ok"
    assert data["model_status"] == "loaded"
    assert data["model_tier"] == "primary_full"
    assert data["unavailability_reason"] is None


def test_health_check_reports_unavailable_model(make_loader, tmp_path):
    empty = tmp_path / "no-models"
    empty.mkdir()

    async def _check():
        orchestrator = await _ready_orchestrator(make_loader(MockRuntime(), bundle_dir=empty))
        async with Client(create_app(orchestrator_override=orchestrator)) as client:
            result = await client.call_tool("health_check", {})
            return result.data

    data = _run(_check())
    assert data["model_status"] == "permanently_unavailable"
    assert "rule-based analysis" in data["unavailability_reason"]


def test_assess_driving_risk_tool(make_loader, snapshot):
    async def _check():
        orchestrator = await _ready_orchestrator(make_loader(MockRuntime()))
        async with Client(create_app(orchestrator_override=orchestrator)) as client:
            payload = encode_health_data(snapshot(heartRate=[118]))
            result = await client.call_tool("assess_driving_risk", {"health_data": payload})
            return result.data

    data = _run(_check())
    assert data["type"] == "risk_assessment_result"
    assert data["riskLevel"] == "Medium"
    assert data["riskFactors"][0]["type"] == "elevatedHeartRate"
    assert 0 < len(data["recommendations"]) <= 5


def test_assess_driving_risk_rejects_malformed_payload(make_loader):
    async def _check():
        orchestrator = await _ready_orchestrator(make_loader(MockRuntime()))
        async with Client(create_app(orchestrator_override=orchestrator)) as client:
            result = await client.call_tool("assess_driving_risk", {"health_data": {}})
            return result.data

    data = _run(_check())
    assert data["status"] == "error"


def test_pairing_message_unknown_type(make_loader):
    async def _check():
        orchestrator = await _ready_orchestrator(make_loader(MockRuntime()))
        async with Client(create_app(orchestrator_override=orchestrator)) as client:
            result = await client.call_tool(
                "pairing_message", {"message": {"type": "unknown_type"}, "expects_reply": True}
            )
            return result.data

    assert _run(_check()) == {"status": "error", "message": "Unknown message type"}


def test_wearable_exchange_over_mcp(make_loader, snapshot):
    """A wearable protocol talking to the companion through MCPPairingChannel."""
    async def _check():
        orchestrator = await _ready_orchestrator(make_loader(MockRuntime()))
        async with Client(create_app(orchestrator_override=orchestrator)) as client:
            wearable = ExchangeProtocol(MCPPairingChannel(client))
            return await wearable.send_health_data(snapshot(heartRate=[118], hrv=[15]))

    exchange = _run(_check())
    assert exchange.state is ExchangeState.REPLIED
    assert exchange.assessment.level is RiskLevel.HIGH


def test_default_wiring_falls_back_to_rule_engine(snapshot):
    """With no model assets on disk the server still answers from the rule engine."""
    async def _check():
        async with Client(create_app()) as client:
            payload = encode_health_data(snapshot(hrv=[25]))
            result = await client.call_tool("assess_driving_risk", {"health_data": payload})
            return result.data

    data = _run(_check())
    assert data["riskLevel"] == "Medium"


def test_wearable_sync_loop_reaches_companion(make_loader, monkeypatch):
    """The wearable runner drives periodic syncs through the companion's tools."""
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "0.01")
    settings = Settings()

    async def _check():
        orchestrator = await _ready_orchestrator(make_loader(MockRuntime()))
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.3, stop.set)
        attempts = await sync_with_companion(
            settings,
            MockSnapshotSource(),
            stop,
            companion=create_app(orchestrator_override=orchestrator),
        )
        return orchestrator, attempts

    orchestrator, attempts = _run(_check())
    assert attempts >= 1
    assert orchestrator.model_invocations >= 1
    assert orchestrator.cached_assessment is not None
