"""Exchange protocol: wire schema and request/reply cycle over a PairingChannel.

The same :class:`ExchangeProtocol` runs on both devices. The companion is
the side constructed with an InferenceOrchestrator; when it receives
``health_data`` with ``requestRiskAssessment`` it analyses the snapshot
and answers inline (``{"riskAssessment": {...}}``) if the sender waits for
a reply, or pushes a ``risk_assessment_result`` message otherwise.

Wire schema::

    health_data              {type, timestamp, requestRiskAssessment?,
                              heartRate|hrv|bloodOxygen|respiratoryRate|
                              stepCount|activeEnergy: [{value, timestamp, unit}]}
    risk_assessment_request  {type}
    risk_assessment_result   {type, riskLevel, riskFactors: [{type, severity,
                              description, value}], recommendations, timestamp}
    status replies           {status: "received" | "error", message?}

Timestamps are epoch seconds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from drivesense.core.pairing.channel import (
    ChannelUnreachableError,
    Message,
    PairingChannel,
    PairingError,
)
from drivesense.domains.driving import rule_engine
from drivesense.domains.driving.connectors import SnapshotSource
from drivesense.domains.driving.models import (
    AssessmentSource,
    HealthSnapshot,
    RiskAssessment,
    RiskFactor,
    RiskFactorKind,
    RiskLevel,
    SamplePoint,
    Unit,
    VitalKind,
)
from drivesense.domains.driving.state import DeviceState

if TYPE_CHECKING:
    from drivesense.core.llm.orchestrator import InferenceOrchestrator

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    HEALTH_DATA = "health_data"
    RISK_ASSESSMENT_REQUEST = "risk_assessment_request"
    RISK_ASSESSMENT_RESULT = "risk_assessment_result"


class MessageFormatError(PairingError):
    """An inbound message is missing a required field or has a bad value."""


RECEIVED: Message = {"status": "received"}


def error_reply(message: str) -> Message:
    return {"status": "error", "message": message}


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def _to_epoch(moment: datetime) -> float:
    return moment.timestamp()


def _from_epoch(value: Any, field_name: str) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MessageFormatError(f"'{field_name}' must be epoch seconds")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MessageFormatError(f"'{field_name}' is out of range: {value!r}") from exc


def encode_health_data(
    snapshot: HealthSnapshot,
    *,
    request_assessment: bool | None = None,
) -> Message:
    message: Message = {
        "type": MessageType.HEALTH_DATA.value,
        "timestamp": _to_epoch(snapshot.captured_at),
    }
    if request_assessment is not None:
        message["requestRiskAssessment"] = request_assessment
    for kind, points in snapshot.series.items():
        message[kind.value] = [
            {"value": p.value, "timestamp": _to_epoch(p.timestamp), "unit": p.unit.value}
            for p in points
        ]
    return message


def _decode_sample(kind: VitalKind, raw: Any) -> SamplePoint:
    if not isinstance(raw, dict):
        raise MessageFormatError(f"{kind.value} sample must be an object")
    missing = [key for key in ("value", "timestamp", "unit") if key not in raw]
    if missing:
        raise MessageFormatError(f"{kind.value} sample missing {', '.join(missing)}")

    value = raw["value"]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MessageFormatError(f"{kind.value} sample value must be a number")
    try:
        unit = Unit(raw["unit"])
    except ValueError:
        raise MessageFormatError(f"{kind.value} sample has unknown unit {raw['unit']!r}") from None

    return SamplePoint(
        value=float(value),
        timestamp=_from_epoch(raw["timestamp"], f"{kind.value}.timestamp"),
        unit=unit,
    )


def decode_health_data(message: Message) -> tuple[HealthSnapshot, bool]:
    """Decode a ``health_data`` message into (snapshot, assessment requested).

    Raises:
        MessageFormatError: If a required field is missing or malformed.
    """
    if "timestamp" not in message:
        raise MessageFormatError("health_data missing timestamp")
    captured_at = _from_epoch(message["timestamp"], "timestamp")

    series: dict[VitalKind, tuple[SamplePoint, ...]] = {}
    for kind in VitalKind:
        raw_series = message.get(kind.value)
        if raw_series is None:
            continue
        if not isinstance(raw_series, list):
            raise MessageFormatError(f"{kind.value} must be a list of samples")
        series[kind] = tuple(_decode_sample(kind, raw) for raw in raw_series)

    requested = message.get("requestRiskAssessment")
    if requested is None:
        requested = False
    if not isinstance(requested, bool):
        raise MessageFormatError("requestRiskAssessment must be a boolean")
    return HealthSnapshot(captured_at=captured_at, series=series), requested


def encode_risk_assessment(assessment: RiskAssessment) -> Message:
    return {
        "riskLevel": assessment.level.label,
        "riskFactors": [
            {
                "type": f.kind.value,
                "severity": f.severity.label,
                "description": f.description,
                "value": f.measured_value,
            }
            for f in assessment.factors
        ],
        "recommendations": list(assessment.recommendations),
        "timestamp": _to_epoch(assessment.produced_at),
    }


def _decode_factor(raw: Any) -> RiskFactor:
    if not isinstance(raw, dict):
        raise MessageFormatError("risk factor must be an object")
    try:
        return RiskFactor(
            kind=RiskFactorKind(raw["type"]),
            severity=RiskLevel.from_label(str(raw["severity"])),
            description=str(raw.get("description", "")),
            measured_value=float(raw["value"]),
        )
    except KeyError as exc:
        raise MessageFormatError(f"risk factor missing {exc.args[0]}") from None
    except (TypeError, ValueError) as exc:
        raise MessageFormatError(f"invalid risk factor: {exc}") from None


def decode_risk_assessment(payload: Any) -> RiskAssessment:
    """Decode a ``risk_assessment_result`` payload (or ``riskAssessment`` reply field)."""
    if not isinstance(payload, dict):
        raise MessageFormatError("risk assessment must be an object")
    if "riskLevel" not in payload:
        raise MessageFormatError("risk assessment missing riskLevel")
    try:
        level = RiskLevel.from_label(str(payload["riskLevel"]))
    except ValueError as exc:
        raise MessageFormatError(str(exc)) from None

    raw_factors = payload.get("riskFactors", [])
    raw_recommendations = payload.get("recommendations", [])
    if not isinstance(raw_factors, list) or not isinstance(raw_recommendations, list):
        raise MessageFormatError("riskFactors and recommendations must be lists")

    produced_at = (
        _from_epoch(payload["timestamp"], "timestamp")
        if "timestamp" in payload
        else datetime.now(timezone.utc)
    )
    return RiskAssessment(
        produced_at=produced_at,
        level=level,
        factors=tuple(_decode_factor(raw) for raw in raw_factors),
        recommendations=tuple(str(r) for r in raw_recommendations[: rule_engine.MAX_RECOMMENDATIONS]),
        source=AssessmentSource.REMOTE,
    )


# ---------------------------------------------------------------------------
# Exchange state
# ---------------------------------------------------------------------------

class ExchangeState(str, Enum):
    IDLE = "idle"
    SENT = "sent"
    REPLIED = "replied"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"


_TERMINAL = {ExchangeState.REPLIED, ExchangeState.ACKNOWLEDGED, ExchangeState.FAILED}


@dataclass
class Exchange:
    """Outcome of one outbound request: Idle -> Sent -> Replied | Acknowledged | Failed."""

    message_type: MessageType
    state: ExchangeState = ExchangeState.IDLE
    assessment: RiskAssessment | None = None
    error: str | None = None
    unreachable: bool = False
    local_assessment: RiskAssessment | None = None

    def _advance(self, new_state: ExchangeState) -> None:
        if self.state in _TERMINAL:
            raise RuntimeError(f"Exchange already finished ({self.state.value})")
        if new_state is ExchangeState.SENT and self.state is not ExchangeState.IDLE:
            raise RuntimeError("Exchange already sent")
        self.state = new_state

    def mark_sent(self) -> None:
        self._advance(ExchangeState.SENT)

    def mark_replied(self, assessment: RiskAssessment) -> None:
        self._advance(ExchangeState.REPLIED)
        self.assessment = assessment

    def mark_acknowledged(self) -> None:
        self._advance(ExchangeState.ACKNOWLEDGED)

    def mark_failed(self, error: str, *, unreachable: bool = False) -> None:
        self._advance(ExchangeState.FAILED)
        self.error = error
        self.unreachable = unreachable

    @property
    def succeeded(self) -> bool:
        return self.state in (ExchangeState.REPLIED, ExchangeState.ACKNOWLEDGED)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class ExchangeProtocol:
    """Dispatcher and sender for one device.

    Args:
        channel: Transport to the paired device, or None when this side can
            only answer inbound calls (the MCP companion server).
        orchestrator: Present on the companion; analyses received snapshots.
        state: Observable values the view layer reads.
    """

    def __init__(
        self,
        channel: PairingChannel | None,
        *,
        orchestrator: InferenceOrchestrator | None = None,
        state: DeviceState | None = None,
    ) -> None:
        self._channel = channel
        self._orchestrator = orchestrator
        self.state = state or DeviceState()
        self._background: set[asyncio.Task[Any]] = set()
        if channel is not None:
            channel.connect(self.handle_message)
            self.state.connectivity.set(channel.is_reachable())

    @property
    def is_companion(self) -> bool:
        return self._orchestrator is not None

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, message: Message, expects_reply: bool) -> Message | None:
        """Dispatch an inbound message by ``type``. Never raises.

        Malformed or unknown messages get an error reply when the sender is
        waiting for one; fire-and-forget ones are logged and discarded.
        """
        try:
            reply = await self._dispatch(message, expects_reply)
        except MessageFormatError as exc:
            if not expects_reply:
                logger.warning("Discarding malformed message: %s", exc)
                return None
            return error_reply(str(exc))
        except Exception as exc:
            logger.exception("Failed to handle inbound message")
            return error_reply(str(exc)) if expects_reply else None
        return reply if expects_reply else None

    async def _dispatch(self, message: Message, expects_reply: bool) -> Message | None:
        message_type = message.get("type") if isinstance(message, dict) else None
        if not isinstance(message_type, str):
            raise MessageFormatError("Invalid message type")
        try:
            kind = MessageType(message_type)
        except ValueError:
            raise MessageFormatError("Unknown message type") from None

        handlers: dict[MessageType, Callable[[Message, bool], Awaitable[Message | None]]] = {
            MessageType.HEALTH_DATA: self._on_health_data,
            MessageType.RISK_ASSESSMENT_REQUEST: self._on_assessment_request,
            MessageType.RISK_ASSESSMENT_RESULT: self._on_assessment_result,
        }
        logger.debug("Dispatching %s (expects_reply=%s)", kind.value, expects_reply)
        return await handlers[kind](message, expects_reply)

    async def _on_health_data(self, message: Message, expects_reply: bool) -> Message | None:
        snapshot, requested = decode_health_data(message)
        self.state.latest_snapshot.set(snapshot)
        logger.info(
            "Received health data: %d vitals, assessment requested=%s",
            len(snapshot.present_kinds()),
            requested,
        )

        if not self.is_companion:
            return RECEIVED
        if not requested:
            self._spawn(self.analyze(snapshot))
            return RECEIVED

        assessment = await self.analyze(snapshot)
        payload = encode_risk_assessment(assessment)
        if expects_reply:
            return {"riskAssessment": payload}
        await self._push_result(payload)
        return None

    async def _on_assessment_request(self, message: Message, expects_reply: bool) -> Message | None:
        snapshot = self.state.latest_snapshot.value
        if snapshot is None:
            if expects_reply:
                return error_reply("No health data available")
            logger.info("Assessment requested but no health data has been received")
            return None

        payload = encode_risk_assessment(await self.analyze(snapshot))
        if expects_reply:
            return {"riskAssessment": payload}
        await self._push_result(payload)
        return None

    async def _on_assessment_result(self, message: Message, expects_reply: bool) -> Message | None:
        assessment = decode_risk_assessment(message)
        self.state.latest_assessment.set(assessment)
        logger.info("Received risk assessment: %s", assessment.level.label)
        return RECEIVED

    async def analyze(self, snapshot: HealthSnapshot) -> RiskAssessment:
        """Assess ``snapshot`` locally and publish the result."""
        if self._orchestrator is not None:
            assessment = await self._orchestrator.assess_driving_risk(snapshot)
        else:
            assessment = rule_engine.assess(snapshot)
        self.state.latest_assessment.set(assessment)
        return assessment

    async def _push_result(self, payload: Message) -> None:
        message = {"type": MessageType.RISK_ASSESSMENT_RESULT.value, **payload}
        if self._channel is None:
            logger.info("No push channel; risk assessment kept locally")
            return
        try:
            await self._channel.send(message)
        except PairingError as exc:
            logger.warning("Failed to push risk assessment: %s", exc)
            self.state.connectivity.set(self._channel.is_reachable())

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background analysis failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for background analyses started by the dispatcher."""
        while self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_health_data(
        self,
        snapshot: HealthSnapshot,
        *,
        request_assessment: bool = True,
    ) -> Exchange:
        """Send ``snapshot`` and wait for the companion's reply."""
        self.state.latest_snapshot.set(snapshot)
        message = encode_health_data(snapshot, request_assessment=request_assessment)
        return await self._exchange(Exchange(MessageType.HEALTH_DATA), message)

    async def request_assessment(self) -> Exchange:
        """Ask the peer to assess the last snapshot it received."""
        message = {"type": MessageType.RISK_ASSESSMENT_REQUEST.value}
        return await self._exchange(Exchange(MessageType.RISK_ASSESSMENT_REQUEST), message)

    async def _exchange(self, exchange: Exchange, message: Message) -> Exchange:
        channel = self._channel
        if channel is None:
            exchange.mark_failed("No pairing channel", unreachable=True)
            return exchange

        exchange.mark_sent()
        try:
            reply = await channel.send_with_reply(message)
        except ChannelUnreachableError as exc:
            logger.info("Paired device unreachable: %s", exc)
            self.state.connectivity.set(False)
            exchange.mark_failed(str(exc), unreachable=True)
            return exchange
        except PairingError as exc:
            logger.warning("Exchange failed: %s", exc)
            self.state.connectivity.set(channel.is_reachable())
            exchange.mark_failed(str(exc))
            return exchange

        self.state.connectivity.set(True)
        self._apply_reply(exchange, reply)
        return exchange

    def _apply_reply(self, exchange: Exchange, reply: Message) -> None:
        if "riskAssessment" in reply:
            try:
                assessment = decode_risk_assessment(reply["riskAssessment"])
            except MessageFormatError as exc:
                logger.warning("Malformed risk assessment in reply: %s", exc)
                exchange.mark_failed(f"Malformed risk assessment: {exc}")
                return
            self.state.latest_assessment.set(assessment)
            exchange.mark_replied(assessment)
            logger.info("Risk assessment received: %s", assessment.level.label)
            return

        status = reply.get("status")
        if status == "received":
            exchange.mark_acknowledged()
        elif status == "error":
            exchange.mark_failed(str(reply.get("message") or "Unknown error"))
        else:
            exchange.mark_failed(f"Unrecognised reply: {reply!r}")

    # ------------------------------------------------------------------
    # Wearable sync
    # ------------------------------------------------------------------

    async def sync_once(self, source: SnapshotSource) -> Exchange:
        """Send the current snapshot, assessing locally if the companion is unreachable."""
        snapshot = await source.get_snapshot()
        exchange = await self.send_health_data(snapshot, request_assessment=True)
        if exchange.unreachable:
            exchange.local_assessment = await self.analyze(snapshot)
            logger.info(
                "Companion unreachable; local assessment: %s",
                exchange.local_assessment.level.label,
            )
        return exchange

    async def run_periodic_sync(
        self,
        source: SnapshotSource,
        interval: float,
        stop: asyncio.Event,
    ) -> int:
        """Call :meth:`sync_once` every ``interval`` seconds until ``stop`` is set.

        Returns the number of sync attempts made.
        """
        attempts = 0
        while not stop.is_set():
            attempts += 1
            try:
                await self.sync_once(source)
            except Exception:
                logger.exception("Periodic sync failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        return attempts
