"""Pairing channel: message transport between wearable and companion.

Two transports implement :class:`PairingChannel`:

- :class:`LoopbackChannel`: an in-process pair of endpoints. Messages are
  copied through JSON so both sides only ever see wire-shaped data.
- :class:`MCPPairingChannel`: the wearable side of a link to a companion
  running the DriveSense MCP server, over a ``fastmcp.Client``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Message = dict[str, Any]

# (message, expects_reply) -> reply. A reply is only used when expects_reply.
MessageHandler = Callable[[Message, bool], Awaitable[Message | None]]

PAIRING_TOOL_NAME = "pairing_message"


class PairingError(Exception):
    """Base exception for pairing failures."""


class ChannelUnreachableError(PairingError):
    """The paired device is not reachable right now."""


class ChannelError(PairingError):
    """The transport failed to deliver a message or return a reply."""


@runtime_checkable
class PairingChannel(Protocol):
    """Bidirectional message transport.

    Reachability may change at any time; both send operations re-check it
    immediately before transmitting and raise ChannelUnreachableError
    instead of retrying.
    """

    def connect(self, handler: MessageHandler) -> None:
        """Register the inbound message dispatcher."""
        ...

    def is_reachable(self) -> bool:
        ...

    async def send_with_reply(self, message: Message) -> Message:
        """Send ``message`` and suspend until the peer replies."""
        ...

    async def send(self, message: Message) -> None:
        """Send ``message`` without waiting for the peer to handle it."""
        ...


def _wire_copy(message: Message) -> Message:
    try:
        return json.loads(json.dumps(message))
    except (TypeError, ValueError) as exc:
        raise ChannelError(f"Message is not JSON-serialisable: {exc}") from exc


class LoopbackChannel:
    """One endpoint of an in-process link.

    Usage::

        wearable_end, companion_end = LoopbackChannel.pair()
        companion_end.connect(companion_protocol.handle_message)
        reply = await wearable_end.send_with_reply({"type": "risk_assessment_request"})
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.reachable = True
        self._peer: LoopbackChannel | None = None
        self._handler: MessageHandler | None = None
        self._pending: set[asyncio.Task[None]] = set()

    @classmethod
    def pair(
        cls, first: str = "wearable", second: str = "companion"
    ) -> tuple[LoopbackChannel, LoopbackChannel]:
        a, b = cls(first), cls(second)
        a._peer, b._peer = b, a
        return a, b

    def connect(self, handler: MessageHandler) -> None:
        self._handler = handler

    def is_reachable(self) -> bool:
        return self.reachable and self._peer is not None

    async def send_with_reply(self, message: Message) -> Message:
        peer, handler = self._deliverable()
        try:
            reply = await handler(_wire_copy(message), True)
        except Exception as exc:
            raise ChannelError(f"{peer.name} failed to handle message: {exc}") from exc
        if reply is None:
            raise ChannelError(f"{peer.name} returned no reply")
        return _wire_copy(reply)

    async def send(self, message: Message) -> None:
        peer, _ = self._deliverable()
        task = asyncio.create_task(peer._receive(_wire_copy(message)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until fire-and-forget deliveries in both directions settle."""
        peer_pending = self._peer._pending if self._peer is not None else set()
        while self._pending or peer_pending:
            await asyncio.gather(*self._pending, *peer_pending, return_exceptions=True)

    def _deliverable(self) -> tuple[LoopbackChannel, MessageHandler]:
        peer = self._peer
        if not self.is_reachable() or peer is None:
            raise ChannelUnreachableError(f"{self.name}: paired device is not reachable")
        if peer._handler is None:
            raise ChannelError(f"{peer.name} has no message handler")
        return peer, peer._handler

    async def _receive(self, message: Message) -> None:
        if self._handler is None:
            logger.warning("%s dropped message: no handler connected", self.name)
            return
        try:
            await self._handler(message, False)
        except Exception:
            logger.exception("%s failed to handle fire-and-forget message", self.name)


class MCPPairingChannel:
    """Wearable-side channel that talks to the companion's MCP server.

    Both send kinds call the companion's ``pairing_message`` tool. MCP tool
    calls are request/response only, so the companion cannot push results
    back over this link; a result the companion cannot reply with inline
    stays on the companion.

    Usage::

        from fastmcp import Client
        client = Client("http://127.0.0.1:8010/mcp")
        async with client:
            channel = MCPPairingChannel(client)
            reply = await channel.send_with_reply(message)
    """

    def __init__(self, mcp_client: Any, *, tool_name: str = PAIRING_TOOL_NAME) -> None:
        """Initialise with a fastmcp.Client (or compatible)."""
        self._client = mcp_client
        self._tool_name = tool_name
        self._handler: MessageHandler | None = None

    def connect(self, handler: MessageHandler) -> None:
        self._handler = handler

    def is_reachable(self) -> bool:
        is_connected = getattr(self._client, "is_connected", None)
        if not callable(is_connected):
            return False
        try:
            return bool(is_connected())
        except Exception:
            logger.debug("is_connected() raised; treating companion as unreachable", exc_info=True)
            return False

    async def send_with_reply(self, message: Message) -> Message:
        reply = await self._call(message, expects_reply=True)
        if not reply:
            raise ChannelError(f"Empty reply from {self._tool_name}")
        return reply

    async def send(self, message: Message) -> None:
        await self._call(message, expects_reply=False)

    async def _call(self, message: Message, *, expects_reply: bool) -> Message:
        if not self.is_reachable():
            raise ChannelUnreachableError("Companion MCP server is not connected")

        try:
            result = await self._client.call_tool(
                self._tool_name,
                {"message": _wire_copy(message), "expects_reply": expects_reply},
            )
        except PairingError:
            raise
        except Exception as exc:
            logger.warning("Pairing tool call failed: %s", exc)
            raise ChannelError(f"Failed to call companion tool '{self._tool_name}': {exc}") from exc

        payload = _extract_payload(result)
        if payload is None:
            return {}
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except (json.JSONDecodeError, TypeError) as exc:
                raise ChannelError(f"Invalid JSON from {self._tool_name}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ChannelError(
                f"Expected JSON object from {self._tool_name}, got {type(payload).__name__}"
            )
        return payload


def _extract_payload(result: Any) -> Any | None:
    """Extract the tool's return value from a fastmcp call result.

    Accepts a CallToolResult (``data`` / ``structured_content``), a list of
    content blocks, a single block, a raw string or an already-parsed dict.
    """
    if isinstance(result, dict):
        return result
    if isinstance(result, str):
        return result

    data = getattr(result, "data", None)
    if isinstance(data, dict):
        return data
    structured = getattr(result, "structured_content", None)
    if isinstance(structured, dict):
        return structured

    content = getattr(result, "content", result)
    blocks = content if isinstance(content, list) else [content]
    for block in blocks:
        text = block.get("text") if isinstance(block, dict) else getattr(block, "text", None)
        if isinstance(text, str) and text.strip():
            return text
    return None
