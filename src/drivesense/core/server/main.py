"""Process entry points for both sides of the pairing.

``drivesense-companion`` serves the companion MCP server over Streamable
HTTP. ``drivesense-wearable`` runs the wearable's periodic sync against a
companion at ``COMPANION_URL``, assessing locally while it is offline.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from ipaddress import ip_address
from typing import Any

from fastmcp import Client

from drivesense.core.config.settings import Settings, get_settings
from drivesense.core.pairing.channel import MCPPairingChannel
from drivesense.core.pairing.protocol import ExchangeProtocol
from drivesense.core.server.app import create_app
from drivesense.domains.driving.connectors import SnapshotSource
from drivesense.domains.driving.connectors.providers import MockSnapshotSource

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.drivesense_log_level.upper(), logging.INFO)
    )


def _is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Serve the companion MCP server; refuses public binds unless overridden."""
    settings = get_settings()
    _configure_logging(settings)

    if not settings.drivesense_allow_insecure_bind and not _is_loopback_host(
        settings.drivesense_host
    ):
        raise RuntimeError(
            "Refusing to bind the companion server to a non-loopback host without an "
            "auth layer. Set DRIVESENSE_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info(
        "Starting DriveSense companion on %s:%d",
        settings.drivesense_host,
        settings.drivesense_port,
    )
    create_app().run(
        transport="streamable-http",
        host=settings.drivesense_host,
        port=settings.drivesense_port,
    )


async def sync_with_companion(
    settings: Settings,
    source: SnapshotSource,
    stop: asyncio.Event,
    *,
    companion: Any = None,
) -> int:
    """Sync ``source`` to the companion until ``stop`` is set.

    ``companion`` is anything ``fastmcp.Client`` accepts (a URL or an
    in-process server); it defaults to ``settings.companion_url``. When the
    companion cannot be reached, one local assessment is made per interval
    and the connection is retried. Returns the number of sync attempts.
    """
    target = companion if companion is not None else settings.companion_url
    client = Client(target)
    interval = settings.sync_interval_seconds
    attempts = 0

    while not stop.is_set():
        try:
            async with client:
                logger.info("Connected to companion at %s", target)
                protocol = ExchangeProtocol(MCPPairingChannel(client))
                attempts += await protocol.run_periodic_sync(source, interval, stop)
                continue
        except Exception as exc:
            logger.warning("Companion at %s unavailable: %s", target, exc)

        attempts += 1
        exchange = await ExchangeProtocol(None).sync_once(source)
        if exchange.local_assessment is not None:
            logger.info(
                "Offline assessment: %s", exchange.local_assessment.level.label
            )
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)

    return attempts


async def _wearable_main(settings: Settings) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform; Ctrl-C still ends asyncio.run there.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)

    source = MockSnapshotSource()
    logger.info(
        "Starting DriveSense wearable sync (source=%s, every %.0fs) against %s",
        source.data_source,
        settings.sync_interval_seconds,
        settings.companion_url,
    )
    attempts = await sync_with_companion(settings, source, stop)
    logger.info("Wearable sync stopped after %d attempts", attempts)


def run_wearable() -> None:
    """Run the wearable sync loop until interrupted."""
    settings = get_settings()
    _configure_logging(settings)
    asyncio.run(_wearable_main(settings))


if __name__ == "__main__":
    run()
