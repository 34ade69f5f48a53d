"""Concrete SnapshotSource implementations."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from drivesense.domains.driving.connectors.mock_data import get_mock_snapshot
from drivesense.domains.driving.models import (
    HealthSnapshot,
    SamplePoint,
    VitalKind,
    utc_now,
)

logger = logging.getLogger(__name__)

# Matches the wearable's retained history per vital.
MAX_POINTS_PER_SERIES = 1000


class MockSnapshotSource:
    """Uses mock data generators. Always available."""

    def __init__(self, overrides: dict[VitalKind, list[float]] | None = None) -> None:
        self._overrides = overrides or {}

    async def get_snapshot(self) -> HealthSnapshot:
        return get_mock_snapshot(self._overrides)

    @property
    def data_source(self) -> str:
        return "mock"


class BufferedSnapshotSource:
    """Accumulates sample batches pushed by the acquisition layer.

    Usage::

        source = BufferedSnapshotSource()
        source.ingest(VitalKind.HEART_RATE, batch)
        snapshot = await source.get_snapshot()
    """

    def __init__(self, max_points: int = MAX_POINTS_PER_SERIES) -> None:
        if max_points < 1:
            raise ValueError("max_points must be at least 1")
        self._max_points = max_points
        self._series: dict[VitalKind, deque[SamplePoint]] = {}

    def ingest(self, kind: VitalKind, points: Iterable[SamplePoint]) -> None:
        """Append a batch, keeping chronological order and the size cap."""
        buffer = self._series.setdefault(kind, deque(maxlen=self._max_points))
        incoming = sorted(points, key=lambda p: p.timestamp)
        buffer.extend(incoming)
        logger.debug("Ingested %d %s samples", len(incoming), kind.value)

    def clear(self) -> None:
        self._series.clear()

    async def get_snapshot(self) -> HealthSnapshot:
        return HealthSnapshot(
            captured_at=utc_now(),
            series={kind: tuple(points) for kind, points in self._series.items() if points},
        )

    @property
    def data_source(self) -> str:
        return "sensor"
