"""Sensor feed connectors: the boundary to sample acquisition."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from drivesense.domains.driving.models import HealthSnapshot


@runtime_checkable
class SnapshotSource(Protocol):
    """Pull interface for the current vital-sign snapshot.

    Acquisition (polling loops, HealthKit queries, BLE notifications) lives
    outside this package; the core only ever asks for the current snapshot.
    """

    async def get_snapshot(self) -> HealthSnapshot:
        """Return the current HealthSnapshot."""
        ...

    @property
    def data_source(self) -> str:
        """Label for the active data source, e.g. 'sensor' or 'mock'."""
        ...
