"""Tests for the mock and buffered snapshot sources."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from drivesense.domains.driving import rule_engine
from drivesense.domains.driving.connectors import SnapshotSource
from drivesense.domains.driving.connectors.mock_data import get_mock_snapshot, make_series
from drivesense.domains.driving.connectors.providers import (
    BufferedSnapshotSource,
    MockSnapshotSource,
)
from drivesense.domains.driving.models import RiskLevel, VitalKind


def _run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestMockData:
    def test_default_mock_snapshot_is_low_risk(self):
        snap = get_mock_snapshot()
        assert set(snap.present_kinds()) == set(VitalKind)
        assert rule_engine.assess(snap).level is RiskLevel.LOW

    def test_overrides_replace_and_clear(self):
        snap = get_mock_snapshot({VitalKind.HEART_RATE: [125], VitalKind.HRV: []})
        assert snap.latest(VitalKind.HEART_RATE) == 125
        assert not snap.has(VitalKind.HRV)

    def test_make_series_is_chronological(self):
        points = make_series(VitalKind.HEART_RATE, [70, 71, 72])
        assert [p.timestamp for p in points] == sorted(p.timestamp for p in points)
        assert points[1].timestamp - points[0].timestamp == timedelta(minutes=1)


class TestMockSnapshotSource:
    def test_satisfies_protocol(self):
        source = MockSnapshotSource()
        assert isinstance(source, SnapshotSource)
        assert source.data_source == "mock"

    def test_returns_overridden_snapshot(self):
        source = MockSnapshotSource({VitalKind.HEART_RATE: [118]})
        snap = _run(source.get_snapshot())
        assert snap.latest(VitalKind.HEART_RATE) == 118


class TestBufferedSnapshotSource:
    def test_ingest_sorts_and_caps(self):
        source = BufferedSnapshotSource(max_points=3)
        points = make_series(VitalKind.HEART_RATE, [60, 61, 62, 63, 64])
        source.ingest(VitalKind.HEART_RATE, reversed(points))

        snap = _run(source.get_snapshot())
        assert [p.value for p in snap.points(VitalKind.HEART_RATE)] == [62, 63, 64]
        assert source.data_source == "sensor"

    def test_empty_buffer_yields_unmeasured(self):
        source = BufferedSnapshotSource()
        source.ingest(VitalKind.HRV, [])
        snap = _run(source.get_snapshot())
        assert snap.present_kinds() == []

    def test_clear(self):
        source = BufferedSnapshotSource()
        source.ingest(VitalKind.HEART_RATE, make_series(VitalKind.HEART_RATE, [70]))
        source.clear()
        assert _run(source.get_snapshot()).present_kinds() == []

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            BufferedSnapshotSource(max_points=0)
