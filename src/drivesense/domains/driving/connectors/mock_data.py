"""Mock vital-sign series for development and testing.

The default series describe a rested adult behind the wheel: every vital
sits inside its normal range, so the rule engine rates it Low.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from drivesense.domains.driving.models import (
    DEFAULT_UNITS,
    HealthSnapshot,
    SamplePoint,
    VitalKind,
    utc_now,
)

MOCK_READINGS: dict[VitalKind, list[float]] = {
    VitalKind.HEART_RATE: [72.0, 74.0, 71.0],
    VitalKind.HRV: [48.0, 45.0],
    VitalKind.BLOOD_OXYGEN: [0.98, 0.97],
    VitalKind.RESPIRATORY_RATE: [15.0, 14.0],
    VitalKind.STEP_COUNT: [3200.0],
    VitalKind.ACTIVE_ENERGY: [210.0],
}


def make_series(
    kind: VitalKind,
    values: list[float],
    *,
    end: datetime | None = None,
    spacing: timedelta = timedelta(minutes=1),
) -> tuple[SamplePoint, ...]:
    """Chronological series ending at ``end`` with fixed spacing."""
    end = end or utc_now()
    start = end - spacing * (len(values) - 1) if values else end
    return tuple(
        SamplePoint(value=value, timestamp=start + spacing * i, unit=DEFAULT_UNITS[kind])
        for i, value in enumerate(values)
    )


def get_mock_snapshot(
    overrides: dict[VitalKind, list[float]] | None = None,
    *,
    captured_at: datetime | None = None,
) -> HealthSnapshot:
    """Return a mock snapshot; ``overrides`` replaces (or with [] clears) series."""
    captured_at = captured_at or utc_now()
    readings = dict(MOCK_READINGS)
    readings.update(overrides or {})
    return HealthSnapshot(
        captured_at=captured_at,
        series={
            kind: make_series(kind, values, end=captured_at)
            for kind, values in readings.items()
            if values
        },
    )
