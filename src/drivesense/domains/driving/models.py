"""Driving-risk data model: vital sample series, risk factors and assessments."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from types import MappingProxyType


# ---------------------------------------------------------------------------
# Vital signs
# ---------------------------------------------------------------------------

class VitalKind(str, Enum):
    """Monitored biometric categories. Values are the wire field names."""

    HEART_RATE = "heartRate"
    HRV = "hrv"
    BLOOD_OXYGEN = "bloodOxygen"
    RESPIRATORY_RATE = "respiratoryRate"
    STEP_COUNT = "stepCount"
    ACTIVE_ENERGY = "activeEnergy"


class Unit(str, Enum):
    BPM = "BPM"
    MILLISECONDS = "ms"
    PERCENT = "%"
    BREATHS_PER_MINUTE = "breaths/min"
    STEPS = "steps"
    KILOCALORIES = "kcal"


DEFAULT_UNITS: dict[VitalKind, Unit] = {
    VitalKind.HEART_RATE: Unit.BPM,
    VitalKind.HRV: Unit.MILLISECONDS,
    VitalKind.BLOOD_OXYGEN: Unit.PERCENT,
    VitalKind.RESPIRATORY_RATE: Unit.BREATHS_PER_MINUTE,
    VitalKind.STEP_COUNT: Unit.STEPS,
    VitalKind.ACTIVE_ENERGY: Unit.KILOCALORIES,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Treat a naive datetime as UTC; aware datetimes pass through."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(frozen=True)
class SamplePoint:
    """A single measurement as captured on the wearable."""

    value: float
    timestamp: datetime
    unit: Unit

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))


@dataclass(frozen=True)
class HealthSnapshot:
    """Immutable bundle of chronological sample series per vital kind.

    A kind that is absent or has an empty series was *not measured*; it is
    never equivalent to a zero reading. Use :meth:`latest` to read the most
    recent value, which returns ``None`` when the kind is unavailable.
    """

    captured_at: datetime
    series: Mapping[VitalKind, tuple[SamplePoint, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "captured_at", as_utc(self.captured_at))
        frozen = {
            VitalKind(kind): tuple(points)
            for kind, points in self.series.items()
        }
        object.__setattr__(self, "series", MappingProxyType(frozen))

    @classmethod
    def build(
        cls,
        captured_at: datetime | None = None,
        **readings: Iterable[SamplePoint],
    ) -> HealthSnapshot:
        """Build a snapshot from keyword series, e.g. ``heartRate=[...]``."""
        return cls(
            captured_at=captured_at or utc_now(),
            series={VitalKind(name): tuple(points) for name, points in readings.items()},
        )

    def points(self, kind: VitalKind) -> tuple[SamplePoint, ...]:
        return self.series.get(kind, ())

    def has(self, kind: VitalKind) -> bool:
        return bool(self.series.get(kind))

    def latest(self, kind: VitalKind) -> float | None:
        """Latest value of ``kind``, or ``None`` if it was not measured."""
        points = self.series.get(kind)
        if not points:
            return None
        return points[-1].value

    def present_kinds(self) -> list[VitalKind]:
        """Measured kinds in canonical VitalKind order."""
        return [kind for kind in VitalKind if self.has(kind)]


def blood_oxygen_percent(value: float) -> float:
    """Normalize SpO2 to percent. HealthKit reports a fraction (0.97)."""
    return value * 100 if value <= 1.0 else value


# ---------------------------------------------------------------------------
# Risk model
# ---------------------------------------------------------------------------

class RiskLevel(IntEnum):
    """Ordered risk levels; ``max()`` aggregates severities."""

    LOW = 0
    MEDIUM = 1
    HIGH = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_label(cls, label: str) -> RiskLevel:
        try:
            return cls[label.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown risk level: {label!r}") from None


class RiskFactorKind(str, Enum):
    """Values are the wire `type` strings."""

    ELEVATED_HEART_RATE = "elevatedHeartRate"
    LOW_HRV = "lowHRV"
    LOW_BLOOD_OXYGEN = "lowBloodOxygen"
    ELEVATED_RESPIRATORY_RATE = "elevatedRespiratoryRate"
    FATIGUE = "fatigue"


class AssessmentSource(str, Enum):
    MODEL = "model"
    RULE_ENGINE = "rule_engine"
    REMOTE = "remote"  # decoded from a paired device


@dataclass(frozen=True)
class RiskFactor:
    kind: RiskFactorKind
    severity: RiskLevel
    description: str
    measured_value: float


@dataclass(frozen=True)
class RiskAssessment:
    """A completed driving-risk verdict. Never mutated after construction."""

    produced_at: datetime
    level: RiskLevel
    factors: tuple[RiskFactor, ...] = ()
    recommendations: tuple[str, ...] = ()
    source: AssessmentSource = AssessmentSource.RULE_ENGINE

    def __post_init__(self) -> None:
        object.__setattr__(self, "produced_at", as_utc(self.produced_at))
        object.__setattr__(self, "factors", tuple(self.factors))
        object.__setattr__(self, "recommendations", tuple(self.recommendations))

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or utc_now()) - self.produced_at).total_seconds()

    def formatted(self) -> str:
        """Plain-text rendering for logs and notifications."""
        lines = ["Driving Risk Assessment:", "", f"Risk Level: {self.level.label}", ""]
        if self.factors:
            lines.append("Risk Factors:")
            lines.extend(
                f"- {f.description} ({f.measured_value:.1f})" for f in self.factors
            )
            lines.append("")
        if self.recommendations:
            lines.append("Recommendations:")
            lines.extend(
                f"{i}. {rec}" for i, rec in enumerate(self.recommendations, start=1)
            )
        return "\n".join(lines)
