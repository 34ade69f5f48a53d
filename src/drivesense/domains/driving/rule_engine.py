"""Deterministic rule-based driving-risk assessment.

This is the universal fallback used whenever the language model is absent,
slow, or produces an unsupported verdict. Every function here is pure:
no I/O, no shared state, no randomness. Thresholds only apply when the
corresponding series is non-empty; an unmeasured vital never produces a
factor.
"""

from __future__ import annotations

import math
from datetime import datetime

from drivesense.domains.driving.models import (
    AssessmentSource,
    HealthSnapshot,
    RiskAssessment,
    RiskFactor,
    RiskFactorKind,
    RiskLevel,
    VitalKind,
    blood_oxygen_percent,
    utc_now,
)

# ---------------------------------------------------------------------------
# Clinical thresholds (strict comparisons)
# ---------------------------------------------------------------------------

HEART_RATE_HIGH_BPM = 120.0
HEART_RATE_MEDIUM_BPM = 100.0

# Tighter of the two HRV cutoff pairs found in the field; see DESIGN.md.
HRV_HIGH_MS = 20.0
HRV_MEDIUM_MS = 30.0

BLOOD_OXYGEN_HIGH_PCT = 90.0
BLOOD_OXYGEN_MEDIUM_PCT = 95.0

RESPIRATORY_RATE_LOW = 10.0
RESPIRATORY_RATE_HIGH = 25.0

MAX_RECOMMENDATIONS = 5

FACTOR_RECOMMENDATIONS: dict[RiskFactorKind, str] = {
    RiskFactorKind.ELEVATED_HEART_RATE: (
        "Consider taking a break and practicing deep breathing exercises"
    ),
    RiskFactorKind.LOW_HRV: (
        "Try to relax and reduce stress. Consider meditation or gentle stretching"
    ),
    RiskFactorKind.LOW_BLOOD_OXYGEN: (
        "Ensure proper ventilation and consider stopping if symptoms persist"
    ),
    RiskFactorKind.ELEVATED_RESPIRATORY_RATE: (
        "Focus on slow, deep breathing to reduce respiratory rate"
    ),
    RiskFactorKind.FATIGUE: (
        "Consider taking a rest break. Fatigue can significantly impact driving safety"
    ),
}

NORMAL_RECOMMENDATIONS: tuple[str, ...] = (
    "Your health metrics appear normal. Continue driving safely.",
    "Take regular breaks every 2 hours.",
    "Stay hydrated and maintain good posture.",
)


# ---------------------------------------------------------------------------
# Per-vital checks
# ---------------------------------------------------------------------------

def _latest(snapshot: HealthSnapshot, kind: VitalKind) -> float | None:
    value = snapshot.latest(kind)
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(value) else value


def _heart_rate_factor(snapshot: HealthSnapshot) -> RiskFactor | None:
    bpm = _latest(snapshot, VitalKind.HEART_RATE)
    if bpm is None:
        return None
    if bpm > HEART_RATE_HIGH_BPM:
        return RiskFactor(
            kind=RiskFactorKind.ELEVATED_HEART_RATE,
            severity=RiskLevel.HIGH,
            description=f"Elevated heart rate - {bpm:.0f} BPM",
            measured_value=bpm,
        )
    if bpm > HEART_RATE_MEDIUM_BPM:
        return RiskFactor(
            kind=RiskFactorKind.ELEVATED_HEART_RATE,
            severity=RiskLevel.MEDIUM,
            description=f"Slightly elevated heart rate - {bpm:.0f} BPM",
            measured_value=bpm,
        )
    return None


def _hrv_factor(snapshot: HealthSnapshot) -> RiskFactor | None:
    hrv = _latest(snapshot, VitalKind.HRV)
    if hrv is None:
        return None
    if hrv < HRV_HIGH_MS:
        return RiskFactor(
            kind=RiskFactorKind.LOW_HRV,
            severity=RiskLevel.HIGH,
            description=f"Low heart rate variability - {hrv:.0f} ms",
            measured_value=hrv,
        )
    if hrv < HRV_MEDIUM_MS:
        return RiskFactor(
            kind=RiskFactorKind.LOW_HRV,
            severity=RiskLevel.MEDIUM,
            description=f"Reduced heart rate variability - {hrv:.0f} ms",
            measured_value=hrv,
        )
    return None


def _blood_oxygen_factor(snapshot: HealthSnapshot) -> RiskFactor | None:
    raw = _latest(snapshot, VitalKind.BLOOD_OXYGEN)
    if raw is None:
        return None
    spo2 = blood_oxygen_percent(raw)
    if spo2 < BLOOD_OXYGEN_HIGH_PCT:
        return RiskFactor(
            kind=RiskFactorKind.LOW_BLOOD_OXYGEN,
            severity=RiskLevel.HIGH,
            description=f"Low blood oxygen saturation - {spo2:.0f}%",
            measured_value=spo2,
        )
    if spo2 < BLOOD_OXYGEN_MEDIUM_PCT:
        return RiskFactor(
            kind=RiskFactorKind.LOW_BLOOD_OXYGEN,
            severity=RiskLevel.MEDIUM,
            description=f"Slightly reduced blood oxygen - {spo2:.0f}%",
            measured_value=spo2,
        )
    return None


def _respiratory_rate_factor(snapshot: HealthSnapshot) -> RiskFactor | None:
    rate = _latest(snapshot, VitalKind.RESPIRATORY_RATE)
    if rate is None:
        return None
    if rate < RESPIRATORY_RATE_LOW or rate > RESPIRATORY_RATE_HIGH:
        return RiskFactor(
            kind=RiskFactorKind.ELEVATED_RESPIRATORY_RATE,
            severity=RiskLevel.MEDIUM,
            description=f"Abnormal respiratory rate - {rate:.0f} breaths/min",
            measured_value=rate,
        )
    return None


_CHECKS = {
    VitalKind.HEART_RATE: _heart_rate_factor,
    VitalKind.HRV: _hrv_factor,
    VitalKind.BLOOD_OXYGEN: _blood_oxygen_factor,
    VitalKind.RESPIRATORY_RATE: _respiratory_rate_factor,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def evaluate_factors(snapshot: HealthSnapshot) -> list[RiskFactor]:
    """Return factors for every measured vital outside its normal range.

    Order follows the snapshot's series iteration order, so the result is
    stable for a given snapshot.
    """
    factors: list[RiskFactor] = []
    for kind in snapshot.series:
        check = _CHECKS.get(kind)
        if check is None:
            continue
        factor = check(snapshot)
        if factor is not None:
            factors.append(factor)
    return factors


def recommendations_for(factors: list[RiskFactor]) -> list[str]:
    """One templated recommendation per factor kind, capped."""
    if not factors:
        return list(NORMAL_RECOMMENDATIONS)

    recommendations: list[str] = []
    for factor in factors:
        text = FACTOR_RECOMMENDATIONS[factor.kind]
        if text not in recommendations:
            recommendations.append(text)
    return recommendations[:MAX_RECOMMENDATIONS]


def assess(snapshot: HealthSnapshot, *, now: datetime | None = None) -> RiskAssessment:
    """Assess driving risk from fixed clinical thresholds."""
    factors = evaluate_factors(snapshot)
    level = max((f.severity for f in factors), default=RiskLevel.LOW)
    return RiskAssessment(
        produced_at=now or utc_now(),
        level=level,
        factors=tuple(factors),
        recommendations=tuple(recommendations_for(factors)),
        source=AssessmentSource.RULE_ENGINE,
    )
