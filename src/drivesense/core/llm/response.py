"""Response parsing and validation for model output.

The model's text is treated as a proposal. Risk factors it names are only
kept when an independent threshold check against the measured snapshot
confirms them, so the model cannot assert risks the data does not support.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from drivesense.domains.driving.models import (
    AssessmentSource,
    HealthSnapshot,
    RiskAssessment,
    RiskFactor,
    RiskFactorKind,
    RiskLevel,
    utc_now,
)
from drivesense.domains.driving.rule_engine import MAX_RECOMMENDATIONS, evaluate_factors

logger = logging.getLogger(__name__)


class ModelResponseError(Exception):
    """The model output could not be turned into an assessment."""


# ---------------------------------------------------------------------------
# Risk level
# ---------------------------------------------------------------------------

# Phrase groups checked in order; the first group with any hit decides.
# Within a group, levels are checked High -> Medium -> Low.
RISK_LEVEL_PHRASE_GROUPS: list[list[tuple[RiskLevel, tuple[str, ...]]]] = [
    [
        (RiskLevel.HIGH, (
            "high risk", "risk level: high", "high driving risk", "**risk level:** high",
        )),
        (RiskLevel.MEDIUM, (
            "medium risk", "risk level: medium", "moderate driving risk",
            "moderate risk level", "**risk level:** medium",
        )),
        (RiskLevel.LOW, (
            "low risk", "risk level: low", "low driving risk", "**risk level:** low",
        )),
    ],
    [
        (RiskLevel.HIGH, ("immediately", "stop driving", "dangerous", "severe")),
        (RiskLevel.MEDIUM, ("consider", "caution", "monitor")),
        (RiskLevel.LOW, ("normal", "safe", "continue", "low")),
    ],
    [
        (RiskLevel.LOW, ("cannot calculate", "does not provide", "no information")),
    ],
]


def extract_risk_level(response: str) -> RiskLevel:
    """Keyword search for the stated risk level; Low when nothing matches."""
    lowered = response.lower()
    for group in RISK_LEVEL_PHRASE_GROUPS:
        for level, phrases in group:
            if any(phrase in lowered for phrase in phrases):
                return level
    logger.info("No clear risk indicators in model response; defaulting to Low")
    return RiskLevel.LOW


# ---------------------------------------------------------------------------
# Risk factors
# ---------------------------------------------------------------------------

FACTOR_KEYWORDS: dict[RiskFactorKind, tuple[str, ...]] = {
    RiskFactorKind.ELEVATED_HEART_RATE: ("heart rate", "elevated", "pulse"),
    RiskFactorKind.LOW_HRV: ("hrv", "heart rate variability"),
    RiskFactorKind.LOW_BLOOD_OXYGEN: ("oxygen", "spo2"),
    RiskFactorKind.ELEVATED_RESPIRATORY_RATE: ("respiratory", "breathing rate"),
}

_GENERIC_RISK_WORDS = ("risk", "elevated", "high")


def extract_risk_factors(response: str, snapshot: HealthSnapshot) -> list[RiskFactor]:
    """Factors the model mentions that the measured data confirms.

    Returns an empty list whenever no measured vital is out of range, no
    matter what the text claims.
    """
    confirmed = {factor.kind: factor for factor in evaluate_factors(snapshot)}
    if not confirmed:
        if any(word in response.lower() for word in _GENERIC_RISK_WORDS):
            logger.info("Model asserted risk but measured vitals are in range; dropping factors")
        return []

    lowered = response.lower()
    factors = [
        factor
        for kind, factor in confirmed.items()
        if any(keyword in lowered for keyword in FACTOR_KEYWORDS.get(kind, ()))
    ]

    if not factors and any(word in lowered for word in _GENERIC_RISK_WORDS):
        factors = list(confirmed.values())

    return factors


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

FALLBACK_RECOMMENDATIONS: tuple[str, ...] = (
    "Continue driving safely and monitor your condition",
    "Take regular breaks every 2 hours",
    "Stay hydrated and ensure proper ventilation",
    "Stop driving if you feel unwell",
)

_NUMBERED = re.compile(r"^\d+[.)]\s+")
_BULLET = re.compile(r"^[-•*]\s+")
_IMPERATIVE_WORDS = ("consider", "take", "practice", "ensure")
_HEADING = re.compile(
    r"^(#+\s*|\d+[.)]\s*)?\**\s*recommendations?\s*\**\s*:?\s*\**\s*$", re.IGNORECASE
)
_LABEL = re.compile(
    r"^(driving\s+)?(risk\s+(level|factors?)|recommendations?)\**\s*:", re.IGNORECASE
)


def _clean(line: str) -> str:
    return line.replace("**", "").replace("__", "").strip()


def _recommendation_from_line(line: str) -> str | None:
    if not line or line.startswith("#"):
        return None

    for pattern in (_NUMBERED, _BULLET):
        if pattern.match(line):
            text = _clean(pattern.sub("", line, count=1))
            if text and not _LABEL.match(text):
                return text
            return None

    text = _clean(line)
    if _LABEL.match(text):
        return None
    if len(text) > 10 and any(word in text.lower() for word in _IMPERATIVE_WORDS):
        return text
    return None


def extract_recommendations(response: str) -> list[str]:
    """Numbered, bulleted, or imperative lines; deduplicated and capped.

    When the response has a Recommendations heading only the lines after it
    are considered.
    """
    lines = [line.strip() for line in response.splitlines()]
    for index, line in enumerate(lines):
        if _HEADING.match(line):
            lines = lines[index + 1:]
            break

    recommendations: list[str] = []
    for line in lines:
        text = _recommendation_from_line(line)
        if text and text not in recommendations:
            recommendations.append(text)

    if not recommendations:
        return list(FALLBACK_RECOMMENDATIONS)
    return recommendations[:MAX_RECOMMENDATIONS]


# ---------------------------------------------------------------------------
# Full parse
# ---------------------------------------------------------------------------

def parse_model_response(
    response: str,
    snapshot: HealthSnapshot,
    *,
    now: datetime | None = None,
) -> RiskAssessment:
    """Turn raw model text into a validated RiskAssessment.

    Raises:
        ModelResponseError: If the response is empty.
    """
    if not response or not response.strip():
        raise ModelResponseError("Model returned an empty response")

    stated_level = extract_risk_level(response)
    factors = extract_risk_factors(response, snapshot)

    if factors:
        level = max(stated_level, max(f.severity for f in factors))
    else:
        if stated_level is not RiskLevel.LOW:
            logger.info(
                "Model stated %s risk without supporting data; downgrading to Low",
                stated_level.label,
            )
        level = RiskLevel.LOW

    return RiskAssessment(
        produced_at=now or utc_now(),
        level=level,
        factors=tuple(factors),
        recommendations=tuple(extract_recommendations(response)),
        source=AssessmentSource.MODEL,
    )
