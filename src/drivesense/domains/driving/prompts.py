"""Risk-assessment prompt construction from a HealthSnapshot.

Only vitals that were actually measured are listed; absent kinds are never
given a placeholder value.
"""

from __future__ import annotations

from drivesense.core.llm.system_prompt import build_full_prompt
from drivesense.domains.driving.models import (
    HealthSnapshot,
    VitalKind,
    blood_oxygen_percent,
)

CLINICAL_GUIDELINES: dict[VitalKind, str] = {
    VitalKind.HEART_RATE: "Heart Rate: normal range 60-100 BPM, only consider elevated if >100 BPM",
    VitalKind.HRV: "HRV: values below 30 ms may indicate stress or fatigue",
    VitalKind.BLOOD_OXYGEN: "Blood Oxygen: normal range 95-100%, only consider low if <95%",
    VitalKind.RESPIRATORY_RATE: "Respiratory Rate: normal range 10-25 breaths/min",
    VitalKind.STEP_COUNT: "Step Count: very low activity may indicate fatigue",
    VitalKind.ACTIVE_ENERGY: "Active Energy: low energy may indicate tiredness",
}

HARD_CONSTRAINTS = """\
CRITICAL RULES:
- ONLY use the provided health data. Do NOT assume conditions not indicated by the data.
- If heart rate is 60-100 BPM, it is NORMAL - do NOT flag it as a risk.
- Do NOT mention any vital sign that is not listed in the available metrics.
- Do NOT mention blood pressure or chronic conditions.
- If all provided values are normal, assess as LOW risk."""

RESPONSE_SHAPE = """\
Format: Start with "## Driving Risk Assessment", then:
1. Risk Level: LOW/MEDIUM/HIGH
2. Risk Factors: list specific issues supported by the data
3. Recommendations: 3-5 actionable safety tips, one per line"""


def describe_metrics(snapshot: HealthSnapshot) -> list[str]:
    """Human-readable lines for each measured vital."""
    lines: list[str] = []
    for kind in snapshot.present_kinds():
        value = snapshot.latest(kind)
        if kind is VitalKind.HEART_RATE:
            lines.append(f"Heart Rate: {value:.0f} BPM")
        elif kind is VitalKind.HRV:
            lines.append(f"Heart Rate Variability: {value:.0f} ms")
        elif kind is VitalKind.BLOOD_OXYGEN:
            lines.append(f"Blood Oxygen: {blood_oxygen_percent(value):.0f}%")
        elif kind is VitalKind.RESPIRATORY_RATE:
            lines.append(f"Respiratory Rate: {value:.0f} breaths/min")
        elif kind is VitalKind.STEP_COUNT:
            lines.append(f"Step Count: {int(value)} steps")
        elif kind is VitalKind.ACTIVE_ENERGY:
            lines.append(f"Active Energy: {value:.0f} kcal")
    return lines


def build_risk_prompt(snapshot: HealthSnapshot) -> str:
    """Build the full driving-risk prompt for ``snapshot``."""
    metrics = describe_metrics(snapshot)

    parts = [
        "Analyze the following health data to assess driving risk.",
    ]
    if metrics:
        parts.append("Available health metrics:")
        parts.extend(f"- {line}" for line in metrics)
    else:
        parts.append("No health metrics are currently available.")

    if len(metrics) == 1:
        parts.append("Only one metric is available; limit the analysis to it.")
    elif len(metrics) >= 3:
        parts.append("Multiple health metrics are available for comprehensive analysis.")

    guidelines = [CLINICAL_GUIDELINES[kind] for kind in snapshot.present_kinds()]
    if guidelines:
        parts.extend(["", "Guidelines:"])
        parts.extend(f"- {line}" for line in guidelines)

    parts.extend(["", HARD_CONSTRAINTS, "", RESPONSE_SHAPE])
    return build_full_prompt("\n".join(parts))
