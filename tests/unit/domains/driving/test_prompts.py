"""Tests for risk prompt construction."""

from __future__ import annotations

from drivesense.core.llm.system_prompt import DRIVING_SAFETY_SYSTEM_PROMPT
from drivesense.domains.driving.models import VitalKind
from drivesense.domains.driving.prompts import (
    CLINICAL_GUIDELINES,
    HARD_CONSTRAINTS,
    RESPONSE_SHAPE,
    build_risk_prompt,
    describe_metrics,
)


def test_only_present_vitals_are_listed(snapshot):
    prompt = build_risk_prompt(snapshot(heartRate=[118], bloodOxygen=[]))
    assert "Heart Rate: 118 BPM" in prompt
    assert "Blood Oxygen:" not in prompt
    assert CLINICAL_GUIDELINES[VitalKind.HEART_RATE] in prompt
    assert CLINICAL_GUIDELINES[VitalKind.BLOOD_OXYGEN] not in prompt


def test_blood_oxygen_rendered_as_percent(snapshot):
    assert describe_metrics(snapshot(bloodOxygen=[0.97])) == ["Blood Oxygen: 97%"]


def test_empty_snapshot_says_no_metrics(snapshot):
    prompt = build_risk_prompt(snapshot())
    assert "No health metrics are currently available." in prompt
    assert "Guidelines:" not in prompt


def test_constraints_and_shape_always_included(normal_snapshot):
    prompt = build_risk_prompt(normal_snapshot)
    assert prompt.startswith(DRIVING_SAFETY_SYSTEM_PROMPT)
    assert HARD_CONSTRAINTS in prompt
    assert RESPONSE_SHAPE in prompt
    assert "Multiple health metrics" in prompt


def test_metric_lines_follow_canonical_order(snapshot):
    lines = describe_metrics(snapshot(stepCount=[4200], heartRate=[72], hrv=[40]))
    assert lines == [
        "Heart Rate: 72 BPM",
        "Heart Rate Variability: 40 ms",
        "Step Count: 4200 steps",
    ]
