"""Tests for the legacy severity adapter."""

import pytest

from app.safety.adapter import (
    LegacyEscalationType,
    LegacySeverity,
    map_severity,
    to_legacy_result,
)
from app.safety.models import (
    MatchType,
    SafetyResult,
    Severity,
    TriggerCategory,
    TriggerMatch,
)


def _result(severity: Severity, category: TriggerCategory, escalate: bool = True) -> SafetyResult:
    return SafetyResult(
        severity=severity,
        confidence=1.0,
        requires_escalation=escalate,
        matches=[
            TriggerMatch(
                trigger="trigger",
                confidence=1.0,
                category=category,
                severity=severity,
                match_type=MatchType.EXACT,
            )
        ],
    )


class TestSeverityMapping:
    """Test four-level to legacy scale."""

    @pytest.mark.parametrize(
        "severity,expected",
        [
            (Severity.CRISIS, LegacySeverity.CRITICAL),
            (Severity.HIGH_CONCERN, LegacySeverity.HIGH),
            (Severity.EMOTIONAL_SUPPORT, LegacySeverity.MEDIUM),
            (Severity.GENERAL, LegacySeverity.LOW),
        ],
    )
    def test_map_severity(self, severity, expected):
        """Test each severity maps to its legacy level."""
        assert map_severity(severity) == expected

    def test_unknown_severity_is_low(self):
        """Test unknown values fall back to low."""
        assert map_severity("bogus") == LegacySeverity.LOW


class TestLegacyResult:
    """Test full result conversion."""

    def test_life_threatening_is_medical_emergency(self):
        """Test life-threatening categories map to medical emergency."""
        legacy = to_legacy_result(_result(Severity.CRISIS, TriggerCategory.LIFE_THREATENING))

        assert legacy.escalation_type == LegacyEscalationType.MEDICAL_EMERGENCY
        assert legacy.severity == LegacySeverity.CRITICAL
        assert legacy.is_safe is False

    def test_suicide_ideation_is_self_harm(self):
        """Test suicide ideation maps to self harm."""
        legacy = to_legacy_result(_result(Severity.CRISIS, TriggerCategory.SUICIDE_IDEATION))

        assert legacy.escalation_type == LegacyEscalationType.SELF_HARM

    def test_other_is_inappropriate_content(self):
        """Test anything else maps to inappropriate content."""
        legacy = to_legacy_result(_result(Severity.HIGH_CONCERN, TriggerCategory.SEVERE_BLEEDING))

        assert legacy.escalation_type == LegacyEscalationType.INAPPROPRIATE_CONTENT
        assert legacy.severity == LegacySeverity.HIGH

    def test_safe_result(self):
        """Test a general verdict is safe."""
        legacy = to_legacy_result(SafetyResult())

        assert legacy.is_safe is True
        assert legacy.severity == LegacySeverity.LOW
        assert legacy.reasons == []
        assert legacy.to_dict()["severity"] == "low"
