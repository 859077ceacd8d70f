"""
Legacy safety adapter.

Maps the four-level SafetyResult onto the older
none/low/medium/high/critical scale still used by some callers.
"""

from dataclasses import dataclass, field
from enum import Enum

from app.safety.models import SafetyResult, Severity, TriggerCategory


class LegacySeverity(str, Enum):
    """Severity scale used by legacy callers."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LegacyEscalationType(str, Enum):
    """Escalation type used by legacy callers."""

    MEDICAL_EMERGENCY = "medical_emergency"
    SELF_HARM = "self_harm"
    INAPPROPRIATE_CONTENT = "inappropriate_content"


SEVERITY_MAP: dict[Severity, LegacySeverity] = {
    Severity.CRISIS: LegacySeverity.CRITICAL,
    Severity.HIGH_CONCERN: LegacySeverity.HIGH,
    Severity.EMOTIONAL_SUPPORT: LegacySeverity.MEDIUM,
    Severity.GENERAL: LegacySeverity.LOW,
}


@dataclass
class LegacySafetyResult:
    """Result shape expected by legacy callers."""

    is_safe: bool
    severity: LegacySeverity
    escalation_type: LegacyEscalationType
    requires_escalation: bool
    confidence: float
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "is_safe": self.is_safe,
            "severity": self.severity.value,
            "escalation_type": self.escalation_type.value,
            "requires_escalation": self.requires_escalation,
            "confidence": self.confidence,
            "reasons": self.reasons,
        }


def map_severity(severity: Severity | str | None) -> LegacySeverity:
    """Map a severity (or unknown value) to the legacy scale."""
    try:
        return SEVERITY_MAP[Severity(severity)]
    except ValueError:
        return LegacySeverity.LOW


def map_escalation_type(result: SafetyResult) -> LegacyEscalationType:
    """Derive the legacy escalation type from matched categories."""
    if result.has_category(TriggerCategory.LIFE_THREATENING):
        return LegacyEscalationType.MEDICAL_EMERGENCY
    if result.has_category(TriggerCategory.SELF_HARM, TriggerCategory.SUICIDE_IDEATION):
        return LegacyEscalationType.SELF_HARM
    return LegacyEscalationType.INAPPROPRIATE_CONTENT


def to_legacy_result(result: SafetyResult) -> LegacySafetyResult:
    """Convert a SafetyResult for legacy callers."""
    return LegacySafetyResult(
        is_safe=not result.requires_escalation,
        severity=map_severity(result.severity),
        escalation_type=map_escalation_type(result),
        requires_escalation=result.requires_escalation,
        confidence=result.confidence,
        reasons=[m.trigger for m in result.matches],
    )
