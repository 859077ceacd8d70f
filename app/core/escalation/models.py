"""
Escalation data models.

EscalationEvent is created once per escalation; only its delivery
flags change afterwards, via mark_notified().
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel

from app.safety.consent_manager import ConsentStatus
from app.safety.models import SafetyResult, Severity


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class EscalationType(str, Enum):
    """Why a conversation was surfaced to the nurse team."""

    CRISIS = "crisis"
    NURSE_CALLBACK = "nurse_callback"
    GENERAL_SUPPORT = "general_support"


class Urgency(str, Enum):
    """How quickly the nurse team should respond."""

    IMMEDIATE = "immediate"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


URGENCY_BY_SEVERITY: dict[Severity, Urgency] = {
    Severity.CRISIS: Urgency.IMMEDIATE,
    Severity.HIGH_CONCERN: Urgency.HIGH,
    Severity.EMOTIONAL_SUPPORT: Urgency.MEDIUM,
    Severity.GENERAL: Urgency.LOW,
}


def urgency_for_severity(severity: Severity) -> Urgency:
    """Map a safety severity to notification urgency."""
    return URGENCY_BY_SEVERITY.get(severity, Urgency.LOW)


class ContactDetails(BaseModel):
    """User contact details for a nurse callback. All optional until validated."""

    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    preferred_contact: Optional[str] = None  # phone, email, either
    best_time_to_call: Optional[str] = None
    alternative_contact: Optional[str] = None

    def has_contact_method(self) -> bool:
        return bool(self.phone or self.email)


@dataclass
class EscalationEvent:
    """A tracked escalation to the nurse team."""

    user_id: str
    session_id: str
    severity: Severity
    safety_result: SafetyResult
    user_message: str
    escalation_type: EscalationType
    urgency: Urgency
    callback_requested: bool = False
    contact_details: Optional[ContactDetails] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    # Delivery flags
    notification_sent: bool = False
    nurse_team_alerted: bool = False
    response_generated: bool = False

    def mark_notified(self) -> bool:
        """
        Record successful delivery.

        Returns:
            False if the event was already marked
        """
        if self.notification_sent:
            return False
        self.notification_sent = True
        self.nurse_team_alerted = True
        return True

    @property
    def summary(self) -> str:
        """One-line escalation summary for the nurse team."""
        matches = self.safety_result.matches
        categories = ", ".join(c.value for c in self.safety_result.categories[:3])
        text = f"{self.severity.value.upper()} escalation: {len(matches)} triggers detected"
        return f"{text} ({categories})" if categories else text

    def to_dict(self) -> dict:
        """Convert to dictionary (user message excluded)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "severity": self.severity.value,
            "escalation_type": self.escalation_type.value,
            "urgency": self.urgency.value,
            "callback_requested": self.callback_requested,
            "created_at": self.created_at.isoformat(),
            "notification_sent": self.notification_sent,
            "nurse_team_alerted": self.nurse_team_alerted,
            "response_generated": self.response_generated,
            "summary": self.summary,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


@dataclass
class NotificationPayload:
    """Wire projection of an EscalationEvent. Never stored on its own."""

    escalation_id: str
    user_id: str
    severity: Severity
    urgency: Urgency
    summary: str
    trigger_matches: list[str]
    requires_callback: bool
    escalation_type: EscalationType
    timestamp: datetime
    contact_details: Optional[ContactDetails] = None

    @classmethod
    def from_event(cls, event: EscalationEvent) -> "NotificationPayload":
        """Project an escalation event for delivery."""
        return cls(
            escalation_id=event.id,
            user_id=event.user_id,
            severity=event.severity,
            urgency=event.urgency,
            summary=event.summary,
            trigger_matches=[m.trigger for m in event.safety_result.matches],
            requires_callback=event.callback_requested,
            escalation_type=event.escalation_type,
            timestamp=event.created_at,
            contact_details=event.contact_details,
        )


# ==================================
# Contact escalation request/response
# ==================================

@dataclass
class ContactValidationResult:
    """Outcome of contact validation. Never raised."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class ContactEscalationRequest:
    """A request to escalate with user-supplied contact details."""

    user_id: str
    session_id: str
    contact_details: ContactDetails
    escalation_type: EscalationType = EscalationType.NURSE_CALLBACK
    urgency: Urgency = Urgency.MEDIUM
    reason: str = ""
    consent_status: ConsentStatus = ConsentStatus.NOT_REQUESTED
    safety_result: Optional[SafetyResult] = None
    escalation_id: Optional[str] = None


@dataclass
class ContactEscalationResult:
    """Outcome of process_contact_escalation."""

    success: bool
    escalation_id: Optional[str] = None
    estimated_callback: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "escalation_id": self.escalation_id,
            "estimated_callback": self.estimated_callback,
            "errors": self.errors,
        }
