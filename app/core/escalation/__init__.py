"""
Escalation Module

Progressive escalation responses, escalation events and the nurse
team escalation service (app.core.escalation.service).
"""

from app.core.escalation.models import (
    EscalationType,
    Urgency,
    ContactDetails,
    EscalationEvent,
    NotificationPayload,
    ContactValidationResult,
    ContactEscalationRequest,
    ContactEscalationResult,
    urgency_for_severity,
)

from app.core.escalation.responder import (
    ResponseType,
    Tone,
    EscalationResponse,
    ProgressiveEscalationResponder,
    check_response_policy,
    get_responder,
)

__all__ = [
    "EscalationType",
    "Urgency",
    "ContactDetails",
    "EscalationEvent",
    "NotificationPayload",
    "ContactValidationResult",
    "ContactEscalationRequest",
    "ContactEscalationResult",
    "urgency_for_severity",
    "ResponseType",
    "Tone",
    "EscalationResponse",
    "ProgressiveEscalationResponder",
    "check_response_policy",
    "get_responder",
]
