"""
Escalation Service

Creates tracked escalation events and hands them to the nurse team
notification channel. An escalation is only considered processed once
the notification is acknowledged, or once delivery has failed terminally
and that failure is recorded.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from app.config import settings
from app.core.escalation.models import (
    ContactDetails,
    ContactEscalationRequest,
    ContactEscalationResult,
    ContactValidationResult,
    EscalationEvent,
    EscalationType,
    NotificationPayload,
    Urgency,
    urgency_for_severity,
)
from app.infra.notifications import (
    DeliveryResult,
    NotificationDeliveryError,
    NotificationService,
    get_notification_service,
)
from app.safety.audit_logger import AuditLogger, get_audit_logger
from app.safety.consent_manager import ConsentStatus
from app.safety.models import (
    MatchType,
    SafetyResult,
    Severity,
    TriggerCategory,
    TriggerMatch,
)

logger = logging.getLogger(__name__)

UK_MOBILE_PATTERN = re.compile(r"^(\+44\s?7\d{3}|\(?07\d{3}\)?)\s?\d{3}\s?\d{3}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ==================================
# Pure helpers
# ==================================

def validate_contact_details(details: Optional[ContactDetails]) -> ContactValidationResult:
    """
    Validate contact details for a callback.

    Rules: name of at least 2 characters, phone or email present,
    phone a UK mobile number, email a plausible address.
    """
    if details is None:
        return ContactValidationResult(is_valid=False, errors=["Contact details are required"])

    errors = []
    if not details.name or len(details.name.strip()) < 2:
        errors.append("Name must be at least 2 characters")
    if not details.has_contact_method():
        errors.append("Either phone number or email address is required")
    if details.phone and not UK_MOBILE_PATTERN.match(details.phone.strip()):
        errors.append("Phone number must be a valid UK mobile number")
    if details.email and not EMAIL_PATTERN.match(details.email.strip()):
        errors.append("Email address is not valid")

    return ContactValidationResult(is_valid=not errors, errors=errors)


def is_business_hours(hour: int) -> bool:
    return settings.business_hours_start <= hour < settings.business_hours_end


def estimate_callback_time(
    escalation_type: EscalationType,
    urgency: Urgency,
    current_hour: int,
) -> str:
    """Estimated nurse callback window for the user."""
    if escalation_type == EscalationType.CRISIS:
        return "within 2 hours" if urgency == Urgency.IMMEDIATE else "within 4 hours"

    in_hours = is_business_hours(current_hour)
    if (
        escalation_type == EscalationType.NURSE_CALLBACK
        and in_hours
        and urgency in (Urgency.HIGH, Urgency.IMMEDIATE)
    ):
        return "within 24 hours"
    if not in_hours:
        return "within 24-48 hours"
    return "within 48-72 hours"


def callback_request_result(reason: str) -> SafetyResult:
    """Verdict recorded on explicit callback requests (no crisis detected)."""
    return SafetyResult(
        severity=Severity.EMOTIONAL_SUPPORT,
        confidence=1.0,
        requires_escalation=True,
        matches=[
            TriggerMatch(
                trigger=reason or "nurse_callback_request",
                confidence=1.0,
                category=TriggerCategory.CALLBACK_REQUEST,
                severity=Severity.EMOTIONAL_SUPPORT,
                match_type=MatchType.CONTEXT,
            )
        ],
        recommended_actions=["nurse_callback"],
    )


# ==================================
# Tracking
# ==================================

class EscalationTracker:
    """
    In-process record of escalations and their delivery outcome.

    Terminal failures stay here (and in the audit log) so an
    undelivered crisis is never silently lost.
    """

    def __init__(self):
        self._events: dict[str, EscalationEvent] = {}
        self._deliveries: dict[str, DeliveryResult] = {}

    def track(self, event: EscalationEvent) -> None:
        self._events[event.id] = event

    def record_delivery(self, result: DeliveryResult) -> None:
        self._deliveries[result.escalation_id] = result

    def get_event(self, escalation_id: str) -> Optional[EscalationEvent]:
        return self._events.get(escalation_id)

    def get_delivery(self, escalation_id: str) -> Optional[DeliveryResult]:
        return self._deliveries.get(escalation_id)

    def undelivered(self) -> list[EscalationEvent]:
        """Events whose delivery has not been confirmed."""
        return [e for e in self._events.values() if not e.notification_sent]


# ==================================
# Service
# ==================================

class EscalationService:
    """
    Escalation orchestration.

    Usage:
        service = get_escalation_service()
        event = await service.create_crisis_escalation(
            user_id="user-1",
            session_id="sess-1",
            user_message=message,
            safety_result=result,
        )
    """

    def __init__(
        self,
        notification_service: Optional[NotificationService] = None,
        tracker: Optional[EscalationTracker] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._notifications = notification_service
        self.tracker = tracker or EscalationTracker()
        self._audit = audit_logger

    def _get_notifications(self) -> NotificationService:
        if self._notifications is None:
            self._notifications = get_notification_service()
        return self._notifications

    def _get_audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    async def create_crisis_escalation(
        self,
        user_id: str,
        session_id: str,
        user_message: str,
        safety_result: SafetyResult,
        escalation_id: Optional[str] = None,
        contact_details: Optional[ContactDetails] = None,
    ) -> EscalationEvent:
        """
        Escalate a safety verdict to the nurse team.

        Crisis verdicts become crisis escalations; other escalating
        verdicts (high concern, callback requests) become general support.

        Raises:
            NotificationDeliveryError: If the nurse team could not be notified
        """
        is_crisis = safety_result.severity == Severity.CRISIS
        callback_requested = is_crisis or safety_result.has_category(TriggerCategory.CALLBACK_REQUEST)

        event = EscalationEvent(
            user_id=user_id,
            session_id=session_id,
            severity=safety_result.severity,
            safety_result=safety_result,
            user_message=user_message,
            escalation_type=EscalationType.CRISIS if is_crisis else EscalationType.GENERAL_SUPPORT,
            urgency=urgency_for_severity(safety_result.severity),
            callback_requested=callback_requested,
            contact_details=contact_details,
        )
        if escalation_id:
            event.id = escalation_id
        event.response_generated = True

        await self._dispatch(event)
        return event

    async def create_callback_escalation(
        self,
        user_id: str,
        session_id: str,
        contact_details: ContactDetails,
        reason: str = "",
        urgency: Urgency = Urgency.MEDIUM,
        escalation_id: Optional[str] = None,
    ) -> EscalationEvent:
        """
        Escalate an explicit nurse callback request.

        Raises:
            ValueError: If contact details are invalid
            NotificationDeliveryError: If the nurse team could not be notified
        """
        validation = validate_contact_details(contact_details)
        if not validation.is_valid:
            raise ValueError(f"Invalid contact details: {'; '.join(validation.errors)}")

        safety_result = callback_request_result(reason)
        event = EscalationEvent(
            user_id=user_id,
            session_id=session_id,
            severity=safety_result.severity,
            safety_result=safety_result,
            user_message=reason,
            escalation_type=EscalationType.NURSE_CALLBACK,
            urgency=urgency,
            callback_requested=True,
            contact_details=contact_details,
        )
        if escalation_id:
            event.id = escalation_id

        await self._dispatch(event)
        return event

    async def process_contact_escalation(
        self,
        request: ContactEscalationRequest,
        current_hour: Optional[int] = None,
    ) -> ContactEscalationResult:
        """
        Validate contact details and escalate.

        Validation and consent failures are returned, not raised, and
        stop before any event is created.

        Raises:
            NotificationDeliveryError: If the nurse team could not be notified
        """
        validation = validate_contact_details(request.contact_details)
        if not validation.is_valid:
            logger.info(f"Contact escalation rejected for user {request.user_id}: validation failed")
            self._get_audit().log_contact_validation_failed(request.user_id, validation.errors)
            return ContactEscalationResult(success=False, errors=validation.errors)

        if (
            request.escalation_type != EscalationType.CRISIS
            and request.consent_status != ConsentStatus.GRANTED
        ):
            logger.warning(f"Contact escalation rejected for user {request.user_id}: consent not granted")
            return ContactEscalationResult(success=False, errors=["consent_required"])

        if request.escalation_type == EscalationType.CRISIS:
            safety_result = request.safety_result or callback_request_result(request.reason)
            event = EscalationEvent(
                user_id=request.user_id,
                session_id=request.session_id,
                severity=request.safety_result.severity if request.safety_result else Severity.CRISIS,
                safety_result=safety_result,
                user_message=request.reason,
                escalation_type=EscalationType.CRISIS,
                urgency=request.urgency,
                callback_requested=True,
                contact_details=request.contact_details,
            )
            if request.escalation_id:
                event.id = request.escalation_id
            await self._dispatch(event)
        else:
            event = await self.create_callback_escalation(
                user_id=request.user_id,
                session_id=request.session_id,
                contact_details=request.contact_details,
                reason=request.reason,
                urgency=request.urgency,
                escalation_id=request.escalation_id,
            )

        hour = current_hour if current_hour is not None else datetime.now(timezone.utc).hour
        return ContactEscalationResult(
            success=True,
            escalation_id=event.id,
            estimated_callback=estimate_callback_time(event.escalation_type, event.urgency, hour),
        )

    async def _dispatch(self, event: EscalationEvent) -> None:
        """Track, notify, and record the outcome."""
        self.tracker.track(event)
        logger.warning(
            f"Escalation created: id={event.id}, type={event.escalation_type.value}, "
            f"severity={event.severity.value}, urgency={event.urgency.value}"
        )
        self._get_audit().log_escalation_created(
            escalation_id=event.id,
            user_id=event.user_id,
            severity=event.severity.value,
            escalation_type=event.escalation_type.value,
            session_id=event.session_id,
        )

        try:
            delivery = await self._get_notifications().send_crisis_alert(
                NotificationPayload.from_event(event)
            )
        except NotificationDeliveryError as e:
            self.tracker.record_delivery(e.result)
            self._get_audit().log_notification_failed(
                escalation_id=event.id,
                attempts=e.attempts,
                error=str(e),
            )
            raise

        self.tracker.record_delivery(delivery)
        event.mark_notified()
        self._get_audit().log_notification_sent(
            escalation_id=event.id,
            message_id=delivery.message_id or "",
            attempts=delivery.attempts,
        )

    def get_event(self, escalation_id: str) -> Optional[EscalationEvent]:
        """Look up a tracked escalation."""
        return self.tracker.get_event(escalation_id)


# Singleton
_escalation_service: Optional[EscalationService] = None


def get_escalation_service() -> EscalationService:
    """Get singleton EscalationService."""
    global _escalation_service
    if _escalation_service is None:
        _escalation_service = EscalationService()
    return _escalation_service
