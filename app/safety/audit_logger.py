"""
Audit Logging Module

Tamper-evident audit trail for safety, escalation and consent events.
Events never carry raw message text; callers pass hash_message() output.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


def hash_message(text: str) -> str:
    """Short SHA-256 digest of a user message for logs and audit records."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class AuditEventType(str, Enum):
    """Types of audit events."""

    # Safety Analysis
    CRISIS_DETECTED = "crisis_detected"
    SLA_VIOLATION = "sla_violation"
    ANALYZER_FAILURE = "analyzer_failure"

    # Escalation
    ESCALATION_CREATED = "escalation_created"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"
    CONTACT_VALIDATION_FAILED = "contact_validation_failed"

    # Consent Events
    CONSENT_GRANTED = "consent_granted"
    CONSENT_DECLINED = "consent_declined"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    CONSENT_EXPIRED = "consent_expired"

    # Conversation
    HANDLER_FAILURE = "handler_failure"


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    """Individual audit event record."""

    id: UUID
    timestamp: datetime
    event_type: AuditEventType
    severity: AuditSeverity

    # Actor information
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None

    # Event details
    action: str = ""
    resource: str = ""  # escalation id, consent id, ...
    details: dict = field(default_factory=dict)

    # Outcome
    outcome: str = "success"  # success, failure
    error_message: Optional[str] = None

    # Integrity
    previous_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def compute_hash(self, previous_hash: str = "") -> str:
        """Compute hash for tamper detection."""
        data = {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "action": self.action,
            "resource": self.resource,
            "outcome": self.outcome,
            "previous_hash": previous_hash,
        }
        content = json.dumps(data, sort_keys=True)
        return hashlib.sha256(content.encode()).hexdigest()

    def to_dict(self) -> dict:
        """Convert to dictionary for storage/transmission."""
        return {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "action": self.action,
            "resource": self.resource,
            "details": self.details,
            "outcome": self.outcome,
            "error_message": self.error_message,
            "event_hash": self.event_hash,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


@dataclass
class AuditQuery:
    """Query parameters for searching audit logs."""

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    event_types: Optional[list[AuditEventType]] = None
    user_id: Optional[str] = None
    resource: Optional[str] = None
    outcome: Optional[str] = None
    limit: int = 100
    offset: int = 0


# ==================================
# Audit Logger Class
# ==================================

class AuditLogger:
    """
    Tamper-evident audit logger.

    Hash-chains every event so the trail can be verified later.
    Events are held in memory; ship them to append-only storage in production.

    Usage:
        audit = get_audit_logger()
        audit.log_escalation_created(
            escalation_id="esc-1",
            user_id="user-1",
            severity="crisis",
            escalation_type="crisis",
        )
    """

    def __init__(self, enable_hash_chain: bool = True, log_to_stdout: bool = True):
        self.enable_hash_chain = enable_hash_chain
        self.log_to_stdout = log_to_stdout

        self._events: list[AuditEvent] = []
        self._last_hash: str = "genesis"

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        action: str,
        resource: str = "",
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        details: Optional[dict] = None,
        outcome: str = "success",
        error_message: Optional[str] = None,
    ) -> AuditEvent:
        """
        Log an audit event.

        Args:
            event_type: Type of event
            severity: Severity level
            action: Description of action taken
            resource: Resource affected (escalation id, consent id)
            user_id: User identifier
            session_id: Session identifier
            conversation_id: Conversation identifier
            details: Additional event details (no raw message text)
            outcome: Result of action
            error_message: Error details if failed

        Returns:
            Created AuditEvent
        """
        event = AuditEvent(
            id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            severity=severity,
            user_id=user_id,
            session_id=session_id,
            conversation_id=conversation_id,
            action=action,
            resource=resource,
            details=details or {},
            outcome=outcome,
            error_message=error_message,
        )

        # Compute hash chain
        if self.enable_hash_chain:
            event.previous_hash = self._last_hash
            event.event_hash = event.compute_hash(self._last_hash)
            self._last_hash = event.event_hash

        self._events.append(event)

        if self.log_to_stdout:
            log_level = getattr(logging, severity.value.upper(), logging.INFO)
            logger.log(
                log_level,
                f"AUDIT: {event_type.value} | {action} | "
                f"resource={resource or '-'} | outcome={outcome}"
            )

        return event

    # ==================================
    # Convenience Methods - Safety Analysis
    # ==================================

    def log_crisis_detected(
        self,
        user_id: Optional[str],
        severity: str,
        categories: list[str],
        message_hash: str,
        conversation_id: Optional[str] = None,
    ) -> AuditEvent:
        """Log a safety verdict that requires escalation."""
        return self.log(
            event_type=AuditEventType.CRISIS_DETECTED,
            severity=AuditSeverity.CRITICAL if severity == "crisis" else AuditSeverity.WARNING,
            action=f"Safety verdict {severity}",
            user_id=user_id,
            conversation_id=conversation_id,
            details={
                "severity": severity,
                "categories": categories,
                "message_hash": message_hash,
            },
        )

    def log_sla_violation(
        self,
        analysis_time_ms: float,
        sla_ms: float,
        user_id: Optional[str] = None,
    ) -> AuditEvent:
        """Log a safety analysis that overran its latency budget."""
        return self.log(
            event_type=AuditEventType.SLA_VIOLATION,
            severity=AuditSeverity.WARNING,
            action="Safety analysis exceeded SLA",
            user_id=user_id,
            details={"analysis_time_ms": round(analysis_time_ms, 2), "sla_ms": sla_ms},
        )

    def log_analyzer_failure(
        self,
        error: str,
        user_id: Optional[str] = None,
        message_hash: Optional[str] = None,
    ) -> AuditEvent:
        """Log an analyzer exception that was converted to a fail-safe verdict."""
        return self.log(
            event_type=AuditEventType.ANALYZER_FAILURE,
            severity=AuditSeverity.CRITICAL,
            action="Safety analysis failed, fail-safe crisis verdict used",
            user_id=user_id,
            details={"message_hash": message_hash},
            outcome="failure",
            error_message=error,
        )

    # ==================================
    # Convenience Methods - Escalation
    # ==================================

    def log_escalation_created(
        self,
        escalation_id: str,
        user_id: str,
        severity: str,
        escalation_type: str,
        session_id: Optional[str] = None,
    ) -> AuditEvent:
        """Log creation of an escalation event."""
        return self.log(
            event_type=AuditEventType.ESCALATION_CREATED,
            severity=AuditSeverity.WARNING,
            action=f"{escalation_type} escalation created",
            resource=escalation_id,
            user_id=user_id,
            session_id=session_id,
            details={"severity": severity, "escalation_type": escalation_type},
        )

    def log_notification_sent(
        self,
        escalation_id: str,
        message_id: str,
        attempts: int,
    ) -> AuditEvent:
        """Log a confirmed nurse team notification."""
        return self.log(
            event_type=AuditEventType.NOTIFICATION_SENT,
            severity=AuditSeverity.INFO,
            action="Nurse team notified",
            resource=escalation_id,
            details={"message_id": message_id, "attempts": attempts},
        )

    def log_notification_failed(
        self,
        escalation_id: str,
        attempts: int,
        error: str,
    ) -> AuditEvent:
        """Log a terminal notification delivery failure."""
        return self.log(
            event_type=AuditEventType.NOTIFICATION_FAILED,
            severity=AuditSeverity.ERROR,
            action="Nurse team notification failed after retries",
            resource=escalation_id,
            details={"attempts": attempts},
            outcome="failure",
            error_message=error,
        )

    def log_contact_validation_failed(
        self,
        user_id: str,
        errors: list[str],
    ) -> AuditEvent:
        """Log rejected contact details (error codes only, never the values)."""
        return self.log(
            event_type=AuditEventType.CONTACT_VALIDATION_FAILED,
            severity=AuditSeverity.INFO,
            action="Contact details rejected",
            user_id=user_id,
            details={"error_count": len(errors)},
            outcome="failure",
        )

    # ==================================
    # Convenience Methods - Consent
    # ==================================

    def log_consent_granted(
        self,
        consent_id: str,
        user_id: str,
        purpose: str,
        legal_basis: str,
        data_categories: list[str],
    ) -> AuditEvent:
        """Log consent grant."""
        return self.log(
            event_type=AuditEventType.CONSENT_GRANTED,
            severity=AuditSeverity.INFO,
            action=f"Consent granted for {purpose}",
            resource=consent_id,
            user_id=user_id,
            details={"legal_basis": legal_basis, "data_categories": data_categories},
        )

    def log_consent_declined(self, consent_id: str, user_id: str, purpose: str) -> AuditEvent:
        """Log consent decline."""
        return self.log(
            event_type=AuditEventType.CONSENT_DECLINED,
            severity=AuditSeverity.INFO,
            action=f"Consent declined for {purpose}",
            resource=consent_id,
            user_id=user_id,
        )

    def log_consent_withdrawn(self, consent_id: str, user_id: str, reason: Optional[str] = None) -> AuditEvent:
        """Log consent withdrawal."""
        return self.log(
            event_type=AuditEventType.CONSENT_WITHDRAWN,
            severity=AuditSeverity.INFO,
            action="Consent withdrawn",
            resource=consent_id,
            user_id=user_id,
            details={"reason": reason} if reason else {},
        )

    def log_consent_expired(self, consent_id: str, user_id: str) -> AuditEvent:
        """Log consent expiry."""
        return self.log(
            event_type=AuditEventType.CONSENT_EXPIRED,
            severity=AuditSeverity.INFO,
            action="Consent expired",
            resource=consent_id,
            user_id=user_id,
        )

    # ==================================
    # Convenience Methods - Conversation
    # ==================================

    def log_handler_failure(
        self,
        topic: str,
        conversation_id: str,
        error: str,
    ) -> AuditEvent:
        """Log a topic handler failure."""
        return self.log(
            event_type=AuditEventType.HANDLER_FAILURE,
            severity=AuditSeverity.ERROR,
            action=f"Topic handler {topic} failed",
            conversation_id=conversation_id,
            outcome="failure",
            error_message=error,
        )

    # ==================================
    # Query Methods
    # ==================================

    def query(self, query: AuditQuery) -> list[AuditEvent]:
        """
        Query audit events.

        Args:
            query: Query parameters

        Returns:
            List of matching AuditEvents
        """
        results = []

        for event in self._events:
            if query.start_time and event.timestamp < query.start_time:
                continue
            if query.end_time and event.timestamp > query.end_time:
                continue
            if query.event_types and event.event_type not in query.event_types:
                continue
            if query.user_id and event.user_id != query.user_id:
                continue
            if query.resource and event.resource != query.resource:
                continue
            if query.outcome and event.outcome != query.outcome:
                continue

            results.append(event)

        return results[query.offset:query.offset + query.limit]

    def verify_chain_integrity(self) -> tuple[bool, Optional[str]]:
        """
        Verify the integrity of the hash chain.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not self.enable_hash_chain:
            return True, None

        previous_hash = "genesis"

        for i, event in enumerate(self._events):
            expected_hash = event.compute_hash(previous_hash)

            if event.event_hash != expected_hash:
                return False, f"Hash mismatch at event {i} (id={event.id})"

            if event.previous_hash != previous_hash:
                return False, f"Chain broken at event {i} (id={event.id})"

            previous_hash = event.event_hash

        return True, None

    def get_escalation_trail(self, escalation_id: str) -> list[AuditEvent]:
        """Get every audit event recorded against an escalation."""
        return self.query(AuditQuery(resource=escalation_id))

    def get_user_audit_trail(self, user_id: str, limit: int = 100) -> list[AuditEvent]:
        """Get audit trail for a user."""
        return self.query(AuditQuery(user_id=user_id, limit=limit))


# ==================================
# Singleton
# ==================================

_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get singleton AuditLogger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
