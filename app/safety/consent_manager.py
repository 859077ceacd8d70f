"""
Consent Management Module

GDPR consent ledger for contact-data collection. Every grant records
its purpose, data categories, legal basis and retention window;
declines and withdrawals are recorded too so the trail is complete.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from app.config import settings
from app.safety.audit_logger import AuditLogger, get_audit_logger

logger = logging.getLogger(__name__)


class ConsentStatus(str, Enum):
    """Consent status for a conversation or record."""

    NOT_REQUESTED = "not_requested"
    REQUESTED = "requested"
    GRANTED = "granted"
    DECLINED = "declined"
    EXPIRED = "expired"


class LegalBasis(str, Enum):
    """GDPR Article 6 lawful basis for processing."""

    CONSENT = "consent"
    VITAL_INTERESTS = "vital_interests"
    LEGITIMATE_INTERESTS = "legitimate_interests"


class ConsentRequiredError(Exception):
    """Raised when contact data is used without a valid consent."""

    def __init__(self, user_id: str, purpose: str):
        self.user_id = user_id
        self.purpose = purpose
        super().__init__(f"No valid consent for purpose={purpose}")


NURSE_CONSULTATION_PURPOSE = "specialist_nurse_consultation"
NURSE_CONSULTATION_DATA_CATEGORIES = ["contact_information", "health_inquiry"]

# Consent text versions (for audit trail)
CONSENT_TEXTS = {
    NURSE_CONSULTATION_PURPOSE: (
        "To arrange a call with one of The Eve Appeal's specialist nurses, "
        "I'll need to collect some contact details. Your information will only "
        "be used to arrange this callback and will be handled in line with GDPR. "
        "You can withdraw your consent at any time."
    ),
}


@dataclass
class ConsentRecord:
    """Individual consent record."""

    id: UUID
    user_id: str
    purpose: str
    status: ConsentStatus
    legal_basis: LegalBasis = LegalBasis.CONSENT
    data_categories: list[str] = field(default_factory=list)
    conversation_id: Optional[str] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    version: str = "1.0"
    consent_text_hash: Optional[str] = None  # Hash of consent text shown

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Check if consent is currently valid."""
        if self.status != ConsentStatus.GRANTED:
            return False
        now = now or datetime.now(timezone.utc)
        if self.expires_at and now > self.expires_at:
            return False
        return True

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "purpose": self.purpose,
            "status": self.status.value,
            "legal_basis": self.legal_basis.value,
            "data_categories": self.data_categories,
            "conversation_id": self.conversation_id,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "withdrawn_at": self.withdrawn_at.isoformat() if self.withdrawn_at else None,
            "version": self.version,
            "is_valid": self.is_valid(),
        }


# ==================================
# Consent Manager Class
# ==================================

class ConsentManager:
    """
    GDPR consent ledger.

    Records live in memory; a production deployment ships them to
    the consent store alongside the audit trail.

    Usage:
        manager = get_consent_manager()
        manager.request_consent(user_id="user-1")
        manager.grant_consent(user_id="user-1", conversation_id="conv-1")
        manager.require_consent("user-1")  # raises ConsentRequiredError if missing
    """

    def __init__(
        self,
        consent_validity_days: Optional[int] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """
        Initialize Consent Manager.

        Args:
            consent_validity_days: Days until a granted consent expires
            audit_logger: Audit trail for consent events
        """
        self.consent_validity_days = consent_validity_days or settings.consent_validity_days
        self._audit = audit_logger

        self._consents: dict[str, dict[str, ConsentRecord]] = {}

    def _get_audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    def _store(self, record: ConsentRecord) -> ConsentRecord:
        self._consents.setdefault(record.user_id, {})[record.purpose] = record
        return record

    def request_consent(
        self,
        user_id: str,
        purpose: str = NURSE_CONSULTATION_PURPOSE,
        conversation_id: Optional[str] = None,
    ) -> ConsentRecord:
        """
        Record that consent was requested from the user.

        Args:
            user_id: User identifier
            purpose: Processing purpose
            conversation_id: Conversation the request was made in

        Returns:
            Pending ConsentRecord
        """
        text = self.get_consent_text(purpose)
        record = ConsentRecord(
            id=uuid4(),
            user_id=user_id,
            purpose=purpose,
            status=ConsentStatus.REQUESTED,
            conversation_id=conversation_id,
            version=settings.consent_version,
            consent_text_hash=hashlib.sha256(text.encode()).hexdigest(),
        )
        logger.info(f"Consent requested: user={user_id}, purpose={purpose}")
        return self._store(record)

    def grant_consent(
        self,
        user_id: str,
        purpose: str = NURSE_CONSULTATION_PURPOSE,
        data_categories: Optional[list[str]] = None,
        legal_basis: LegalBasis = LegalBasis.CONSENT,
        conversation_id: Optional[str] = None,
        duration_days: Optional[int] = None,
    ) -> ConsentRecord:
        """
        Record a consent grant.

        Args:
            user_id: User identifier
            purpose: Processing purpose
            data_categories: Categories of data covered
            legal_basis: Lawful basis (consent, or vital_interests in a crisis)
            conversation_id: Conversation the grant was made in
            duration_days: Custom validity (defaults to consent_validity_days)

        Returns:
            Created ConsentRecord
        """
        now = datetime.now(timezone.utc)
        duration = duration_days or self.consent_validity_days
        previous = self.get_consent(user_id, purpose)

        record = ConsentRecord(
            id=previous.id if previous else uuid4(),
            user_id=user_id,
            purpose=purpose,
            status=ConsentStatus.GRANTED,
            legal_basis=legal_basis,
            data_categories=list(data_categories or NURSE_CONSULTATION_DATA_CATEGORIES),
            conversation_id=conversation_id,
            granted_at=now,
            expires_at=now + timedelta(days=duration),
            version=settings.consent_version,
            consent_text_hash=previous.consent_text_hash if previous else None,
        )
        self._store(record)

        logger.info(
            f"Consent granted: user={user_id}, purpose={purpose}, "
            f"basis={legal_basis.value}, expires={record.expires_at}"
        )
        self._get_audit().log_consent_granted(
            consent_id=str(record.id),
            user_id=user_id,
            purpose=purpose,
            legal_basis=legal_basis.value,
            data_categories=record.data_categories,
        )
        return record

    def record_vital_interests(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
    ) -> ConsentRecord:
        """Record processing under vital interests (crisis contexts)."""
        return self.grant_consent(
            user_id=user_id,
            purpose=NURSE_CONSULTATION_PURPOSE,
            legal_basis=LegalBasis.VITAL_INTERESTS,
            conversation_id=conversation_id,
        )

    def decline_consent(
        self,
        user_id: str,
        purpose: str = NURSE_CONSULTATION_PURPOSE,
        conversation_id: Optional[str] = None,
    ) -> ConsentRecord:
        """Record that the user declined consent."""
        previous = self.get_consent(user_id, purpose)
        record = ConsentRecord(
            id=previous.id if previous else uuid4(),
            user_id=user_id,
            purpose=purpose,
            status=ConsentStatus.DECLINED,
            conversation_id=conversation_id,
            version=settings.consent_version,
        )
        self._store(record)

        logger.info(f"Consent declined: user={user_id}, purpose={purpose}")
        self._get_audit().log_consent_declined(
            consent_id=str(record.id),
            user_id=user_id,
            purpose=purpose,
        )
        return record

    def withdraw_consent(
        self,
        user_id: str,
        purpose: str = NURSE_CONSULTATION_PURPOSE,
        reason: Optional[str] = None,
    ) -> Optional[ConsentRecord]:
        """
        Withdraw previously granted consent.

        Returns:
            Updated ConsentRecord or None if not found
        """
        record = self.get_consent(user_id, purpose)

        if not record:
            logger.warning(
                f"Consent withdrawal failed - not found: user={user_id}, purpose={purpose}"
            )
            return None

        record.status = ConsentStatus.DECLINED
        record.withdrawn_at = datetime.now(timezone.utc)

        logger.info(f"Consent withdrawn: user={user_id}, purpose={purpose}")
        self._get_audit().log_consent_withdrawn(
            consent_id=str(record.id),
            user_id=user_id,
            reason=reason,
        )
        return record

    def expire_stale(self, now: Optional[datetime] = None) -> list[ConsentRecord]:
        """
        Mark granted consents past their expiry as expired.

        Returns:
            Records that were expired by this call
        """
        now = now or datetime.now(timezone.utc)
        expired = []
        for records in self._consents.values():
            for record in records.values():
                if (
                    record.status == ConsentStatus.GRANTED
                    and record.expires_at
                    and now > record.expires_at
                ):
                    record.status = ConsentStatus.EXPIRED
                    expired.append(record)
                    self._get_audit().log_consent_expired(
                        consent_id=str(record.id),
                        user_id=record.user_id,
                    )
        if expired:
            logger.info(f"Expired {len(expired)} consent records")
        return expired

    def get_consent(
        self,
        user_id: str,
        purpose: str = NURSE_CONSULTATION_PURPOSE,
    ) -> Optional[ConsentRecord]:
        """Get the current consent record for a purpose."""
        return self._consents.get(user_id, {}).get(purpose)

    def get_all_consents(self, user_id: str) -> list[ConsentRecord]:
        """Get all consent records for a user."""
        return list(self._consents.get(user_id, {}).values())

    def get_consent_text(self, purpose: str = NURSE_CONSULTATION_PURPOSE) -> str:
        """Get consent wording shown to the user."""
        return CONSENT_TEXTS.get(purpose, f"Consent for {purpose}")

    def has_valid_consent(
        self,
        user_id: str,
        purpose: str = NURSE_CONSULTATION_PURPOSE,
    ) -> bool:
        """Quick check if a valid consent exists."""
        record = self.get_consent(user_id, purpose)
        return record.is_valid() if record else False

    def require_consent(
        self,
        user_id: str,
        purpose: str = NURSE_CONSULTATION_PURPOSE,
    ) -> ConsentRecord:
        """
        Get the valid consent for a purpose or fail.

        Raises:
            ConsentRequiredError: If no valid consent exists
        """
        record = self.get_consent(user_id, purpose)
        if record is None or not record.is_valid():
            raise ConsentRequiredError(user_id, purpose)
        return record


# Singleton
_consent_manager: Optional[ConsentManager] = None


def get_consent_manager() -> ConsentManager:
    """Get singleton ConsentManager."""
    global _consent_manager
    if _consent_manager is None:
        _consent_manager = ConsentManager()
    return _consent_manager
