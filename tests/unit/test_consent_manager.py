"""Tests for the consent ledger."""

import pytest
from datetime import datetime, timedelta, timezone

from app.safety.audit_logger import AuditEventType, AuditLogger
from app.safety.consent_manager import (
    NURSE_CONSULTATION_PURPOSE,
    ConsentManager,
    ConsentRequiredError,
    ConsentStatus,
    LegalBasis,
)


class TestConsentManager:
    """Test consent lifecycle."""

    @pytest.fixture
    def audit(self):
        """In-memory audit logger."""
        return AuditLogger(log_to_stdout=False)

    @pytest.fixture
    def manager(self, audit):
        """Consent manager with 30 day validity."""
        return ConsentManager(consent_validity_days=30, audit_logger=audit)

    def test_request_then_grant(self, manager, audit):
        """Test a grant reuses the requested record id."""
        requested = manager.request_consent("user-1", conversation_id="conv-1")

        assert requested.status == ConsentStatus.REQUESTED
        assert requested.consent_text_hash is not None
        assert manager.has_valid_consent("user-1") is False

        granted = manager.grant_consent("user-1", conversation_id="conv-1")

        assert granted.id == requested.id
        assert granted.status == ConsentStatus.GRANTED
        assert granted.legal_basis == LegalBasis.CONSENT
        assert granted.purpose == NURSE_CONSULTATION_PURPOSE
        assert granted.data_categories == ["contact_information", "health_inquiry"]
        assert granted.expires_at - granted.granted_at == timedelta(days=30)
        assert manager.has_valid_consent("user-1") is True
        assert audit._events[-1].event_type == AuditEventType.CONSENT_GRANTED

    def test_vital_interests(self, manager):
        """Test crisis processing is recorded under vital interests."""
        record = manager.record_vital_interests("user-1", conversation_id="conv-1")

        assert record.legal_basis == LegalBasis.VITAL_INTERESTS
        assert record.is_valid() is True

    def test_decline(self, manager, audit):
        """Test declined consent is recorded and not valid."""
        manager.request_consent("user-1")

        record = manager.decline_consent("user-1")

        assert record.status == ConsentStatus.DECLINED
        assert manager.has_valid_consent("user-1") is False
        assert audit._events[-1].event_type == AuditEventType.CONSENT_DECLINED

    def test_withdraw(self, manager, audit):
        """Test withdrawal invalidates consent and keeps a timestamp."""
        manager.grant_consent("user-1")

        record = manager.withdraw_consent("user-1", reason="user_cancelled")

        assert record.status == ConsentStatus.DECLINED
        assert record.withdrawn_at is not None
        assert manager.has_valid_consent("user-1") is False
        assert audit._events[-1].details == {"reason": "user_cancelled"}

    def test_withdraw_missing(self, manager):
        """Test withdrawing unknown consent returns None."""
        assert manager.withdraw_consent("nobody") is None

    def test_expire_stale(self, manager, audit):
        """Test consents past expiry are marked expired."""
        record = manager.grant_consent("user-1")
        later = record.expires_at + timedelta(seconds=1)

        expired = manager.expire_stale(now=later)

        assert expired == [record]
        assert record.status == ConsentStatus.EXPIRED
        assert audit._events[-1].event_type == AuditEventType.CONSENT_EXPIRED

    def test_expired_consent_not_valid(self, manager):
        """Test validity respects expiry time."""
        record = manager.grant_consent("user-1", duration_days=1)

        assert record.is_valid(now=datetime.now(timezone.utc) + timedelta(days=2)) is False

    def test_require_consent(self, manager):
        """Test missing consent raises."""
        with pytest.raises(ConsentRequiredError):
            manager.require_consent("user-1")

        manager.grant_consent("user-1")

        assert manager.require_consent("user-1").status == ConsentStatus.GRANTED

    def test_consent_text(self, manager):
        """Test consent wording mentions GDPR and withdrawal."""
        text = manager.get_consent_text()

        assert "GDPR" in text
        assert "withdraw" in text
