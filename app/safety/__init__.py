"""
Safety & Compliance Module

Provides trigger-based safety analysis, the legacy severity adapter,
GDPR consent management and tamper-evident audit logging.
"""

from app.safety.models import (
    # Enums
    Severity,
    TriggerCategory,
    MatchType,

    # Models
    TriggerMatch,
    SafetyResult,
    HistoryMessage,
    ConversationContext,
)

from app.safety.trigger_table import (
    TriggerTable,
    TriggerEntry,
    TriggerPattern,
    DEFAULT_TRIGGER_TABLE,
    get_trigger_table,
    set_trigger_table,
    normalize_text,
)

from app.safety.analyzer import (
    SafetyAnalyzer,
    get_safety_analyzer,
    fail_safe_result,
)

from app.safety.adapter import (
    LegacySeverity,
    LegacyEscalationType,
    LegacySafetyResult,
    to_legacy_result,
)

from app.safety.consent_manager import (
    ConsentStatus,
    LegalBasis,
    ConsentRecord,
    ConsentManager,
    ConsentRequiredError,
    get_consent_manager,
)

from app.safety.audit_logger import (
    AuditEventType,
    AuditSeverity,
    AuditEvent,
    AuditLogger,
    get_audit_logger,
    hash_message,
)

__all__ = [
    # Models
    "Severity",
    "TriggerCategory",
    "MatchType",
    "TriggerMatch",
    "SafetyResult",
    "HistoryMessage",
    "ConversationContext",
    # Trigger table
    "TriggerTable",
    "TriggerEntry",
    "TriggerPattern",
    "DEFAULT_TRIGGER_TABLE",
    "get_trigger_table",
    "set_trigger_table",
    "normalize_text",
    # Analyzer
    "SafetyAnalyzer",
    "get_safety_analyzer",
    "fail_safe_result",
    # Adapter
    "LegacySeverity",
    "LegacyEscalationType",
    "LegacySafetyResult",
    "to_legacy_result",
    # Consent
    "ConsentStatus",
    "LegalBasis",
    "ConsentRecord",
    "ConsentManager",
    "ConsentRequiredError",
    "get_consent_manager",
    # Audit
    "AuditEventType",
    "AuditSeverity",
    "AuditEvent",
    "AuditLogger",
    "get_audit_logger",
    "hash_message",
]
