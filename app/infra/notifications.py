"""
Nurse Team Notification Service

Delivers escalation alerts to the nurse team's webhook channel as
MessageCard payloads. Delivery is confirmed by the acknowledgement
body ("1"), not by HTTP status alone, and retried a bounded number
of times before failing loudly.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

import httpx

from app.config import get_settings
from app.core.escalation.models import NotificationPayload, Urgency

logger = logging.getLogger(__name__)

ACK_BODY = "1"
MAX_TRIGGERS_SHOWN = 5

URGENCY_STYLE: dict[Urgency, tuple[str, str]] = {
    Urgency.IMMEDIATE: ("FF0000", "🚨"),
    Urgency.HIGH: ("FF6600", "⚠️"),
    Urgency.MEDIUM: ("FFCC00", "⚡"),
    Urgency.LOW: ("00CC00", "ℹ️"),
}

FOLLOW_UP_STYLE: dict[str, tuple[str, str]] = {
    "resolved": ("00CC00", "✅"),
    "escalated": ("FF0000", "🔺"),
    "timeout": ("FFCC00", "⏰"),
}


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


@dataclass
class DeliveryAttempt:
    """One webhook call, kept for the audit trail."""

    attempt: int
    timestamp: datetime
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "status_code": self.status_code,
            "error": self.error,
        }


@dataclass
class DeliveryResult:
    """Outcome of a crisis alert delivery."""

    escalation_id: str
    status: DeliveryStatus
    message_id: Optional[str] = None
    recipients: list[str] = field(default_factory=list)
    retry_count: int = 0
    audit_trail: list[DeliveryAttempt] = field(default_factory=list)

    @property
    def attempts(self) -> int:
        return len(self.audit_trail)

    def to_dict(self) -> dict:
        return {
            "escalation_id": self.escalation_id,
            "status": self.status.value,
            "message_id": self.message_id,
            "recipients": self.recipients,
            "retry_count": self.retry_count,
            "audit_trail": [a.to_dict() for a in self.audit_trail],
        }


class NotificationDeliveryError(Exception):
    """Raised when an alert could not be delivered after all attempts."""

    def __init__(self, escalation_id: str, attempts: int, result: DeliveryResult, reason: str = ""):
        self.escalation_id = escalation_id
        self.attempts = attempts
        self.result = result
        message = f"Failed to deliver escalation {escalation_id} after {attempts} attempts"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class NotificationConfigError(NotificationDeliveryError):
    """Raised when no webhook is configured."""


def sanitize_user_id(user_id: str) -> str:
    """First 8 characters of the user id followed by a mask."""
    return f"{user_id[:8]}***"


def format_trigger_list(triggers: list[str], limit: int = MAX_TRIGGERS_SHOWN) -> str:
    """Comma-separated trigger list capped at `limit` with a '(+N more)' suffix."""
    if not triggers:
        return "None"
    shown = ", ".join(triggers[:limit])
    if len(triggers) > limit:
        shown += f" (+{len(triggers) - limit} more)"
    return shown


class NotificationService:
    """
    HTTP client for the nurse team webhook.

    Usage:
        service = get_notification_service()
        result = await service.send_crisis_alert(payload)
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        backoff_multiplier: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize service.

        Args:
            webhook_url: Webhook URL (defaults to settings)
            max_retries: Maximum delivery attempts
            retry_delay: Seconds to wait between attempts
            backoff_multiplier: Growth of the delay per failed attempt
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.webhook_url = webhook_url if webhook_url is not None else settings.teams_webhook_url
        self.max_retries = max_retries if max_retries is not None else settings.notification_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.notification_retry_delay_seconds
        self.backoff_multiplier = (
            backoff_multiplier if backoff_multiplier is not None else settings.notification_backoff_multiplier
        )
        self.timeout = timeout if timeout is not None else settings.notification_timeout_seconds
        self.recipients = settings.notification_recipients_list
        self.dashboard_base_url = settings.dashboard_base_url.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # === Crisis alerts ===

    async def send_crisis_alert(self, payload: NotificationPayload) -> DeliveryResult:
        """Deliver an escalation alert.

        Args:
            payload: Escalation projection to deliver

        Returns:
            DeliveryResult with status SENT

        Raises:
            NotificationDeliveryError: After max_retries failed attempts
            NotificationConfigError: If no webhook URL is configured
        """
        result = DeliveryResult(
            escalation_id=payload.escalation_id,
            status=DeliveryStatus.FAILED,
            recipients=list(self.recipients),
        )

        if not self.webhook_url:
            logger.error(
                f"No nurse team webhook configured, escalation {payload.escalation_id} not delivered"
            )
            raise NotificationConfigError(
                payload.escalation_id, 0, result, reason="webhook URL not configured"
            )

        card = self.build_alert_card(payload)
        last_error = ""

        for attempt in range(1, self.max_retries + 1):
            outcome = await self._post(card, attempt)
            result.audit_trail.append(outcome)

            if outcome.success:
                result.status = DeliveryStatus.SENT
                result.message_id = str(uuid4())
                result.retry_count = attempt - 1
                logger.info(
                    f"Crisis alert delivered: escalation={payload.escalation_id}, "
                    f"attempt={attempt}, message_id={result.message_id}"
                )
                return result

            last_error = outcome.error or "unknown error"
            logger.warning(
                f"Crisis alert attempt {attempt}/{self.max_retries} failed for "
                f"escalation {payload.escalation_id}: {last_error}"
            )

            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * self.backoff_multiplier ** (attempt - 1))

        result.retry_count = max(self.max_retries - 1, 0)
        logger.error(
            f"Crisis alert failed for escalation {payload.escalation_id} "
            f"after {self.max_retries} attempts: {last_error}"
        )
        raise NotificationDeliveryError(payload.escalation_id, self.max_retries, result, reason=last_error)

    async def _post(self, card: dict, attempt: int) -> DeliveryAttempt:
        """Single webhook call. Success requires the exact acknowledgement body."""
        client = await self._get_client()
        timestamp = datetime.now(timezone.utc)

        try:
            response = await client.post(self.webhook_url, json=card)
        except httpx.HTTPError as e:
            return DeliveryAttempt(attempt=attempt, timestamp=timestamp, success=False, error=str(e) or type(e).__name__)

        if response.status_code >= 400:
            return DeliveryAttempt(
                attempt=attempt,
                timestamp=timestamp,
                success=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}",
            )

        if response.text != ACK_BODY:
            return DeliveryAttempt(
                attempt=attempt,
                timestamp=timestamp,
                success=False,
                status_code=response.status_code,
                error=f"Unexpected acknowledgement: {response.text[:50]!r}",
            )

        return DeliveryAttempt(attempt=attempt, timestamp=timestamp, success=True, status_code=response.status_code)

    def build_alert_card(self, payload: NotificationPayload) -> dict:
        """Build the MessageCard for an escalation."""
        color, emoji = URGENCY_STYLE.get(payload.urgency, URGENCY_STYLE[Urgency.LOW])
        severity = payload.severity.value.upper()

        facts = [
            {"name": "Escalation ID", "value": payload.escalation_id},
            {"name": "Severity", "value": severity},
            {"name": "Urgency", "value": payload.urgency.value.upper()},
            {"name": "User ID", "value": sanitize_user_id(payload.user_id)},
            {"name": "Summary", "value": payload.summary},
            {"name": "Trigger Matches", "value": format_trigger_list(payload.trigger_matches)},
            {"name": "Timestamp", "value": payload.timestamp.isoformat()},
            {"name": "Requires Callback", "value": "YES ☎️" if payload.requires_callback else "No"},
        ]

        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": color,
            "summary": f"{emoji} {severity} Alert - Ask Eve Assist",
            "sections": [
                {
                    "activityTitle": f"{emoji} Crisis Alert - Ask Eve Assist",
                    "activitySubtitle": f"{severity} level escalation detected",
                    "facts": facts,
                    "markdown": True,
                }
            ],
            "potentialAction": [
                {
                    "@type": "OpenUri",
                    "name": "View Safety Dashboard",
                    "targets": [
                        {"os": "default", "uri": f"{self.dashboard_base_url}/{payload.escalation_id}"}
                    ],
                }
            ],
        }

    # === Non-critical notifications ===

    async def send_follow_up_notification(
        self,
        escalation_id: str,
        status: str,
        details: str,
    ) -> bool:
        """Post a follow-up on an escalation (resolved, escalated, timeout).

        Non-critical: a single attempt, failures are logged and reported
        through the return value.

        Returns:
            True if acknowledged
        """
        if not self.webhook_url:
            logger.warning(f"Follow-up for escalation {escalation_id} skipped: no webhook configured")
            return False

        color, emoji = FOLLOW_UP_STYLE.get(status, FOLLOW_UP_STYLE["timeout"])
        card = {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": color,
            "summary": f"{emoji} Escalation {status.upper()} - Ask Eve Assist",
            "sections": [
                {
                    "activityTitle": f"{emoji} Escalation Follow-up",
                    "activitySubtitle": f"Escalation {escalation_id} {status}",
                    "facts": [
                        {"name": "Escalation ID", "value": escalation_id},
                        {"name": "Status", "value": status.upper()},
                        {"name": "Details", "value": details},
                        {"name": "Timestamp", "value": datetime.now(timezone.utc).isoformat()},
                    ],
                    "markdown": True,
                }
            ],
        }

        outcome = await self._post(card, attempt=1)
        if not outcome.success:
            logger.warning(f"Follow-up for escalation {escalation_id} not delivered: {outcome.error}")
        return outcome.success

    async def test_connection(self) -> bool:
        """Send a low-urgency test card to verify the webhook."""
        if not self.webhook_url:
            return False

        card = {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": URGENCY_STYLE[Urgency.LOW][0],
            "summary": "Ask Eve Assist connection test",
            "sections": [
                {
                    "activityTitle": "ℹ️ Connection Test - Ask Eve Assist",
                    "activitySubtitle": "Safety notification channel check",
                    "facts": [{"name": "Timestamp", "value": datetime.now(timezone.utc).isoformat()}],
                    "markdown": True,
                }
            ],
        }
        outcome = await self._post(card, attempt=1)
        if not outcome.success:
            logger.warning(f"Notification connection test failed: {outcome.error}")
        return outcome.success


# Singleton
_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get singleton NotificationService."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
