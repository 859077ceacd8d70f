"""
Conversation state model.

Stored as JSON in Redis by ConversationStore. Handlers never mutate a
state they are given; they work on copy() and return the new state.
"""

import copy as _copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from app.core.conversation.state import INITIAL_STATE, Stage, Topic
from app.core.escalation.models import ContactDetails
from app.safety.consent_manager import ConsentStatus
from app.safety.models import HistoryMessage


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class ConversationState:
    """Complete conversation state for one user conversation."""

    # Identifiers
    conversation_id: str = field(default_factory=lambda: str(uuid4()))
    user_id: str = ""
    session_id: str = ""

    # Position in the flow
    current_topic: Topic = INITIAL_STATE[0]
    current_stage: Stage = INITIAL_STATE[1]
    previous_topic: Optional[Topic] = None
    previous_stage: Optional[Stage] = None

    # GDPR
    consent_status: ConsentStatus = ConsentStatus.NOT_REQUESTED
    contact_info: Optional[ContactDetails] = None

    # Progress
    conversation_started: bool = False
    has_seen_opening_statement: bool = False
    last_activity: datetime = field(default_factory=_utcnow)
    message_count: int = 0
    visited_topics: list[str] = field(default_factory=list)

    # Handler scratch data (expected field, urgency, ...)
    context: dict[str, Any] = field(default_factory=dict)
    escalation_id: Optional[str] = None

    # Bounded user message history for the safety analyzer
    recent_messages: list[dict] = field(default_factory=list)

    def copy(self) -> "ConversationState":
        """Deep copy for handlers to modify."""
        return _copy.deepcopy(self)

    def move_to(self, topic: Topic, stage: Stage) -> None:
        """Set the position, remembering where we came from on topic change."""
        if topic != self.current_topic:
            self.previous_topic = self.current_topic
            self.previous_stage = self.current_stage
        self.current_topic = topic
        self.current_stage = stage
        if topic.value not in self.visited_topics:
            self.visited_topics.append(topic.value)

    def restart(self) -> None:
        """
        Return to the initial state after the conversation has ended.

        Identifiers, message count and visited topics are kept.
        """
        self.current_topic, self.current_stage = INITIAL_STATE
        self.previous_topic = None
        self.previous_stage = None
        self.consent_status = ConsentStatus.NOT_REQUESTED
        self.contact_info = None
        self.context = {}
        self.escalation_id = None

    def add_message(self, content: str, timestamp: datetime, limit: int) -> None:
        """Record a user message, keeping the last `limit` entries."""
        self.recent_messages.append({"content": content, "timestamp": timestamp.isoformat()})
        if len(self.recent_messages) > limit:
            self.recent_messages = self.recent_messages[-limit:]

    def history(self) -> list[HistoryMessage]:
        """Recent messages in the analyzer's format."""
        return [
            HistoryMessage(content=m["content"], timestamp=datetime.fromisoformat(m["timestamp"]))
            for m in self.recent_messages
        ]

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "current_topic": self.current_topic.value,
            "current_stage": self.current_stage.value,
            "previous_topic": self.previous_topic.value if self.previous_topic else None,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "consent_status": self.consent_status.value,
            "contact_info": self.contact_info.model_dump() if self.contact_info else None,
            "conversation_started": self.conversation_started,
            "has_seen_opening_statement": self.has_seen_opening_statement,
            "last_activity": self.last_activity.isoformat(),
            "message_count": self.message_count,
            "visited_topics": self.visited_topics,
            "context": self.context,
            "escalation_id": self.escalation_id,
            "recent_messages": self.recent_messages,
        }

    def to_json(self) -> str:
        """Convert to JSON string for Redis storage."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str) -> "ConversationState":
        """Create from JSON string."""
        parsed = json.loads(data)
        contact = parsed.get("contact_info")
        previous_topic = parsed.get("previous_topic")
        previous_stage = parsed.get("previous_stage")

        return cls(
            conversation_id=parsed["conversation_id"],
            user_id=parsed.get("user_id", ""),
            session_id=parsed.get("session_id", ""),
            current_topic=Topic(parsed["current_topic"]),
            current_stage=Stage(parsed["current_stage"]),
            previous_topic=Topic(previous_topic) if previous_topic else None,
            previous_stage=Stage(previous_stage) if previous_stage else None,
            consent_status=ConsentStatus(parsed.get("consent_status", ConsentStatus.NOT_REQUESTED.value)),
            contact_info=ContactDetails(**contact) if contact else None,
            conversation_started=parsed.get("conversation_started", False),
            has_seen_opening_statement=parsed.get("has_seen_opening_statement", False),
            last_activity=datetime.fromisoformat(parsed["last_activity"]),
            message_count=parsed.get("message_count", 0),
            visited_topics=parsed.get("visited_topics", []),
            context=parsed.get("context", {}),
            escalation_id=parsed.get("escalation_id"),
            recent_messages=parsed.get("recent_messages", []),
        )
