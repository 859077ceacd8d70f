"""
Base class for topic handlers.

A handler scores how well a message fits its topic and, when chosen,
returns the reply and the new conversation state. Handlers never send
escalations themselves; they describe them in HandlerResult and the
engine delivers them out-of-band.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic
from app.core.escalation.models import ContactEscalationRequest
from app.safety.models import SafetyResult
from app.safety.trigger_table import normalize_text

logger = logging.getLogger(__name__)

ELIGIBILITY_THRESHOLD = 0.3
MAX_KEYWORD_CONFIDENCE = 0.8
MAX_CONTEXT_CONFIDENCE = 0.4

EVE_APPEAL_NURSE_LINE = "0808 802 0019"


@dataclass
class TurnContext:
    """Per-message facts shared with the handler."""

    safety_result: SafetyResult
    now: datetime
    escalation_id: str


@dataclass
class HandlerResult:
    """Reply and new state produced by a handler."""

    text: str
    new_state: ConversationState
    suggested_actions: list[str] = field(default_factory=list)
    attachments: list[dict] = field(default_factory=list)
    contact_escalation: Optional[ContactEscalationRequest] = None
    conversation_ended: bool = False


class BaseTopicHandler(ABC):
    """
    Base class for all topic handlers.

    Subclasses define:
    - topic: Topic this handler owns
    - supported_stages: Stages from which the handler may take a turn
    - patterns: (regex, confidence) pairs matched against normalized text
    - keywords: Topic keywords for overlap scoring
    - handle(): Build the reply
    """

    topic: Topic
    supported_stages: frozenset[Stage] = frozenset()
    patterns: tuple[tuple[str, float], ...] = ()
    keywords: tuple[str, ...] = ()

    def __init__(self):
        self._compiled = tuple((re.compile(p), c) for p, c in self.patterns)
        self._keyword_patterns = tuple(
            re.compile(rf"\b{re.escape(normalize_text(k))}\b") for k in self.keywords
        )

    # ==================================
    # Routing
    # ==================================

    def get_intent_confidence(self, message: str, state: ConversationState) -> float:
        """
        Confidence that the message belongs to this topic.

        Max of best pattern, keyword overlap and conversation context.
        """
        normalized = normalize_text(message)
        return max(
            self._pattern_confidence(normalized),
            self._keyword_confidence(normalized),
            self._context_confidence(state),
        )

    def is_eligible(self, confidence: float, state: ConversationState) -> bool:
        return confidence > ELIGIBILITY_THRESHOLD and state.current_stage in self.supported_stages

    def can_handle(self, message: str, state: ConversationState) -> bool:
        """Check if this handler may take the turn."""
        return self.is_eligible(self.get_intent_confidence(message, state), state)

    def _pattern_confidence(self, normalized: str) -> float:
        best = 0.0
        for pattern, confidence in self._compiled:
            if pattern.search(normalized):
                best = max(best, confidence)
        return best

    def _keyword_confidence(self, normalized: str) -> float:
        if not self._keyword_patterns:
            return 0.0
        matched = sum(1 for k in self._keyword_patterns if k.search(normalized))
        return min(matched / len(self._keyword_patterns) * MAX_KEYWORD_CONFIDENCE, MAX_KEYWORD_CONFIDENCE)

    def _context_confidence(self, state: ConversationState) -> float:
        confidence = 0.0
        if state.current_topic == self.topic:
            confidence += 0.2
        if self.topic.value in state.visited_topics:
            confidence += 0.1
        if state.current_stage in self.supported_stages:
            confidence += 0.15
        return min(confidence, MAX_CONTEXT_CONFIDENCE)

    # ==================================
    # Handling
    # ==================================

    @abstractmethod
    async def handle(
        self,
        message: str,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        """
        Handle the message.

        Args:
            message: Raw user message
            state: Working copy of the conversation state (may be modified)
            turn: Safety verdict and clock for this message

        Returns:
            HandlerResult with the new state
        """
        pass

    def return_to_previous(self, state: ConversationState) -> None:
        """Go back to where the user was before this topic."""
        topic = state.previous_topic or Topic.CONVERSATION_START
        stage = state.previous_stage or Stage.TOPIC_DETECTION
        if stage == Stage.GREETING:
            stage = Stage.TOPIC_DETECTION
        state.move_to(topic, stage)

    def log_activity(self, action: str, state: ConversationState) -> None:
        logger.info(
            f"{self.topic.value}: {action} "
            f"(conversation={state.conversation_id}, stage={state.current_stage.value})"
        )
