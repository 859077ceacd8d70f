"""
Health information handler.

Answers from The Eve Appeal's published content when the search
service returns a trusted source, otherwise from the level 1/2
responder text. Every answer carries the responder disclaimers.
"""

import logging
from typing import Optional

from app.core.content.search import (
    ContentSearchClient,
    SearchResult,
    get_content_search_client,
    is_trusted_source,
)
from app.core.conversation.handlers.base import BaseTopicHandler, HandlerResult, TurnContext
from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic
from app.core.escalation.responder import (
    ProgressiveEscalationResponder,
    check_response_policy,
    get_responder,
)

logger = logging.getLogger(__name__)


class HealthInformationHandler(BaseTopicHandler):
    """Gynaecological health information."""

    topic = Topic.HEALTH_INFORMATION
    supported_stages = frozenset({
        Stage.GREETING,
        Stage.TOPIC_DETECTION,
        Stage.INFORMATION_GATHERING,
        Stage.SATISFACTION_CHECK,
        Stage.CRISIS_RESPONSE,
        Stage.SAFETY_PLANNING,
    })
    patterns = (
        (r"\b(tell me about|what is|what are|information (about|on)|info (about|on)|explain)\b", 0.8),
        (r"\b(symptoms?|signs?) of\b", 0.85),
        (r"\b(cervical|ovarian|womb|vulval|vaginal|endometrial)\b", 0.8),
        (r"\b(screening|smear|hpv|colposcopy)\b", 0.8),
        (r"\bcancer\b", 0.7),
    )
    keywords = (
        "symptoms", "cancer", "ovarian", "cervical", "womb", "vaginal", "vulval",
        "screening", "smear", "test", "examination", "period", "bleeding",
        "pain", "discharge", "lump", "information", "know about", "tell me",
    )

    def __init__(
        self,
        search_client: Optional[ContentSearchClient] = None,
        responder: Optional[ProgressiveEscalationResponder] = None,
    ):
        super().__init__()
        self._search = search_client
        self._responder = responder

    def _get_search(self) -> ContentSearchClient:
        if self._search is None:
            self._search = get_content_search_client()
        return self._search

    def _get_responder(self) -> ProgressiveEscalationResponder:
        if self._responder is None:
            self._responder = get_responder()
        return self._responder

    async def handle(
        self,
        message: str,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        self.log_activity("information request", state)

        framing = self._get_responder().respond(turn.safety_result, message)
        result = self._screen(await self._get_search().search_content(message), state)

        attachments = []
        if result.found:
            text = f"{result.content}\n\nSource: {result.source or 'The Eve Appeal'} ({result.source_url})"
            attachments.append({
                "type": "source",
                "title": result.source,
                "url": result.source_url,
                "relevance_score": result.relevance_score,
            })
        else:
            text = framing.text

        if framing.disclaimers:
            text = f"{text}\n\n{framing.disclaimers[0]}"
            attachments.append({"type": "disclaimers", "items": list(framing.disclaimers)})
        if framing.support_resources:
            attachments.append({
                "type": "support_resources",
                "items": [r.model_dump() for r in framing.support_resources],
            })

        state.move_to(Topic.HEALTH_INFORMATION, Stage.INFORMATION_GATHERING)
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=["More information", "Speak to a nurse", "Support options"],
            attachments=attachments,
        )

    @staticmethod
    def _screen(result: SearchResult, state: ConversationState) -> SearchResult:
        """Drop content that is empty, untrusted or breaks response policy."""
        if not result.found or not result.content:
            return SearchResult.not_found()

        if not is_trusted_source(result.source_url):
            logger.warning(
                f"Discarded content from untrusted source for conversation {state.conversation_id}"
            )
            return SearchResult.not_found()

        violations = check_response_policy(result.content)
        if violations:
            logger.error(
                f"Discarded content failing response policy for conversation "
                f"{state.conversation_id}: {violations}"
            )
            return SearchResult.not_found()

        return result
