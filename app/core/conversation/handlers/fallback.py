"""Fallback handler, used when no topic handler is eligible."""

from app.core.conversation.handlers.base import (
    EVE_APPEAL_NURSE_LINE,
    BaseTopicHandler,
    HandlerResult,
    TurnContext,
)
from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic

FALLBACK_TEXT = (
    "I'm sorry, I'm not sure I understood that. I can help you find information about "
    "gynaecological health or arrange a call with one of our specialist nurses.\n\n"
    "For medical concerns, please contact your GP or call NHS 111. "
    f"You can also call The Eve Appeal's Ask Eve line on {EVE_APPEAL_NURSE_LINE}.\n\n"
    "If you're in immediate danger, call 999. The Samaritans are available 24/7 on 116 123."
)

FALLBACK_ACTIONS = ["Health information", "Speak to a nurse", "Support options"]


class FallbackHandler(BaseTopicHandler):
    """Asks the user to rephrase and points to GP, NHS 111, Ask Eve and the emergency lines."""

    topic = Topic.FALLBACK
    supported_stages = frozenset(s for s in Stage if s != Stage.COMPLETION)

    async def handle(
        self,
        message: str,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        self.log_activity("no handler matched", state)
        state.move_to(Topic.FALLBACK, Stage.TOPIC_DETECTION)
        return HandlerResult(
            text=FALLBACK_TEXT,
            new_state=state,
            suggested_actions=list(FALLBACK_ACTIONS),
        )
