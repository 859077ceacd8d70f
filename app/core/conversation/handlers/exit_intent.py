"""Exit intent handler."""

from app.core.conversation.handlers.base import (
    EVE_APPEAL_NURSE_LINE,
    BaseTopicHandler,
    HandlerResult,
    TurnContext,
)
from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic


class ExitIntentHandler(BaseTopicHandler):
    """Ends the conversation when the user says goodbye."""

    topic = Topic.EXIT_INTENT
    supported_stages = frozenset(s for s in Stage if s != Stage.COMPLETION)
    patterns = (
        (r"^(bye|goodbye|good bye|bye bye|see you|see ya|cheers)\b", 0.9),
        (r"\b(that s all|that is all|thats all|no more questions|end (the )?(chat|conversation))\b", 0.9),
        (r"^(thanks|thank you|thank you very much|many thanks)( bye| goodbye)?$", 0.6),
    )

    async def handle(
        self,
        message: str,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        self.log_activity("conversation ended", state)
        state.move_to(Topic.END_OF_CONVERSATION, Stage.COMPLETION)
        return HandlerResult(
            text=(
                "Thank you for talking with Ask Eve Assist. Take care of yourself. "
                f"If you need support later, The Eve Appeal's Ask Eve line is on {EVE_APPEAL_NURSE_LINE}."
            ),
            new_state=state,
            suggested_actions=["Start new conversation"],
            conversation_ended=True,
        )
