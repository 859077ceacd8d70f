"""Conversation start handler."""

from app.core.conversation.handlers.base import BaseTopicHandler, HandlerResult, TurnContext
from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic

OPENING_STATEMENT = (
    "Hello, I'm Ask Eve Assist - a digital assistant here to help you find information "
    "about gynaecological health.\n\n"
    "I'm not a medical professional or a nurse, but I can help you access trusted "
    "information from The Eve Appeal."
)

FOLLOW_UP_GREETING = (
    "Thank you for your message. I'm here to help you with gynaecological health "
    "information and support."
)


class GreetingHandler(BaseTopicHandler):
    """Greets the user and asks what they need."""

    topic = Topic.CONVERSATION_START
    supported_stages = frozenset({Stage.GREETING})
    patterns = (
        (r"^(hello|hi|hey|hiya|good (morning|afternoon|evening))( there| eve)?$", 0.9),
        (r"^(hello|hi|hey|hiya)\b", 0.5),
        (r"^(help|start|begin|new conversation)\b", 0.8),
    )
    keywords = ("hello", "hi", "hey", "start", "help", "begin")

    async def handle(
        self,
        message: str,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        self.log_activity("greeting", state)

        if state.has_seen_opening_statement:
            text = f"{FOLLOW_UP_GREETING} What would you like to know about today?"
            actions = [
                "Ovarian cancer symptoms",
                "Cervical screening",
                "Womb cancer signs",
                "Speak to a nurse",
            ]
        else:
            text = "How can I support you today?"
            actions = [
                "Health information",
                "Speak to a nurse",
                "Support options",
                "Screening information",
            ]

        state.conversation_started = True
        state.move_to(Topic.CONVERSATION_START, Stage.TOPIC_DETECTION)
        return HandlerResult(text=text, new_state=state, suggested_actions=actions)
