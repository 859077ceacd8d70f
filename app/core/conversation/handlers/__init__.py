"""Topic handlers for the conversation flow engine."""

from app.core.conversation.handlers.base import (
    BaseTopicHandler,
    HandlerResult,
    TurnContext,
)
from app.core.conversation.handlers.greeting import GreetingHandler, OPENING_STATEMENT
from app.core.conversation.handlers.health_info import HealthInformationHandler
from app.core.conversation.handlers.nurse_escalation import NurseEscalationHandler
from app.core.conversation.handlers.crisis_support import CrisisSupportHandler
from app.core.conversation.handlers.exit_intent import ExitIntentHandler
from app.core.conversation.handlers.fallback import FallbackHandler, FALLBACK_TEXT

__all__ = [
    "BaseTopicHandler",
    "HandlerResult",
    "TurnContext",
    "GreetingHandler",
    "OPENING_STATEMENT",
    "HealthInformationHandler",
    "NurseEscalationHandler",
    "CrisisSupportHandler",
    "ExitIntentHandler",
    "FallbackHandler",
    "FALLBACK_TEXT",
]
