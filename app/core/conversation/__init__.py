"""
Conversation flow module.

Topic/stage state machine, conversation state persistence and the flow
engine that routes every message through safety analysis first.
"""

from .state import (
    Topic,
    Stage,
    HandlerStateError,
    INITIAL_STATE,
    TERMINAL_STATE,
    can_transition,
    validate_transition,
)
from .models import ConversationState
from .store import ConversationStore, get_conversation_store
from .engine import (
    ConversationFlowEngine,
    ConversationFlowResult,
    FlowResponse,
    get_flow_engine,
)

__all__ = [
    # State machine
    "Topic",
    "Stage",
    "HandlerStateError",
    "INITIAL_STATE",
    "TERMINAL_STATE",
    "can_transition",
    "validate_transition",
    # State
    "ConversationState",
    "ConversationStore",
    "get_conversation_store",
    # Engine
    "ConversationFlowEngine",
    "ConversationFlowResult",
    "FlowResponse",
    "get_flow_engine",
]
