"""Conversation topic/stage state machine."""

from enum import Enum
from typing import Set


class Topic(str, Enum):
    """Conversation topics (one handler owns each routable topic)."""

    CONVERSATION_START = "conversation_start"
    HEALTH_INFORMATION = "health_information"
    NURSE_ESCALATION = "nurse_escalation_handler"
    CRISIS_SUPPORT = "crisis_support_routing"
    SUPPORT_OPTIONS = "support_options_overview"
    USER_SATISFACTION = "user_satisfaction_handler"
    EXIT_INTENT = "exit_intent_detection"
    FALLBACK = "fallback"
    END_OF_CONVERSATION = "end_of_conversation"
    ON_ERROR = "on_error"
    MULTIPLE_TOPICS = "multiple_topics_matched"


class Stage(str, Enum):
    """Stages within a topic."""

    # Initial
    GREETING = "greeting"

    # Routing
    TOPIC_DETECTION = "topic_detection"
    INFORMATION_GATHERING = "information_gathering"

    # Nurse callback
    CONSENT_CAPTURE = "consent_capture"
    CONTACT_COLLECTION = "contact_collection"
    ESCALATION = "escalation"

    # Crisis
    CRISIS_RESPONSE = "crisis_response"
    SAFETY_PLANNING = "safety_planning"

    # Wrap-up
    SATISFACTION_CHECK = "satisfaction_check"
    COMPLETION = "completion"


class HandlerStateError(Exception):
    """Raised when a handler produces an unsupported or illegal state."""


INITIAL_STATE = (Topic.CONVERSATION_START, Stage.GREETING)
TERMINAL_STATE = (Topic.END_OF_CONVERSATION, Stage.COMPLETION)


# Stages each topic may be in
TOPIC_STAGES: dict[Topic, Set[Stage]] = {
    Topic.CONVERSATION_START: {Stage.GREETING, Stage.TOPIC_DETECTION},
    Topic.HEALTH_INFORMATION: {
        Stage.TOPIC_DETECTION,
        Stage.INFORMATION_GATHERING,
        Stage.SATISFACTION_CHECK,
    },
    Topic.NURSE_ESCALATION: {
        Stage.CONSENT_CAPTURE,
        Stage.CONTACT_COLLECTION,
        Stage.ESCALATION,
        Stage.SATISFACTION_CHECK,
    },
    Topic.CRISIS_SUPPORT: {
        Stage.CRISIS_RESPONSE,
        Stage.SAFETY_PLANNING,
        Stage.CONTACT_COLLECTION,
        Stage.ESCALATION,
    },
    Topic.SUPPORT_OPTIONS: {Stage.TOPIC_DETECTION, Stage.INFORMATION_GATHERING},
    Topic.USER_SATISFACTION: {Stage.SATISFACTION_CHECK},
    Topic.EXIT_INTENT: {Stage.SATISFACTION_CHECK, Stage.COMPLETION},
    Topic.FALLBACK: {Stage.TOPIC_DETECTION},
    Topic.END_OF_CONVERSATION: {Stage.COMPLETION},
    Topic.ON_ERROR: {Stage.TOPIC_DETECTION},
    Topic.MULTIPLE_TOPICS: {Stage.TOPIC_DETECTION},
}


# Crisis support and end of conversation are reachable from every
# non-terminal topic and are not repeated here.
VALID_TOPIC_TRANSITIONS: dict[Topic, Set[Topic]] = {
    Topic.CONVERSATION_START: {
        Topic.HEALTH_INFORMATION,
        Topic.NURSE_ESCALATION,
        Topic.SUPPORT_OPTIONS,
        Topic.EXIT_INTENT,
        Topic.FALLBACK,
        Topic.ON_ERROR,
        Topic.MULTIPLE_TOPICS,
    },
    Topic.HEALTH_INFORMATION: {
        Topic.NURSE_ESCALATION,
        Topic.SUPPORT_OPTIONS,
        Topic.USER_SATISFACTION,
        Topic.EXIT_INTENT,
        Topic.FALLBACK,
        Topic.ON_ERROR,
        Topic.MULTIPLE_TOPICS,
    },
    Topic.NURSE_ESCALATION: {
        Topic.CONVERSATION_START,  # Consent declined before any topic
        Topic.HEALTH_INFORMATION,
        Topic.SUPPORT_OPTIONS,
        Topic.USER_SATISFACTION,
        Topic.EXIT_INTENT,
        Topic.FALLBACK,
        Topic.ON_ERROR,
    },
    Topic.CRISIS_SUPPORT: {
        Topic.HEALTH_INFORMATION,
        Topic.NURSE_ESCALATION,
        Topic.SUPPORT_OPTIONS,
        Topic.USER_SATISFACTION,
        Topic.EXIT_INTENT,
        Topic.FALLBACK,
    },
    Topic.SUPPORT_OPTIONS: {
        Topic.HEALTH_INFORMATION,
        Topic.NURSE_ESCALATION,
        Topic.USER_SATISFACTION,
        Topic.EXIT_INTENT,
        Topic.FALLBACK,
    },
    Topic.USER_SATISFACTION: {
        Topic.HEALTH_INFORMATION,
        Topic.NURSE_ESCALATION,
        Topic.SUPPORT_OPTIONS,
        Topic.EXIT_INTENT,
        Topic.FALLBACK,
    },
    Topic.EXIT_INTENT: {
        Topic.HEALTH_INFORMATION,
        Topic.NURSE_ESCALATION,
        Topic.FALLBACK,
    },
    Topic.FALLBACK: {
        Topic.HEALTH_INFORMATION,
        Topic.NURSE_ESCALATION,
        Topic.SUPPORT_OPTIONS,
        Topic.USER_SATISFACTION,
        Topic.EXIT_INTENT,
    },
    Topic.ON_ERROR: {
        Topic.CONVERSATION_START,
        Topic.HEALTH_INFORMATION,
        Topic.NURSE_ESCALATION,
        Topic.FALLBACK,
    },
    Topic.MULTIPLE_TOPICS: {
        Topic.HEALTH_INFORMATION,
        Topic.NURSE_ESCALATION,
        Topic.SUPPORT_OPTIONS,
        Topic.FALLBACK,
    },
    Topic.END_OF_CONVERSATION: set(),  # Terminal state
}

_ANY_TOPIC_TARGETS = {Topic.CRISIS_SUPPORT, Topic.END_OF_CONVERSATION}

# Any non-terminal stage may also move to itself, back to topic
# detection, or to crisis response and completion.
VALID_STAGE_TRANSITIONS: dict[Stage, Set[Stage]] = {
    Stage.GREETING: {
        Stage.INFORMATION_GATHERING,
        Stage.CONSENT_CAPTURE,
    },
    Stage.INFORMATION_GATHERING: {
        Stage.CONSENT_CAPTURE,
        Stage.SATISFACTION_CHECK,
    },
    Stage.CONSENT_CAPTURE: {
        Stage.CONTACT_COLLECTION,
        Stage.INFORMATION_GATHERING,  # Consent declined
        Stage.SATISFACTION_CHECK,
    },
    Stage.CONTACT_COLLECTION: {
        Stage.ESCALATION,
        Stage.INFORMATION_GATHERING,  # Cancelled
        Stage.SATISFACTION_CHECK,
    },
    Stage.ESCALATION: {
        Stage.CONTACT_COLLECTION,  # Details corrected
        Stage.INFORMATION_GATHERING,
        Stage.SATISFACTION_CHECK,
        Stage.SAFETY_PLANNING,
    },
    Stage.CRISIS_RESPONSE: {
        Stage.CONTACT_COLLECTION,
        Stage.ESCALATION,
        Stage.SAFETY_PLANNING,
        Stage.INFORMATION_GATHERING,
        Stage.CONSENT_CAPTURE,
        Stage.SATISFACTION_CHECK,
    },
    Stage.SAFETY_PLANNING: {
        Stage.CONTACT_COLLECTION,
        Stage.ESCALATION,
        Stage.INFORMATION_GATHERING,
        Stage.CONSENT_CAPTURE,
        Stage.SATISFACTION_CHECK,
    },
    Stage.SATISFACTION_CHECK: {
        Stage.INFORMATION_GATHERING,
        Stage.CONSENT_CAPTURE,
    },
    Stage.TOPIC_DETECTION: {
        Stage.INFORMATION_GATHERING,
        Stage.CONSENT_CAPTURE,
        Stage.SATISFACTION_CHECK,
    },
    Stage.COMPLETION: set(),  # Terminal state
}

_ANY_STAGE_TARGETS = {Stage.TOPIC_DETECTION, Stage.CRISIS_RESPONSE, Stage.COMPLETION}


def is_supported_pair(topic: Topic, stage: Stage) -> bool:
    """Check if a topic may be in a stage."""
    return stage in TOPIC_STAGES.get(topic, set())


def is_terminal_state(topic: Topic, stage: Stage) -> bool:
    """Check if state is terminal (no further transitions)."""
    return (topic, stage) == TERMINAL_STATE


def can_transition_topic(from_topic: Topic, to_topic: Topic) -> bool:
    """Check if a topic transition is valid."""
    if from_topic == Topic.END_OF_CONVERSATION:
        return False
    if from_topic == to_topic or to_topic in _ANY_TOPIC_TARGETS:
        return True
    return to_topic in VALID_TOPIC_TRANSITIONS.get(from_topic, set())


def can_transition_stage(from_stage: Stage, to_stage: Stage) -> bool:
    """Check if a stage transition is valid."""
    if from_stage == Stage.COMPLETION:
        return False
    if from_stage == to_stage or to_stage in _ANY_STAGE_TARGETS:
        return True
    return to_stage in VALID_STAGE_TRANSITIONS.get(from_stage, set())


def can_transition(
    from_topic: Topic,
    from_stage: Stage,
    to_topic: Topic,
    to_stage: Stage,
) -> bool:
    """Check a full (topic, stage) move, including the target pair."""
    if (from_topic, from_stage) == (to_topic, to_stage):
        return True
    if not is_supported_pair(to_topic, to_stage) or not can_transition_topic(from_topic, to_topic):
        return False
    if to_topic == Topic.CRISIS_SUPPORT and from_topic != Topic.CRISIS_SUPPORT:
        # Entering crisis support: any of its stages
        return True
    return can_transition_stage(from_stage, to_stage)


def validate_transition(
    from_topic: Topic,
    from_stage: Stage,
    to_topic: Topic,
    to_stage: Stage,
) -> None:
    """
    Raise if a handler's proposed move is not allowed.

    Raises:
        HandlerStateError: On unsupported pairs or illegal transitions
    """
    if not is_supported_pair(to_topic, to_stage):
        raise HandlerStateError(
            f"Unsupported state: {to_topic.value}/{to_stage.value}"
        )
    if not can_transition(from_topic, from_stage, to_topic, to_stage):
        raise HandlerStateError(
            f"Invalid transition: {from_topic.value}/{from_stage.value} -> "
            f"{to_topic.value}/{to_stage.value}"
        )
