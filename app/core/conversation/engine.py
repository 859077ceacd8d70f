"""
Conversation Flow Engine

Main orchestrator for a conversation turn.

Flow:
1. Restart the conversation if it had ended
2. Safety analysis (always first; fails safe)
3. If escalation is required -> crisis handler (skip routing)
4. Otherwise pick the most confident eligible topic handler
5. Validate the handler's new state against the transition tables
6. Schedule escalations out-of-band
7. Return the reply and new state (the input state is never mutated)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Optional
from uuid import NAMESPACE_URL, uuid4, uuid5

from app.config import settings
from app.core.conversation.handlers import (
    FALLBACK_TEXT,
    OPENING_STATEMENT,
    BaseTopicHandler,
    CrisisSupportHandler,
    ExitIntentHandler,
    FallbackHandler,
    GreetingHandler,
    HandlerResult,
    HealthInformationHandler,
    NurseEscalationHandler,
    TurnContext,
)
from app.core.conversation.handlers.crisis_support import response_attachments
from app.core.conversation.handlers.fallback import FALLBACK_ACTIONS
from app.core.conversation.models import ConversationState
from app.core.conversation.state import (
    HandlerStateError,
    Topic,
    is_terminal_state,
    validate_transition,
)
from app.core.conversation.store import ConversationStore, get_conversation_store
from app.core.escalation.responder import ProgressiveEscalationResponder, get_responder
from app.core.escalation.service import EscalationService, get_escalation_service
from app.infra.notifications import NotificationDeliveryError
from app.safety.analyzer import SafetyAnalyzer, fail_safe_result, get_safety_analyzer
from app.safety.audit_logger import AuditLogger, get_audit_logger, hash_message
from app.safety.models import ConversationContext, SafetyResult

logger = logging.getLogger(__name__)


@dataclass
class FlowResponse:
    """User-facing part of a turn."""

    text: str
    suggested_actions: list[str] = field(default_factory=list)
    attachments: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "suggested_actions": self.suggested_actions,
            "attachments": self.attachments,
        }


@dataclass
class ConversationFlowResult:
    """Outcome of processing one message."""

    response: FlowResponse
    new_state: ConversationState
    escalation_triggered: bool = False
    conversation_ended: bool = False
    safety_result: Optional[SafetyResult] = None
    escalation_id: Optional[str] = None
    processing_time_ms: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "message": self.response.text,
            "suggested_actions": self.response.suggested_actions,
            "attachments": self.response.attachments,
            "conversation_id": self.new_state.conversation_id,
            "topic": self.new_state.current_topic.value,
            "stage": self.new_state.current_stage.value,
            "escalation_triggered": self.escalation_triggered,
            "conversation_ended": self.conversation_ended,
        }
        if self.safety_result is not None:
            result["severity"] = self.safety_result.severity.value
        if self.escalation_id:
            result["escalation_id"] = self.escalation_id
        if self.processing_time_ms is not None:
            result["processing_time_ms"] = self.processing_time_ms
        return result


def turn_escalation_id(state: ConversationState) -> str:
    """Stable id for an escalation raised on this turn (same input, same id)."""
    return str(uuid5(NAMESPACE_URL, f"askeve:{state.conversation_id}:{state.message_count}"))


class ConversationFlowEngine:
    """
    Routes each message through safety analysis and one topic handler.

    Usage:
        engine = get_flow_engine()
        result = await engine.handle_message(conversation_id, "Hello")
    """

    def __init__(
        self,
        analyzer: Optional[SafetyAnalyzer] = None,
        escalation_service: Optional[EscalationService] = None,
        store: Optional[ConversationStore] = None,
        handlers: Optional[list[BaseTopicHandler]] = None,
        crisis_handler: Optional[CrisisSupportHandler] = None,
        fallback_handler: Optional[BaseTopicHandler] = None,
        audit_logger: Optional[AuditLogger] = None,
        responder: Optional[ProgressiveEscalationResponder] = None,
    ):
        """Initialize engine with lazy-loaded collaborators."""
        self._analyzer = analyzer
        self._escalations = escalation_service
        self._store = store
        self._audit = audit_logger
        self._responder = responder

        if handlers is None:
            nurse = NurseEscalationHandler()
            handlers = [
                GreetingHandler(),
                HealthInformationHandler(),
                nurse,
                ExitIntentHandler(),
            ]
            crisis_handler = crisis_handler or CrisisSupportHandler(nurse_handler=nurse)

        self._crisis_handler = crisis_handler or CrisisSupportHandler()
        # Registration order breaks ties
        self._handlers = [*handlers, self._crisis_handler]
        self._fallback_handler = fallback_handler or FallbackHandler()

        # Out-of-band escalation deliveries
        self._tasks: set[asyncio.Task] = set()

    # === Lazy Initialization ===

    def _get_analyzer(self) -> SafetyAnalyzer:
        if self._analyzer is None:
            self._analyzer = get_safety_analyzer()
        return self._analyzer

    def _get_escalations(self) -> EscalationService:
        if self._escalations is None:
            self._escalations = get_escalation_service()
        return self._escalations

    def _get_store(self) -> ConversationStore:
        if self._store is None:
            self._store = get_conversation_store()
        return self._store

    def _get_audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    def _get_responder(self) -> ProgressiveEscalationResponder:
        if self._responder is None:
            self._responder = get_responder()
        return self._responder

    # === Main Processing ===

    async def handle_message(
        self,
        conversation_id: Optional[str],
        message: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> ConversationFlowResult:
        """
        Load, process and save a conversation turn under its lock.

        Args:
            conversation_id: Existing conversation (new one if None)
            message: User's message
            user_id: User identifier (defaults to the conversation id)
            session_id: Channel session identifier

        Returns:
            ConversationFlowResult
        """
        conversation_id = conversation_id or str(uuid4())
        store = self._get_store()

        async with store.lock(conversation_id):
            state = await store.get_or_create(
                conversation_id=conversation_id,
                user_id=user_id or "",
                session_id=session_id or "",
            )
            result = await self.process_message(message, state)
            await store.save(result.new_state)

        return result

    async def process_message(
        self,
        message: str,
        state: ConversationState,
        now: Optional[datetime] = None,
    ) -> ConversationFlowResult:
        """
        Process one message against a conversation state.

        Args:
            message: User's message
            state: Current state (not modified)
            now: Clock override

        Returns:
            ConversationFlowResult with the new state
        """
        start_time = time.perf_counter()
        now = now or datetime.now(timezone.utc)
        message_hash = hash_message(message)

        working = state.copy()
        if is_terminal_state(working.current_topic, working.current_stage):
            logger.info(f"Conversation {working.conversation_id} restarted after completion")
            working.restart()

        # 1. Safety analysis (always first)
        safety_result = self._analyze(message, working, now, message_hash)

        escalation_id = turn_escalation_id(working)
        turn = TurnContext(safety_result=safety_result, now=now, escalation_id=escalation_id)

        # 2. Route
        if safety_result.requires_escalation:
            handler = self._crisis_handler
            logger.warning(
                f"Escalation required for conversation {working.conversation_id}: "
                f"severity={safety_result.severity.value}, message_hash={message_hash}"
            )
            self._get_audit().log_crisis_detected(
                user_id=working.user_id,
                severity=safety_result.severity.value,
                categories=[c.value for c in safety_result.categories],
                message_hash=message_hash,
                conversation_id=working.conversation_id,
            )
        else:
            handler = self._select_handler(message, working)

        from_topic, from_stage = working.current_topic, working.current_stage

        # 3. Handle
        try:
            result = await handler.handle(message, working, turn)
            new_state = result.new_state
            validate_transition(from_topic, from_stage, new_state.current_topic, new_state.current_stage)
        except Exception as e:
            return self._handler_failure(
                handler, message, state, safety_result, escalation_id, e, start_time
            )

        # 4. Bookkeeping
        new_state.message_count += 1
        new_state.last_activity = now
        new_state.conversation_started = True
        new_state.add_message(message, now, settings.max_recent_messages)

        text = result.text
        if not new_state.has_seen_opening_statement:
            if handler is not self._crisis_handler:
                text = f"{OPENING_STATEMENT}\n\n{text}"
            new_state.has_seen_opening_statement = True

        # 5. Escalations (never awaited here)
        escalation_triggered = False
        if result.contact_escalation is not None:
            escalation_triggered = True
            escalation_id = result.contact_escalation.escalation_id
            self._schedule(
                self._get_escalations().process_contact_escalation(
                    result.contact_escalation, current_hour=now.hour
                ),
                escalation_id,
            )
        elif safety_result.requires_escalation:
            escalation_triggered = True
            new_state.escalation_id = escalation_id
            self._schedule_crisis_escalation(message, new_state, safety_result, escalation_id)
        else:
            escalation_id = None

        processing_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Conversation {new_state.conversation_id}: handler={handler.topic.value}, "
            f"{from_topic.value}/{from_stage.value} -> "
            f"{new_state.current_topic.value}/{new_state.current_stage.value}, "
            f"message_hash={message_hash}, time={processing_time_ms:.1f}ms"
        )

        return ConversationFlowResult(
            response=FlowResponse(
                text=text,
                suggested_actions=result.suggested_actions,
                attachments=result.attachments,
            ),
            new_state=new_state,
            escalation_triggered=escalation_triggered,
            conversation_ended=result.conversation_ended,
            safety_result=safety_result,
            escalation_id=escalation_id,
            processing_time_ms=processing_time_ms,
        )

    def _analyze(
        self,
        message: str,
        state: ConversationState,
        now: datetime,
        message_hash: str,
    ) -> SafetyResult:
        context = ConversationContext(
            user_id=state.user_id,
            session_id=state.session_id,
            message_history=state.history(),
            vulnerability_flags=list(state.context.get("vulnerability_flags", [])),
            previous_escalations=[state.escalation_id] if state.escalation_id else [],
        )
        try:
            return self._get_analyzer().analyze(message, context, now=now)
        except Exception as e:
            logger.critical(
                f"Safety analyzer raised for conversation {state.conversation_id} "
                f"(message_hash={message_hash}): {e}",
                exc_info=True,
            )
            return fail_safe_result()

    def _select_handler(self, message: str, state: ConversationState) -> BaseTopicHandler:
        """Most confident eligible handler; ties go to the current topic, then registration order."""
        best: Optional[BaseTopicHandler] = None
        best_confidence = 0.0

        for handler in self._handlers:
            confidence = handler.get_intent_confidence(message, state)
            if not handler.is_eligible(confidence, state):
                continue
            if best is None or confidence > best_confidence:
                best, best_confidence = handler, confidence
            elif (
                confidence == best_confidence
                and handler.topic == state.current_topic
                and best.topic != state.current_topic
            ):
                best = handler

        if best is None:
            return self._fallback_handler

        logger.debug(f"Selected handler {best.topic.value} (confidence={best_confidence:.2f})")
        return best

    def _handler_failure(
        self,
        handler: BaseTopicHandler,
        message: str,
        state: ConversationState,
        safety_result: SafetyResult,
        escalation_id: str,
        error: Exception,
        start_time: float,
    ) -> ConversationFlowResult:
        """
        Fallback reply; the conversation state is left as it was.

        An escalating verdict still schedules the crisis escalation and
        the reply carries the responder's crisis text, not the generic one.
        """
        kind = "returned an invalid state" if isinstance(error, HandlerStateError) else "failed"
        logger.error(
            f"Handler {handler.topic.value} {kind} for conversation {state.conversation_id}: {error}",
            exc_info=not isinstance(error, HandlerStateError),
        )
        self._get_audit().log_handler_failure(
            topic=handler.topic.value,
            conversation_id=state.conversation_id,
            error=type(error).__name__,
        )

        if not safety_result.requires_escalation:
            return ConversationFlowResult(
                response=FlowResponse(text=FALLBACK_TEXT, suggested_actions=list(FALLBACK_ACTIONS)),
                new_state=state.copy(),
                safety_result=safety_result,
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
            )

        new_state = state.copy()
        new_state.escalation_id = escalation_id
        self._schedule_crisis_escalation(message, new_state, safety_result, escalation_id)

        response = self._get_responder().respond(safety_result, message)
        return ConversationFlowResult(
            response=FlowResponse(
                text=response.text,
                suggested_actions=list(response.suggested_actions),
                attachments=response_attachments(response),
            ),
            new_state=new_state,
            escalation_triggered=True,
            safety_result=safety_result,
            escalation_id=escalation_id,
            processing_time_ms=(time.perf_counter() - start_time) * 1000,
        )

    # === Out-of-band escalation ===

    def _schedule_crisis_escalation(
        self,
        message: str,
        state: ConversationState,
        safety_result: SafetyResult,
        escalation_id: str,
    ) -> None:
        self._schedule(
            self._get_escalations().create_crisis_escalation(
                user_id=state.user_id,
                session_id=state.session_id,
                user_message=message,
                safety_result=safety_result,
                escalation_id=escalation_id,
            ),
            escalation_id,
        )

    def _schedule(self, work: Awaitable, escalation_id: Optional[str]) -> None:
        task = asyncio.create_task(self._deliver(work, escalation_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, work: Awaitable, escalation_id: Optional[str]) -> None:
        try:
            outcome = await work
        except NotificationDeliveryError as e:
            logger.error(f"Escalation {escalation_id} not delivered: {e}")
            return
        except Exception as e:
            logger.error(f"Escalation {escalation_id} failed: {e}", exc_info=True)
            return

        success = getattr(outcome, "success", True)
        if not success:
            logger.error(f"Escalation {escalation_id} rejected: {getattr(outcome, 'errors', [])}")

    async def drain(self) -> None:
        """Wait for all scheduled escalation deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_escalations(self) -> int:
        return len(self._tasks)


# Singleton
_flow_engine: Optional[ConversationFlowEngine] = None


def get_flow_engine() -> ConversationFlowEngine:
    """Get singleton ConversationFlowEngine."""
    global _flow_engine
    if _flow_engine is None:
        _flow_engine = ConversationFlowEngine()
    return _flow_engine
