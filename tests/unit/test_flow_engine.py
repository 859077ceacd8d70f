"""Tests for the conversation flow engine."""

import asyncio

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from app.core.content.search import SearchResult
from app.core.conversation.engine import ConversationFlowEngine, turn_escalation_id
from app.core.conversation.handlers import (
    FALLBACK_TEXT,
    OPENING_STATEMENT,
    CrisisSupportHandler,
    ExitIntentHandler,
    GreetingHandler,
    HandlerResult,
    HealthInformationHandler,
    NurseEscalationHandler,
)
from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic
from app.core.conversation.store import ConversationStore
from app.core.escalation.models import EscalationType, Urgency
from app.infra.notifications import DeliveryResult, DeliveryStatus, NotificationDeliveryError
from app.safety.analyzer import SafetyAnalyzer
from app.safety.audit_logger import AuditEventType, AuditLogger
from app.safety.consent_manager import ConsentManager, ConsentStatus
from app.safety.models import Severity
from app.safety.trigger_table import DEFAULT_TRIGGER_TABLE


NOW = datetime(2024, 5, 14, 10, 0, tzinfo=timezone.utc)


class TestConversationFlowEngine:
    """Test routing, escalation scheduling and state handling."""

    @pytest.fixture
    def audit(self):
        """In-memory audit logger."""
        return AuditLogger(log_to_stdout=False)

    @pytest.fixture
    def escalation_service(self):
        """Mock escalation service."""
        service = MagicMock()
        service.create_crisis_escalation = AsyncMock()
        service.process_contact_escalation = AsyncMock()
        return service

    @pytest.fixture
    def health_handler(self):
        """Health handler with no content search results."""
        search = AsyncMock()
        search.search_content = AsyncMock(return_value=SearchResult.not_found())
        return HealthInformationHandler(search_client=search)

    @pytest.fixture
    def consent(self, audit):
        """Consent ledger."""
        return ConsentManager(audit_logger=audit)

    @pytest.fixture
    def analyzer(self, audit):
        """Analyzer pinned to the built-in table."""
        return SafetyAnalyzer(table=DEFAULT_TRIGGER_TABLE, sla_ms=10_000, audit_logger=audit)

    @pytest.fixture
    def engine(self, analyzer, audit, escalation_service, health_handler, consent):
        """Engine with explicit handlers and an in-memory store."""
        nurse = NurseEscalationHandler(consent_manager=consent)
        return ConversationFlowEngine(
            analyzer=analyzer,
            escalation_service=escalation_service,
            store=ConversationStore(),
            handlers=[GreetingHandler(), health_handler, nurse, ExitIntentHandler()],
            crisis_handler=CrisisSupportHandler(nurse_handler=nurse, consent_manager=consent),
            audit_logger=audit,
        )

    @pytest.fixture
    def state(self):
        """Fresh conversation."""
        return ConversationState(conversation_id="conv-1", user_id="user-1", session_id="sess-1")

    async def _converse(self, engine, state, *messages):
        results = []
        for message in messages:
            result = await engine.process_message(message, state, now=NOW)
            state = result.new_state
            results.append(result)
        return results

    # === Routing ===

    @pytest.mark.asyncio
    async def test_crisis_message(self, engine, state, escalation_service, audit):
        """Test a crisis message goes to crisis support and schedules an escalation."""
        result = await engine.process_message("I want to die", state, now=NOW)
        await engine.drain()

        assert result.new_state.current_topic == Topic.CRISIS_SUPPORT
        assert result.new_state.current_stage == Stage.CRISIS_RESPONSE
        assert result.escalation_triggered is True
        assert result.safety_result.severity == Severity.CRISIS
        assert "999" in result.response.text
        assert "116 123" in result.response.text
        assert OPENING_STATEMENT not in result.response.text
        assert result.new_state.has_seen_opening_statement is True

        expected_id = turn_escalation_id(state)
        assert result.escalation_id == expected_id
        assert result.new_state.escalation_id == expected_id
        kwargs = escalation_service.create_crisis_escalation.call_args.kwargs
        assert kwargs["escalation_id"] == expected_id
        assert kwargs["user_id"] == "user-1"

        events = [e.event_type for e in audit._events]
        assert AuditEventType.CRISIS_DETECTED in events
        crisis_event = next(e for e in audit._events if e.event_type == AuditEventType.CRISIS_DETECTED)
        assert "I want to die" not in crisis_event.to_json()

    @pytest.mark.asyncio
    async def test_health_question(self, engine, state, escalation_service):
        """Test a health question gets level 1 information and no escalation."""
        result = await engine.process_message("Tell me about cervical screening", state, now=NOW)

        assert result.new_state.current_topic == Topic.HEALTH_INFORMATION
        assert result.new_state.current_stage == Stage.INFORMATION_GATHERING
        assert result.escalation_triggered is False
        assert result.escalation_id is None
        assert result.response.text.startswith(OPENING_STATEMENT)
        assert "general health information only" in result.response.text
        assert all(a["type"] != "emergency_contacts" for a in result.response.attachments)
        escalation_service.create_crisis_escalation.assert_not_called()

    @pytest.mark.asyncio
    async def test_nurse_request(self, engine, state, escalation_service):
        """Test a nurse request asks for consent without escalating."""
        result = await engine.process_message("Can I speak to a nurse please?", state, now=NOW)

        assert result.new_state.current_topic == Topic.NURSE_ESCALATION
        assert result.new_state.current_stage == Stage.CONSENT_CAPTURE
        assert result.escalation_triggered is False
        escalation_service.process_contact_escalation.assert_not_called()

    @pytest.mark.asyncio
    async def test_full_nurse_flow(self, engine, state, escalation_service):
        """Test consent, contact collection and confirmation end in one callback request."""
        results = await self._converse(
            engine,
            state,
            "Can I speak to a nurse please?",
            "Yes, I consent",
            "Jane",
            "07555 123 456",
            "skip",
            "Yes",
        )
        await engine.drain()

        stages = [r.new_state.current_stage for r in results]
        assert stages == [
            Stage.CONSENT_CAPTURE,
            Stage.CONTACT_COLLECTION,
            Stage.CONTACT_COLLECTION,
            Stage.CONTACT_COLLECTION,
            Stage.ESCALATION,
            Stage.SATISFACTION_CHECK,
        ]
        assert [r.escalation_triggered for r in results] == [False] * 5 + [True]

        escalation_service.process_contact_escalation.assert_called_once()
        request = escalation_service.process_contact_escalation.call_args.args[0]
        assert request.escalation_type == EscalationType.NURSE_CALLBACK
        assert request.consent_status == ConsentStatus.GRANTED
        assert request.contact_details.name == "Jane"
        assert request.contact_details.phone == "07555 123 456"
        assert escalation_service.process_contact_escalation.call_args.kwargs["current_hour"] == 10
        assert results[-1].escalation_id == request.escalation_id
        assert results[-1].new_state.message_count == 6

    @pytest.mark.asyncio
    async def test_crisis_contact_collection(self, engine, state, escalation_service):
        """Test contact offered after a crisis is escalated under vital interests."""
        results = await self._converse(
            engine,
            state,
            "I want to die",
            "my name is Sarah, call me on 07555 123 456",
        )
        await engine.drain()

        final = results[-1]
        assert final.new_state.current_topic == Topic.CRISIS_SUPPORT
        assert final.new_state.current_stage == Stage.ESCALATION
        assert final.escalation_triggered is True

        request = escalation_service.process_contact_escalation.call_args.args[0]
        assert request.escalation_type == EscalationType.CRISIS
        assert request.urgency == Urgency.IMMEDIATE
        assert request.contact_details.phone == "07555 123 456"
        assert escalation_service.create_crisis_escalation.call_count == 1

    @pytest.mark.asyncio
    async def test_callback_request_without_crisis(self, engine, state, escalation_service):
        """Test a callback request starts nurse consent and raises a general escalation."""
        result = await engine.process_message("Please call me back", state, now=NOW)
        await engine.drain()

        assert result.new_state.current_topic == Topic.NURSE_ESCALATION
        assert result.new_state.current_stage == Stage.CONSENT_CAPTURE
        assert result.escalation_triggered is True
        kwargs = escalation_service.create_crisis_escalation.call_args.kwargs
        assert kwargs["safety_result"].severity == Severity.EMOTIONAL_SUPPORT

    @pytest.mark.asyncio
    async def test_exit(self, engine, state):
        """Test goodbye ends the conversation."""
        results = await self._converse(engine, state, "Tell me about cervical screening", "Goodbye")

        assert results[-1].conversation_ended is True
        assert results[-1].new_state.current_topic == Topic.END_OF_CONVERSATION

    @pytest.mark.asyncio
    async def test_restart_after_end(self, engine, state):
        """Test a message after the end starts over with the same identity."""
        results = await self._converse(
            engine, state, "Tell me about cervical screening", "Goodbye", "Hello"
        )

        final = results[-1].new_state
        assert final.current_topic == Topic.CONVERSATION_START
        assert final.current_stage == Stage.TOPIC_DETECTION
        assert final.conversation_id == "conv-1"
        assert final.message_count == 3
        assert OPENING_STATEMENT not in results[-1].response.text

    @pytest.mark.asyncio
    async def test_opening_statement_once(self, engine, state):
        """Test the opening statement is shown on the first reply only."""
        results = await self._converse(engine, state, "Hello", "Tell me about cervical screening")

        assert results[0].response.text.startswith(OPENING_STATEMENT)
        assert OPENING_STATEMENT not in results[1].response.text

    # === Purity and idempotence ===

    @pytest.mark.asyncio
    async def test_input_state_not_mutated(self, engine, state):
        """Test the caller's state is left untouched."""
        before = state.to_dict()

        await engine.process_message("Can I speak to a nurse please?", state, now=NOW)

        assert state.to_dict() == before

    @pytest.mark.asyncio
    async def test_replay_same_turn(self, engine, state):
        """Test replaying a turn yields the same state and escalation id."""
        first = await engine.process_message("I want to die", state, now=NOW)
        second = await engine.process_message("I want to die", state, now=NOW)
        await engine.drain()

        assert first.escalation_id == second.escalation_id
        assert first.new_state.to_dict() == second.new_state.to_dict()
        assert first.response.text == second.response.text

    # === Failures ===

    @pytest.mark.asyncio
    async def test_handler_exception(self, engine, state, health_handler, audit):
        """Test a failing handler gives the fallback reply and keeps the state."""
        with patch.object(health_handler, "handle", side_effect=RuntimeError("boom")):
            result = await engine.process_message("Tell me about cervical screening", state, now=NOW)

        assert result.response.text == FALLBACK_TEXT
        assert result.new_state.to_dict() == state.to_dict()
        assert audit._events[-1].event_type == AuditEventType.HANDLER_FAILURE
        assert audit._events[-1].error_message == "RuntimeError"

    @pytest.mark.asyncio
    async def test_handler_invalid_state(self, engine, state, health_handler):
        """Test an illegal transition is rejected."""
        bad = state.copy()
        bad.move_to(Topic.NURSE_ESCALATION, Stage.CONTACT_COLLECTION)

        with patch.object(
            health_handler, "handle", return_value=HandlerResult(text="x", new_state=bad)
        ):
            result = await engine.process_message("Tell me about cervical screening", state, now=NOW)

        assert result.response.text == FALLBACK_TEXT
        assert result.new_state.current_topic == Topic.CONVERSATION_START
        assert result.new_state.current_stage == Stage.GREETING

    @pytest.mark.asyncio
    async def test_handler_failure_signposts_emergency_lines(self, engine, state, health_handler):
        """Test the generic fallback still points to 999 and the Samaritans."""
        with patch.object(health_handler, "handle", side_effect=RuntimeError("boom")):
            result = await engine.process_message("Tell me about cervical screening", state, now=NOW)

        assert "999" in result.response.text
        assert "116 123" in result.response.text

    @pytest.mark.asyncio
    async def test_crisis_handler_failure_still_escalates(
        self, engine, state, escalation_service, audit
    ):
        """Test a failing crisis handler still schedules the escalation and gives crisis text."""
        with patch.object(engine._crisis_handler, "handle", side_effect=RuntimeError("boom")):
            result = await engine.process_message("I want to die", state, now=NOW)
        await engine.drain()

        assert result.escalation_triggered is True
        assert result.escalation_id == turn_escalation_id(state)
        assert result.new_state.escalation_id == result.escalation_id
        assert result.response.text != FALLBACK_TEXT
        assert "999" in result.response.text
        assert "116 123" in result.response.text

        escalation_service.create_crisis_escalation.assert_called_once()
        kwargs = escalation_service.create_crisis_escalation.call_args.kwargs
        assert kwargs["escalation_id"] == result.escalation_id
        assert kwargs["safety_result"].severity == Severity.CRISIS

        # State is otherwise unchanged
        assert result.new_state.current_topic == state.current_topic
        assert result.new_state.message_count == state.message_count
        assert any(e.event_type == AuditEventType.HANDLER_FAILURE for e in audit._events)

    @pytest.mark.asyncio
    async def test_crisis_handler_invalid_state_still_escalates(
        self, engine, state, escalation_service
    ):
        """Test an illegal crisis handler transition still schedules the escalation."""
        bad = state.copy()
        bad.move_to(Topic.NURSE_ESCALATION, Stage.CONTACT_COLLECTION)

        with patch.object(
            engine._crisis_handler, "handle", return_value=HandlerResult(text="x", new_state=bad)
        ):
            result = await engine.process_message("I want to die", state, now=NOW)
        await engine.drain()

        assert result.escalation_triggered is True
        assert "999" in result.response.text
        escalation_service.create_crisis_escalation.assert_called_once()

    @pytest.mark.asyncio
    async def test_analyzer_failure_is_crisis(self, engine, state, analyzer, escalation_service):
        """Test the engine fails safe when the analyzer raises."""
        with patch.object(analyzer, "analyze", side_effect=RuntimeError("boom")):
            result = await engine.process_message("hello", state, now=NOW)
        await engine.drain()

        assert result.safety_result.severity == Severity.CRISIS
        assert result.new_state.current_topic == Topic.CRISIS_SUPPORT
        assert result.escalation_triggered is True
        escalation_service.create_crisis_escalation.assert_called_once()

    @pytest.mark.asyncio
    async def test_delivery_failure_not_raised(self, engine, state, escalation_service):
        """Test an undelivered escalation does not fail the turn."""
        failed = DeliveryResult(escalation_id="esc", status=DeliveryStatus.FAILED)
        escalation_service.create_crisis_escalation = AsyncMock(
            side_effect=NotificationDeliveryError("esc", 3, failed)
        )

        result = await engine.process_message("I want to die", state, now=NOW)
        await engine.drain()

        assert "999" in result.response.text
        assert engine.pending_escalations == 0

    # === Persistence ===

    @pytest.mark.asyncio
    async def test_concurrent_messages_serialized(self, engine):
        """Test two messages for one conversation are applied one after the other."""
        with patch("app.core.conversation.store.get_redis", return_value=None):
            await asyncio.gather(
                engine.handle_message("conv-lock", "Hello"),
                engine.handle_message("conv-lock", "Tell me about cervical screening"),
            )
            stored = await engine._get_store().get("conv-lock")

        assert stored.message_count == 2
        assert len(stored.recent_messages) == 2

    @pytest.mark.asyncio
    async def test_handle_message_persists(self, engine):
        """Test the new state is saved for the next turn."""
        with patch("app.core.conversation.store.get_redis", return_value=None):
            first = await engine.handle_message(None, "Can I speak to a nurse please?", user_id="user-9")
            second = await engine.handle_message(first.new_state.conversation_id, "Yes, I consent")

        assert first.new_state.user_id == "user-9"
        assert second.new_state.current_stage == Stage.CONTACT_COLLECTION
