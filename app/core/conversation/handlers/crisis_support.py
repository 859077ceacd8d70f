"""
Crisis support handler.

Takes every turn the safety analyzer flags for escalation, replies with
the progressive escalation response, and collects callback details
under vital interests when the user offers them.
"""

import logging
import re
from typing import Optional

from app.core.conversation.handlers.base import BaseTopicHandler, HandlerResult, TurnContext
from app.core.conversation.handlers.nurse_escalation import NurseEscalationHandler, sanitize_name
from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic
from app.core.escalation.models import (
    ContactDetails,
    ContactEscalationRequest,
    EscalationType,
    Urgency,
)
from app.core.escalation.responder import (
    EscalationResponse,
    ProgressiveEscalationResponder,
    get_responder,
)
from app.safety.consent_manager import ConsentManager, get_consent_manager
from app.safety.models import Severity
from app.safety.trigger_table import normalize_text

logger = logging.getLogger(__name__)

PHONE_IN_TEXT = re.compile(r"(\+44\s?7\d{3}|\(?07\d{3}\)?)\s?\d{3}\s?\d{3}")
EMAIL_IN_TEXT = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
NAME_IN_TEXT = re.compile(r"\b(?:my name is|my name s|name is|this is)\s+([A-Za-z][A-Za-z'-]+)", re.IGNORECASE)

_SAFETY_PLANNING = re.compile(r"\b(safety plan|stay safe|keep (myself )?safe|what can i do|how do i cope|coping)\b")
_CALLBACK = re.compile(r"\b(callback|call back|call me|ring me|nurse)\b")

SAFETY_PLAN_TEXT = (
    "Here are some steps that can help you stay safe right now:\n\n"
    "• Remove anything you could use to hurt yourself, or go somewhere you feel safe\n"
    "• Contact someone you trust and let them know how you're feeling\n"
    "• Call the Samaritans on 116 123 (free, 24/7) or text SHOUT to 85258\n"
    "• If you're in immediate danger, call 999 or go to A&E\n\n"
    "Would you like one of our nurses to call you back? If so, share your name and a mobile number."
)


def extract_contact(message: str) -> ContactDetails:
    """Pull any name, UK mobile number or email out of free text."""
    phone = PHONE_IN_TEXT.search(message)
    email = EMAIL_IN_TEXT.search(message)
    name = NAME_IN_TEXT.search(message)
    return ContactDetails(
        name=name.group(1) if name else None,
        phone=phone.group(0).strip() if phone else None,
        email=email.group(0).rstrip(".").lower() if email else None,
        preferred_contact="phone" if phone else ("email" if email else None),
    )


def _merge(current: Optional[ContactDetails], found: ContactDetails) -> ContactDetails:
    merged = current.model_copy() if current else ContactDetails()
    for name in ("name", "phone", "email", "preferred_contact"):
        value = getattr(found, name)
        if value and not getattr(merged, name):
            setattr(merged, name, value)
    return merged


def response_attachments(response: EscalationResponse) -> list[dict]:
    """Escalation response details as reply attachments."""
    attachments = []
    if response.emergency_contacts:
        attachments.append({
            "type": "emergency_contacts",
            "items": [c.model_dump() for c in response.emergency_contacts],
        })
    if response.support_resources:
        attachments.append({
            "type": "support_resources",
            "items": [r.model_dump() for r in response.support_resources],
        })
    if response.disclaimers:
        attachments.append({"type": "disclaimers", "items": list(response.disclaimers)})
    attachments.append({
        "type": "escalation_response",
        "escalation_level": response.escalation_level,
        "response_type": response.response_type.value,
        "tone": response.tone.value,
        "nurse_escalation": response.nurse_escalation,
        "immediate_actions": list(response.immediate_actions),
    })
    return attachments


class CrisisSupportHandler(BaseTopicHandler):
    """Crisis routing. Selected directly by the engine when escalation is required."""

    topic = Topic.CRISIS_SUPPORT
    supported_stages = frozenset({
        Stage.CRISIS_RESPONSE,
        Stage.SAFETY_PLANNING,
        Stage.CONTACT_COLLECTION,
        Stage.ESCALATION,
    })

    def __init__(
        self,
        nurse_handler: Optional[NurseEscalationHandler] = None,
        responder: Optional[ProgressiveEscalationResponder] = None,
        consent_manager: Optional[ConsentManager] = None,
    ):
        super().__init__()
        self._nurse = nurse_handler or NurseEscalationHandler(consent_manager)
        self._responder = responder
        self._consent = consent_manager

    def _get_responder(self) -> ProgressiveEscalationResponder:
        if self._responder is None:
            self._responder = get_responder()
        return self._responder

    def _get_consent(self) -> ConsentManager:
        if self._consent is None:
            self._consent = get_consent_manager()
        return self._consent

    async def handle(
        self,
        message: str,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        result = turn.safety_result
        in_crisis = state.current_topic == self.topic

        if (
            result.requires_escalation
            and result.severity.rank < Severity.HIGH_CONCERN.rank
            and not in_crisis
        ):
            # Callback request without a crisis: normal consent flow
            return await self._nurse.handle(message, state, turn)

        found = extract_contact(message)
        normalized = normalize_text(message)
        if in_crisis or result.severity == Severity.CRISIS:
            wants_callback = in_crisis and (
                state.current_stage == Stage.CONTACT_COLLECTION or _CALLBACK.search(normalized)
            )
            if found.has_contact_method() or wants_callback:
                collected = self._collect_contact(message, found, state, turn)
                if result.requires_escalation:
                    response = self._get_responder().respond(result, message)
                    collected.text = f"{response.text}\n\n{collected.text}"
                    collected.attachments = response_attachments(response)
                    state.context["crisis_severity"] = result.severity.value
                return collected

        if result.requires_escalation:
            return self._crisis_response(message, state, turn)

        if _SAFETY_PLANNING.search(normalized):
            self.log_activity("safety planning", state)
            state.move_to(Topic.CRISIS_SUPPORT, Stage.SAFETY_PLANNING)
            return HandlerResult(
                text=SAFETY_PLAN_TEXT,
                new_state=state,
                suggested_actions=["Call Samaritans", "Request a nurse callback", "Call 999"],
            )

        return HandlerResult(
            text=(
                "I'm still here with you. If you're in immediate danger, please call 999. "
                "You can talk to the Samaritans any time on 116 123, or text SHOUT to 85258. "
                "If you'd like a nurse to call you back, just share your name and mobile number."
            ),
            new_state=state,
            suggested_actions=["Call Samaritans", "Request a nurse callback", "Safety plan"],
        )

    def _crisis_response(self, message: str, state: ConversationState, turn: TurnContext) -> HandlerResult:
        response = self._get_responder().respond(turn.safety_result, message)
        self.log_activity(f"level {response.escalation_level} response", state)

        text = response.text
        if response.nurse_escalation:
            text += (
                "\n\nI've alerted our nurse team. If you'd like a nurse to call you back, "
                "please share your name and a mobile number."
            )

        state.move_to(Topic.CRISIS_SUPPORT, Stage.CRISIS_RESPONSE)
        state.context["crisis_severity"] = turn.safety_result.severity.value
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=list(response.suggested_actions),
            attachments=response_attachments(response),
        )

    def _collect_contact(
        self,
        message: str,
        found: ContactDetails,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        contact = _merge(state.contact_info, found)
        if (
            not contact.name
            and state.current_stage == Stage.CONTACT_COLLECTION
            and not found.has_contact_method()
            and not turn.safety_result.requires_escalation
        ):
            candidate = sanitize_name(message)
            if len(candidate) >= 2 and len(candidate.split()) <= 3:
                contact.name = candidate

        state.contact_info = contact

        if not contact.has_contact_method():
            state.move_to(Topic.CRISIS_SUPPORT, Stage.CONTACT_COLLECTION)
            return HandlerResult(
                text="What mobile number can our nurse call you on? (UK numbers only, e.g. 07123 456789)",
                new_state=state,
                suggested_actions=["Call Samaritans", "Call 999"],
            )
        if not contact.name or len(contact.name) < 2:
            state.move_to(Topic.CRISIS_SUPPORT, Stage.CONTACT_COLLECTION)
            return HandlerResult(
                text="Thank you. What name should our nurse ask for?",
                new_state=state,
                suggested_actions=["Call Samaritans", "Call 999"],
            )

        self.log_activity("crisis callback requested", state)
        self._get_consent().record_vital_interests(
            user_id=state.user_id,
            conversation_id=state.conversation_id,
        )
        request = ContactEscalationRequest(
            user_id=state.user_id,
            session_id=state.session_id,
            contact_details=contact,
            escalation_type=EscalationType.CRISIS,
            urgency=Urgency.IMMEDIATE,
            reason="Crisis callback request",
            consent_status=state.consent_status,
            safety_result=turn.safety_result if turn.safety_result.requires_escalation else None,
            escalation_id=turn.escalation_id,
        )
        state.escalation_id = turn.escalation_id
        state.context["legal_basis"] = "vital_interests"
        state.move_to(Topic.CRISIS_SUPPORT, Stage.ESCALATION)

        text = (
            f"Thank you, {contact.name}. I've asked our nurse team to call you as a priority, "
            "usually within 2 hours.\n\n"
            "While you wait: if you're in immediate danger, call 999. "
            "The Samaritans are there for you on 116 123, 24/7."
        )
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=["Safety plan", "Call Samaritans", "Call 999"],
            contact_escalation=request,
        )
