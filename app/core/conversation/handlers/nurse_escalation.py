"""
Nurse escalation handler.

Flow: consent capture -> contact collection (name, phone, email,
preferred contact) -> confirmation -> callback request. No contact
detail is asked for or sent before consent is granted.
"""

import logging
import re
from typing import Optional

from app.core.conversation.handlers.base import (
    EVE_APPEAL_NURSE_LINE,
    BaseTopicHandler,
    HandlerResult,
    TurnContext,
)
from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic
from app.core.escalation.models import (
    ContactDetails,
    ContactEscalationRequest,
    EscalationType,
    Urgency,
)
from app.core.escalation.service import (
    EMAIL_PATTERN,
    UK_MOBILE_PATTERN,
    estimate_callback_time,
)
from app.safety.consent_manager import (
    NURSE_CONSULTATION_DATA_CATEGORIES,
    NURSE_CONSULTATION_PURPOSE,
    ConsentManager,
    ConsentStatus,
    LegalBasis,
    get_consent_manager,
)
from app.safety.trigger_table import normalize_text

logger = logging.getLogger(__name__)

CONTACT_FIELDS = ("name", "phone", "email", "preferred_contact")

FIELD_PROMPTS = {
    "name": "What's your first name?",
    "phone": "What's your mobile number? (UK numbers only, e.g. 07123 456789)",
    "email": "What's your email address? (You can say 'skip' if you'd rather not share one.)",
    "preferred_contact": "How would you prefer to be contacted - by phone call or email?",
}

_POSITIVE = re.compile(r"^(yes|yeah|yep|ok|okay|sure|alright|agree|consent|correct|that s right)\b|\bi (agree|consent|accept)\b|\b(go ahead|proceed|continue|arrange)\b")
_NEGATIVE = re.compile(r"^(no|nope|nah|not now|maybe later)\b|\b(don t|do not) (want|need|agree)\b")
_CANCEL = re.compile(r"\b(cancel|stop|quit|nevermind|never mind|withdraw|changed my mind)\b")
_INFO_REQUEST = re.compile(r"\b(what|which|how|why)\b.*\b(information|details|data)\b|\b(tell me more|explain|clarify|what happens|what will)\b")
_SKIP = re.compile(r"^(skip|none|no email|n a|no)$")
_EDIT = re.compile(r"\b(edit|change|update|wrong)\b.*\b(name|phone|number|email)\b")

_URGENT_WORDS = ("urgent", "emergency", "worried", "scared", "pain", "bleeding")
_PRIORITY_WORDS = ("concerned", "anxious", "soon", "asap")


def assess_urgency(message: str) -> Urgency:
    """Callback urgency from the wording of the request."""
    lowered = message.lower()
    if any(w in lowered for w in _URGENT_WORDS):
        return Urgency.HIGH
    if any(w in lowered for w in _PRIORITY_WORDS):
        return Urgency.MEDIUM
    return Urgency.LOW


def next_missing_field(contact: Optional[ContactDetails], skipped: list[str]) -> Optional[str]:
    """First contact field still to collect, in collection order."""
    for name in CONTACT_FIELDS:
        if name in skipped:
            continue
        if contact is None or not getattr(contact, name):
            return name
    return None


def sanitize_name(value: str) -> str:
    return re.sub(r"[^\w\s'-]", "", value.strip())[:50]


def validate_field(name: str, value: str) -> Optional[str]:
    """Error message for a bad field value, or None."""
    match name:
        case "name":
            if len(sanitize_name(value)) < 2:
                return "Please provide a name with at least 2 characters."
        case "phone":
            if not UK_MOBILE_PATTERN.match(value.strip()):
                return "Please provide a valid UK mobile number (e.g. 07123 456789)."
        case "email":
            if not EMAIL_PATTERN.match(value.strip()):
                return "Please provide a valid email address."
    return None


class NurseEscalationHandler(BaseTopicHandler):
    """Arranges a callback from The Eve Appeal's specialist nurses."""

    topic = Topic.NURSE_ESCALATION
    supported_stages = frozenset({
        Stage.GREETING,
        Stage.TOPIC_DETECTION,
        Stage.INFORMATION_GATHERING,
        Stage.SATISFACTION_CHECK,
        Stage.CONSENT_CAPTURE,
        Stage.CONTACT_COLLECTION,
        Stage.ESCALATION,
    })
    patterns = (
        (r"\b(speak|talk|chat)( to| with)( a| an| the)? (nurse|professional|specialist|someone|person|human)\b", 0.9),
        (r"\b(contact|see|need|want)( a| an| the)? (nurse|specialist)\b", 0.85),
        (r"\b(call me back|callback|call back|ring me)\b", 0.85),
        (r"\b(professional advice|medical advice|expert help)\b", 0.8),
        (r"\b(urgent|worried|concerned|anxious) (about|need|want)\b", 0.7),
        (r"\bnurse\b", 0.7),
        (r"\b(appointment|consultation)\b", 0.6),
    )
    keywords = (
        "nurse", "speak to", "talk to", "call back", "appointment",
        "contact", "worried", "concerned", "professional advice",
        "specialist", "expert", "medical professional", "healthcare",
        "urgent", "priority", "escalate", "help me", "need support",
    )

    def __init__(self, consent_manager: Optional[ConsentManager] = None):
        super().__init__()
        self._consent = consent_manager

    def _get_consent(self) -> ConsentManager:
        if self._consent is None:
            self._consent = get_consent_manager()
        return self._consent

    def get_intent_confidence(self, message: str, state: ConversationState) -> float:
        """Stay in the nurse flow once it has started."""
        confidence = super().get_intent_confidence(message, state)
        if state.current_topic == self.topic:
            return min(confidence + 0.3, 1.0)
        return confidence

    def is_eligible(self, confidence: float, state: ConversationState) -> bool:
        # Callbacks requested during a crisis are taken by crisis support
        return state.current_topic != Topic.CRISIS_SUPPORT and super().is_eligible(confidence, state)

    async def handle(
        self,
        message: str,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        normalized = normalize_text(message)

        if state.current_topic != self.topic:
            return self.start(message, state)

        match state.current_stage:
            case Stage.CONSENT_CAPTURE:
                return self._consent_capture(normalized, state)
            case Stage.CONTACT_COLLECTION:
                return self._contact_collection(message, normalized, state)
            case Stage.ESCALATION:
                return self._confirmation(message, normalized, state, turn)
            case Stage.SATISFACTION_CHECK:
                return self._satisfaction(normalized, state)
            case _:
                return self.start(message, state)

    # ==================================
    # Consent
    # ==================================

    def start(self, message: str, state: ConversationState) -> HandlerResult:
        """Offer a nurse callback and ask for consent."""
        self.log_activity("nurse callback offered", state)
        urgency = assess_urgency(message)

        state.move_to(Topic.NURSE_ESCALATION, Stage.CONSENT_CAPTURE)
        state.consent_status = ConsentStatus.REQUESTED
        state.context["urgency"] = urgency.value
        self._get_consent().request_consent(
            user_id=state.user_id,
            purpose=NURSE_CONSULTATION_PURPOSE,
            conversation_id=state.conversation_id,
        )

        timing = "Priority callback" if urgency == Urgency.HIGH else "A callback at a time that suits you"
        text = (
            "I can connect you with one of our specialist nurses from The Eve Appeal.\n\n"
            "What happens next:\n"
            "• I'll collect your contact details securely\n"
            "• A specialist nurse will call you back\n"
            f"• {timing}\n"
            "• Free, confidential support and guidance\n\n"
            f"{self._get_consent().get_consent_text()}\n\n"
            "Are you happy to proceed with providing your contact details?"
        )
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=["Yes, I consent", "Tell me more first", "No thanks, not now"],
        )

    def _consent_capture(self, normalized: str, state: ConversationState) -> HandlerResult:
        if _POSITIVE.search(normalized):
            return self._consent_granted(state)
        if _NEGATIVE.search(normalized) or _CANCEL.search(normalized):
            return self._consent_declined(state)
        if _INFO_REQUEST.search(normalized):
            text = (
                "To arrange the callback I'll ask for your first name, a UK mobile number, "
                "an email address (optional) and how you'd prefer to be contacted. "
                "These details are only shared with The Eve Appeal nurse team for this callback.\n\n"
                "Would you like to go ahead?"
            )
        else:
            text = "Just to check - are you happy for me to collect your contact details so a nurse can call you back? (Yes or no)"
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=["Yes, I consent", "No thanks, not now"],
        )

    def _consent_granted(self, state: ConversationState) -> HandlerResult:
        self.log_activity("consent granted", state)
        self._get_consent().grant_consent(
            user_id=state.user_id,
            purpose=NURSE_CONSULTATION_PURPOSE,
            data_categories=list(NURSE_CONSULTATION_DATA_CATEGORIES),
            legal_basis=LegalBasis.CONSENT,
            conversation_id=state.conversation_id,
        )
        state.consent_status = ConsentStatus.GRANTED
        state.move_to(Topic.NURSE_ESCALATION, Stage.CONTACT_COLLECTION)
        state.context["expected_field"] = "name"
        state.context["skipped_fields"] = []

        text = (
            "Thank you for your consent. I'll now collect your contact details securely.\n\n"
            f"Let's start with your name. {FIELD_PROMPTS['name']}"
        )
        return HandlerResult(text=text, new_state=state, suggested_actions=["Cancel request"])

    def _consent_declined(self, state: ConversationState) -> HandlerResult:
        self.log_activity("consent declined", state)
        self._get_consent().decline_consent(
            user_id=state.user_id,
            purpose=NURSE_CONSULTATION_PURPOSE,
            conversation_id=state.conversation_id,
        )
        state.consent_status = ConsentStatus.DECLINED
        state.context.pop("urgency", None)
        self.return_to_previous(state)

        text = (
            "That's absolutely fine - you're in control of your information.\n\n"
            "Other ways to get support:\n"
            f"• Call The Eve Appeal's Ask Eve line: {EVE_APPEAL_NURSE_LINE} (free, confidential)\n"
            "• Browse health information: I can help you find trusted resources\n\n"
            "Is there anything else I can help you with today?"
        )
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=["Health information", "Support resources", "End conversation"],
        )

    # ==================================
    # Contact collection
    # ==================================

    def _contact_collection(self, message: str, normalized: str, state: ConversationState) -> HandlerResult:
        if _CANCEL.search(normalized):
            return self._cancel(state)

        expected = state.context.get("expected_field") or next_missing_field(
            state.contact_info, state.context.get("skipped_fields", [])
        )
        skipped = list(state.context.get("skipped_fields", []))
        contact = state.contact_info or ContactDetails()

        if expected == "email" and _SKIP.match(normalized):
            skipped.append("email")
        elif expected == "preferred_contact":
            if "email" in normalized and contact.email:
                contact.preferred_contact = "email"
            elif "either" in normalized or "both" in normalized:
                contact.preferred_contact = "either"
            else:
                contact.preferred_contact = "phone"
        elif expected:
            error = validate_field(expected, message)
            if error:
                return HandlerResult(
                    text=f"{error}\n\nPlease try again: {FIELD_PROMPTS[expected]}",
                    new_state=state,
                    suggested_actions=["Cancel request"],
                )
            value = sanitize_name(message) if expected == "name" else message.strip()
            if expected == "email":
                value = value.lower()
            setattr(contact, expected, value)

        state.contact_info = contact
        state.context["skipped_fields"] = skipped
        remaining = next_missing_field(contact, skipped)
        if remaining == "preferred_contact" and not contact.email:
            contact.preferred_contact = "phone"
            remaining = None

        if remaining:
            state.context["expected_field"] = remaining
            actions = ["Phone call", "Email", "Either is fine"] if remaining == "preferred_contact" else ["Cancel request"]
            return HandlerResult(text=FIELD_PROMPTS[remaining], new_state=state, suggested_actions=actions)

        return self._confirm_details(state)

    def _confirm_details(self, state: ConversationState) -> HandlerResult:
        contact = state.contact_info
        state.context["expected_field"] = "confirmation"
        state.move_to(Topic.NURSE_ESCALATION, Stage.ESCALATION)

        preferred = {"email": "Email", "either": "Either"}.get(contact.preferred_contact or "", "Phone call")
        text = (
            "Let me confirm your contact details:\n\n"
            f"• Name: {contact.name}\n"
            f"• Phone: {contact.phone}\n"
            f"• Email: {contact.email or 'Not provided'}\n"
            f"• Preferred contact: {preferred}\n\n"
            "Is this information correct? If yes, I'll arrange your nurse callback now."
        )
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=["Yes, arrange callback", "Edit phone number", "Cancel request"],
        )

    def _confirmation(
        self,
        message: str,
        normalized: str,
        state: ConversationState,
        turn: TurnContext,
    ) -> HandlerResult:
        if _CANCEL.search(normalized):
            return self._cancel(state)

        edit = _EDIT.search(normalized)
        if edit or _NEGATIVE.search(normalized):
            field_name = {"number": "phone"}.get(edit.group(2), edit.group(2)) if edit else "name"
            contact = state.contact_info or ContactDetails()
            if edit:
                setattr(contact, field_name, None)
            else:
                contact = ContactDetails()
                state.context["skipped_fields"] = []
            state.contact_info = contact
            state.context["expected_field"] = field_name
            state.move_to(Topic.NURSE_ESCALATION, Stage.CONTACT_COLLECTION)
            return HandlerResult(
                text=f"No problem, let's fix that. {FIELD_PROMPTS[field_name]}",
                new_state=state,
                suggested_actions=["Cancel request"],
            )

        if not _POSITIVE.search(normalized):
            return HandlerResult(
                text="Shall I arrange the nurse callback with these details? (Yes or no)",
                new_state=state,
                suggested_actions=["Yes, arrange callback", "Edit phone number", "Cancel request"],
            )

        return self._arrange_callback(state, turn)

    def _arrange_callback(self, state: ConversationState, turn: TurnContext) -> HandlerResult:
        urgency = Urgency(state.context.get("urgency", Urgency.LOW.value))
        request = ContactEscalationRequest(
            user_id=state.user_id,
            session_id=state.session_id,
            contact_details=state.contact_info,
            escalation_type=EscalationType.NURSE_CALLBACK,
            urgency=urgency,
            reason="Nurse callback request",
            consent_status=state.consent_status,
            escalation_id=turn.escalation_id,
        )
        estimate = estimate_callback_time(EscalationType.NURSE_CALLBACK, urgency, turn.now.hour)

        self.log_activity("nurse callback requested", state)
        state.escalation_id = turn.escalation_id
        state.context.pop("expected_field", None)
        state.context["nurse_callback_arranged"] = True
        state.move_to(Topic.NURSE_ESCALATION, Stage.SATISFACTION_CHECK)

        text = (
            "✅ Nurse Callback Requested\n\n"
            "Your request is being sent to our specialist nurse team.\n\n"
            f"• Our nurse will contact you on: {state.contact_info.phone}\n"
            f"• Expected callback: {estimate}\n"
            f"• Reference: {turn.escalation_id[:8]}\n\n"
            "The call will come from The Eve Appeal. If this becomes an emergency, call 999.\n\n"
            "Is there anything else I can help you with while you wait?"
        )
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=["Health information", "Support resources", "End conversation"],
            contact_escalation=request,
        )

    def _cancel(self, state: ConversationState) -> HandlerResult:
        self.log_activity("callback cancelled", state)
        if state.consent_status == ConsentStatus.GRANTED:
            self._get_consent().withdraw_consent(
                user_id=state.user_id,
                purpose=NURSE_CONSULTATION_PURPOSE,
                reason="callback_cancelled",
            )
            state.consent_status = ConsentStatus.DECLINED
        state.contact_info = None
        for key in ("expected_field", "skipped_fields", "urgency"):
            state.context.pop(key, None)
        self.return_to_previous(state)

        text = (
            "Your nurse callback request has been cancelled and the details you shared have been removed. "
            "No problem at all.\n\n"
            f"You can call The Eve Appeal's Ask Eve line on {EVE_APPEAL_NURSE_LINE}, "
            "or request a callback again any time.\n\n"
            "How else can I support you today?"
        )
        return HandlerResult(
            text=text,
            new_state=state,
            suggested_actions=["Health information", "Try callback again", "End conversation"],
        )

    # ==================================
    # Wrap-up
    # ==================================

    def _satisfaction(self, normalized: str, state: ConversationState) -> HandlerResult:
        if _NEGATIVE.search(normalized) or normalized in ("nothing", "that s all", "thats all"):
            state.move_to(Topic.END_OF_CONVERSATION, Stage.COMPLETION)
            return HandlerResult(
                text="Thank you for talking with Ask Eve Assist. Take care, and our nurse will be in touch soon.",
                new_state=state,
                suggested_actions=["Start new conversation"],
                conversation_ended=True,
            )

        state.move_to(Topic.HEALTH_INFORMATION, Stage.TOPIC_DETECTION)
        return HandlerResult(
            text="Of course. What would you like to know about?",
            new_state=state,
            suggested_actions=["Ovarian cancer symptoms", "Cervical screening", "Support options"],
        )
