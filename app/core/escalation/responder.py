"""
Progressive Escalation Responder

Turns a SafetyResult into one of four fixed response levels:

    1. information  (general)            informative tone
    2. concern      (emotional_support)  supportive tone, support lines
    3. warning      (high_concern)       urgent tone, urgent contacts
    4. crisis       (crisis)             immediate tone, 999 first

Pure: no I/O, same text for the same verdict and query.
"""

import logging
import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from app.safety.models import SafetyResult, Severity, TriggerCategory

logger = logging.getLogger(__name__)


# ==================================
# Models
# ==================================

class ResponseType(str, Enum):
    INFORMATION = "information"
    CONCERN = "concern"
    WARNING = "warning"
    CRISIS = "crisis"


class Tone(str, Enum):
    INFORMATIVE = "informative"
    SUPPORTIVE = "supportive"
    URGENT = "urgent"
    IMMEDIATE = "immediate"


class SupportResource(BaseModel):
    """A helpline or service offered to the user."""
    name: str
    contact: str
    description: str
    type: str
    availability: str

    class Config:
        frozen = True


class EmergencyContact(BaseModel):
    """An emergency or urgent contact number."""
    service: str
    number: str
    availability: str
    priority: str  # immediate, urgent

    class Config:
        frozen = True


class AccessibilityFeatures(BaseModel):
    screen_reader_compatible: bool = True
    high_contrast: bool = True
    keyboard_navigable: bool = True
    text_size_adjustable: bool = True


class EscalationMetadata(BaseModel):
    priority: str
    requires_callback: bool
    estimated_response_time: str
    nurse_team_alert: bool


class EscalationResponse(BaseModel):
    """User-facing reply for a safety verdict."""
    escalation_level: int = Field(ge=1, le=4)
    response_type: ResponseType
    tone: Tone
    text: str
    disclaimers: list[str] = Field(default_factory=list)
    suggested_actions: list[str] = Field(default_factory=list)
    support_resources: list[SupportResource] = Field(default_factory=list)
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list)
    immediate_actions: list[str] = Field(default_factory=list)
    requires_escalation: bool = False
    nurse_escalation: bool = False
    contextual_response: bool = False
    mhra_compliant: bool = True
    accessibility_features: AccessibilityFeatures = Field(default_factory=AccessibilityFeatures)
    escalation_metadata: Optional[EscalationMetadata] = None


# ==================================
# Resource tables
# ==================================

SUPPORT_RESOURCES: dict[str, tuple[SupportResource, ...]] = {
    "emotional_support": (
        SupportResource(
            name="The Eve Appeal Support Line",
            contact="0207 605 0100",
            description="Specialist gynaecological cancer support and information",
            type="emotional_support",
            availability="Monday-Friday, 9am-5pm",
        ),
        SupportResource(
            name="Macmillan Cancer Support",
            contact="0808 808 00 00",
            description="Free cancer support and information service",
            type="emotional_support",
            availability="24/7",
        ),
    ),
    "health_guidance": (
        SupportResource(
            name="NHS 111",
            contact="111",
            description="Free non-emergency health advice and guidance",
            type="health_guidance",
            availability="24/7",
        ),
        SupportResource(
            name="GP Surgery",
            contact="Contact your local practice",
            description="Your primary healthcare provider",
            type="health_guidance",
            availability="Varies by practice",
        ),
    ),
    "family_support": (
        SupportResource(
            name="Family Support Services",
            contact="Via The Eve Appeal",
            description="Support for families affected by gynaecological cancers",
            type="family_support",
            availability="Monday-Friday, 9am-5pm",
        ),
    ),
    "crisis_support": (
        SupportResource(
            name="Samaritans",
            contact="116 123",
            description="Free 24/7 emotional support for anyone in distress",
            type="crisis_support",
            availability="24/7",
        ),
        SupportResource(
            name="Crisis Text Line",
            contact="Text SHOUT to 85258",
            description="Free 24/7 text support for crisis situations",
            type="crisis_support",
            availability="24/7",
        ),
    ),
}

# Ordered: emergency services first
EMERGENCY_CONTACTS: tuple[EmergencyContact, ...] = (
    EmergencyContact(service="Emergency Services", number="999", availability="24/7", priority="immediate"),
    EmergencyContact(service="NHS 111", number="111", availability="24/7", priority="urgent"),
    EmergencyContact(service="Samaritans", number="116 123", availability="24/7", priority="urgent"),
    EmergencyContact(service="Crisis Text Line", number="85258", availability="24/7", priority="urgent"),
)

URGENT_CONTACTS = tuple(c for c in EMERGENCY_CONTACTS if c.priority == "urgent")

LEVEL_BY_SEVERITY = {
    Severity.GENERAL: 1,
    Severity.EMOTIONAL_SUPPORT: 2,
    Severity.HIGH_CONCERN: 3,
    Severity.CRISIS: 4,
}

_RESPONSE_TYPES = (ResponseType.INFORMATION, ResponseType.CONCERN, ResponseType.WARNING, ResponseType.CRISIS)
_TONES = (Tone.INFORMATIVE, Tone.SUPPORTIVE, Tone.URGENT, Tone.IMMEDIATE)

_HEALTH_TOPICS = ("cervical", "ovarian", "screening", "cancer", "symptoms", "diagnosis")
_CONCERN_WORDS = ("worried", "scared", "terrified", "anxious", "family", "daughter", "mother")


# ==================================
# Policy check
# ==================================

_POLICY_RULES: tuple[tuple[str, re.Pattern], ...] = (
    ("clinical_instruction", re.compile(r"\byou\s+should\s+(take|stop)\b", re.IGNORECASE)),
    ("clinical_instruction", re.compile(r"\bstop\s+taking\s+your\b", re.IGNORECASE)),
    ("diagnosis", re.compile(r"\bi\s+(can\s+)?diagnose\b", re.IGNORECASE)),
    ("diagnosis", re.compile(r"\byou\s+(have|are\s+suffering\s+from)\s+(an?\s+)?\w*\s*(cancer|disease|infection|tumou?r)\b", re.IGNORECASE)),
    ("diagnosis", re.compile(r"\byour\s+diagnosis\s+is\b", re.IGNORECASE)),
)


def check_response_policy(text: str) -> list[str]:
    """
    Check user-facing text for diagnoses and clinical instructions.

    Returns:
        List of violated rule names (empty if compliant)
    """
    return [name for name, pattern in _POLICY_RULES if pattern.search(text)]


# ==================================
# Responder
# ==================================

class ProgressiveEscalationResponder:
    """Builds level 1-4 responses from a safety verdict."""

    def respond(self, result: SafetyResult, user_query: str) -> EscalationResponse:
        """
        Build the response for a verdict.

        Args:
            result: Safety verdict for the message
            user_query: The user's message (for contextual wording)

        Returns:
            EscalationResponse. Falls back to a safe level-2 response
            if generation fails or the text breaks response policy.
        """
        level = self.level_for(result.severity)

        try:
            match level:
                case 4:
                    response = self._crisis(result, user_query)
                case 3:
                    response = self._warning(result, user_query)
                case 2:
                    response = self._concern(result, user_query)
                case _:
                    response = self._information(result, user_query)
        except Exception as e:
            logger.error(f"Failed to generate level {level} response: {e}", exc_info=True)
            return self.fallback_response()

        violations = check_response_policy(response.text)
        if violations:
            logger.error(f"Level {level} response failed policy check: {violations}")
            return self.fallback_response()

        logger.debug(
            f"Escalation response generated: level={level}, "
            f"requires_escalation={response.requires_escalation}, "
            f"nurse_escalation={response.nurse_escalation}"
        )
        return response

    @staticmethod
    def level_for(severity: Severity) -> int:
        """Response level (1-4) for a severity."""
        return LEVEL_BY_SEVERITY.get(severity, 1)

    def fallback_response(self) -> EscalationResponse:
        """Safe response when normal generation is not possible."""
        return EscalationResponse(
            escalation_level=2,
            response_type=ResponseType.CONCERN,
            tone=Tone.SUPPORTIVE,
            text=(
                "I want to make sure you get the right support. Please speak to your GP "
                "or contact NHS 111 for health guidance. If this is an emergency, call 999 immediately. "
                "You can talk to the Samaritans any time on 116 123."
            ),
            disclaimers=[
                "This is a safety response due to system limitations.",
                "Please seek professional medical advice.",
                "Your safety and wellbeing are important.",
            ],
            suggested_actions=["Contact GP", "Call NHS 111", "Emergency: 999"],
            support_resources=list(SUPPORT_RESOURCES["health_guidance"]),
            emergency_contacts=list(URGENT_CONTACTS),
            requires_escalation=True,
            nurse_escalation=True,
        )

    # ==================================
    # Levels
    # ==================================

    def _base(self, level: int, text: str, contextual: bool) -> dict:
        return {
            "escalation_level": level,
            "response_type": _RESPONSE_TYPES[level - 1],
            "tone": _TONES[level - 1],
            "text": text,
            "contextual_response": contextual,
        }

    def _information(self, result: SafetyResult, query: str) -> EscalationResponse:
        topics, concerns = _extract_context(query)
        return EscalationResponse(
            **self._base(1, _information_text(topics), bool(topics or concerns)),
            disclaimers=[
                "This is general health information only and should not replace professional medical advice.",
                "Always consult your healthcare provider for medical concerns.",
                "The Eve Appeal is not a medical professional or healthcare provider.",
            ],
            suggested_actions=["Learn more", "Contact your GP", "Visit The Eve Appeal website"],
            requires_escalation=False,
        )

    def _concern(self, result: SafetyResult, query: str) -> EscalationResponse:
        topics, concerns = _extract_context(query)
        text = "I can hear that you're concerned, and it's completely understandable to feel worried about health issues. "
        if {"family", "daughter", "mother"} & set(concerns):
            text += "When someone we love receives a diagnosis or has health concerns, it can be overwhelming for the whole family. "
        if "diagnosis" in topics:
            text += "Receiving a diagnosis can bring up many emotions and questions. "
        text += "It would be helpful to speak to your GP about your concerns, as they can provide personalised guidance and support. "
        text += "Remember that support services are available to help you through this time."

        return EscalationResponse(
            **self._base(2, text, bool(topics or concerns)),
            disclaimers=[
                "This is general health information and emotional support.",
                "Please speak to your GP about any health concerns.",
                "Your wellbeing is important - reach out for professional support when needed.",
            ],
            suggested_actions=["Contact GP", "Speak to a nurse", "Access support services"],
            support_resources=[
                *SUPPORT_RESOURCES["emotional_support"],
                *SUPPORT_RESOURCES["health_guidance"],
            ],
            requires_escalation=True,
        )

    def _warning(self, result: SafetyResult, query: str) -> EscalationResponse:
        topics, concerns = _extract_context(query)
        text = "Based on what you've described, this may require urgent medical attention. "
        if result.has_category(TriggerCategory.SEVERE_BLEEDING):
            text += "Heavy or unusual bleeding should be evaluated by a healthcare professional as soon as possible. "
        if result.has_category(TriggerCategory.EXTREME_PAIN):
            text += "Severe pain that is persistent or worsening needs prompt medical assessment. "
        text += "Please contact NHS 111 for urgent health advice, or speak to your GP as soon as possible. "
        text += "If symptoms are severe or getting rapidly worse, consider going to A&E for immediate assessment."

        return EscalationResponse(
            **self._base(3, text, bool(topics or concerns)),
            disclaimers=[
                "Urgent medical attention may be needed.",
                "This is not a substitute for emergency medical services.",
                "Trust your instincts - seek help if you feel something is seriously wrong.",
            ],
            suggested_actions=["Call NHS 111", "Contact GP urgently", "Consider A&E if severe"],
            support_resources=[
                *SUPPORT_RESOURCES["health_guidance"],
                *SUPPORT_RESOURCES["emotional_support"],
            ],
            emergency_contacts=list(URGENT_CONTACTS),
            requires_escalation=True,
        )

    def _crisis(self, result: SafetyResult, query: str) -> EscalationResponse:
        topics, concerns = _extract_context(query)
        self_harm = is_self_harm_crisis(result)
        medical = is_medical_emergency(result)

        if self_harm:
            text = (
                "I'm very concerned about what you've shared. If you're having thoughts of self-harm "
                "or suicide, please know that you're not alone and help is available. Your life has value "
                "and there are people who want to support you through this difficult time. Please reach out "
                "to the Samaritans on 116 123 (free and available 24/7) or text SHOUT to 85258. "
                "If you're in immediate danger, please call 999."
            )
            suggested = ["Call Samaritans now", "Text SHOUT", "Call 999 if immediate danger"]
            immediate = ["Reach out for support", "Call crisis helpline", "Stay safe"]
        elif medical:
            text = (
                "This sounds like a medical emergency that requires immediate attention. Please call 999 "
                "right now for emergency medical services. If someone has collapsed or is unconscious, "
                "ensure they are safe and breathing while waiting for help to arrive. Time is critical in "
                "emergency situations - don't delay seeking help. You can also call the Samaritans on "
                "116 123 at any time if you need someone to talk to."
            )
            suggested = ["Call 999 immediately", "Get emergency medical help", "Contact emergency services"]
            immediate = ["Call 999 immediately", "Get to A&E", "Seek immediate medical help"]
        else:
            text = (
                "This appears to be a crisis situation requiring immediate professional help. Please call "
                "999 for emergency services or contact NHS 111 if you need urgent medical guidance. "
                "The Samaritans are available on 116 123, 24/7. Your safety is the most important thing right now."
            )
            suggested = ["Call 999 immediately", "Get emergency medical help", "Contact emergency services"]
            immediate = ["Call 999 immediately", "Get to A&E", "Seek immediate medical help"]

        return EscalationResponse(
            **self._base(4, text, bool(topics or concerns)),
            disclaimers=[
                "This is a crisis situation requiring immediate attention.",
                "Professional help is available and support is here for you.",
                "Your safety and wellbeing are the top priority.",
            ],
            suggested_actions=suggested,
            support_resources=[
                *SUPPORT_RESOURCES["crisis_support"],
                *SUPPORT_RESOURCES["emotional_support"],
            ],
            emergency_contacts=list(EMERGENCY_CONTACTS),
            immediate_actions=immediate,
            requires_escalation=True,
            nurse_escalation=True,
            escalation_metadata=EscalationMetadata(
                priority="immediate",
                requires_callback=True,
                estimated_response_time="Immediate",
                nurse_team_alert=True,
            ),
        )


def is_self_harm_crisis(result: SafetyResult) -> bool:
    return result.has_category(TriggerCategory.SUICIDE_IDEATION, TriggerCategory.SELF_HARM) or (
        "suicide_risk" in result.risk_factors
    )


def is_medical_emergency(result: SafetyResult) -> bool:
    return result.has_category(
        TriggerCategory.LIFE_THREATENING, TriggerCategory.CONSCIOUSNESS_ISSUES
    ) or ("medical_emergency" in result.risk_factors)


def _extract_context(query: str) -> tuple[list[str], list[str]]:
    lowered = query.lower()
    topics = [t for t in _HEALTH_TOPICS if t in lowered]
    concerns = [c for c in _CONCERN_WORDS if c in lowered]
    return topics, concerns


def _information_text(topics: list[str]) -> str:
    if "cervical" in topics and "screening" in topics:
        return (
            "Cervical screening is an important preventive health measure that helps detect early "
            "changes in cervical cells. Regular screening can help prevent cervical cancer by "
            "identifying abnormal cells before they become cancerous."
        )
    if "ovarian" in topics and "symptoms" in topics:
        return (
            "Ovarian cancer symptoms can include persistent bloating, pelvic or abdominal pain, "
            "difficulty eating or feeling full quickly, and needing to urinate more frequently. "
            "These symptoms can be common and have many causes, but if they persist or worsen, "
            "it's important to speak with your healthcare provider."
        )
    return (
        "I understand you're looking for health information. While I can provide general guidance, "
        "it's always best to discuss specific health concerns with a qualified healthcare professional "
        "who can provide personalised advice based on your individual circumstances."
    )


# Singleton
_responder: Optional[ProgressiveEscalationResponder] = None


def get_responder() -> ProgressiveEscalationResponder:
    """Get singleton responder."""
    global _responder
    if _responder is None:
        _responder = ProgressiveEscalationResponder()
    return _responder
