"""
Safety module data models.

Pydantic models for trigger matching, safety analysis results and
the conversation context the analyzer reads.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# ==================================
# Enums
# ==================================

class Severity(str, Enum):
    """Safety severity, strictly ordered general < ... < crisis."""
    GENERAL = "general"
    EMOTIONAL_SUPPORT = "emotional_support"
    HIGH_CONCERN = "high_concern"
    CRISIS = "crisis"

    @property
    def rank(self) -> int:
        """Numeric rank, 1 (general) to 4 (crisis)."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.GENERAL: 1,
    Severity.EMOTIONAL_SUPPORT: 2,
    Severity.HIGH_CONCERN: 3,
    Severity.CRISIS: 4,
}


class TriggerCategory(str, Enum):
    """Categories of safety triggers."""
    SUICIDE_IDEATION = "suicide_ideation"
    SELF_HARM = "self_harm"
    SEVERE_DISTRESS = "severe_distress"
    LIFE_THREATENING = "life_threatening"
    SEVERE_BLEEDING = "severe_bleeding"
    EXTREME_PAIN = "extreme_pain"
    CONSCIOUSNESS_ISSUES = "consciousness_issues"
    IMMEDIATE_DANGER = "immediate_danger"
    MEDICAL_CONCERNS = "medical_concerns"
    MENTAL_HEALTH_CONCERNS = "mental_health_concerns"
    SOCIAL_CONCERNS = "social_concerns"
    EMOTIONAL_SUPPORT = "emotional_support"
    GENERAL_WELLBEING = "general_wellbeing"
    CALLBACK_REQUEST = "callback_request"
    CRISIS_SUPPORT = "crisis_support"


class MatchType(str, Enum):
    """How a trigger was matched."""
    EXACT = "exact"
    FUZZY = "fuzzy"
    PATTERN = "pattern"
    CONTEXT = "context"


# ==================================
# Analysis Models
# ==================================

class TriggerMatch(BaseModel):
    """A single trigger hit in a message."""
    trigger: str = Field(description="Trigger phrase or pattern id")
    confidence: float = Field(ge=0.0, le=1.0)
    category: TriggerCategory
    severity: Severity
    start: int = Field(default=0, description="Start position in normalized text")
    end: int = Field(default=0, description="End position in normalized text")
    match_type: MatchType

    class Config:
        frozen = True


class SafetyResult(BaseModel):
    """Verdict of one safety analysis. Never mutated after creation."""
    severity: Severity = Severity.GENERAL
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    requires_escalation: bool = False
    matches: list[TriggerMatch] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    contextual_concerns: list[str] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)
    analysis_time_ms: float = 0.0
    sla_violation: bool = False
    trigger_table_version: Optional[str] = None

    class Config:
        frozen = True

    @property
    def categories(self) -> list[TriggerCategory]:
        """Distinct matched categories in match order."""
        seen: list[TriggerCategory] = []
        for match in self.matches:
            if match.category not in seen:
                seen.append(match.category)
        return seen

    def has_category(self, *categories: TriggerCategory) -> bool:
        """Check whether any match belongs to one of the given categories."""
        return any(m.category in categories for m in self.matches)


# ==================================
# Context Models
# ==================================

class HistoryMessage(BaseModel):
    """A prior user message with its timestamp."""
    content: str
    timestamp: datetime


class ConversationContext(BaseModel):
    """What the analyzer knows about the conversation beyond the message."""
    user_id: str = ""
    session_id: str = ""
    message_history: list[HistoryMessage] = Field(default_factory=list)
    vulnerability_flags: list[str] = Field(default_factory=list)
    previous_escalations: list[str] = Field(default_factory=list)
