"""
Trigger Table

Versioned, immutable set of safety trigger phrases and patterns.
The analyzer reads whichever table is current; updates swap the whole
table via set_trigger_table() and never edit one in place.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from app.safety.models import Severity, TriggerCategory

logger = logging.getLogger(__name__)


_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    text = _NON_WORD.sub(" ", text.lower().strip())
    return _WHITESPACE.sub(" ", text).strip()


@dataclass(frozen=True)
class TriggerEntry:
    """A trigger phrase with its category and base severity."""

    phrase: str
    category: TriggerCategory
    severity: Severity

    @property
    def normalized(self) -> str:
        return normalize_text(self.phrase)


@dataclass(frozen=True)
class TriggerPattern:
    """A regex trigger, applied to normalized text."""

    pattern_id: str
    regex: str
    category: TriggerCategory
    severity: Severity
    confidence: float = 0.9

    @property
    def compiled(self) -> re.Pattern:
        return _compile(self.regex)


_PATTERN_CACHE: dict[str, re.Pattern] = {}


def _compile(regex: str) -> re.Pattern:
    if regex not in _PATTERN_CACHE:
        _PATTERN_CACHE[regex] = re.compile(regex)
    return _PATTERN_CACHE[regex]


@dataclass(frozen=True)
class TriggerTable:
    """
    Immutable trigger table.

    Attributes:
        version: Table version, recorded on every SafetyResult
        entries: Phrase triggers (exact and fuzzy passes)
        patterns: Regex triggers (pattern pass)
        distress_history_phrases: Phrases counted across recent history
        distress_language: Phrases that escalate high-risk users
    """

    version: str
    entries: tuple[TriggerEntry, ...] = field(default_factory=tuple)
    patterns: tuple[TriggerPattern, ...] = field(default_factory=tuple)
    distress_history_phrases: tuple[str, ...] = field(default_factory=tuple)
    distress_language: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict) -> "TriggerTable":
        """
        Build a table from a plain dict (e.g. parsed JSON).

        Expected shape:
            {
                "version": "2024.1",
                "triggers": [{"phrase", "category", "severity"}],
                "patterns": [{"id", "regex", "category", "severity", "confidence"}],
                "distress_history_phrases": [...],
                "distress_language": [...]
            }

        Raises:
            ValueError: If a category or severity is unknown, or a regex is invalid
        """
        entries = tuple(
            TriggerEntry(
                phrase=t["phrase"],
                category=TriggerCategory(t["category"]),
                severity=Severity(t["severity"]),
            )
            for t in data.get("triggers", [])
        )
        patterns = []
        for p in data.get("patterns", []):
            try:
                re.compile(p["regex"])
            except re.error as e:
                raise ValueError(f"Invalid trigger pattern {p.get('id')}: {e}") from e
            patterns.append(
                TriggerPattern(
                    pattern_id=p["id"],
                    regex=p["regex"],
                    category=TriggerCategory(p["category"]),
                    severity=Severity(p["severity"]),
                    confidence=float(p.get("confidence", 0.9)),
                )
            )

        return cls(
            version=str(data["version"]),
            entries=entries,
            patterns=tuple(patterns),
            distress_history_phrases=tuple(data.get("distress_history_phrases", ())),
            distress_language=tuple(data.get("distress_language", ())),
        )

    @classmethod
    def from_json_file(cls, path: str | Path) -> "TriggerTable":
        """Load a table from a JSON file."""
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


# ==================================
# Built-in table
# ==================================

_C = TriggerCategory
_S = Severity

_BUILTIN_TRIGGERS: dict[Severity, dict[TriggerCategory, tuple[str, ...]]] = {
    _S.CRISIS: {
        _C.SUICIDE_IDEATION: (
            "want to die",
            "kill myself",
            "end my life",
            "take my own life",
            "suicide",
            "suicidal",
            "better off dead",
            "no reason to live",
            "end it all",
        ),
        _C.SELF_HARM: (
            "hurt myself",
            "harm myself",
            "self harm",
            "self harming",
            "cutting myself",
            "overdose",
        ),
        _C.LIFE_THREATENING: (
            "chest pain",
            "can't breathe",
            "cannot breathe",
            "not breathing",
            "heart attack",
        ),
        _C.CONSCIOUSNESS_ISSUES: (
            "unconscious",
            "collapsed",
            "passing out",
            "keep passing out",
        ),
        _C.IMMEDIATE_DANGER: (
            "in danger",
            "not safe at home",
            "going to hurt me",
        ),
    },
    _S.HIGH_CONCERN: {
        _C.SEVERE_DISTRESS: (
            "can't cope",
            "cannot cope",
            "breaking down",
            "falling apart",
            "hopeless",
            "desperate",
        ),
        _C.SEVERE_BLEEDING: (
            "heavy bleeding",
            "bleeding heavily",
            "won't stop bleeding",
            "haemorrhage",
        ),
        _C.EXTREME_PAIN: (
            "severe pain",
            "unbearable pain",
            "excruciating",
            "agony",
        ),
        _C.MEDICAL_CONCERNS: (
            "bleeding after menopause",
            "postmenopausal bleeding",
            "bleeding after sex",
            "blood in my urine",
        ),
        _C.MENTAL_HEALTH_CONCERNS: (
            "panic attack",
            "severe depression",
        ),
        _C.SOCIAL_CONCERNS: (
            "no one to talk to",
            "completely alone",
            "domestic abuse",
        ),
        _C.CRISIS_SUPPORT: (
            "need help now",
            "need urgent help",
        ),
    },
    _S.EMOTIONAL_SUPPORT: {
        _C.EMOTIONAL_SUPPORT: (
            "worried",
            "scared",
            "frightened",
            "terrified",
            "anxious",
            "upset",
            "stressed",
        ),
        _C.GENERAL_WELLBEING: (
            "feeling low",
            "feeling down",
            "can't sleep",
        ),
        _C.CALLBACK_REQUEST: (
            "call me back",
            "please call me",
            "ring me back",
            "someone to call me",
        ),
    },
}

_BUILTIN_PATTERNS = (
    TriggerPattern(
        pattern_id="intent_to_die",
        regex=r"\b(i\s+)?(want|wanna|gonna)\s+(to\s+)?(die|kill\s+myself)\b",
        category=_C.SUICIDE_IDEATION,
        severity=_S.CRISIS,
    ),
    TriggerPattern(
        pattern_id="unable_to_cope",
        regex=r"\b(can\s?t|cannot)\s+(take|handle|cope|go\s+on)\b",
        category=_C.SEVERE_DISTRESS,
        severity=_S.HIGH_CONCERN,
    ),
    TriggerPattern(
        pattern_id="chest_pain",
        regex=r"\b(chest|heart)\s+pain\b",
        category=_C.LIFE_THREATENING,
        severity=_S.CRISIS,
    ),
    TriggerPattern(
        pattern_id="breathing_difficulty",
        regex=r"\b(can\s?t|cannot)\s+breathe\b",
        category=_C.LIFE_THREATENING,
        severity=_S.CRISIS,
    ),
    TriggerPattern(
        pattern_id="cutting",
        regex=r"\bcut(ting)?\s+(myself|my\s+(wrists?|arms?|legs?|skin))\b",
        category=_C.SELF_HARM,
        severity=_S.CRISIS,
    ),
)

DEFAULT_TRIGGER_TABLE = TriggerTable(
    version="builtin-1.0",
    entries=tuple(
        TriggerEntry(phrase=phrase, category=category, severity=severity)
        for severity, categories in _BUILTIN_TRIGGERS.items()
        for category, phrases in categories.items()
        for phrase in phrases
    ),
    patterns=_BUILTIN_PATTERNS,
    distress_history_phrases=("worse", "getting bad", "can't handle", "breaking down"),
    distress_language=(
        "overwhelmed",
        "can't cope",
        "struggling",
        "breaking down",
        "hopeless",
        "desperate",
        "exhausted",
        "giving up",
    ),
)


# Current table
_table: Optional[TriggerTable] = None


def get_trigger_table() -> TriggerTable:
    """
    Get the current trigger table.

    Loads settings.trigger_table_path on first use if configured,
    otherwise the built-in table.
    """
    global _table
    if _table is None:
        from app.config import settings

        if settings.trigger_table_path:
            _table = TriggerTable.from_json_file(settings.trigger_table_path)
            logger.info(
                f"Loaded trigger table {_table.version} from {settings.trigger_table_path}"
            )
        else:
            _table = DEFAULT_TRIGGER_TABLE
    return _table


def set_trigger_table(table: TriggerTable) -> None:
    """Swap in a new trigger table."""
    global _table
    previous = _table.version if _table else None
    _table = table
    logger.info(f"Trigger table swapped: {previous} -> {table.version}")
