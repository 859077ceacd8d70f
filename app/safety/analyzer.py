"""
Safety Analyzer

Scores a user message against the trigger table and produces a
SafetyResult. Four passes: exact phrases, fuzzy phrases, regex
patterns, then conversation context (history and user risk flags).

The analyzer never lets an internal error suppress escalation: any
exception produces a fail-safe crisis verdict.
"""

import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.config import settings
from app.safety.audit_logger import AuditLogger, get_audit_logger, hash_message
from app.safety.models import (
    ConversationContext,
    MatchType,
    SafetyResult,
    Severity,
    TriggerCategory,
    TriggerMatch,
)
from app.safety.trigger_table import TriggerTable, get_trigger_table, normalize_text

logger = logging.getLogger(__name__)

NO_MATCH_CONFIDENCE = 0.1
HISTORY_WINDOW = timedelta(hours=1)
HISTORY_DISTRESS_THRESHOLD = 3
HIGH_FREQUENCY_THRESHOLD = 10


def levenshtein(a: str, b: str, max_distance: Optional[int] = None) -> int:
    """
    Edit distance between two strings.

    With max_distance set, stops early and returns max_distance + 1 once
    the distance is known to exceed it.
    """
    if len(a) < len(b):
        a, b = b, a
    if max_distance is not None and len(a) - len(b) > max_distance:
        return max_distance + 1
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        # Row minimums never decrease
        if max_distance is not None and min(current) > max_distance:
            return max_distance + 1
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Levenshtein similarity in [0, 1]."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def required_pieces(phrase: str, threshold: float) -> tuple[str, ...]:
    """
    Split a phrase into pieces, at least one of which survives verbatim in
    any string similar enough to count as a fuzzy match.

    A match needs distance < (1 - threshold) * longest, and the length gap
    bounds longest by len(phrase) / threshold. Splitting the phrase into
    one more piece than the largest such distance leaves one piece
    untouched by every edit. Returns () when no split is possible.
    """
    n = len(phrase)
    if n == 0 or not 0 < threshold < 1:
        return ()
    max_distance = math.ceil((1 - threshold) * n / threshold) - 1
    count = max_distance + 1
    if count < 1 or count > n:
        return ()
    return tuple(phrase[i * n // count:(i + 1) * n // count] for i in range(count))


def fail_safe_result(analysis_time_ms: float = 0.0) -> SafetyResult:
    """Verdict used whenever analysis cannot complete."""
    return SafetyResult(
        severity=Severity.CRISIS,
        confidence=1.0,
        requires_escalation=True,
        matches=[],
        risk_factors=["analysis_failure"],
        contextual_concerns=["system_error"],
        recommended_actions=["immediate_human_review"],
        analysis_time_ms=analysis_time_ms,
    )


class SafetyAnalyzer:
    """
    Rule-based safety analyzer.

    Usage:
        analyzer = get_safety_analyzer()
        result = analyzer.analyze("I want to die", ConversationContext(user_id="u1"))
        if result.requires_escalation:
            ...
    """

    def __init__(
        self,
        table: Optional[TriggerTable] = None,
        sla_ms: Optional[float] = None,
        fuzzy_threshold: Optional[float] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """
        Initialize analyzer.

        Args:
            table: Fixed trigger table (defaults to the current global table on each call)
            sla_ms: Latency budget in milliseconds
            fuzzy_threshold: Minimum similarity for a fuzzy match (exclusive)
            audit_logger: Audit trail for SLA violations and failures
        """
        self._table = table
        self.sla_ms = sla_ms if sla_ms is not None else settings.safety_analysis_sla_ms
        self.fuzzy_threshold = (
            fuzzy_threshold if fuzzy_threshold is not None else settings.fuzzy_match_threshold
        )
        self._audit = audit_logger

    @property
    def table(self) -> TriggerTable:
        return self._table or get_trigger_table()

    def _get_audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    # ==================================
    # Public API
    # ==================================

    def analyze(
        self,
        message: str,
        context: Optional[ConversationContext] = None,
        now: Optional[datetime] = None,
    ) -> SafetyResult:
        """
        Analyze a message.

        Args:
            message: Raw user message
            context: Conversation history and user risk flags
            now: Reference time for history windows (defaults to UTC now)

        Returns:
            SafetyResult. Never raises.
        """
        start = time.perf_counter()
        context = context or ConversationContext()
        now = _aware(now or datetime.now(timezone.utc))

        try:
            result = self._run(message, context, now, start)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.critical(
                f"Safety analysis failed for message hash={hash_message(str(message))}: {e}",
                exc_info=True,
            )
            self._get_audit().log_analyzer_failure(
                error=type(e).__name__,
                user_id=context.user_id or None,
                message_hash=hash_message(str(message)),
            )
            return fail_safe_result(elapsed_ms)

        if result.sla_violation:
            logger.warning(
                f"Safety analysis exceeded SLA: {result.analysis_time_ms:.1f}ms > {self.sla_ms}ms"
            )
            self._get_audit().log_sla_violation(
                analysis_time_ms=result.analysis_time_ms,
                sla_ms=self.sla_ms,
                user_id=context.user_id or None,
            )

        return result

    # ==================================
    # Passes
    # ==================================

    def _run(
        self,
        message: str,
        context: ConversationContext,
        now: datetime,
        start: float,
    ) -> SafetyResult:
        table = self.table
        text = normalize_text(message)

        matches = self._exact_matches(text, table)
        matches += self._fuzzy_matches(text, table, {m.trigger for m in matches})
        matches += self._pattern_matches(text, table, matches)
        matches += self._context_matches(text, context, table, now)

        severity, confidence = self._decide(matches)
        requires_escalation = severity in (Severity.HIGH_CONCERN, Severity.CRISIS) or (
            severity == Severity.EMOTIONAL_SUPPORT
            and any(m.category == TriggerCategory.CALLBACK_REQUEST for m in matches)
        )

        elapsed_ms = (time.perf_counter() - start) * 1000

        return SafetyResult(
            severity=severity,
            confidence=confidence,
            requires_escalation=requires_escalation,
            matches=matches,
            risk_factors=self._risk_factors(matches, context),
            contextual_concerns=self._contextual_concerns(severity, context, now),
            recommended_actions=self._recommended_actions(severity, matches),
            analysis_time_ms=elapsed_ms,
            sla_violation=elapsed_ms > self.sla_ms,
            trigger_table_version=table.version,
        )

    def _exact_matches(self, text: str, table: TriggerTable) -> list[TriggerMatch]:
        padded = f" {text} "
        matches = []
        for entry in table.entries:
            phrase = entry.normalized
            if not phrase:
                continue
            index = padded.find(f" {phrase} ")
            if index == -1:
                continue
            matches.append(
                TriggerMatch(
                    trigger=entry.phrase,
                    confidence=1.0,
                    category=entry.category,
                    severity=entry.severity,
                    start=index,
                    end=index + len(phrase),
                    match_type=MatchType.EXACT,
                )
            )
        return matches

    def _fuzzy_matches(
        self,
        text: str,
        table: TriggerTable,
        already_matched: set[str],
    ) -> list[TriggerMatch]:
        words = text.split()
        offsets = []
        position = 0
        for word in words:
            offsets.append(position)
            position += len(word) + 1

        threshold = self.fuzzy_threshold
        windows: dict[int, list[str]] = {}
        matches = []
        for entry in table.entries:
            if entry.phrase in already_matched:
                continue
            phrase = entry.normalized
            size = len(phrase.split())
            if size == 0 or size > len(words):
                continue

            pieces = required_pieces(phrase, threshold)
            if pieces and not any(piece in text for piece in pieces):
                continue

            if size not in windows:
                windows[size] = [" ".join(words[i:i + size]) for i in range(len(words) - size + 1)]

            best: Optional[tuple[float, int, int]] = None
            for i, window in enumerate(windows[size]):
                longest = max(len(window), len(phrase))
                # Length gap alone rules out a match
                if abs(len(window) - len(phrase)) / longest > 1 - threshold:
                    continue
                if pieces and not any(piece in window for piece in pieces):
                    continue
                distance = levenshtein(window, phrase, int((1 - threshold) * longest) + 1)
                score = 1.0 - distance / longest
                if score > threshold and (best is None or score > best[0]):
                    best = (score, offsets[i], offsets[i] + len(window))

            if best is not None:
                matches.append(
                    TriggerMatch(
                        trigger=entry.phrase,
                        confidence=round(best[0], 3),
                        category=entry.category,
                        severity=entry.severity,
                        start=best[1],
                        end=best[2],
                        match_type=MatchType.FUZZY,
                    )
                )
        return matches

    def _pattern_matches(
        self,
        text: str,
        table: TriggerTable,
        existing: list[TriggerMatch],
    ) -> list[TriggerMatch]:
        matches = []
        for pattern in table.patterns:
            found = pattern.compiled.search(text)
            if not found:
                continue
            start, end = found.span()
            # Same category already covering this span
            if any(
                m.category == pattern.category and m.start < end and start < m.end
                for m in existing
            ):
                continue
            matches.append(
                TriggerMatch(
                    trigger=pattern.pattern_id,
                    confidence=pattern.confidence,
                    category=pattern.category,
                    severity=pattern.severity,
                    start=start,
                    end=end,
                    match_type=MatchType.PATTERN,
                )
            )
        return matches

    def _context_matches(
        self,
        text: str,
        context: ConversationContext,
        table: TriggerTable,
        now: datetime,
    ) -> list[TriggerMatch]:
        matches = []

        recent = [
            normalize_text(m.content)
            for m in context.message_history
            if now - _aware(m.timestamp) <= HISTORY_WINDOW
        ]
        history_phrases = [normalize_text(p) for p in table.distress_history_phrases]
        distress_count = sum(
            1 for content in recent for phrase in history_phrases if _contains(content, phrase)
        )
        if distress_count >= HISTORY_DISTRESS_THRESHOLD:
            matches.append(
                TriggerMatch(
                    trigger="escalating_distress_pattern",
                    confidence=0.8,
                    category=TriggerCategory.SEVERE_DISTRESS,
                    severity=Severity.HIGH_CONCERN,
                    match_type=MatchType.CONTEXT,
                )
            )

        if "high_risk" in context.vulnerability_flags:
            distress_language = [normalize_text(p) for p in table.distress_language]
            if any(_contains(text, phrase) for phrase in distress_language):
                matches.append(
                    TriggerMatch(
                        trigger="high_risk_user_distress",
                        confidence=0.9,
                        category=TriggerCategory.SEVERE_DISTRESS,
                        severity=Severity.CRISIS,
                        match_type=MatchType.CONTEXT,
                    )
                )

        return matches

    # ==================================
    # Aggregation
    # ==================================

    @staticmethod
    def _decide(matches: list[TriggerMatch]) -> tuple[Severity, float]:
        if not matches:
            return Severity.GENERAL, NO_MATCH_CONFIDENCE
        decisive = max(matches, key=lambda m: (m.severity.rank, m.confidence))
        return decisive.severity, decisive.confidence

    @staticmethod
    def _risk_factors(matches: list[TriggerMatch], context: ConversationContext) -> list[str]:
        factors = []
        if sum(1 for m in matches if m.severity == Severity.CRISIS) > 1:
            factors.append("multiple_crisis_indicators")
        if any(m.confidence > 0.9 for m in matches):
            factors.append("high_confidence_triggers")
        if context.vulnerability_flags:
            factors.append("vulnerable_user_profile")
        if context.previous_escalations:
            factors.append("previous_escalation_history")
        return factors

    @staticmethod
    def _contextual_concerns(
        severity: Severity,
        context: ConversationContext,
        now: datetime,
    ) -> list[str]:
        concerns = []
        last_hour = [
            m for m in context.message_history if now - _aware(m.timestamp) <= HISTORY_WINDOW
        ]
        if len(last_hour) > HIGH_FREQUENCY_THRESHOLD:
            concerns.append("high_message_frequency")
        if severity != Severity.GENERAL and (now.hour < 6 or now.hour > 22):
            concerns.append("late_night_distress")
        return concerns

    @staticmethod
    def _recommended_actions(severity: Severity, matches: list[TriggerMatch]) -> list[str]:
        match severity:
            case Severity.CRISIS:
                actions = [
                    "immediate_nurse_notification",
                    "crisis_resource_provision",
                    "safety_plan_activation",
                ]
                if any(m.category == TriggerCategory.LIFE_THREATENING for m in matches):
                    actions.append("emergency_services_guidance")
                return actions
            case Severity.HIGH_CONCERN:
                return ["nurse_notification", "support_resource_provision", "follow_up_scheduling"]
            case Severity.EMOTIONAL_SUPPORT:
                return ["emotional_support_resources", "gentle_inquiry"]
            case _:
                return []


def _contains(text: str, phrase: str) -> bool:
    return bool(phrase) and f" {phrase} " in f" {text} "


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


# Singleton
_analyzer: Optional[SafetyAnalyzer] = None


def get_safety_analyzer() -> SafetyAnalyzer:
    """Get singleton SafetyAnalyzer."""
    global _analyzer
    if _analyzer is None:
        _analyzer = SafetyAnalyzer()
    return _analyzer
