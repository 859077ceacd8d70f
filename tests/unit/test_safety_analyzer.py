"""Tests for the safety analyzer."""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from app.safety.analyzer import (
    NO_MATCH_CONFIDENCE,
    SafetyAnalyzer,
    fail_safe_result,
    levenshtein,
    required_pieces,
    similarity,
)
from app.safety.models import (
    ConversationContext,
    HistoryMessage,
    MatchType,
    Severity,
    TriggerCategory,
)
from app.safety.trigger_table import DEFAULT_TRIGGER_TABLE


NOW = datetime(2024, 5, 14, 14, 0, tzinfo=timezone.utc)


class TestEditDistance:
    """Test Levenshtein helpers."""

    def test_levenshtein(self):
        """Test classic distance."""
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("same", "same") == 0

    def test_similarity(self):
        """Test normalized similarity."""
        assert similarity("abc", "abc") == 1.0
        assert similarity("", "") == 1.0
        assert similarity("want to dye", "want to die") == pytest.approx(1 - 1 / 11)

    def test_levenshtein_bounded(self):
        """Test the early exit reports anything past the bound as bound + 1."""
        assert levenshtein("kitten", "sitting", max_distance=3) == 3
        assert levenshtein("kitten", "sitting", max_distance=1) == 2
        assert levenshtein("abc", "abcdefgh", max_distance=2) == 3
        assert levenshtein("want to dye", "want to die", max_distance=2) == 1

    def test_required_pieces_survive_edits(self):
        """Test every close variant keeps one piece of the phrase verbatim."""
        pieces = required_pieces("want to die", 0.8)

        assert "".join(pieces) == "want to die"
        for variant in ("want to dye", "wnt to die", "want 2 die", "wanna to die", "want ot die"):
            assert levenshtein(variant, "want to die") <= 2
            assert any(piece in variant for piece in pieces), variant

    def test_required_pieces_edge_cases(self):
        """Test thresholds and phrases that cannot be split."""
        assert required_pieces("", 0.8) == ()
        assert required_pieces("die", 1.0) == ()
        assert required_pieces("ab", 0.1) == ()


class TestSafetyAnalyzer:
    """Test message analysis."""

    @pytest.fixture
    def audit(self):
        """Mock audit logger."""
        return MagicMock()

    @pytest.fixture
    def analyzer(self, audit):
        """Analyzer pinned to the built-in table."""
        return SafetyAnalyzer(table=DEFAULT_TRIGGER_TABLE, sla_ms=10_000, audit_logger=audit)

    def test_exact_crisis(self, analyzer):
        """Test exact suicide ideation phrase."""
        result = analyzer.analyze("I want to die", now=NOW)

        assert result.severity == Severity.CRISIS
        assert result.requires_escalation is True
        assert result.confidence == 1.0
        assert result.has_category(TriggerCategory.SUICIDE_IDEATION)
        assert "immediate_nurse_notification" in result.recommended_actions
        assert result.trigger_table_version == DEFAULT_TRIGGER_TABLE.version

    def test_pattern_skipped_when_phrase_covers_span(self, analyzer):
        """Test regex does not double count an exact match."""
        result = analyzer.analyze("I want to die", now=NOW)

        assert all(m.match_type == MatchType.EXACT for m in result.matches)

    def test_general_question(self, analyzer):
        """Test ordinary health question."""
        result = analyzer.analyze("What are the symptoms of ovarian cancer?", now=NOW)

        assert result.severity == Severity.GENERAL
        assert result.requires_escalation is False
        assert result.confidence == NO_MATCH_CONFIDENCE
        assert result.matches == []
        assert result.recommended_actions == []

    def test_fuzzy_match(self, analyzer):
        """Test misspelt crisis phrase is still caught."""
        result = analyzer.analyze("i want to dye", now=NOW)

        assert result.severity == Severity.CRISIS
        fuzzy = [m for m in result.matches if m.match_type == MatchType.FUZZY]
        assert fuzzy
        assert fuzzy[0].trigger == "want to die"
        assert 0.8 < fuzzy[0].confidence < 1.0

    def test_long_message_within_sla(self, audit):
        """Test a maximum length message is analyzed inside the default budget."""
        analyzer = SafetyAnalyzer(table=DEFAULT_TRIGGER_TABLE, sla_ms=500, audit_logger=audit)
        sentence = (
            "I would like some information about cervical screening appointments "
            "and what happens at the clinic on the day of the test. "
        )
        message = (sentence * 30)[:2000]

        result = analyzer.analyze(message, now=NOW)

        assert result.sla_violation is False
        assert result.analysis_time_ms < 500

    def test_fuzzy_match_at_end_of_long_message(self, analyzer):
        """Test pruning still finds a misspelt phrase deep in a long message."""
        sentence = "I have been reading about screening and the results letter. "
        message = (sentence * 40)[:1980] + " i want to dye"

        result = analyzer.analyze(message, now=NOW)

        assert result.severity == Severity.CRISIS
        assert any(
            m.match_type == MatchType.FUZZY and m.trigger == "want to die" for m in result.matches
        )

    def test_pattern_match(self, analyzer):
        """Test regex trigger."""
        result = analyzer.analyze("I can't take it anymore", now=NOW)

        assert result.severity == Severity.HIGH_CONCERN
        assert result.requires_escalation is True
        assert any(m.trigger == "unable_to_cope" for m in result.matches)

    def test_life_threatening_guidance(self, analyzer):
        """Test medical emergency adds emergency services guidance."""
        result = analyzer.analyze("I have chest pain", now=NOW)

        assert result.severity == Severity.CRISIS
        assert "emergency_services_guidance" in result.recommended_actions

    def test_emotional_support_does_not_escalate(self, analyzer):
        """Test worry alone is level 2 without escalation."""
        result = analyzer.analyze("I'm really worried about my results", now=NOW)

        assert result.severity == Severity.EMOTIONAL_SUPPORT
        assert result.requires_escalation is False

    def test_callback_request_escalates(self, analyzer):
        """Test explicit callback request escalates at emotional support."""
        result = analyzer.analyze("Please call me back", now=NOW)

        assert result.severity == Severity.EMOTIONAL_SUPPORT
        assert result.requires_escalation is True
        assert result.has_category(TriggerCategory.CALLBACK_REQUEST)

    def test_highest_severity_wins(self, analyzer):
        """Test mixed message takes the most severe match."""
        result = analyzer.analyze("I'm worried and I want to end it all", now=NOW)

        assert result.severity == Severity.CRISIS
        assert result.has_category(TriggerCategory.EMOTIONAL_SUPPORT)

    def test_multiple_crisis_indicators(self, analyzer):
        """Test risk factor for several crisis matches."""
        result = analyzer.analyze("I want to die, I keep cutting myself", now=NOW)

        assert "multiple_crisis_indicators" in result.risk_factors

    def test_escalating_history(self, analyzer):
        """Test distress building up over recent messages."""
        context = ConversationContext(
            user_id="user-1",
            message_history=[
                HistoryMessage(content="It's getting worse", timestamp=NOW - timedelta(minutes=30)),
                HistoryMessage(content="Worse again today", timestamp=NOW - timedelta(minutes=20)),
                HistoryMessage(content="Everything is worse", timestamp=NOW - timedelta(minutes=10)),
            ],
        )

        result = analyzer.analyze("hello", context, now=NOW)

        assert result.severity == Severity.HIGH_CONCERN
        assert any(m.trigger == "escalating_distress_pattern" for m in result.matches)

    def test_old_history_ignored(self, analyzer):
        """Test messages older than an hour do not count."""
        old = NOW - timedelta(hours=2)
        context = ConversationContext(
            message_history=[HistoryMessage(content="worse", timestamp=old) for _ in range(5)],
        )

        result = analyzer.analyze("hello", context, now=NOW)

        assert result.severity == Severity.GENERAL

    def test_high_risk_user_distress(self, analyzer):
        """Test distress language from a high-risk user is a crisis."""
        context = ConversationContext(user_id="user-1", vulnerability_flags=["high_risk"])

        result = analyzer.analyze("I feel so overwhelmed", context, now=NOW)

        assert result.severity == Severity.CRISIS
        assert any(m.trigger == "high_risk_user_distress" for m in result.matches)
        assert "vulnerable_user_profile" in result.risk_factors

    def test_late_night_concern(self, analyzer):
        """Test non-general verdicts at night are flagged."""
        night = NOW.replace(hour=2)

        result = analyzer.analyze("I'm scared", now=night)

        assert "late_night_distress" in result.contextual_concerns

    def test_failure_is_fail_safe(self, analyzer, audit):
        """Test internal errors produce a crisis verdict."""
        with patch.object(analyzer, "_run", side_effect=RuntimeError("boom")):
            result = analyzer.analyze("anything", now=NOW)

        assert result.severity == Severity.CRISIS
        assert result.requires_escalation is True
        assert result.risk_factors == ["analysis_failure"]
        audit.log_analyzer_failure.assert_called_once()

    def test_sla_violation_flagged(self, audit):
        """Test overrun is flagged, not cancelled."""
        analyzer = SafetyAnalyzer(table=DEFAULT_TRIGGER_TABLE, sla_ms=-1, audit_logger=audit)

        result = analyzer.analyze("I want to die", now=NOW)

        assert result.sla_violation is True
        assert result.severity == Severity.CRISIS
        audit.log_sla_violation.assert_called_once()

    def test_result_is_frozen(self, analyzer):
        """Test verdicts cannot be changed after creation."""
        result = analyzer.analyze("hello", now=NOW)

        with pytest.raises(Exception):
            result.severity = Severity.CRISIS


def test_fail_safe_result():
    """Test the fail-safe verdict."""
    result = fail_safe_result(12.5)

    assert result.severity == Severity.CRISIS
    assert result.confidence == 1.0
    assert result.analysis_time_ms == 12.5
    assert "immediate_human_review" in result.recommended_actions
