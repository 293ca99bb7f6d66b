"""
Baseline Scoring Tests
======================

Tests for transcript extraction and the composite score.

Version: 0.1.0
"""

from datetime import UTC, datetime, timedelta

import pytest

from shared.scoring import (
    ExtractedAssessment,
    calculate_clinical_scores,
    calculate_composite,
    extract_assessment,
    parse_frequency,
    parse_mood,
    score_transcript,
    validate_assessment,
)
from shared.scoring.baseline import calculate_uncertainty, user_responses


class TestParsing:
    """Tests for answer parsing."""

    @pytest.mark.parametrize(
        "answer,expected",
        [
            ("Not at all", 0),
            ("several days I guess", 1),
            ("More than half the days", 2),
            ("nearly every day", 3),
            ("I'm not sure", None),
        ],
    )
    def test_parse_frequency(self, answer, expected):
        assert parse_frequency(answer) == expected

    @pytest.mark.parametrize(
        "answer,expected",
        [
            ("7", 7),
            ("I'd say 10", 10),
            ("probably a six", 6),
            ("Eight out of ten", 8),
            ("pretty good", None),
            ("0", None),
        ],
    )
    def test_parse_mood(self, answer, expected):
        assert parse_mood(answer) == expected

    def test_user_responses_ignores_agent_lines(self):
        transcript = "agent: hello\nUser: Yes\n\nagent: next\nuser:  Several days "
        assert user_responses(transcript) == ["yes", "several days"]


class TestExtraction:
    """Tests for extract_assessment."""

    def test_full_transcript(self, baseline_transcript):
        extracted = extract_assessment(baseline_transcript)
        assert extracted.responses == {"phq2_q1": 1, "phq2_q2": 0, "gad2_q1": 2, "gad2_q2": 3}
        assert extracted.mood_score == 7
        assert extracted.missing_answers == 0

    def test_partial_transcript(self):
        extracted = extract_assessment("agent: ready?\nuser: yes\nagent: q1\nuser: not at all")
        assert extracted.responses["phq2_q1"] == 0
        assert extracted.responses["phq2_q2"] is None
        assert extracted.mood_score is None
        assert extracted.missing_answers == 4


class TestScores:
    """Tests for clinical and composite scores."""

    def test_clinical_scores(self):
        clinical = calculate_clinical_scores(
            {"phq2_q1": 1, "phq2_q2": 0, "gad2_q1": 2, "gad2_q2": 3},
            7,
        )
        assert clinical.phq2_total == 1
        assert clinical.gad2_total == 5
        assert clinical.phq2_positive_screen is False
        assert clinical.gad2_positive_screen is True

    def test_missing_answers_count_as_zero_and_default_mood(self):
        clinical = calculate_clinical_scores({"phq2_q1": None}, None)
        assert clinical.phq2_total == 0
        assert clinical.mood_scale == 5

    def test_composite_weights(self):
        clinical = calculate_clinical_scores(
            {"phq2_q1": 1, "phq2_q2": 0, "gad2_q1": 2, "gad2_q2": 3},
            7,
        )
        composite = calculate_composite(clinical)
        assert composite.score == 60
        assert composite.phq2_component == 21
        assert composite.gad2_component == 4
        assert composite.mood_component == 35

    def test_best_and_worst(self):
        best = calculate_clinical_scores({k: 0 for k in ("phq2_q1", "phq2_q2", "gad2_q1", "gad2_q2")}, 10)
        worst = calculate_clinical_scores({k: 3 for k in ("phq2_q1", "phq2_q2", "gad2_q1", "gad2_q2")}, 1)
        assert calculate_composite(best).score == 100
        assert calculate_composite(worst).score == 5

    def test_uncertainty(self):
        assert calculate_uncertainty(ExtractedAssessment(
            responses={"phq2_q1": 0, "phq2_q2": 0, "gad2_q1": 0, "gad2_q2": 0},
            mood_score=5,
        )) == 0.1
        assert calculate_uncertainty(ExtractedAssessment()) == 0.85

    def test_score_transcript(self, baseline_transcript):
        result = score_transcript(baseline_transcript)
        assert result.composite.score == 60
        assert result.uncertainty == 0.1


class TestValidation:
    """Tests for validate_assessment."""

    def test_complete_submission(self, baseline_transcript):
        start = datetime.now(UTC)
        validation = validate_assessment(
            baseline_transcript,
            extract_assessment(baseline_transcript),
            start,
            start + timedelta(minutes=4),
        )
        assert validation.is_valid
        assert validation.to_dict()["is_valid"] is True

    def test_zero_answers_are_answers(self):
        transcript = "\n".join(
            ["user: yes"] + ["user: not at all"] * 4 + ["user: 5"]
        )
        validation = validate_assessment(transcript, extract_assessment(transcript), None, None)
        assert validation.has_all_questions
        assert validation.has_mood
        assert not validation.has_duration
        assert not validation.duration_required
        assert validation.is_valid

    def test_end_before_start(self, baseline_transcript):
        start = datetime.now(UTC)
        validation = validate_assessment(
            baseline_transcript,
            extract_assessment(baseline_transcript),
            start,
            start - timedelta(seconds=1),
        )
        assert validation.duration_required
        assert not validation.has_duration
        assert not validation.is_valid

    def test_empty_transcript(self):
        validation = validate_assessment("  ", extract_assessment(""), None, None)
        assert not validation.has_transcript
        assert not validation.has_all_questions
