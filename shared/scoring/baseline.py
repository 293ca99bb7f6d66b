"""
Baseline Scoring
================

Derives PHQ-2, GAD-2 and mood answers from a baseline conversation
transcript and turns them into clinical scores and the Mind Measure
composite.

Transcript format (one turn per line):
    agent: Are you ready to begin?
    user: Yes
    agent: Little interest or pleasure in doing things?
    user: Several days
    ...

User answers by position:
    0: ready confirmation
    1: PHQ-2 Q1 (little interest or pleasure)
    2: PHQ-2 Q2 (down, depressed, hopeless)
    3: GAD-2 Q1 (nervous, anxious, on edge)
    4: GAD-2 Q2 (unable to stop worrying)
    5: mood, 1-10

Composite:
    25% PHQ-2 (0-6 inverted to 100-0)
    25% GAD-2 (0-6 inverted to 100-0)
    50% mood (1-10 scaled to 10-100)

Version: 0.1.0
"""

import re
from dataclasses import dataclass, field
from datetime import datetime

from shared.logging import get_logger


logger = get_logger(__name__)


QUESTION_KEYS = ("phq2_q1", "phq2_q2", "gad2_q1", "gad2_q2")

POSITIVE_SCREEN_THRESHOLD = 3
DEFAULT_MOOD = 5

# Ordered most specific first
FREQUENCY_PHRASES: list[tuple[str, int]] = [
    ("not at all", 0),
    ("several day", 1),
    ("more than half", 2),
    ("nearly every day", 3),
]

MOOD_WORDS = {
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
}

_USER_LINE = re.compile(r"^\s*user:\s*", re.IGNORECASE)
_MOOD_DIGIT = re.compile(r"\b(10|[1-9])\b")
_MOOD_WORD = re.compile(r"\b(" + "|".join(MOOD_WORDS) + r")\b")


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class ExtractedAssessment:
    """Raw answers pulled from a transcript. None means not answered."""

    responses: dict[str, int | None] = field(default_factory=dict)
    mood_score: int | None = None

    @property
    def missing_answers(self) -> int:
        missing = sum(1 for key in QUESTION_KEYS if self.responses.get(key) is None)
        return missing + (1 if self.mood_score is None else 0)


@dataclass
class ClinicalScores:
    """PHQ-2 / GAD-2 totals and screens."""

    phq2_total: int
    gad2_total: int
    mood_scale: int
    phq2_positive_screen: bool
    gad2_positive_screen: bool


@dataclass
class CompositeScore:
    """Mind Measure composite and its weighted components."""

    score: int
    phq2_component: int
    gad2_component: int
    mood_component: int


@dataclass
class ValidationResult:
    """Completeness check for a baseline submission."""

    has_transcript: bool
    has_duration: bool
    has_all_questions: bool
    has_mood: bool
    # Only submissions carrying both timestamps must have a positive duration
    duration_required: bool = True

    @property
    def is_valid(self) -> bool:
        return (
            self.has_transcript
            and (self.has_duration or not self.duration_required)
            and self.has_all_questions
            and self.has_mood
        )

    def to_dict(self) -> dict[str, bool]:
        return {
            "is_valid": self.is_valid,
            "has_transcript": self.has_transcript,
            "has_duration": self.has_duration,
            "duration_required": self.duration_required,
            "has_all_questions": self.has_all_questions,
            "has_mood": self.has_mood,
        }


@dataclass
class BaselineScore:
    """Everything derived from one transcript."""

    extracted: ExtractedAssessment
    clinical: ClinicalScores
    composite: CompositeScore
    uncertainty: float


# =============================================================================
# Extraction
# =============================================================================


def parse_frequency(response: str) -> int | None:
    """Map a PHQ/GAD frequency answer to 0-3."""
    response = response.lower()
    for phrase, value in FREQUENCY_PHRASES:
        if phrase in response:
            return value
    return None


def parse_mood(response: str) -> int | None:
    """Read a 1-10 mood rating given as a digit or a word."""
    response = response.lower()
    digit = _MOOD_DIGIT.search(response)
    if digit:
        return int(digit.group(1))
    word = _MOOD_WORD.search(response)
    if word:
        return MOOD_WORDS[word.group(1)]
    return None


def user_responses(transcript: str) -> list[str]:
    """Return the user turns of a transcript, lowercased."""
    return [
        _USER_LINE.sub("", line).strip().lower()
        for line in transcript.splitlines()
        if _USER_LINE.match(line)
    ]


def extract_assessment(transcript: str) -> ExtractedAssessment:
    """
    Extract PHQ-2, GAD-2 and mood answers from a full transcript.

    Args:
        transcript: agent/user transcript

    Returns:
        ExtractedAssessment with None for unanswered items
    """
    answers = user_responses(transcript)

    responses: dict[str, int | None] = {}
    for position, key in enumerate(QUESTION_KEYS, start=1):
        responses[key] = parse_frequency(answers[position]) if len(answers) > position else None

    mood = parse_mood(answers[5]) if len(answers) > 5 else None

    extracted = ExtractedAssessment(responses=responses, mood_score=mood)
    logger.debug(
        "transcript_extracted",
        user_turns=len(answers),
        missing_answers=extracted.missing_answers,
    )
    return extracted


# =============================================================================
# Scoring
# =============================================================================


def calculate_clinical_scores(
    responses: dict[str, int | None],
    mood_score: int | None,
) -> ClinicalScores:
    """Totals (0-6) and positive screens (total >= 3). Missing answers count as 0."""
    phq2_total = (responses.get("phq2_q1") or 0) + (responses.get("phq2_q2") or 0)
    gad2_total = (responses.get("gad2_q1") or 0) + (responses.get("gad2_q2") or 0)
    mood_scale = mood_score if mood_score is not None else DEFAULT_MOOD

    return ClinicalScores(
        phq2_total=phq2_total,
        gad2_total=gad2_total,
        mood_scale=mood_scale,
        phq2_positive_screen=phq2_total >= POSITIVE_SCREEN_THRESHOLD,
        gad2_positive_screen=gad2_total >= POSITIVE_SCREEN_THRESHOLD,
    )


def calculate_composite(clinical: ClinicalScores) -> CompositeScore:
    """Weighted 25/25/50 fusion, rounded and clamped to 0-100."""
    phq2_score = max(0.0, 100 - (clinical.phq2_total / 6) * 100)
    gad2_score = max(0.0, 100 - (clinical.gad2_total / 6) * 100)
    mood = max(1, min(10, clinical.mood_scale))
    mood_score = (mood / 10) * 100

    fused = phq2_score * 0.25 + gad2_score * 0.25 + mood_score * 0.50

    return CompositeScore(
        score=round(max(0.0, min(100.0, fused))),
        phq2_component=round(phq2_score * 0.25),
        gad2_component=round(gad2_score * 0.25),
        mood_component=round(mood_score * 0.50),
    )


def calculate_uncertainty(extracted: ExtractedAssessment) -> float:
    """0.1 when complete, plus 0.15 per missing answer, capped at 1.0."""
    return round(min(1.0, 0.1 + 0.15 * extracted.missing_answers), 2)


def validate_assessment(
    transcript: str | None,
    extracted: ExtractedAssessment,
    started_at: datetime | None,
    ended_at: datetime | None,
) -> ValidationResult:
    """
    Check a submission is complete. A 0 answer is a valid answer.

    A duration is only demanded when both timestamps are supplied.
    """
    timestamps_given = started_at is not None and ended_at is not None
    return ValidationResult(
        has_transcript=bool(transcript and transcript.strip()),
        has_duration=timestamps_given and ended_at > started_at,
        duration_required=timestamps_given,
        has_all_questions=all(extracted.responses.get(key) is not None for key in QUESTION_KEYS),
        has_mood=extracted.mood_score is not None,
    )


def score_transcript(transcript: str) -> BaselineScore:
    """Extract and score a transcript in one call."""
    extracted = extract_assessment(transcript)
    clinical = calculate_clinical_scores(extracted.responses, extracted.mood_score)
    composite = calculate_composite(clinical)

    return BaselineScore(
        extracted=extracted,
        clinical=clinical,
        composite=composite,
        uncertainty=calculate_uncertainty(extracted),
    )
