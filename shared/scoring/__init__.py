"""
Scoring Module
==============

Baseline assessment scoring: transcript extraction, PHQ-2 / GAD-2 clinical
scores and the Mind Measure composite.

Usage:
    from shared.scoring import score_transcript

    result = score_transcript(transcript)
    print(result.composite.score)
"""

from shared.scoring.baseline import (
    BaselineScore,
    ClinicalScores,
    CompositeScore,
    ExtractedAssessment,
    ValidationResult,
    calculate_clinical_scores,
    calculate_composite,
    extract_assessment,
    parse_frequency,
    parse_mood,
    score_transcript,
    validate_assessment,
)


__all__ = [
    "BaselineScore",
    "ClinicalScores",
    "CompositeScore",
    "ExtractedAssessment",
    "ValidationResult",
    "calculate_clinical_scores",
    "calculate_composite",
    "extract_assessment",
    "parse_frequency",
    "parse_mood",
    "score_transcript",
    "validate_assessment",
]
