"""
Core Module - Shared domain records and pure scoring functions.

Components:
- models: Attempt, MasteryScore, MasteryHistory, MistakeBankItem, MasteryDelta
- mastery: calculate_topic_score, score_to_status, compute_trend,
  build_question_type_breakdown

Design Principle:
Nothing in this package performs I/O. Storage and orchestration live in
dsamaster.db and dsamaster.learning.
"""

from dsamaster.core.mastery import (
    build_question_type_breakdown,
    calculate_topic_score,
    compute_trend,
    group_attempts_by_topic,
    score_to_status,
)
from dsamaster.core.models import (
    Attempt,
    Difficulty,
    MasteryDelta,
    MasteryHistory,
    MasteryScore,
    MasteryStatus,
    MasteryTrend,
    MistakeBankItem,
)

__all__ = [
    # Records
    "Attempt",
    "Difficulty",
    "MasteryDelta",
    "MasteryHistory",
    "MasteryScore",
    "MasteryStatus",
    "MasteryTrend",
    "MistakeBankItem",
    # Scoring
    "build_question_type_breakdown",
    "calculate_topic_score",
    "compute_trend",
    "group_attempts_by_topic",
    "score_to_status",
]
