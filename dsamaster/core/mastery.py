"""
Core Mastery Module.

Pure scoring functions that turn quiz attempts into a topic mastery score.
No I/O happens here; the orchestrator in ``dsamaster.learning`` feeds these
functions the full attempt history for a topic.

Formulas:
- Topic score: difficulty- and recency-weighted accuracy, 0-100
- Status: fixed 25-point bands over the score
- Trend: score delta against the previous score with a dead zone
- Question type breakdown: plain accuracy per topic tag
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from dsamaster.core.models import Attempt, Difficulty, MasteryStatus, MasteryTrend

DIFFICULTY_WEIGHT: dict[Difficulty, float] = {
    Difficulty.EASY: 1.0,
    Difficulty.MEDIUM: 2.0,
    Difficulty.HARD: 3.0,
}
DEFAULT_DIFFICULTY = Difficulty.MEDIUM

RECENCY_DECAY = 0.9  # per day, half-life ~6.6 days
TREND_DEAD_ZONE = 5.0

# Lower bound (inclusive) of each status band, highest first
STATUS_THRESHOLDS: tuple[tuple[float, MasteryStatus], ...] = (
    (75.0, MasteryStatus.MASTERED),
    (50.0, MasteryStatus.WEAK),
    (25.0, MasteryStatus.IN_PROGRESS),
)


def calculate_days_since(timestamp: datetime, now: datetime | None = None) -> float:
    """
    Calculate fractional days elapsed since a timestamp.

    Args:
        timestamp: Moment of the attempt (can be naive or aware)
        now: Current time (defaults to UTC now)

    Returns:
        Days elapsed as float (negative if the timestamp is in the future)
    """
    if now is None:
        now = datetime.now(UTC)

    # Handle timezone awareness
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    delta = now - timestamp
    return delta.total_seconds() / 86400.0


def attempt_weight(
    attempt: Attempt,
    now: datetime,
    decay: float = RECENCY_DECAY,
) -> float:
    """
    Weight of one attempt in the topic score.

    Formula: weight = difficulty_weight × decay^days_ago

    Attempts without a recorded difficulty count as Medium. Plain strings
    ("Hard") are accepted as well as Difficulty members.
    """
    difficulty = Difficulty(attempt.difficulty) if attempt.difficulty else DEFAULT_DIFFICULTY
    recency = decay ** calculate_days_since(attempt.timestamp, now)
    return DIFFICULTY_WEIGHT[difficulty] * recency


def calculate_topic_score(
    attempts: Sequence[Attempt],
    now: datetime | None = None,
    decay: float = RECENCY_DECAY,
) -> float:
    """
    Calculate the 0-100 mastery score for one topic.

    The caller is responsible for passing only attempts for that topic.

    Args:
        attempts: Attempt history for the topic
        now: Reference time for recency decay (defaults to UTC now)
        decay: Per-day decay factor

    Returns:
        100 × weighted_correct / weighted_total, or 0 for no attempts
    """
    if not attempts:
        return 0.0

    if now is None:
        now = datetime.now(UTC)

    weighted_correct = 0.0
    weighted_total = 0.0

    for attempt in attempts:
        weight = attempt_weight(attempt, now, decay)
        if attempt.correct:
            weighted_correct += weight
        weighted_total += weight

    if weighted_total == 0:
        return 0.0
    return weighted_correct / weighted_total * 100


def score_to_status(score: float) -> MasteryStatus:
    """
    Classify a 0-100 score.

    [0, 25) NotStarted, [25, 50) InProgress, [50, 75) Weak, [75, 100] Mastered.
    """
    for threshold, status in STATUS_THRESHOLDS:
        if score >= threshold:
            return status
    return MasteryStatus.NOT_STARTED


def compute_trend(
    current_score: float,
    previous_score: float | None,
    dead_zone: float = TREND_DEAD_ZONE,
) -> MasteryTrend:
    """
    Compare a new score against the previous one.

    A missing previous score (first computation for the topic) is Stable.
    Deltas within ±dead_zone (inclusive) are Stable.
    """
    if previous_score is None:
        return MasteryTrend.STABLE

    delta = current_score - previous_score
    if delta > dead_zone:
        return MasteryTrend.IMPROVING
    if delta < -dead_zone:
        return MasteryTrend.DECLINING
    return MasteryTrend.STABLE


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def build_question_type_breakdown(attempts: Iterable[Attempt]) -> dict[str, int]:
    """
    Accuracy percentage per topic tag.

    Unweighted: recency and difficulty are ignored. An attempt carrying
    several tags counts toward each of them, once per distinct tag.
    """
    correct: dict[str, int] = defaultdict(int)
    total: dict[str, int] = defaultdict(int)

    for attempt in attempts:
        for tag in dict.fromkeys(attempt.topic_tags):
            total[tag] += 1
            if attempt.correct:
                correct[tag] += 1

    return {tag: _round_half_up(correct[tag] / count * 100) for tag, count in total.items()}


def group_attempts_by_topic(attempts: Iterable[Attempt]) -> dict[str, list[Attempt]]:
    """
    Group attempts by topic tag, preserving first-seen tag order.

    Fan-out, not partition: a multi-tag attempt lands in every group, once.
    """
    groups: dict[str, list[Attempt]] = {}
    for attempt in attempts:
        for tag in dict.fromkeys(attempt.topic_tags):
            groups.setdefault(tag, []).append(attempt)
    return groups
