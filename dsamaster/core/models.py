"""
Domain records for mastery tracking.

Each record is a dataclass with a persisted form: a plain dict with
snake_case keys, produced by ``to_record`` and read back by ``from_record``.
Timestamps are always timezone-aware UTC datetimes.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Difficulty(str, Enum):
    """Question difficulty recorded on an attempt."""

    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


class MasteryStatus(str, Enum):
    """
    Status derived from a 0-100 mastery score.

    Ordered by score band: NotStarted < InProgress < Weak < Mastered.
    """

    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    WEAK = "Weak"
    MASTERED = "Mastered"

    @property
    def display_name(self) -> str:
        """Human-readable name."""
        return {
            MasteryStatus.NOT_STARTED: "Not Started",
            MasteryStatus.IN_PROGRESS: "In Progress",
            MasteryStatus.WEAK: "Weak",
            MasteryStatus.MASTERED: "Mastered",
        }[self]

    @property
    def color(self) -> str:
        """Rich color for CLI display."""
        return {
            MasteryStatus.NOT_STARTED: "dim",
            MasteryStatus.IN_PROGRESS: "yellow",
            MasteryStatus.WEAK: "red",
            MasteryStatus.MASTERED: "green",
        }[self]


class MasteryTrend(str, Enum):
    """Direction of a topic's score relative to its previous value."""

    IMPROVING = "Improving"
    STABLE = "Stable"
    DECLINING = "Declining"

    @property
    def arrow(self) -> str:
        return {
            MasteryTrend.IMPROVING: "↑",
            MasteryTrend.STABLE: "→",
            MasteryTrend.DECLINING: "↓",
        }[self]


def to_utc(value: datetime | str) -> datetime:
    """
    Normalize a timestamp to an aware UTC datetime.

    Accepts ISO 8601 strings (a trailing ``Z`` is allowed). Naive datetimes
    are assumed to already be UTC, which is how SQLite hands them back.
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _optional_utc(value: datetime | str | None) -> datetime | None:
    return to_utc(value) if value is not None else None


@dataclass
class Attempt:
    """One answered question. Written once by the quiz subsystem."""

    attempt_id: str
    session_id: str
    question_id: str
    course_id: str
    answer: Any
    correct: bool
    timestamp: datetime
    duration_ms: int | None = None
    topic_tags: list[str] = field(default_factory=list)
    difficulty: Difficulty | None = None
    confidence: float | None = None

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["difficulty"] = self.difficulty.value if self.difficulty else None
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Attempt:
        difficulty = record.get("difficulty")
        return cls(
            attempt_id=record["attempt_id"],
            session_id=record["session_id"],
            question_id=record["question_id"],
            course_id=record["course_id"],
            answer=record.get("answer"),
            correct=bool(record["correct"]),
            timestamp=to_utc(record["timestamp"]),
            duration_ms=record.get("duration_ms"),
            topic_tags=list(record.get("topic_tags") or []),
            difficulty=Difficulty(difficulty) if difficulty else None,
            confidence=record.get("confidence"),
        )


@dataclass
class MasteryScore:
    """Current mastery for one (course, topic) pair."""

    mastery_id: str
    course_id: str
    topic_tag: str
    score: float
    status: MasteryStatus
    attempt_count: int
    last_attempt_at: datetime
    updated_at: datetime
    question_type_breakdown: dict[str, int] | None = None
    trend: MasteryTrend | None = None

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["status"] = self.status.value
        record["trend"] = self.trend.value if self.trend else None
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> MasteryScore:
        trend = record.get("trend")
        return cls(
            mastery_id=record["mastery_id"],
            course_id=record["course_id"],
            topic_tag=record["topic_tag"],
            score=float(record["score"]),
            status=MasteryStatus(record["status"]),
            attempt_count=int(record["attempt_count"]),
            last_attempt_at=to_utc(record["last_attempt_at"]),
            updated_at=to_utc(record["updated_at"]),
            question_type_breakdown=record.get("question_type_breakdown"),
            trend=MasteryTrend(trend) if trend else None,
        )


@dataclass
class MasteryHistory:
    """Append-only snapshot written every time a MasteryScore is recomputed."""

    history_id: str
    mastery_id: str
    score: float
    status: MasteryStatus
    recorded_at: datetime

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["status"] = self.status.value
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> MasteryHistory:
        return cls(
            history_id=record["history_id"],
            mastery_id=record["mastery_id"],
            score=float(record["score"]),
            status=MasteryStatus(record["status"]),
            recorded_at=to_utc(record["recorded_at"]),
        )


@dataclass
class MistakeBankItem:
    """First incorrect attempt on a question, kept for later review."""

    mistake_id: str
    course_id: str
    question_id: str
    attempt_id: str
    topic_tags: list[str]
    created_at: datetime
    resolved_at: datetime | None = None
    review_count: int | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> MistakeBankItem:
        return cls(
            mistake_id=record["mistake_id"],
            course_id=record["course_id"],
            question_id=record["question_id"],
            attempt_id=record["attempt_id"],
            topic_tags=list(record.get("topic_tags") or []),
            created_at=to_utc(record["created_at"]),
            resolved_at=_optional_utc(record.get("resolved_at")),
            review_count=record.get("review_count"),
        )


@dataclass(frozen=True)
class MasteryDelta:
    """Before/after view of one topic, returned to the caller for display."""

    topic_tag: str
    previous_score: float
    previous_status: MasteryStatus
    new_score: float
    new_status: MasteryStatus
    trend: MasteryTrend

    @property
    def improved(self) -> bool:
        return self.new_score > self.previous_score

    @property
    def declined(self) -> bool:
        return self.new_score < self.previous_score

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_status

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "topic_tag": self.topic_tag,
            "previous_score": self.previous_score,
            "previous_status": self.previous_status.value,
            "new_score": self.new_score,
            "new_status": self.new_status.value,
            "trend": self.trend.value,
        }
