"""
SQLAlchemy models for the mastery store.

One ORM class per store table:
- AttemptRow: answered questions (written by the quiz subsystem)
- MasteryScoreRow: current mastery per (course, topic), unique on that pair
- MasteryHistoryRow: append-only snapshots of mastery recomputations
- MistakeBankItemRow: first incorrect attempt per question

Column names match the record keys used by ``dsamaster.core.models``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dsamaster.db.store import ATTEMPTS, MASTERY_HISTORY, MASTERY_SCORES, MISTAKE_BANK_ITEMS


class Base(DeclarativeBase):
    """Declarative base for all store tables."""


class AttemptRow(Base):
    __tablename__ = ATTEMPTS

    attempt_id: Mapped[str] = mapped_column(Text, primary_key=True)
    session_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    question_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    answer: Mapped[Any] = mapped_column(JSON, nullable=True)
    correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    topic_tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    difficulty: Mapped[str | None] = mapped_column(Text)  # Easy, Medium, Hard
    confidence: Mapped[float | None] = mapped_column(Float)

    def __repr__(self) -> str:
        return f"<AttemptRow {self.attempt_id} question={self.question_id} correct={self.correct}>"


class MasteryScoreRow(Base):
    """
    Current mastery for one topic of one course.

    Status is derived from score and never written independently.
    """

    __tablename__ = MASTERY_SCORES

    mastery_id: Mapped[str] = mapped_column(Text, primary_key=True)
    course_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    topic_tag: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    question_type_breakdown: Mapped[dict[str, int] | None] = mapped_column(JSON)
    trend: Mapped[str | None] = mapped_column(Text)  # Improving, Stable, Declining

    __table_args__ = (
        UniqueConstraint("course_id", "topic_tag", name="uq_mastery_course_topic"),
    )

    def __repr__(self) -> str:
        return f"<MasteryScoreRow course={self.course_id} topic={self.topic_tag} score={self.score:.1f}>"


class MasteryHistoryRow(Base):
    __tablename__ = MASTERY_HISTORY

    history_id: Mapped[str] = mapped_column(Text, primary_key=True)
    mastery_id: Mapped[str] = mapped_column(
        ForeignKey(f"{MASTERY_SCORES}.mastery_id"), nullable=False, index=True
    )
    score: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class MistakeBankItemRow(Base):
    __tablename__ = MISTAKE_BANK_ITEMS

    mistake_id: Mapped[str] = mapped_column(Text, primary_key=True)
    course_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    question_id: Mapped[str] = mapped_column(Text, nullable=False)
    attempt_id: Mapped[str] = mapped_column(Text, nullable=False)
    topic_tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime)
    review_count: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (Index("idx_mistake_question", "question_id"),)


TABLE_MODELS: dict[str, type[Base]] = {
    ATTEMPTS: AttemptRow,
    MASTERY_SCORES: MasteryScoreRow,
    MASTERY_HISTORY: MasteryHistoryRow,
    MISTAKE_BANK_ITEMS: MistakeBankItemRow,
}
