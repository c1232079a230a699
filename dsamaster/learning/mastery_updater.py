"""
Mastery update orchestrator.

Turns the attempts of a just-finished quiz session into updated topic
mastery. Mastery is never updated incrementally: every topic the session
touched is re-derived from its full persisted attempt history, so running
the update again (or replaying a whole course) is always safe.

Per topic, inside one store transaction:
1. Read every attempt of the course carrying the topic tag
2. Score, classify and break down that history
3. Upsert the MasteryScore and append a MasteryHistory snapshot

Incorrect answers are then added to the mistake bank, one item per question.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from uuid import uuid4

from loguru import logger

from dsamaster.config import Settings, get_settings
from dsamaster.core.mastery import (
    build_question_type_breakdown,
    calculate_topic_score,
    compute_trend,
    group_attempts_by_topic,
    score_to_status,
)
from dsamaster.core.models import (
    Attempt,
    MasteryDelta,
    MasteryHistory,
    MasteryScore,
    MasteryStatus,
    MistakeBankItem,
)
from dsamaster.db.store import (
    ATTEMPTS,
    MASTERY_HISTORY,
    MASTERY_SCORES,
    MASTERY_TABLES,
    MISTAKE_BANK_ITEMS,
    MasteryStore,
    StoreView,
)

TOPIC_TABLES = (ATTEMPTS, MASTERY_SCORES, MASTERY_HISTORY)


def _new_id() -> str:
    return str(uuid4())


class MasteryUpdater:
    """
    Recompute topic mastery after quiz sessions.

    Args:
        store: Storage backend (InMemoryStore, SqlAlchemyStore, ...)
        settings: Scoring and transaction settings (defaults to get_settings())
        clock: Returns the current time; injected for deterministic tests
    """

    def __init__(
        self,
        store: MasteryStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.decay = settings.recency_decay
        self.dead_zone = settings.trend_dead_zone
        self.transaction_scope = settings.mastery_transaction_scope
        self._clock = clock or (lambda: datetime.now(UTC))

    async def update_mastery_after_quiz(
        self,
        course_id: str,
        session_attempts: Sequence[Attempt],
    ) -> list[MasteryDelta]:
        """
        Update mastery for every topic touched by a quiz session.

        Args:
            course_id: Course the session belongs to
            session_attempts: All attempts of the session, already persisted

        Returns:
            One MasteryDelta per distinct topic tag, in first-seen order

        Raises:
            StorageError: if the store fails. With the "topic" transaction
                scope, topics processed before the failure stay committed.
        """
        if not session_attempts:
            return []

        topics = list(group_attempts_by_topic(session_attempts))
        mistakes = [attempt for attempt in session_attempts if not attempt.correct]

        if self.transaction_scope == "batch":
            async with self.store.transaction(MASTERY_TABLES) as tx:
                deltas = [await self._update_topic(tx, course_id, topic) for topic in topics]
                created = await self._record_mistakes(tx, course_id, mistakes)
        else:
            deltas = []
            for topic in topics:
                async with self.store.transaction(TOPIC_TABLES) as tx:
                    deltas.append(await self._update_topic(tx, course_id, topic))
            created = 0
            if mistakes:
                async with self.store.transaction((MISTAKE_BANK_ITEMS,)) as tx:
                    created = await self._record_mistakes(tx, course_id, mistakes)

        logger.info(
            f"Mastery updated for course {course_id}: {len(deltas)} topics, "
            f"{created} new mistakes from {len(session_attempts)} attempts"
        )
        return deltas

    async def rebuild_course(self, course_id: str) -> list[MasteryDelta]:
        """
        Re-derive mastery for every topic of a course from its attempts.

        Appends one history snapshot per topic. The mistake bank only gains
        items for questions that were somehow missing from it.
        """
        rows = await self.store.query(ATTEMPTS, "course_id", course_id)
        attempts = [Attempt.from_record(row) for row in rows]
        logger.info(f"Rebuilding mastery for course {course_id} from {len(attempts)} attempts")
        return await self.update_mastery_after_quiz(course_id, attempts)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _update_topic(self, tx: StoreView, course_id: str, topic_tag: str) -> MasteryDelta:
        rows = await tx.query(ATTEMPTS, "course_id", course_id)
        history = [
            Attempt.from_record(row) for row in rows if topic_tag in (row.get("topic_tags") or [])
        ]

        now = self._clock()
        score = calculate_topic_score(history, now=now, decay=self.decay)
        status = score_to_status(score)
        breakdown = build_question_type_breakdown(history)

        existing_record = await tx.find_mastery_score(course_id, topic_tag)
        existing = MasteryScore.from_record(existing_record) if existing_record else None
        trend = compute_trend(score, existing.score if existing else None, self.dead_zone)

        if existing:
            mastery_id = existing.mastery_id
            await tx.update(
                MASTERY_SCORES,
                mastery_id,
                {
                    "score": score,
                    "status": status.value,
                    "attempt_count": len(history),
                    "last_attempt_at": now,
                    "updated_at": now,
                    "question_type_breakdown": breakdown,
                    "trend": trend.value,
                },
            )
        else:
            mastery_id = _new_id()
            mastery = MasteryScore(
                mastery_id=mastery_id,
                course_id=course_id,
                topic_tag=topic_tag,
                score=score,
                status=status,
                attempt_count=len(history),
                last_attempt_at=now,
                updated_at=now,
                question_type_breakdown=breakdown,
                trend=trend,
            )
            await tx.add(MASTERY_SCORES, mastery.to_record())

        snapshot = MasteryHistory(
            history_id=_new_id(),
            mastery_id=mastery_id,
            score=score,
            status=status,
            recorded_at=now,
        )
        await tx.add(MASTERY_HISTORY, snapshot.to_record())

        delta = MasteryDelta(
            topic_tag=topic_tag,
            previous_score=existing.score if existing else 0.0,
            previous_status=existing.status if existing else MasteryStatus.NOT_STARTED,
            new_score=score,
            new_status=status,
            trend=trend,
        )
        logger.debug(
            f"{course_id}/{topic_tag}: {delta.previous_score:.1f} -> {score:.1f} "
            f"({status.value}, {trend.value}, {len(history)} attempts)"
        )
        return delta

    async def _record_mistakes(
        self,
        tx: StoreView,
        course_id: str,
        attempts: Sequence[Attempt],
    ) -> int:
        """Add a mistake bank item for each question not already in the bank."""
        created = 0
        for attempt in attempts:
            if await tx.query(MISTAKE_BANK_ITEMS, "question_id", attempt.question_id):
                continue
            item = MistakeBankItem(
                mistake_id=_new_id(),
                course_id=course_id,
                question_id=attempt.question_id,
                attempt_id=attempt.attempt_id,
                topic_tags=list(attempt.topic_tags),
                created_at=self._clock(),
            )
            await tx.add(MISTAKE_BANK_ITEMS, item.to_record())
            created += 1
        return created


# =============================================================================
# Read helpers
# =============================================================================


async def load_course_mastery(store: MasteryStore, course_id: str) -> list[MasteryScore]:
    """All mastery records of a course, ordered by topic tag."""
    rows = await store.query(MASTERY_SCORES, "course_id", course_id)
    return sorted((MasteryScore.from_record(row) for row in rows), key=lambda m: m.topic_tag)


async def load_topic_history(
    store: MasteryStore,
    course_id: str,
    topic_tag: str,
) -> list[MasteryHistory]:
    """History snapshots of one topic, oldest first. Empty if the topic is unknown."""
    record = await store.find_mastery_score(course_id, topic_tag)
    if record is None:
        return []
    rows = await store.query(MASTERY_HISTORY, "mastery_id", record["mastery_id"])
    return sorted((MasteryHistory.from_record(row) for row in rows), key=lambda h: h.recorded_at)


async def load_mistakes(
    store: MasteryStore,
    course_id: str,
    include_resolved: bool = False,
) -> list[MistakeBankItem]:
    """Mistake bank items of a course, oldest first."""
    rows = await store.query(MISTAKE_BANK_ITEMS, "course_id", course_id)
    items = sorted((MistakeBankItem.from_record(row) for row in rows), key=lambda m: m.created_at)
    if include_resolved:
        return items
    return [item for item in items if not item.is_resolved]
