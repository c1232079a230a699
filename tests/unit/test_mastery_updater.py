"""
Unit tests for the mastery update orchestrator.

Runs MasteryUpdater against InMemoryStore with a fixed clock.

Tests:
- New topics vs. existing topics (previous score, trend, history)
- Re-derivation from full history is idempotent
- Multi-tag fan-out and mistake bank dedup
- Compound index fallback
- Topic vs. batch transaction scope on failure
- Course rebuild and read helpers
"""

import asyncio
from datetime import timedelta

import pytest

from dsamaster.config import Settings
from dsamaster.core.models import Difficulty, MasteryStatus, MasteryTrend
from dsamaster.db.memory import InMemoryStore
from dsamaster.db.store import (
    ATTEMPTS,
    DEFAULT_SCHEMA,
    MASTERY_HISTORY,
    MASTERY_SCORES,
    MISTAKE_BANK_ITEMS,
    StorageError,
)
from dsamaster.learning.mastery_updater import (
    MasteryUpdater,
    load_course_mastery,
    load_mistakes,
    load_topic_history,
)


class Clock:
    """Controllable clock for the updater."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FailingHistoryStore(InMemoryStore):
    """Fails the N-th history snapshot write."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.history_writes = 0

    def _add(self, table, record):
        if table == MASTERY_HISTORY:
            self.history_writes += 1
            if self.history_writes == self.fail_on:
                raise StorageError("disk full")
        super()._add(table, record)


async def save(store, *attempts):
    for attempt in attempts:
        await store.add(ATTEMPTS, attempt.to_record())
    return list(attempts)


@pytest.fixture
def updater(memory_store, settings, now):
    return MasteryUpdater(memory_store, settings, clock=lambda: now)


class TestEmptySession:
    @pytest.mark.asyncio
    async def test_no_attempts_is_a_no_op(self, updater, memory_store, course_id):
        assert await updater.update_mastery_after_quiz(course_id, []) == []

        assert memory_store.count(MASTERY_SCORES) == 0
        assert memory_store.count(MASTERY_HISTORY) == 0
        assert memory_store.count(MISTAKE_BANK_ITEMS) == 0


class TestNewTopic:
    @pytest.mark.asyncio
    async def test_first_session_creates_mastery(self, updater, memory_store, make_attempt, course_id, now):
        session = await save(
            memory_store,
            make_attempt(correct=True),
            make_attempt(correct=False),
        )

        deltas = await updater.update_mastery_after_quiz(course_id, session)

        assert len(deltas) == 1
        delta = deltas[0]
        assert delta.topic_tag == "Trees"
        assert delta.previous_score == 0
        assert delta.previous_status == MasteryStatus.NOT_STARTED
        assert delta.new_score == pytest.approx(50.0)
        assert delta.new_status == MasteryStatus.WEAK
        assert delta.trend == MasteryTrend.STABLE

        [mastery] = await load_course_mastery(memory_store, course_id)
        assert mastery.score == pytest.approx(50.0)
        assert mastery.status == MasteryStatus.WEAK
        assert mastery.attempt_count == 2
        assert mastery.question_type_breakdown == {"Trees": 50}
        assert mastery.trend == MasteryTrend.STABLE
        assert mastery.last_attempt_at == now
        assert mastery.updated_at == now
        assert memory_store.count(MASTERY_HISTORY) == 1

    @pytest.mark.asyncio
    async def test_status_always_matches_score(self, updater, memory_store, make_attempt, course_id):
        session = await save(
            memory_store,
            make_attempt(correct=True, difficulty=Difficulty.HARD),
            make_attempt(correct=False, difficulty=Difficulty.EASY, topic_tags=["Trees", "BFS"]),
        )

        deltas = await updater.update_mastery_after_quiz(course_id, session)

        by_topic = {delta.topic_tag: delta for delta in deltas}
        assert by_topic["Trees"].new_score == pytest.approx(75.0)
        assert by_topic["Trees"].new_status == MasteryStatus.MASTERED
        assert by_topic["BFS"].new_score == 0
        assert by_topic["BFS"].new_status == MasteryStatus.NOT_STARTED


class TestExistingTopic:
    @pytest.mark.asyncio
    async def test_second_session_updates_in_place(self, updater, memory_store, make_attempt, course_id):
        first = await save(memory_store, make_attempt(correct=True), make_attempt(correct=False))
        await updater.update_mastery_after_quiz(course_id, first)
        [before] = await load_course_mastery(memory_store, course_id)

        second = await save(
            memory_store,
            make_attempt(correct=True, session_id="s2"),
            make_attempt(correct=True, session_id="s2"),
        )
        [delta] = await updater.update_mastery_after_quiz(course_id, second)

        assert delta.previous_score == pytest.approx(50.0)
        assert delta.previous_status == MasteryStatus.WEAK
        assert delta.new_score == pytest.approx(75.0)
        assert delta.new_status == MasteryStatus.MASTERED
        assert delta.trend == MasteryTrend.IMPROVING

        [after] = await load_course_mastery(memory_store, course_id)
        assert after.mastery_id == before.mastery_id
        assert after.attempt_count == 4
        assert after.trend == MasteryTrend.IMPROVING
        assert memory_store.count(MASTERY_SCORES) == 1
        assert memory_store.count(MASTERY_HISTORY) == 2

    @pytest.mark.asyncio
    async def test_declining_trend(self, updater, memory_store, make_attempt, course_id):
        first = await save(memory_store, make_attempt(correct=True))
        await updater.update_mastery_after_quiz(course_id, first)

        second = await save(memory_store, make_attempt(correct=False, session_id="s2"))
        [delta] = await updater.update_mastery_after_quiz(course_id, second)

        assert delta.previous_score == pytest.approx(100.0)
        assert delta.new_score == pytest.approx(50.0)
        assert delta.trend == MasteryTrend.DECLINING

    @pytest.mark.asyncio
    async def test_rerunning_same_session_is_idempotent(self, updater, memory_store, make_attempt, course_id):
        session = await save(memory_store, make_attempt(correct=True), make_attempt(correct=False))

        [first] = await updater.update_mastery_after_quiz(course_id, session)
        [second] = await updater.update_mastery_after_quiz(course_id, session)

        assert second.new_score == pytest.approx(first.new_score)
        assert second.previous_score == pytest.approx(first.new_score)
        assert second.trend == MasteryTrend.STABLE
        assert memory_store.count(MASTERY_SCORES) == 1

        history = await load_topic_history(memory_store, course_id, "Trees")
        assert len(history) == 2
        assert history[0].score == pytest.approx(history[1].score)

    @pytest.mark.asyncio
    async def test_only_same_course_and_topic_counted(self, updater, memory_store, make_attempt, course_id):
        await save(
            memory_store,
            make_attempt(correct=False, course_id="other-course"),
            make_attempt(correct=False, topic_tags=["Graphs"]),
        )
        session = await save(memory_store, make_attempt(correct=True))

        [delta] = await updater.update_mastery_after_quiz(course_id, session)

        assert delta.new_score == pytest.approx(100.0)
        [mastery] = await load_course_mastery(memory_store, course_id)
        assert mastery.attempt_count == 1


class TestMultiTagAndMistakes:
    @pytest.mark.asyncio
    async def test_multi_tag_attempt_updates_every_tag(self, updater, memory_store, make_attempt, course_id):
        session = await save(memory_store, make_attempt(correct=False, topic_tags=["Trees", "BFS"]))

        deltas = await updater.update_mastery_after_quiz(course_id, session)

        assert [delta.topic_tag for delta in deltas] == ["Trees", "BFS"]
        assert memory_store.count(MASTERY_SCORES) == 2
        assert memory_store.count(MASTERY_HISTORY) == 2

        [mistake] = await load_mistakes(memory_store, course_id)
        assert mistake.question_id == session[0].question_id
        assert mistake.attempt_id == session[0].attempt_id
        assert mistake.topic_tags == ["Trees", "BFS"]
        assert mistake.resolved_at is None
        assert mistake.review_count is None

    @pytest.mark.asyncio
    async def test_mistake_added_once_per_question(self, updater, memory_store, make_attempt, course_id):
        first = await save(
            memory_store,
            make_attempt(correct=False, question_id="q-heap"),
            make_attempt(correct=False, question_id="q-heap"),
        )
        await updater.update_mastery_after_quiz(course_id, first)

        second = await save(memory_store, make_attempt(correct=False, question_id="q-heap", session_id="s2"))
        await updater.update_mastery_after_quiz(course_id, second)

        mistakes = await load_mistakes(memory_store, course_id)
        assert len(mistakes) == 1
        assert mistakes[0].attempt_id == first[0].attempt_id

    @pytest.mark.asyncio
    async def test_correct_answers_never_enter_mistake_bank(self, updater, memory_store, make_attempt, course_id):
        session = await save(memory_store, make_attempt(correct=True), make_attempt(correct=True))

        await updater.update_mastery_after_quiz(course_id, session)

        assert memory_store.count(MISTAKE_BANK_ITEMS) == 0

    @pytest.mark.asyncio
    async def test_untagged_attempt_only_feeds_mistake_bank(self, updater, memory_store, make_attempt, course_id):
        session = await save(memory_store, make_attempt(correct=False, topic_tags=[]))

        deltas = await updater.update_mastery_after_quiz(course_id, session)

        assert deltas == []
        assert memory_store.count(MASTERY_SCORES) == 0
        assert memory_store.count(MISTAKE_BANK_ITEMS) == 1


class TestCompoundIndexFallback:
    @pytest.mark.asyncio
    async def test_same_results_without_compound_index(self, settings, make_attempt, course_id, now):
        schema = dict(DEFAULT_SCHEMA)
        schema[MASTERY_SCORES] = "mastery_id, course_id, topic_tag, status"
        store = InMemoryStore(schema)
        updater = MasteryUpdater(store, settings, clock=lambda: now)

        first = await save(store, make_attempt(correct=True), make_attempt(correct=False))
        await updater.update_mastery_after_quiz(course_id, first)
        second = await save(store, make_attempt(correct=True, session_id="s2"))
        [delta] = await updater.update_mastery_after_quiz(course_id, second)

        assert delta.previous_score == pytest.approx(50.0)
        assert delta.new_score == pytest.approx(200 / 3)
        assert store.count(MASTERY_SCORES) == 1


class TestTransactionScope:
    @pytest.mark.asyncio
    async def test_topic_scope_keeps_earlier_topics(self, settings, make_attempt, course_id, now):
        store = FailingHistoryStore(fail_on=2)
        updater = MasteryUpdater(store, settings, clock=lambda: now)
        session = await save(
            store,
            make_attempt(correct=True, topic_tags=["Trees"]),
            make_attempt(correct=False, topic_tags=["BFS"]),
        )

        with pytest.raises(StorageError):
            await updater.update_mastery_after_quiz(course_id, session)

        [mastery] = await load_course_mastery(store, course_id)
        assert mastery.topic_tag == "Trees"
        assert store.count(MASTERY_HISTORY) == 1
        assert store.count(MISTAKE_BANK_ITEMS) == 0
        assert store.count(ATTEMPTS) == 2

    @pytest.mark.asyncio
    async def test_batch_scope_is_all_or_nothing(self, make_attempt, course_id, now):
        store = FailingHistoryStore(fail_on=2)
        settings = Settings(_env_file=None, mastery_transaction_scope="batch")
        updater = MasteryUpdater(store, settings, clock=lambda: now)
        session = await save(
            store,
            make_attempt(correct=True, topic_tags=["Trees"]),
            make_attempt(correct=False, topic_tags=["BFS"]),
        )

        with pytest.raises(StorageError):
            await updater.update_mastery_after_quiz(course_id, session)

        assert store.count(MASTERY_SCORES) == 0
        assert store.count(MASTERY_HISTORY) == 0
        assert store.count(MISTAKE_BANK_ITEMS) == 0
        assert store.count(ATTEMPTS) == 2

    @pytest.mark.asyncio
    async def test_batch_scope_success(self, memory_store, make_attempt, course_id, now):
        settings = Settings(_env_file=None, mastery_transaction_scope="batch")
        updater = MasteryUpdater(memory_store, settings, clock=lambda: now)
        session = await save(memory_store, make_attempt(correct=False, topic_tags=["Trees", "BFS"]))

        deltas = await updater.update_mastery_after_quiz(course_id, session)

        assert len(deltas) == 2
        assert memory_store.count(MISTAKE_BANK_ITEMS) == 1


class TestRebuildAndReads:
    @pytest.mark.asyncio
    async def test_rebuild_course_rescores_every_topic(self, memory_store, settings, make_attempt, course_id, now):
        clock = Clock(now)
        updater = MasteryUpdater(memory_store, settings, clock=clock)
        await save(
            memory_store,
            make_attempt(correct=True, topic_tags=["Trees"]),
            make_attempt(correct=False, topic_tags=["BFS"], question_id="q-bfs"),
        )
        await updater.rebuild_course(course_id)

        clock.advance(days=1)
        deltas = await updater.rebuild_course(course_id)

        assert sorted(delta.topic_tag for delta in deltas) == ["BFS", "Trees"]
        assert memory_store.count(MASTERY_SCORES) == 2
        assert memory_store.count(MASTERY_HISTORY) == 4
        assert memory_store.count(MISTAKE_BANK_ITEMS) == 1

    @pytest.mark.asyncio
    async def test_rebuild_empty_course(self, updater, course_id):
        assert await updater.rebuild_course(course_id) == []

    @pytest.mark.asyncio
    async def test_topic_history_oldest_first(self, memory_store, settings, make_attempt, course_id, now):
        clock = Clock(now)
        updater = MasteryUpdater(memory_store, settings, clock=clock)

        first = await save(memory_store, make_attempt(correct=False))
        await updater.update_mastery_after_quiz(course_id, first)
        clock.advance(hours=2)
        second = await save(memory_store, make_attempt(correct=True, session_id="s2"))
        await updater.update_mastery_after_quiz(course_id, second)

        history = await load_topic_history(memory_store, course_id, "Trees")

        assert [snapshot.recorded_at for snapshot in history] == [now, now + timedelta(hours=2)]
        assert history[0].score == 0
        assert history[1].score > 0
        assert await load_topic_history(memory_store, course_id, "Heaps") == []

    @pytest.mark.asyncio
    async def test_course_mastery_sorted_by_topic(self, updater, memory_store, make_attempt, course_id):
        session = await save(memory_store, make_attempt(topic_tags=["Trees", "Arrays", "Heaps"]))

        await updater.update_mastery_after_quiz(course_id, session)

        topics = [m.topic_tag for m in await load_course_mastery(memory_store, course_id)]
        assert topics == ["Arrays", "Heaps", "Trees"]

    @pytest.mark.asyncio
    async def test_resolved_mistakes_hidden_by_default(self, updater, memory_store, make_attempt, course_id, now):
        session = await save(
            memory_store,
            make_attempt(correct=False, question_id="q1"),
            make_attempt(correct=False, question_id="q2"),
        )
        await updater.update_mastery_after_quiz(course_id, session)
        [resolved] = await memory_store.query(MISTAKE_BANK_ITEMS, "question_id", "q1")
        await memory_store.update(MISTAKE_BANK_ITEMS, resolved["mistake_id"], {"resolved_at": now})

        open_items = await load_mistakes(memory_store, course_id)
        all_items = await load_mistakes(memory_store, course_id, include_resolved=True)

        assert [item.question_id for item in open_items] == ["q2"]
        assert len(all_items) == 2


class TestConcurrentUpdates:
    """Two quiz sessions finishing at once on the same topic."""

    @pytest.mark.asyncio
    async def test_second_update_sees_first_update(self, updater, memory_store, make_attempt, course_id):
        seed = await save(memory_store, make_attempt(correct=True), make_attempt(correct=False))
        await updater.update_mastery_after_quiz(course_id, seed)
        s2 = await save(memory_store, make_attempt(correct=True, session_id="s2"))
        s3 = await save(memory_store, make_attempt(correct=True, session_id="s3"))

        [d2], [d3] = await asyncio.gather(
            updater.update_mastery_after_quiz(course_id, s2),
            updater.update_mastery_after_quiz(course_id, s3),
        )

        first, second = sorted([d2, d3], key=lambda d: d.previous_score)
        assert first.previous_score == pytest.approx(50.0)
        assert second.previous_score == pytest.approx(first.new_score)
        assert second.new_score == pytest.approx(75.0)
        assert memory_store.count(MASTERY_SCORES) == 1
        assert memory_store.count(MASTERY_HISTORY) == 3
