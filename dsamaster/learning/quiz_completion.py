"""
Quiz-completion flow.

The mastery update runs after a quiz session is saved and must never block
or undo it. ``schedule_mastery_update`` starts the update as an asyncio
task and hands back a ``MasteryUpdateJob``; the caller decides whether to
await the outcome, poll it, or detach. Failures are logged and reported as
a non-fatal notification, never re-raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger

from dsamaster.core.models import Attempt, MasteryDelta
from dsamaster.db.store import ATTEMPTS, MasteryStore
from dsamaster.learning.mastery_updater import MasteryUpdater

FAILURE_NOTIFICATION = "Your quiz results are saved, but topic mastery could not be updated."

# Detached tasks stay referenced here until they finish
_DETACHED_TASKS: set[asyncio.Task] = set()


@dataclass
class MasteryUpdateOutcome:
    """Result of a background mastery update."""

    course_id: str
    deltas: list[MasteryDelta] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def notification(self) -> str | None:
        """User-facing message when the update failed."""
        return FAILURE_NOTIFICATION if self.error is not None else None


class MasteryUpdateJob:
    """Handle on a mastery update running in the background."""

    def __init__(self, course_id: str, task: asyncio.Task[list[MasteryDelta]]):
        self.course_id = course_id
        self.task = task
        task.add_done_callback(self._log_failure)

    @property
    def done(self) -> bool:
        return self.task.done()

    async def outcome(self) -> MasteryUpdateOutcome:
        """Wait for the update. Never raises for update failures."""
        try:
            deltas = await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise
            return MasteryUpdateOutcome(self.course_id, error=asyncio.CancelledError())
        except Exception as exc:  # Reported as a non-fatal outcome; logged by the done-callback
            return MasteryUpdateOutcome(self.course_id, error=exc)
        return MasteryUpdateOutcome(self.course_id, deltas=deltas)

    def detach(self) -> None:
        """Let the update finish on its own; failures are still logged."""
        _DETACHED_TASKS.add(self.task)
        self.task.add_done_callback(_DETACHED_TASKS.discard)

    def _log_failure(self, task: asyncio.Task[list[MasteryDelta]]) -> None:
        if task.cancelled():
            logger.warning(f"Mastery update for course {self.course_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(
                f"Mastery update for course {self.course_id} failed; quiz results are unaffected"
            )


def schedule_mastery_update(
    updater: MasteryUpdater,
    course_id: str,
    attempts: Sequence[Attempt],
) -> MasteryUpdateJob:
    """Start update_mastery_after_quiz on the running loop."""
    task = asyncio.create_task(
        updater.update_mastery_after_quiz(course_id, list(attempts)),
        name=f"mastery-update-{course_id}",
    )
    return MasteryUpdateJob(course_id, task)


async def complete_quiz_session(
    store: MasteryStore,
    updater: MasteryUpdater,
    session_id: str,
    course_id: str,
) -> MasteryUpdateJob:
    """
    Kick off the mastery update for a finished quiz session.

    Reads the session's persisted attempts and schedules the update. Errors
    reading the attempts propagate; errors in the update itself end up in
    the job's outcome.
    """
    rows = await store.query(ATTEMPTS, "session_id", session_id)
    attempts = [Attempt.from_record(row) for row in rows]
    logger.debug(f"Quiz session {session_id} complete with {len(attempts)} attempts")
    return schedule_mastery_update(updater, course_id, attempts)
