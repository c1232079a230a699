"""
Learning Module - Mastery orchestration on top of the storage layer.

Components:
- mastery_updater: MasteryUpdater (update after quiz, course rebuild) and read helpers
- quiz_completion: Background mastery update with non-fatal failure reporting
"""

from dsamaster.learning.mastery_updater import (
    MasteryUpdater,
    load_course_mastery,
    load_mistakes,
    load_topic_history,
)
from dsamaster.learning.quiz_completion import (
    MasteryUpdateJob,
    MasteryUpdateOutcome,
    complete_quiz_session,
    schedule_mastery_update,
)

__all__ = [
    "MasteryUpdateJob",
    "MasteryUpdateOutcome",
    "MasteryUpdater",
    "complete_quiz_session",
    "load_course_mastery",
    "load_mistakes",
    "load_topic_history",
    "schedule_mastery_update",
]
