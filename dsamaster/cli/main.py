"""
Typer CLI for the dsa-master mastery engine.

Commands:
    dsamaster db init                       - Create store tables
    dsamaster attempts import FILE          - Import quiz attempts (JSON) and update mastery
    dsamaster mastery show COURSE_ID        - Mastery per topic for a course
    dsamaster mastery history COURSE_ID TOPIC - Score snapshots for one topic
    dsamaster mastery rebuild COURSE_ID     - Re-derive mastery from all attempts
    dsamaster mistakes list COURSE_ID       - Open mistake bank items

Usage:
    dsamaster --help
    dsamaster --db sqlite:///./mastery.db attempts import session.json
    dsamaster mastery show dsa-101
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, TypeVar
from uuid import uuid4

import typer
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from dsamaster.config import Settings, get_settings
from dsamaster.core.models import Attempt, Difficulty, MasteryDelta, to_utc
from dsamaster.db.sql_store import SqlAlchemyStore
from dsamaster.db.store import ATTEMPTS, DuplicateKeyError, StorageError
from dsamaster.learning.mastery_updater import (
    MasteryUpdater,
    load_course_mastery,
    load_mistakes,
    load_topic_history,
)

T = TypeVar("T")

app = typer.Typer(help="dsa-master CLI: quiz attempts -> topic mastery and mistake bank")
db_app = typer.Typer(help="Database management")
attempts_app = typer.Typer(help="Quiz attempt import")
mastery_app = typer.Typer(help="Topic mastery")
mistakes_app = typer.Typer(help="Mistake bank")
app.add_typer(db_app, name="db")
app.add_typer(attempts_app, name="attempts")
app.add_typer(mastery_app, name="mastery")
app.add_typer(mistakes_app, name="mistakes")

console = Console()


# ========================================
# Setup
# ========================================


def configure_logging(settings: Settings) -> None:
    """Replace loguru's default sink with the configured stderr/file sinks."""
    level = settings.log_level
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if settings.log_file:
        logger.add(settings.log_file, level=level, rotation="10 MB", retention=5)


@app.callback()
def main_callback(
    ctx: typer.Context,
    db: str | None = typer.Option(None, "--db", help="Database URL (default: from config)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Mastery scoring and mistake bank for quiz practice."""
    settings = get_settings()
    overrides: dict[str, Any] = {}
    if db:
        overrides["database_url"] = db
    if verbose:
        # Also turns on SQL echo in _run
        overrides["log_level"] = "DEBUG"
    if overrides:
        settings = settings.model_copy(update=overrides)
    configure_logging(settings)
    ctx.obj = settings


def _run(ctx: typer.Context, action: Callable[[SqlAlchemyStore, Settings], Awaitable[T]]) -> T:
    """Open the store, run an async action against it, and close it again."""
    settings: Settings = ctx.obj

    async def runner() -> T:
        store = SqlAlchemyStore(settings.database_url, echo=settings.log_level == "DEBUG")
        try:
            await store.init()
            return await action(store, settings)
        finally:
            await store.dispose()

    try:
        return asyncio.run(runner())
    except StorageError as exc:
        logger.error(f"Storage error: {exc}")
        raise typer.Exit(code=1)


def _print_deltas(deltas: list[MasteryDelta]) -> None:
    if not deltas:
        rprint("[dim]No topics touched.[/dim]")
        return

    table = Table(title="Topic Mastery")
    table.add_column("Topic", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Status")
    table.add_column("Trend", justify="center")

    for delta in deltas:
        color = "green" if delta.improved else "red" if delta.declined else "dim"
        status = f"[{delta.new_status.color}]{delta.new_status.display_name}[/]"
        if delta.status_changed:
            status = f"{delta.previous_status.display_name} → {status}"
        table.add_row(
            delta.topic_tag,
            f"[{color}]{delta.previous_score:.0f}% → {delta.new_score:.0f}%[/{color}]",
            status,
            delta.trend.arrow,
        )
    console.print(table)


# ========================================
# Database
# ========================================


@db_app.command("init")
def db_init(ctx: typer.Context) -> None:
    """
    Create the store tables if they don't exist.

    Safe to run multiple times (idempotent).
    """

    async def action(store: SqlAlchemyStore, settings: Settings) -> None:
        return None

    _run(ctx, action)
    rprint(f"[green]✓[/green] Database initialized at {ctx.obj.database_url}")


# ========================================
# Attempts
# ========================================


class AttemptImport(BaseModel):
    """One attempt from an export file. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    attempt_id: str = Field(
        default_factory=lambda: str(uuid4()),
        validation_alias=AliasChoices("attempt_id", "attemptId"),
    )
    session_id: str = Field(..., validation_alias=AliasChoices("session_id", "sessionId"))
    question_id: str = Field(..., validation_alias=AliasChoices("question_id", "questionId"))
    course_id: str = Field(..., validation_alias=AliasChoices("course_id", "courseId"))
    answer: Any = None
    correct: bool
    timestamp: datetime
    duration_ms: int | None = Field(None, ge=0, validation_alias=AliasChoices("duration_ms", "durationMs"))
    topic_tags: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("topic_tags", "topicTags")
    )
    difficulty: Literal["Easy", "Medium", "Hard"] | None = None
    confidence: float | None = None

    def to_attempt(self) -> Attempt:
        return Attempt(
            attempt_id=self.attempt_id,
            session_id=self.session_id,
            question_id=self.question_id,
            course_id=self.course_id,
            answer=self.answer,
            correct=self.correct,
            timestamp=to_utc(self.timestamp),
            duration_ms=self.duration_ms,
            topic_tags=self.topic_tags,
            difficulty=Difficulty(self.difficulty) if self.difficulty else None,
            confidence=self.confidence,
        )


_ATTEMPT_LIST = TypeAdapter(list[AttemptImport])


@attempts_app.command("import")
def attempts_import(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list of attempts"),
) -> None:
    """
    Import quiz attempts and update mastery for each imported session.

    Attempts whose ID already exists are skipped.
    """
    try:
        parsed = _ATTEMPT_LIST.validate_json(file.read_text(encoding="utf-8"))
    except ValidationError as exc:
        rprint(f"[red]Invalid attempts file:[/red]\n{escape(str(exc))}")
        raise typer.Exit(code=1)

    attempts = [item.to_attempt() for item in parsed]

    sessions: dict[tuple[str, str], list[Attempt]] = {}

    async def action(store: SqlAlchemyStore, settings: Settings) -> list[MasteryDelta]:
        skipped = 0
        for attempt in attempts:
            try:
                await store.add(ATTEMPTS, attempt.to_record())
            except DuplicateKeyError:
                skipped += 1
                continue
            sessions.setdefault((attempt.course_id, attempt.session_id), []).append(attempt)

        if skipped:
            logger.warning(f"Skipped {skipped} attempts that were already imported")

        updater = MasteryUpdater(store, settings)
        deltas: list[MasteryDelta] = []
        for (course_id, _session_id), session_attempts in sessions.items():
            deltas.extend(await updater.update_mastery_after_quiz(course_id, session_attempts))
        return deltas

    deltas = _run(ctx, action)
    imported = sum(len(session) for session in sessions.values())
    rprint(f"[green]✓[/green] Imported {imported} attempts from {file.name}")
    _print_deltas(deltas)


# ========================================
# Mastery
# ========================================


@mastery_app.command("show")
def mastery_show(
    ctx: typer.Context,
    course_id: str = typer.Argument(..., help="Course ID"),
) -> None:
    """Show mastery per topic for a course."""
    scores = _run(ctx, lambda store, settings: load_course_mastery(store, course_id))

    if not scores:
        rprint(f"[dim]No mastery recorded for course {course_id}.[/dim]")
        return

    table = Table(title=f"Mastery: {course_id}")
    table.add_column("Topic", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Status")
    table.add_column("Trend", justify="center")
    table.add_column("Attempts", justify="right")
    table.add_column("Updated")

    for mastery in scores:
        table.add_row(
            mastery.topic_tag,
            f"{mastery.score:.1f}%",
            f"[{mastery.status.color}]{mastery.status.display_name}[/]",
            mastery.trend.arrow if mastery.trend else "",
            str(mastery.attempt_count),
            mastery.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@mastery_app.command("history")
def mastery_history(
    ctx: typer.Context,
    course_id: str = typer.Argument(..., help="Course ID"),
    topic: str = typer.Argument(..., help="Topic tag"),
) -> None:
    """Show the score snapshots recorded for one topic."""
    history = _run(ctx, lambda store, settings: load_topic_history(store, course_id, topic))

    if not history:
        rprint(f"[dim]No history for {topic} in course {course_id}.[/dim]")
        return

    table = Table(title=f"History: {topic}")
    table.add_column("Recorded")
    table.add_column("Score", justify="right")
    table.add_column("Status")
    for snapshot in history:
        table.add_row(
            snapshot.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{snapshot.score:.1f}%",
            f"[{snapshot.status.color}]{snapshot.status.display_name}[/]",
        )
    console.print(table)


@mastery_app.command("rebuild")
def mastery_rebuild(
    ctx: typer.Context,
    course_id: str = typer.Argument(..., help="Course ID"),
) -> None:
    """Re-derive mastery for every topic of a course from its attempts."""
    deltas = _run(
        ctx, lambda store, settings: MasteryUpdater(store, settings).rebuild_course(course_id)
    )
    _print_deltas(deltas)


# ========================================
# Mistake bank
# ========================================


@mistakes_app.command("list")
def mistakes_list(
    ctx: typer.Context,
    course_id: str = typer.Argument(..., help="Course ID"),
    include_resolved: bool = typer.Option(False, "--all", help="Include resolved items"),
) -> None:
    """List mistake bank items for a course."""
    items = _run(ctx, lambda store, settings: load_mistakes(store, course_id, include_resolved))

    if not items:
        rprint(f"[dim]Mistake bank for {course_id} is empty.[/dim]")
        return

    table = Table(title=f"Mistake Bank: {course_id}")
    table.add_column("Question", style="bold")
    table.add_column("Topics")
    table.add_column("Added")
    table.add_column("Resolved")
    for item in items:
        table.add_row(
            item.question_id,
            ", ".join(item.topic_tags),
            item.created_at.strftime("%Y-%m-%d"),
            item.resolved_at.strftime("%Y-%m-%d") if item.resolved_at else "",
        )
    console.print(table)


def run() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    run()
