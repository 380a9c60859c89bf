"""SQLite run history backed by SQLModel."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import Column, DateTime, ForeignKey, Text, event
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from unified_runner.orchestrator.models import RunSummary


class RunRecord(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    requested_tasks: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int = 0
    succeeded: bool = Field(index=True)
    dry_run: bool = False
    bailed: bool = False
    batch_count: int = 0


class RunTaskResultRecord(SQLModel, table=True):
    __tablename__ = "run_task_results"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    task_name: str = Field(index=True)
    runner_used: str | None = None
    succeeded: bool
    duration_ms: int = 0
    failure_class: str | None = None
    error: str | None = None
    attempts_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))


@dataclass(slots=True)
class RunView:
    run_id: str
    requested_tasks: list[str]
    started_at: datetime
    finished_at: datetime | None
    duration_ms: int
    succeeded: bool
    dry_run: bool
    bailed: bool
    batch_count: int


@dataclass(slots=True)
class TaskResultView:
    task_name: str
    runner_used: str | None
    succeeded: bool
    duration_ms: int
    failure_class: str | None
    error: str | None
    attempts: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class RunDetails:
    run: RunView
    results: list[TaskResultView]


class RunHistoryRepository:
    """Persistence facade for completed runs."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
            poolclass=NullPool,
        )
        event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(
            self.engine,
            tables=[RunRecord.__table__, RunTaskResultRecord.__table__],  # type: ignore[list-item]
        )

    def record_run(self, summary: RunSummary) -> None:
        with Session(self.engine) as session:
            session.add(
                RunRecord(
                    run_id=summary.run_id,
                    requested_tasks=json.dumps(summary.requested_tasks),
                    started_at=summary.started_at,
                    finished_at=summary.finished_at,
                    duration_ms=summary.duration_ms,
                    succeeded=summary.succeeded,
                    dry_run=summary.dry_run,
                    bailed=summary.bailed,
                    batch_count=len(summary.batches),
                ),
            )
            # Parent row must exist before children under foreign_keys=ON.
            session.flush()
            for position, result in enumerate(summary.results):
                session.add(
                    RunTaskResultRecord(
                        run_id=summary.run_id,
                        position=position,
                        task_name=result.task_name,
                        runner_used=result.runner_used.value if result.runner_used else None,
                        succeeded=result.succeeded,
                        duration_ms=result.duration_ms,
                        failure_class=(
                            result.failure_class.value if result.failure_class else None
                        ),
                        error=result.error,
                        attempts_json=json.dumps(
                            [attempt.to_dict() for attempt in result.attempts],
                        ),
                    ),
                )
            session.commit()

    def list_runs(self, *, limit: int = 20) -> list[RunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RunRecord).order_by(col(RunRecord.started_at).desc()).limit(limit),
            ).all()
        return [_to_run_view(row) for row in rows]

    def get_run(self, run_id: str) -> RunDetails | None:
        """Return one run with its task results; ``run_id`` may be a unique prefix."""

        with Session(self.engine) as session:
            matches = session.exec(
                select(RunRecord)
                .where(col(RunRecord.run_id).startswith(run_id, autoescape=True))
                .limit(2),
            ).all()
            if len(matches) != 1:
                return None
            run = matches[0]
            rows = session.exec(
                select(RunTaskResultRecord)
                .where(RunTaskResultRecord.run_id == run.run_id)
                .order_by(col(RunTaskResultRecord.position).asc()),
            ).all()

        results = [
            TaskResultView(
                task_name=row.task_name,
                runner_used=row.runner_used,
                succeeded=row.succeeded,
                duration_ms=row.duration_ms,
                failure_class=row.failure_class,
                error=row.error,
                attempts=json.loads(row.attempts_json),
            )
            for row in rows
        ]
        return RunDetails(run=_to_run_view(run), results=results)


def _to_run_view(row: RunRecord) -> RunView:
    return RunView(
        run_id=row.run_id,
        requested_tasks=json.loads(row.requested_tasks),
        started_at=_to_utc_aware_datetime(row.started_at),
        finished_at=_to_utc_aware_datetime(row.finished_at) if row.finished_at else None,
        duration_ms=row.duration_ms,
        succeeded=row.succeeded,
        dry_run=row.dry_run,
        bailed=row.bailed,
        batch_count=row.batch_count,
    )


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _enable_sqlite_foreign_keys(dbapi_connection: sqlite3.Connection, _: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()
