"""Domain models for task orchestration and execution results."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class BackendId(str, Enum):
    """Closed set of execution backends the orchestrator can dispatch to."""

    NX = "nx"
    TURBO = "turbo"
    DENO = "deno"
    BUN = "bun"
    NPM = "npm"

    @classmethod
    def parse(cls, value: str) -> BackendId:
        """Parse backend id case-insensitively, rejecting unknown names."""

        normalized = value.strip().lower()
        try:
            return cls(normalized)
        except ValueError as error:
            supported = ", ".join(backend.value for backend in cls)
            raise ValueError(
                f"Unsupported backend: {value!r}. Use one of: {supported}.",
            ) from error


PACKAGE_MANAGERS = (BackendId.DENO, BackendId.BUN, BackendId.NPM)
TASK_RUNNERS = (BackendId.NX, BackendId.TURBO)


class CacheStrategy(str, Enum):
    """Caching policy forwarded to backends that support it."""

    AGGRESSIVE = "aggressive"
    CONSERVATIVE = "conservative"
    DISABLED = "disabled"


class BatchStatus(str, Enum):
    """Per-batch lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes recorded on failed attempts."""

    TIMEOUT = "timeout"
    COMMAND_NOT_FOUND = "command_not_found"
    RUNNER_UNAVAILABLE = "runner_unavailable"
    MISSING_MODULE = "missing_module"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    TRANSIENT = "transient"
    NON_ZERO_EXIT = "non_zero_exit"


@dataclass(frozen=True, slots=True)
class FallbackStep:
    """Alternate backend + command tried when the primary runner fails."""

    runner: BackendId
    command: str


@dataclass(frozen=True, slots=True)
class TaskDefinition:
    """Immutable registry entry describing one named task."""

    name: str
    command: str
    preferred_runner: BackendId
    dependencies: tuple[str, ...] = ()
    fallbacks: tuple[FallbackStep, ...] = ()
    parallel_safe: bool = True
    cacheable: bool = False
    cloud_cacheable: bool = False
    timeout_seconds: float = 600.0
    retries: int = 0
    platforms: tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True, slots=True)
class RunnerCapabilities:
    """Availability snapshot of every backend, computed once per run."""

    available: Mapping[BackendId, bool]

    @classmethod
    def from_available(cls, backends: Iterable[BackendId]) -> RunnerCapabilities:
        """Build a snapshot where only the given backends are available."""

        enabled = set(backends)
        return cls(available={backend: backend in enabled for backend in BackendId})

    def is_available(self, backend: BackendId) -> bool:
        return bool(self.available.get(backend, False))

    def available_backends(self) -> tuple[BackendId, ...]:
        return tuple(backend for backend in BackendId if self.is_available(backend))

    def environment_issues(self) -> list[str]:
        """Describe missing backend families, empty when the environment is usable."""

        issues: list[str] = []
        if not any(self.is_available(backend) for backend in PACKAGE_MANAGERS):
            issues.append("Neither Deno, Bun nor npm is available")
        if not any(self.is_available(backend) for backend in TASK_RUNNERS):
            issues.append("Neither NX nor Turborepo is available")
        return issues


@dataclass(frozen=True, slots=True)
class RunPreferences:
    """Caller-supplied defaults consulted by runner selection."""

    task_runner: BackendId = BackendId.TURBO
    package_manager: BackendId = BackendId.DENO
    cache_strategy: CacheStrategy = CacheStrategy.AGGRESSIVE


@dataclass(frozen=True, slots=True)
class ExecuteOptions:
    """Per-run execution switches shared by every task in the run."""

    dry_run: bool = False
    verbose: bool = False
    fallback_enabled: bool = True
    cache_strategy: CacheStrategy = CacheStrategy.AGGRESSIVE
    cloud_cache: bool = False
    frameworks: tuple[str, ...] = ()
    platforms: tuple[str, ...] = ()
    cwd: str | None = None


@dataclass(slots=True)
class Attempt:
    """One backend invocation made while executing a task."""

    runner: BackendId
    command: str
    exit_code: int | None
    timed_out: bool = False
    failure_class: FailureClass | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "runner": self.runner.value,
            "command": self.command,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one task after retries and the fallback walk."""

    task_name: str
    runner_used: BackendId | None
    succeeded: bool
    duration_ms: int
    attempts: list[Attempt] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False
    error: str | None = None

    @property
    def failure_class(self) -> FailureClass | None:
        if self.succeeded:
            return None
        if not self.attempts:
            return FailureClass.RUNNER_UNAVAILABLE
        return self.attempts[-1].failure_class

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "runner_used": self.runner_used.value if self.runner_used else None,
            "succeeded": self.succeeded,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
            "error": self.error,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass(slots=True)
class BatchReport:
    """Execution record of one dependency level."""

    index: int
    task_names: list[str]
    status: BatchStatus = BatchStatus.PENDING
    parallel: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "task_names": list(self.task_names),
            "status": self.status.value,
            "parallel": self.parallel,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class RunSummary:
    """Aggregate of every task result produced by one orchestrator run."""

    run_id: str
    requested_tasks: list[str]
    started_at: datetime
    finished_at: datetime | None = None
    results: list[ExecutionResult] = field(default_factory=list)
    batches: list[BatchReport] = field(default_factory=list)
    duration_ms: int = 0
    dry_run: bool = False
    bailed: bool = False

    @property
    def succeeded(self) -> bool:
        return all(result.succeeded for result in self.results)

    @property
    def failed_results(self) -> list[ExecutionResult]:
        return [result for result in self.results if not result.succeeded]

    def result_for(self, task_name: str) -> ExecutionResult | None:
        for result in self.results:
            if result.task_name == task_name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "requested_tasks": list(self.requested_tasks),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "succeeded": self.succeeded,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
            "bailed": self.bailed,
            "batches": [batch.to_dict() for batch in self.batches],
            "results": [result.to_dict() for result in self.results],
        }
