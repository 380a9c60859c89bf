"""Batch-level orchestration of a resolved task plan."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from uuid import uuid4

from unified_runner.orchestrator.errors import NoRunnerAvailableError
from unified_runner.orchestrator.executor import Executor
from unified_runner.orchestrator.models import (
    BatchReport,
    BatchStatus,
    ExecuteOptions,
    ExecutionResult,
    RunnerCapabilities,
    RunPreferences,
    RunSummary,
)
from unified_runner.orchestrator.registry import TaskRegistry
from unified_runner.orchestrator.resolver import Batch, DependencyResolver
from unified_runner.orchestrator.selection import RunnerSelector

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs resolved batches in depth order.

    Each batch moves ``pending -> running -> succeeded|failed``. A batch whose
    tasks are all ``parallel_safe`` runs concurrently when parallel execution is
    enabled, otherwise its tasks run one by one in registration order. Task
    failures never raise: they are recorded in the summary and, with ``bail``,
    stop scheduling of the following batches.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: TaskRegistry,
        capabilities: RunnerCapabilities,
        executor: Executor,
        preferences: RunPreferences | None = None,
        options: ExecuteOptions | None = None,
        resolver: DependencyResolver | None = None,
        selector: RunnerSelector | None = None,
        parallel: bool = True,
        bail: bool = False,
        max_workers: int = 4,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self._registry = registry
        self._capabilities = capabilities
        self._executor = executor
        self._preferences = preferences or RunPreferences()
        self._options = options or ExecuteOptions()
        self._resolver = resolver or DependencyResolver()
        self._selector = selector or RunnerSelector()
        self._parallel = parallel
        self._bail = bail
        self._max_workers = max(1, max_workers)
        self._on_progress = on_progress or (lambda _msg: None)

    def plan(self, requested_tasks: Iterable[str]) -> list[Batch]:
        """Resolve batches without executing anything."""

        return self._resolver.resolve(requested_tasks, self._registry)

    def run(self, requested_tasks: Iterable[str]) -> RunSummary:
        requested = list(requested_tasks)
        # Configuration errors propagate before any process is spawned.
        batches = self.plan(requested)

        summary = RunSummary(
            run_id=str(uuid4()),
            requested_tasks=requested,
            started_at=datetime.now(tz=UTC),
            batches=[BatchReport(index=i, task_names=list(b)) for i, b in enumerate(batches)],
            dry_run=self._options.dry_run,
        )
        run_start = time.monotonic()
        self._emit(
            f"Run {summary.run_id[:12]} started: {len(batches)} batches, "
            f"{sum(len(batch) for batch in batches)} tasks",
        )

        for report in summary.batches:
            results = self._run_batch(report)
            summary.results.extend(results)
            if report.status is BatchStatus.FAILED and self._bail:
                remaining = len(summary.batches) - report.index - 1
                if remaining:
                    summary.bailed = True
                    self._emit(f"Bailing out: skipping {remaining} remaining batches")
                break

        summary.finished_at = datetime.now(tz=UTC)
        summary.duration_ms = int((time.monotonic() - run_start) * 1000)
        outcome = "succeeded" if summary.succeeded else "failed"
        self._emit(f"Run {summary.run_id[:12]} {outcome} in {summary.duration_ms / 1000:.1f}s")
        return summary

    def _run_batch(self, report: BatchReport) -> list[ExecutionResult]:
        tasks = [self._registry[name] for name in report.task_names]
        report.parallel = (
            self._parallel and len(tasks) > 1 and all(task.parallel_safe for task in tasks)
        )
        report.status = BatchStatus.RUNNING
        mode = "parallel" if report.parallel else "sequential"
        self._emit(f"Batch {report.index + 1}: {', '.join(report.task_names)} ({mode})")

        started = time.monotonic()
        if report.parallel:
            workers = min(self._max_workers, len(tasks))
            with ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix=f"batch-{report.index}",
            ) as pool:
                futures = [pool.submit(self._execute_task, name) for name in report.task_names]
                results = [future.result() for future in futures]
        else:
            results = [self._execute_task(name) for name in report.task_names]
        report.duration_ms = int((time.monotonic() - started) * 1000)

        failed = [result.task_name for result in results if not result.succeeded]
        report.status = BatchStatus.FAILED if failed else BatchStatus.SUCCEEDED
        if failed:
            self._emit(f"Batch {report.index + 1} failed: {', '.join(failed)}")
        return results

    def _execute_task(self, name: str) -> ExecutionResult:
        task = self._registry[name]
        try:
            runner, reason = self._selector.explain(task, self._capabilities, self._preferences)
        except NoRunnerAvailableError as error:
            logger.error("%s", error)
            self._emit(f"  x {name}: {error}")
            return ExecutionResult(
                task_name=name,
                runner_used=None,
                succeeded=False,
                duration_ms=0,
                error=str(error),
            )

        logger.debug("Task %s: selected %s (%s)", name, runner.value, reason)
        result = self._executor.execute(task, runner, self._options)
        runner_used = result.runner_used.value if result.runner_used else "-"
        if result.succeeded:
            self._emit(f"  ok {name} [{runner_used}] {result.duration_ms}ms")
        else:
            self._emit(f"  x {name} [{runner_used}] after {len(result.attempts)} attempts")
        return result

    def _emit(self, msg: str) -> None:
        """Log and notify progress callback."""
        logger.info(msg)
        self._on_progress(msg)
