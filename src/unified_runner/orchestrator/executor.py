"""Execute one task on a backend, walking its fallback chain on failure."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping

from unified_runner.orchestrator.backend import (
    BackendRunError,
    ProcessRunRequest,
    ProcessRunResult,
    ProcessSpawner,
)
from unified_runner.orchestrator.commands import CommandRenderError, format_argv, render_command
from unified_runner.orchestrator.errors import RunnerExecutionFailure, RunnerTimeoutError
from unified_runner.orchestrator.failure_classifier import (
    CANNOT_EXECUTE_EXIT_CODE,
    COMMAND_NOT_FOUND_EXIT_CODE,
    DEFAULT_TRANSIENT_EXIT_CODES,
    classify_failure,
)
from unified_runner.orchestrator.models import (
    Attempt,
    BackendId,
    ExecuteOptions,
    ExecutionResult,
    FailureClass,
    RunnerCapabilities,
    TaskDefinition,
)

logger = logging.getLogger(__name__)


class Executor:
    """Runs tasks as child processes with retries and fallbacks.

    The primary ``(runner, task.command)`` pair is attempted ``1 + task.retries``
    times. After that each fallback step is tried once, in declaration order,
    skipping steps whose backend is unavailable and ``(runner, command)`` pairs
    that were already attempted. The first success ends the walk.

    When selection substituted another backend for an unavailable preferred
    runner, the preferred runner is recorded as a ``runner_unavailable``
    attempt and the substitute runs its own fallback command if it has one.
    """

    def __init__(
        self,
        *,
        spawner: ProcessSpawner,
        capabilities: RunnerCapabilities,
        executables: Mapping[BackendId, str] | None = None,
        transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
    ) -> None:
        self._spawner = spawner
        self._capabilities = capabilities
        self._executables = dict(executables or {})
        self._transient_exit_codes = transient_exit_codes

    def execute(
        self,
        task: TaskDefinition,
        runner_id: BackendId,
        options: ExecuteOptions,
    ) -> ExecutionResult:
        started = time.monotonic()
        if options.dry_run:
            return self._dry_run(task=task, runner=runner_id, options=options)

        attempts: list[Attempt] = []
        tried: set[tuple[BackendId, str]] = set()
        last_failure: RunnerExecutionFailure | None = None

        if runner_id is not task.preferred_runner and not self._capabilities.is_available(
            task.preferred_runner,
        ):
            logger.info(
                "Task %s: preferred runner %s unavailable, using %s",
                task.name,
                task.preferred_runner.value,
                runner_id.value,
            )
            attempts.append(
                Attempt(
                    runner=task.preferred_runner,
                    command=task.command,
                    exit_code=None,
                    failure_class=FailureClass.RUNNER_UNAVAILABLE,
                ),
            )
            tried.add((task.preferred_runner, task.command))

        for runner, template, primary in self._plan(
            task=task, runner_id=runner_id, options=options
        ):
            if not primary and (runner, template) in tried:
                logger.info("Task %s: skipping already attempted %s", task.name, runner.value)
                continue
            tried.add((runner, template))
            try:
                outcome = self._run_attempt(
                    task=task,
                    runner=runner,
                    template=template,
                    options=options,
                    attempts=attempts,
                )
            except RunnerExecutionFailure as failure:
                last_failure = failure
                logger.warning("Task %s: %s", task.name, failure)
                continue

            return ExecutionResult(
                task_name=task.name,
                runner_used=runner,
                succeeded=True,
                duration_ms=_elapsed_ms(started),
                attempts=attempts,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )

        return ExecutionResult(
            task_name=task.name,
            runner_used=attempts[-1].runner if attempts else None,
            succeeded=False,
            duration_ms=_elapsed_ms(started),
            attempts=attempts,
            stderr=last_failure.stderr if last_failure else "",
            error=str(last_failure) if last_failure else f"No runner attempted for {task.name}",
        )

    def _plan(
        self,
        *,
        task: TaskDefinition,
        runner_id: BackendId,
        options: ExecuteOptions,
    ) -> Iterator[tuple[BackendId, str, bool]]:
        primary = _primary_template(task, runner_id)
        for _ in range(1 + task.retries):
            yield runner_id, primary, True

        if not options.fallback_enabled:
            return
        for step in task.fallbacks:
            if not self._capabilities.is_available(step.runner):
                logger.info(
                    "Task %s: skipping fallback %s (unavailable)",
                    task.name,
                    step.runner.value,
                )
                continue
            logger.info("Task %s: trying fallback %s", task.name, step.runner.value)
            yield step.runner, step.command, False

    def _run_attempt(
        self,
        *,
        task: TaskDefinition,
        runner: BackendId,
        template: str,
        options: ExecuteOptions,
        attempts: list[Attempt],
    ) -> ProcessRunResult:
        started = time.monotonic()
        try:
            argv = render_command(
                runner=runner,
                template=template,
                task=task,
                options=options,
                executables=self._executables,
            )
        except CommandRenderError as error:
            attempts.append(
                Attempt(
                    runner=runner,
                    command=template,
                    exit_code=None,
                    failure_class=FailureClass.NON_ZERO_EXIT,
                ),
            )
            raise RunnerExecutionFailure(runner, None, str(error), message=str(error)) from error

        logger.debug("Task %s: running %s", task.name, format_argv(argv))
        try:
            result = self._spawner.run(
                ProcessRunRequest(
                    argv=argv,
                    timeout_seconds=task.timeout_seconds,
                    cwd=options.cwd,
                    stream_output=options.verbose,
                ),
            )
        except BackendRunError as error:
            result = ProcessRunResult(
                exit_code=(
                    CANNOT_EXECUTE_EXIT_CODE if error.transient else COMMAND_NOT_FOUND_EXIT_CODE
                ),
                timed_out=False,
                stderr=str(error),
            )

        attempt = Attempt(
            runner=runner,
            command=format_argv(argv),
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_ms=_elapsed_ms(started),
        )
        attempts.append(attempt)

        if result.timed_out:
            attempt.failure_class = FailureClass.TIMEOUT
            raise RunnerTimeoutError(runner, task.timeout_seconds, stderr=result.stderr)
        if result.exit_code != 0:
            attempt.failure_class = classify_failure(
                exit_code=result.exit_code,
                timed_out=False,
                stderr=result.stderr,
                stdout=result.stdout,
                transient_exit_codes=self._transient_exit_codes,
            )
            raise RunnerExecutionFailure(runner, result.exit_code, stderr=result.stderr)
        return result

    def _dry_run(
        self,
        *,
        task: TaskDefinition,
        runner: BackendId,
        options: ExecuteOptions,
    ) -> ExecutionResult:
        try:
            argv = render_command(
                runner=runner,
                template=_primary_template(task, runner),
                task=task,
                options=options,
                executables=self._executables,
            )
            command = format_argv(argv)
        except CommandRenderError:
            command = task.command
        return ExecutionResult(
            task_name=task.name,
            runner_used=runner,
            succeeded=True,
            duration_ms=0,
            attempts=[Attempt(runner=runner, command=command, exit_code=0)],
            stdout=f"[DRY RUN] {command}",
            dry_run=True,
        )


def _primary_template(task: TaskDefinition, runner_id: BackendId) -> str:
    """Command for the selected runner: its own fallback step when it has one."""

    if runner_id is task.preferred_runner:
        return task.command
    for step in task.fallbacks:
        if step.runner is runner_id:
            return step.command
    return task.command


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
