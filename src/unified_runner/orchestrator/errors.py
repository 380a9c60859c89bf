"""Error taxonomy for task orchestration."""

from __future__ import annotations

from collections.abc import Sequence

from unified_runner.orchestrator.models import BackendId


class OrchestratorError(Exception):
    """Base exception for orchestrator errors."""


class ConfigurationError(OrchestratorError):
    """Invalid task configuration; fatal and raised before any execution."""


class RegistryError(ConfigurationError):
    """Task registry entry or file failed validation."""


class UnknownTaskError(ConfigurationError):
    """A requested task or a dependency is absent from the registry."""

    def __init__(self, task_name: str, *, required_by: str | None = None) -> None:
        self.task_name = task_name
        self.required_by = required_by
        if required_by is None:
            message = f"Unknown task: {task_name!r}"
        else:
            message = f"Unknown task: {task_name!r} (dependency of {required_by!r})"
        super().__init__(message)


class DependencyCycleError(ConfigurationError):
    """Requested tasks participate in a dependency cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class NoRunnerAvailableError(OrchestratorError):
    """No backend, primary or fallback, is usable for a task."""

    def __init__(self, task_name: str) -> None:
        self.task_name = task_name
        super().__init__(f"No suitable task runner available for task {task_name!r}")


class RunnerExecutionFailure(OrchestratorError):
    """Backend exited with a non-zero status."""

    def __init__(
        self,
        runner: BackendId,
        exit_code: int | None,
        stderr: str = "",
        *,
        message: str | None = None,
    ) -> None:
        self.runner = runner
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message or f"Runner {runner.value} failed with exit code {exit_code}")


class RunnerTimeoutError(RunnerExecutionFailure):
    """Backend exceeded its timeout and was terminated."""

    def __init__(self, runner: BackendId, timeout_seconds: float, stderr: str = "") -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            runner,
            exit_code=124,
            stderr=stderr,
            message=f"Runner {runner.value} timed out after {timeout_seconds:g}s",
        )
