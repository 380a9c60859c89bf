"""Runner selection: pick the backend that executes a task."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from unified_runner.orchestrator.errors import NoRunnerAvailableError
from unified_runner.orchestrator.models import (
    BackendId,
    CacheStrategy,
    RunnerCapabilities,
    RunPreferences,
    TaskDefinition,
)


@dataclass(frozen=True, slots=True)
class SelectionPolicy:
    """Heuristic tables consulted after the task's own preferred runner.

    ``category_backends`` match task-name prefixes, ``keyword_backends`` match
    anywhere in the name.
    """

    caching_backends: tuple[BackendId, ...] = (BackendId.TURBO, BackendId.NX)
    category_backends: tuple[tuple[str, BackendId], ...] = (("test", BackendId.DENO),)
    keyword_backends: tuple[tuple[str, BackendId], ...] = (("deno", BackendId.DENO),)
    priority_order: tuple[BackendId, ...] = (
        BackendId.BUN,
        BackendId.DENO,
        BackendId.TURBO,
        BackendId.NX,
        BackendId.NPM,
    )


class RunnerSelector:
    """Deterministic layered selection over the closed backend set."""

    def __init__(self, policy: SelectionPolicy | None = None) -> None:
        self.policy = policy or SelectionPolicy()

    def select(
        self,
        task: TaskDefinition,
        caps: RunnerCapabilities,
        preferences: RunPreferences,
    ) -> BackendId:
        for candidate, _reason in self.candidates(task, preferences):
            if caps.is_available(candidate):
                return candidate
        raise NoRunnerAvailableError(task.name)

    def explain(
        self,
        task: TaskDefinition,
        caps: RunnerCapabilities,
        preferences: RunPreferences,
    ) -> tuple[BackendId, str]:
        """Return the selected backend with the rule that matched it."""

        for candidate, reason in self.candidates(task, preferences):
            if caps.is_available(candidate):
                return candidate, reason
        raise NoRunnerAvailableError(task.name)

    def candidates(
        self,
        task: TaskDefinition,
        preferences: RunPreferences,
    ) -> Iterator[tuple[BackendId, str]]:
        """Yield candidate backends in decision order; availability is not checked."""

        yield task.preferred_runner, "preferred"

        if (
            task.cacheable
            and task.dependencies
            and preferences.cache_strategy is not CacheStrategy.DISABLED
        ):
            for backend in self.policy.caching_backends:
                yield backend, "caching"

        for category, backend in self.policy.category_backends:
            if task.name.startswith(category):
                yield backend, f"category:{category}"

        for keyword, backend in self.policy.keyword_backends:
            if keyword in task.name:
                yield backend, f"keyword:{keyword}"

        yield preferences.task_runner, "default_task_runner"
        yield preferences.package_manager, "default_package_manager"

        for backend in self.policy.priority_order:
            yield backend, "priority"
