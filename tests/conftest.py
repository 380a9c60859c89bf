"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from unified_runner.orchestrator.backend import ProcessRunRequest, ProcessRunResult
from unified_runner.orchestrator.models import BackendId, FallbackStep, TaskDefinition

Handler = Callable[[ProcessRunRequest], ProcessRunResult]


class FakeSpawner:
    """Records every spawn request and answers from a handler."""

    def __init__(self, handler: Handler | None = None) -> None:
        self.handler: Handler = handler or (lambda _request: ProcessRunResult(0, False))
        self.calls: list[ProcessRunRequest] = []
        self._lock = threading.Lock()

    def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        with self._lock:
            self.calls.append(request)
        return self.handler(request)

    @property
    def argvs(self) -> list[list[str]]:
        return [call.argv for call in self.calls]

    def task_calls(self) -> list[ProcessRunRequest]:
        """Spawns other than ``--version`` capability checks."""

        return [call for call in self.calls if call.argv[-1:] != ["--version"]]


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture()
def make_task() -> Callable[..., TaskDefinition]:
    def _make(
        name: str,
        *,
        runner: BackendId = BackendId.BUN,
        command: str | None = None,
        dependencies: tuple[str, ...] = (),
        fallbacks: tuple[tuple[BackendId, str], ...] = (),
        **overrides,
    ) -> TaskDefinition:
        return TaskDefinition(
            name=name,
            command=command or f"run {name}",
            preferred_runner=runner,
            dependencies=dependencies,
            fallbacks=tuple(FallbackStep(runner=r, command=c) for r, c in fallbacks),
            **overrides,
        )

    return _make

