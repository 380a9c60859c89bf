from __future__ import annotations

import threading
import time

import allure
import pytest

from unified_runner.orchestrator.backend import ProcessRunResult
from unified_runner.orchestrator.engine import Orchestrator
from unified_runner.orchestrator.errors import DependencyCycleError, UnknownTaskError
from unified_runner.orchestrator.executor import Executor
from unified_runner.orchestrator.models import (
    BackendId,
    BatchStatus,
    ExecuteOptions,
    FailureClass,
    RunnerCapabilities,
)
from unified_runner.orchestrator.registry import TaskRegistry

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Batch Scheduling"),
]

_ALL = RunnerCapabilities.from_available(BackendId)


def _orchestrator(tasks, spawner, *, caps=_ALL, options=None, **kwargs) -> Orchestrator:
    return Orchestrator(
        registry=TaskRegistry(tasks),
        capabilities=caps,
        executor=Executor(spawner=spawner, capabilities=caps),
        options=options,
        **kwargs,
    )


def _sleeping(durations: dict[str, float]):
    """Sleep for the duration keyed by the last argv item, then succeed."""

    def handler(request):
        time.sleep(durations.get(request.argv[-1], 0))
        return ProcessRunResult(exit_code=0, timed_out=False)

    return handler


def _failing(*names: str):
    def handler(request):
        if request.argv[-1] in names:
            return ProcessRunResult(exit_code=1, timed_out=False, stderr="boom")
        return ProcessRunResult(exit_code=0, timed_out=False)

    return handler


def test_parallel_batch_takes_longest_task_time(make_task, spawner) -> None:
    spawner.handler = _sleeping({"fast": 0.1, "slow": 0.3})
    orchestrator = _orchestrator([make_task("fast"), make_task("slow")], spawner)

    started = time.monotonic()
    summary = orchestrator.run(["fast", "slow"])
    elapsed = time.monotonic() - started

    assert summary.succeeded
    assert summary.batches[0].parallel
    assert elapsed < 0.38
    assert [result.task_name for result in summary.results] == ["fast", "slow"]


def test_batch_runs_sequentially_when_a_task_is_not_parallel_safe(make_task, spawner) -> None:
    active = 0
    overlap = []
    lock = threading.Lock()

    def handler(request):
        nonlocal active
        with lock:
            active += 1
            overlap.append(active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return ProcessRunResult(exit_code=0, timed_out=False)

    spawner.handler = handler
    tasks = [make_task("a"), make_task("b", parallel_safe=False), make_task("c")]

    summary = _orchestrator(tasks, spawner).run(["a", "b", "c"])

    assert summary.succeeded
    assert not summary.batches[0].parallel
    assert max(overlap) == 1
    assert [call.argv[-1] for call in spawner.calls] == ["a", "b", "c"]


def test_parallel_disabled_runs_in_registration_order(make_task, spawner) -> None:
    tasks = [make_task("z"), make_task("y"), make_task("x")]

    summary = _orchestrator(tasks, spawner, parallel=False).run(["x", "y", "z"])

    assert not summary.batches[0].parallel
    assert [call.argv[-1] for call in spawner.calls] == ["z", "y", "x"]
    assert [result.task_name for result in summary.results] == ["z", "y", "x"]


def test_dependencies_finish_in_earlier_batch(make_task, spawner) -> None:
    tasks = [
        make_task("A"),
        make_task("B", dependencies=("A",)),
        make_task("C", dependencies=("A",)),
    ]

    summary = _orchestrator(tasks, spawner).run(["B", "C"])

    assert [batch.task_names for batch in summary.batches] == [["A"], ["B", "C"]]
    assert spawner.calls[0].argv[-1] == "A"
    assert all(batch.status is BatchStatus.SUCCEEDED for batch in summary.batches)


@pytest.mark.parametrize("bail", [True, False])
def test_bail_controls_later_batches(make_task, spawner, bail: bool) -> None:
    spawner.handler = _failing("A")
    tasks = [make_task("A"), make_task("B", dependencies=("A",))]

    summary = _orchestrator(tasks, spawner, bail=bail).run(["A", "B"])

    assert not summary.succeeded
    assert summary.batches[0].status is BatchStatus.FAILED
    if bail:
        assert summary.bailed
        assert summary.result_for("B") is None
        assert summary.batches[1].status is BatchStatus.PENDING
    else:
        assert not summary.bailed
        assert summary.result_for("B") is not None


def test_bail_finishes_the_current_batch(make_task, spawner) -> None:
    spawner.handler = _failing("a")
    tasks = [make_task("a"), make_task("b"), make_task("c", dependencies=("a",))]

    summary = _orchestrator(tasks, spawner, bail=True).run(["a", "b", "c"])

    assert [result.task_name for result in summary.results] == ["a", "b"]
    assert summary.result_for("b").succeeded


def test_end_to_end_fallback_after_unavailable_primary(make_task, spawner) -> None:
    caps = RunnerCapabilities.from_available([BackendId.BUN])
    tasks = [
        make_task(
            name,
            runner=BackendId.NX,
            command=f"run-many --target={name}",
            dependencies=deps,
            fallbacks=((BackendId.BUN, f"run {name}-fb"),),
        )
        for name, deps in (("A", ()), ("B", ("A",)), ("C", ("A",)))
    ]

    summary = _orchestrator(tasks, spawner, caps=caps).run(["B", "C"])

    assert [batch.task_names for batch in summary.batches] == [["A"], ["B", "C"]]
    assert summary.succeeded
    for name in ("A", "B", "C"):
        result = summary.result_for(name)
        assert result.runner_used is BackendId.BUN
        assert [(a.runner, a.exit_code) for a in result.attempts] == [
            (BackendId.NX, None),
            (BackendId.BUN, 0),
        ]
        assert result.attempts[0].failure_class is FailureClass.RUNNER_UNAVAILABLE
    assert sorted(spawner.argvs) == [
        ["bun", "run", "A-fb"],
        ["bun", "run", "B-fb"],
        ["bun", "run", "C-fb"],
    ]


def test_substituted_runner_keeps_walking_fallbacks(make_task, spawner) -> None:
    caps = RunnerCapabilities.from_available([BackendId.TURBO, BackendId.NPM])
    spawner.handler = _failing("build")
    task = make_task(
        "build",
        runner=BackendId.NX,
        command="build",
        fallbacks=((BackendId.NPM, "run build:npm"),),
    )

    result = _orchestrator([task], spawner, caps=caps).run(["build"]).result_for("build")

    assert result.succeeded
    assert [a.runner for a in result.attempts] == [BackendId.NX, BackendId.TURBO, BackendId.NPM]
    assert result.runner_used is BackendId.NPM


def test_dry_run_spawns_nothing(make_task, spawner) -> None:
    tasks = [make_task("A"), make_task("B", dependencies=("A",))]

    summary = _orchestrator(tasks, spawner, options=ExecuteOptions(dry_run=True)).run(["B"])

    assert summary.dry_run
    assert summary.succeeded
    assert all(result.dry_run for result in summary.results)
    assert spawner.calls == []


def test_no_available_runner_is_a_task_failure(make_task, spawner) -> None:
    caps = RunnerCapabilities.from_available([])

    summary = _orchestrator([make_task("A")], spawner, caps=caps).run(["A"])

    result = summary.result_for("A")
    assert not result.succeeded
    assert result.runner_used is None
    assert result.failure_class is FailureClass.RUNNER_UNAVAILABLE
    assert "No suitable task runner" in (result.error or "")
    assert spawner.calls == []


@pytest.mark.parametrize(
    ("tasks", "requested", "error"),
    [
        ([("A", ())], ["missing"], UnknownTaskError),
        ([("A", ("B",)), ("B", ("A",))], ["A"], DependencyCycleError),
    ],
)
def test_configuration_errors_raise_before_spawning(
    make_task,
    spawner,
    tasks,
    requested,
    error,
) -> None:
    registry_tasks = [make_task(name, dependencies=deps) for name, deps in tasks]

    with pytest.raises(error):
        _orchestrator(registry_tasks, spawner).run(requested)
    assert spawner.calls == []


def test_progress_messages_are_reported(make_task, spawner) -> None:
    spawner.handler = _failing("b")
    messages: list[str] = []
    tasks = [make_task("a"), make_task("b")]

    _orchestrator(tasks, spawner, parallel=False, on_progress=messages.append).run(["a", "b"])

    assert any(msg.startswith("  ok a [bun]") for msg in messages)
    assert any(msg.startswith("  x b [bun]") for msg in messages)
    assert "Batch 1 failed: b" in messages
    assert messages[-1].startswith("Run ")


def test_plan_does_not_execute(make_task, spawner) -> None:
    tasks = [make_task("A"), make_task("B", dependencies=("A",))]

    assert _orchestrator(tasks, spawner).plan(["B"]) == [["A"], ["B"]]
    assert spawner.calls == []
