from __future__ import annotations

import json
import os
import re
import shlex
import sys
import threading
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from unified_runner import main
from unified_runner.main import unified_runner
from unified_runner.orchestrator.backend import ProcessRunResult
from unified_runner.orchestrator.controllers import OrchestratorCliController, RunTasksCommand

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("CLI"),
]

_RUN_ID = re.compile(r"^Run ([0-9a-f-]{36}): ", re.MULTILINE)


@pytest.fixture()
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, spawner) -> Path:
    for name in list(os.environ):
        if name.startswith("UNIFIED_RUNNER_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)

    def handler(request):
        if request.argv[-1] == "--version":
            return ProcessRunResult(exit_code=0, timed_out=False, stdout="1.0.0")
        if any("fail" in part for part in request.argv):
            return ProcessRunResult(exit_code=1, timed_out=False, stderr="task exploded")
        return ProcessRunResult(exit_code=0, timed_out=False, stdout="done")

    spawner.handler = handler
    monkeypatch.setattr(
        main,
        "CONTROLLER",
        OrchestratorCliController(spawner=spawner, which=lambda name: f"/fake/bin/{name}"),
    )
    _write_registry(
        tmp_path / "tasks.json",
        [
            {"name": "A", "command": "run a", "runner": "bun"},
            {"name": "B", "command": "run b", "runner": "bun", "dependencies": ["A"]},
            {"name": "C", "command": "run fail-c", "runner": "bun", "dependencies": ["A"]},
        ],
    )
    return tmp_path


def _write_registry(path: Path, tasks: list[dict]) -> Path:
    path.write_text(json.dumps({"tasks": tasks}), "utf-8")
    return path


def _invoke(*args: str):
    return CliRunner().invoke(unified_runner, list(args))


def test_run_dry_prints_commands_without_spawning(project: Path, spawner) -> None:
    result = _invoke("run", "--task", "B", "--registry", "tasks.json", "--dry")

    assert result.exit_code == 0, result.output
    assert "[DRY RUN] bun run a" in result.output
    assert "[DRY RUN] bun run b" in result.output
    assert spawner.task_calls() == []


def test_run_executes_dependencies_first(project: Path, spawner) -> None:
    result = _invoke("run", "-t", "B", "--registry", "tasks.json", "--no-history")

    assert result.exit_code == 0, result.output
    assert "SUCCEEDED" in result.output
    argvs = [call.argv for call in spawner.task_calls()]
    assert argvs == [["bun", "run", "a"], ["bun", "run", "b"]]
    assert spawner.task_calls()[0].cwd == str(project.resolve())


def test_failing_task_exits_with_one(project: Path) -> None:
    result = _invoke("run", "-t", "C", "--registry", "tasks.json", "--no-history")

    assert result.exit_code == 1
    assert "FAILED" in result.output
    assert "task exploded" in result.output


def test_unknown_task_is_configuration_error(project: Path, spawner) -> None:
    result = _invoke("run", "-t", "nope", "--registry", "tasks.json")

    assert result.exit_code == 3
    assert "Unknown task: 'nope'" in result.output
    assert spawner.task_calls() == []


def test_dependency_cycle_is_configuration_error(project: Path, spawner) -> None:
    _write_registry(
        project / "cycle.json",
        [
            {"name": "A", "command": "run a", "runner": "bun", "dependencies": ["B"]},
            {"name": "B", "command": "run b", "runner": "bun", "dependencies": ["A"]},
        ],
    )

    result = _invoke("run", "-t", "A", "--registry", "cycle.json")

    assert result.exit_code == 3
    assert "Circular dependency detected" in result.output
    assert spawner.task_calls() == []


def test_invalid_environment_is_configuration_error(
    project: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("UNIFIED_RUNNER_PARALLEL", "maybe")

    result = _invoke("run", "-t", "A", "--registry", "tasks.json")

    assert result.exit_code == 3
    assert "UNIFIED_RUNNER_PARALLEL" in result.output


def test_reports_are_written(project: Path) -> None:
    result = _invoke(
        "run",
        "-t",
        "B",
        "--registry",
        "tasks.json",
        "--report-dir",
        "reports",
        "--junit",
        "--no-history",
    )

    assert result.exit_code == 0, result.output
    summary = json.loads((project / "reports" / "run-summary.json").read_text("utf-8"))
    assert [item["task_name"] for item in summary["results"]] == ["A", "B"]
    assert (project / "reports" / "junit.xml").exists()
    assert "Summary written:" in result.output


def test_json_output(project: Path) -> None:
    result = _invoke("run", "-t", "B", "--registry", "tasks.json", "--json", "--no-history")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["succeeded"] is True
    assert [item["runner_used"] for item in payload["results"]] == ["bun", "bun"]
    assert payload["results"][1]["stdout"] == "done"


def test_history_and_inspect(project: Path) -> None:
    run = _invoke("run", "-t", "B", "--registry", "tasks.json")
    assert run.exit_code == 0, run.output
    match = _RUN_ID.search(run.output)
    assert match is not None
    run_id = match.group(1)

    history = _invoke("history")
    inspect = _invoke("inspect", run_id[:8])

    assert history.exit_code == 0
    assert history.output.splitlines()[0] == "Runs: 1"
    assert run_id in history.output
    assert inspect.exit_code == 0
    assert f"Run: {run_id}" in inspect.output
    assert "Status: succeeded" in inspect.output
    assert "  B runner=bun ok" in inspect.output


def test_no_history_skips_database(project: Path) -> None:
    result = _invoke("run", "-t", "A", "--registry", "tasks.json", "--no-history")

    assert result.exit_code == 0
    assert not (project / ".unified_runner.db").exists()


def test_inspect_unknown_run(project: Path) -> None:
    result = _invoke("inspect", "does-not-exist")

    assert result.exit_code == 1
    assert "Run not found: does-not-exist" in result.output


def test_tasks_lists_builtin_registry(project: Path) -> None:
    result = _invoke("tasks")

    assert result.exit_code == 0
    assert result.output.startswith("Tasks: ")
    assert "  build runner=turbo" in result.output


def test_plan_prints_batches(project: Path, spawner) -> None:
    result = _invoke("plan", "-t", "B", "-t", "C", "--registry", "tasks.json")

    assert result.exit_code == 0
    assert result.output.splitlines() == ["Batches: 2", "  1: A", "  2: B, C"]
    assert spawner.calls == []


def test_missing_registry_file_is_configuration_error(project: Path) -> None:
    result = _invoke("plan", "-t", "A", "--registry", "absent.json")

    assert result.exit_code == 3
    assert "Cannot read task registry" in result.output


def test_status_reports_capabilities(project: Path) -> None:
    result = _invoke("status")

    assert result.exit_code == 0
    assert "Runner capabilities:" in result.output
    assert "  deno: available" in result.output
    assert "Environment: ok" in result.output


def test_install_dry_run(project: Path, spawner) -> None:
    result = _invoke("install", "--dry")

    assert result.exit_code == 0
    assert "Dependencies installed with deno" in result.output
    assert "[DRY RUN] deno install --allow-all" in result.output
    assert spawner.task_calls() == []


def test_clean_dry_run(project: Path) -> None:
    (project / "dist").mkdir()

    result = _invoke("clean", "--dry")

    assert result.exit_code == 0
    assert f"Would remove: {project.resolve() / 'dist'}" in result.output
    assert "Ran: nx reset (exit=0)" in result.output
    assert (project / "dist").exists()


def test_watch_mode_runs_once_then_stops(project: Path, spawner) -> None:
    stop = threading.Event()
    stop.set()
    lines: list[str] = []

    result = main.CONTROLLER.run_tasks(
        RunTasksCommand(tasks=("A",), registry_path=Path("tasks.json"), watch=True),
        echo=lines.append,
        stop_event=stop,
    )

    assert result.lines == ["Watch stopped after 1 runs"]
    assert any(line.startswith("Run ") and "SUCCEEDED" in line for line in lines)
    assert [call.argv for call in spawner.task_calls()] == [["bun", "run", "a"]]
    assert not (project / ".unified_runner.db").exists()


def test_undecodable_task_output_is_a_task_failure(
    project: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("UNIFIED_RUNNER_BUN_EXECUTABLE", shlex.quote(sys.executable))
    monkeypatch.setattr(main, "CONTROLLER", OrchestratorCliController())
    code = "import sys; sys.stderr.buffer.write(b'\\xff\\xfe bad bytes'); sys.exit(1)"
    _write_registry(
        project / "binary.json",
        [{"name": "noisy", "command": f"-c {shlex.quote(code)}", "runner": "bun"}],
    )

    result = _invoke("run", "-t", "noisy", "--registry", "binary.json", "--no-history")

    assert result.exit_code == 1, result.output
    assert "FAILED" in result.output
    assert "bad bytes" in result.output
    assert "Invalid configuration" not in result.output


def test_html_report_is_written(project: Path) -> None:
    result = _invoke(
        "run",
        "-t",
        "C",
        "--registry",
        "tasks.json",
        "--report-dir",
        "reports",
        "--html",
        "--no-history",
    )

    assert result.exit_code == 1
    page = (project / "reports" / "run-report.html").read_text("utf-8")
    assert "task exploded" in page
    assert "HTML report written:" in result.output


def test_cloud_cache_connects_task_runners_before_running(project: Path, spawner) -> None:
    result = _invoke("run", "-t", "A", "--registry", "tasks.json", "--cloud-cache", "--no-history")

    assert result.exit_code == 0, result.output
    assert [call.argv for call in spawner.task_calls()] == [
        ["turbo", "login"],
        ["nx", "connect-to-nx-cloud"],
        ["bun", "run", "a"],
    ]


def test_cloud_cache_dry_run_spawns_nothing(project: Path, spawner) -> None:
    result = _invoke("run", "-t", "A", "--registry", "tasks.json", "--cloud-cache", "--dry")

    assert result.exit_code == 0, result.output
    assert spawner.task_calls() == []


def test_unwritable_history_location_does_not_fail_run(
    project: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (project / "blocker").write_text("not a directory", "utf-8")
    monkeypatch.setenv("UNIFIED_RUNNER_DB_PATH", str(project / "blocker" / "runs.db"))

    result = _invoke("run", "-t", "A", "--registry", "tasks.json")

    assert result.exit_code == 0, result.output
    assert "SUCCEEDED" in result.output


def test_watch_mode_detects_capabilities_for_every_run(
    project: Path,
    spawner,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("UNIFIED_RUNNER_WATCH_DEBOUNCE_SECONDS", "0.05")
    monkeypatch.setenv("UNIFIED_RUNNER_WATCH_POLL_INTERVAL_SECONDS", "0.02")
    installed = {"bun"}
    controller = OrchestratorCliController(
        spawner=spawner,
        which=lambda name: f"/fake/bin/{name}" if name in installed else None,
    )
    _write_registry(
        project / "swap.json",
        [
            {
                "name": "A",
                "command": "run a",
                "runner": "bun",
                "fallbacks": [{"runner": "npm", "command": "run a:npm"}],
            },
        ],
    )
    stop = threading.Event()
    finished: list[str] = []

    def echo(line: str) -> None:
        if not line.startswith("Run "):
            return
        finished.append(line)
        if len(finished) == 1:
            installed.clear()
            installed.add("npm")
            (project / "app.ts").write_text("changed", "utf-8")
        else:
            stop.set()

    result = controller.run_tasks(
        RunTasksCommand(tasks=("A",), registry_path=Path("swap.json"), watch=True),
        echo=echo,
        stop_event=stop,
    )

    assert result.lines == ["Watch stopped after 2 runs"]
    assert all("SUCCEEDED" in line for line in finished)
    assert [call.argv for call in spawner.task_calls()] == [
        ["bun", "run", "a"],
        ["npm", "run", "a:npm"],
    ]
