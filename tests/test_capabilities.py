from __future__ import annotations

import json
from pathlib import Path

import allure

from unified_runner.orchestrator.backend import BackendRunError, ProcessRunResult
from unified_runner.orchestrator.capabilities import CapabilityDetector
from unified_runner.orchestrator.models import BackendId

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Capability Detection"),
]


def _which_only(*names: str):
    return lambda name: f"/fake/bin/{name}" if name in names else None


def test_path_lookup_requires_successful_version_call(tmp_path: Path, spawner) -> None:
    spawner.handler = lambda request: ProcessRunResult(
        exit_code=0 if request.argv[0].endswith("deno") else 1,
        timed_out=False,
    )

    caps = CapabilityDetector(
        spawner=spawner,
        cwd=tmp_path,
        which=_which_only("deno", "bun"),
    ).detect()

    assert caps.available_backends() == (BackendId.DENO,)
    assert sorted(call.argv[0] for call in spawner.calls) == ["/fake/bin/bun", "/fake/bin/deno"]
    assert all(call.argv[-1] == "--version" for call in spawner.calls)


def test_task_runners_detected_from_project_files(tmp_path: Path, spawner) -> None:
    (tmp_path / "node_modules" / ".bin").mkdir(parents=True)
    (tmp_path / "node_modules" / ".bin" / "nx").write_text("", "utf-8")
    (tmp_path / "package.json").write_text(
        json.dumps({"devDependencies": {"turbo": "^2.0.0"}}),
        "utf-8",
    )

    caps = CapabilityDetector(spawner=spawner, cwd=tmp_path, which=_which_only()).detect()

    assert caps.is_available(BackendId.NX)
    assert caps.is_available(BackendId.TURBO)
    assert not caps.is_available(BackendId.NPM)
    assert spawner.calls == []


def test_check_failures_mark_backend_unavailable(tmp_path: Path, spawner) -> None:
    def handler(request):
        if "npm" in request.argv[0]:
            raise BackendRunError("boom", transient=True)
        return ProcessRunResult(exit_code=124, timed_out=True)

    spawner.handler = handler

    caps = CapabilityDetector(
        spawner=spawner,
        cwd=tmp_path,
        which=_which_only("npm", "bun"),
    ).detect()

    assert caps.available_backends() == ()
    assert caps.environment_issues() == [
        "Neither Deno, Bun nor npm is available",
        "Neither NX nor Turborepo is available",
    ]


def test_unreadable_package_json_falls_back_to_path(tmp_path: Path, spawner) -> None:
    (tmp_path / "package.json").write_text("{not json", "utf-8")

    caps = CapabilityDetector(spawner=spawner, cwd=tmp_path, which=_which_only("turbo")).detect()

    assert caps.available_backends() == (BackendId.TURBO,)


def test_executable_override_is_checked(tmp_path: Path, spawner) -> None:
    caps = CapabilityDetector(
        spawner=spawner,
        cwd=tmp_path,
        executables={BackendId.NX: "npx nx"},
        which=_which_only("npx"),
    ).detect()

    assert caps.available_backends() == (BackendId.NX,)
    assert spawner.argvs == [["/fake/bin/npx", "nx", "--version"]]
