"""Detect which execution backends are usable in the current environment."""

from __future__ import annotations

import json
import logging
import shlex
import shutil
from collections.abc import Callable, Mapping
from pathlib import Path

from unified_runner.orchestrator.backend import (
    BackendRunError,
    ProcessRunRequest,
    ProcessSpawner,
    SubprocessSpawner,
)
from unified_runner.orchestrator.models import BackendId, RunnerCapabilities

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLES: dict[BackendId, str] = {
    BackendId.NX: "nx",
    BackendId.TURBO: "turbo",
    BackendId.DENO: "deno",
    BackendId.BUN: "bun",
    BackendId.NPM: "npm",
}
# Resolved from node_modules/.bin or package.json before the PATH lookup.
_PROJECT_LOCAL_BACKENDS = frozenset({BackendId.NX, BackendId.TURBO})
_PACKAGE_JSON_SECTIONS = ("dependencies", "devDependencies", "peerDependencies")


class CapabilityDetector:
    """Compute a ``RunnerCapabilities`` snapshot by probing each backend."""

    def __init__(
        self,
        *,
        spawner: ProcessSpawner | None = None,
        cwd: Path | None = None,
        executables: Mapping[BackendId, str] | None = None,
        detect_timeout_seconds: float = 10.0,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._spawner = spawner or SubprocessSpawner()
        self._cwd = cwd or Path.cwd()
        self._executables = {**DEFAULT_EXECUTABLES, **(executables or {})}
        self._detect_timeout_seconds = detect_timeout_seconds
        self._which = which

    def detect(self) -> RunnerCapabilities:
        available: dict[BackendId, bool] = {}
        for backend in BackendId:
            try:
                available[backend] = self._check(backend)
            except Exception:  # noqa: BLE001
                logger.warning("Capability check for %s raised", backend.value, exc_info=True)
                available[backend] = False
            logger.debug("Capability %s: %s", backend.value, available[backend])
        return RunnerCapabilities(available=available)

    def _check(self, backend: BackendId) -> bool:
        if backend in _PROJECT_LOCAL_BACKENDS and self._has_project_package(backend.value):
            return True
        return self._check_executable(backend)

    def _check_executable(self, backend: BackendId) -> bool:
        argv = shlex.split(self._executables[backend])
        if not argv:
            return False
        resolved = self._which(argv[0])
        if resolved is None:
            return False
        try:
            result = self._spawner.run(
                ProcessRunRequest(
                    argv=[resolved, *argv[1:], "--version"],
                    timeout_seconds=self._detect_timeout_seconds,
                    cwd=str(self._cwd),
                ),
            )
        except BackendRunError as error:
            logger.debug("Version check for %s failed to start: %s", backend.value, error)
            return False
        if result.timed_out:
            logger.debug("Version check for %s timed out", backend.value)
            return False
        return result.exit_code == 0

    def _has_project_package(self, package_name: str) -> bool:
        if (self._cwd / "node_modules" / ".bin" / package_name).exists():
            return True
        package_json = self._cwd / "package.json"
        if not package_json.is_file():
            return False
        try:
            manifest = json.loads(package_json.read_text("utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.debug("Unreadable package.json at %s", package_json)
            return False
        if not isinstance(manifest, dict):
            return False
        return any(
            isinstance(manifest.get(section), dict) and package_name in manifest[section]
            for section in _PACKAGE_JSON_SECTIONS
        )
