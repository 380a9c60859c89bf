"""Subprocess-based spawner with timeout enforcement."""

from __future__ import annotations

import os
import subprocess
import tempfile
import time
from typing import IO

from unified_runner.orchestrator.backend.base import ProcessRunRequest, ProcessRunResult

TIMEOUT_EXIT_CODE = 124
_POLL_INTERVAL_SECONDS = 0.05
_TERMINATE_GRACE_SECONDS = 2


class BackendRunError(RuntimeError):
    """Process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SubprocessSpawner:
    """Run argv as a child process; buffer output or stream it to the terminal."""

    def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        if not request.argv:
            raise BackendRunError("Command rendered to an empty argv.", transient=False)

        env = os.environ.copy()
        env.update(request.env)

        if request.stream_output:
            return self._run(request=request, env=env, stdout_handle=None, stderr_handle=None)

        with (
            tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as stdout_handle,
            tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as stderr_handle,
        ):
            result = self._run(
                request=request,
                env=env,
                stdout_handle=stdout_handle,
                stderr_handle=stderr_handle,
            )
            result.stdout = _read_back(stdout_handle)
            result.stderr = _read_back(stderr_handle)
            return result

    def _run(
        self,
        *,
        request: ProcessRunRequest,
        env: dict[str, str],
        stdout_handle: IO[str] | None,
        stderr_handle: IO[str] | None,
    ) -> ProcessRunResult:
        try:
            process = subprocess.Popen(  # noqa: S603
                request.argv,
                cwd=request.cwd,
                env=env,
                stdout=stdout_handle,
                stderr=stderr_handle,
                text=True,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Command not found: {request.argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Failed to start {request.argv[0]}: {error}",
                transient=True,
            ) from error

        start_monotonic = time.monotonic()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return ProcessRunResult(exit_code=returncode, timed_out=False)

            if time.monotonic() - start_monotonic >= request.timeout_seconds:
                _terminate_process(process)
                return ProcessRunResult(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)

            time.sleep(_POLL_INTERVAL_SECONDS)


def _read_back(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
