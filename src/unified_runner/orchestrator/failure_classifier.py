"""Deterministic classification of failed backend attempts."""

from __future__ import annotations

from unified_runner.orchestrator.models import FailureClass

COMMAND_NOT_FOUND_EXIT_CODE = 127
CANNOT_EXECUTE_EXIT_CODE = 126
DEFAULT_TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)

_COMMAND_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "command not found",
    "not recognized as an internal or external command",
    "no such file or directory",
    "enoent",
)
_MISSING_MODULE_PATTERNS: tuple[str, ...] = (
    "cannot find module",
    "module not found",
    "err_module_not_found",
    "could not resolve",
    "cannot find package",
)
_RESOURCE_EXHAUSTED_PATTERNS: tuple[str, ...] = (
    "heap out of memory",
    "out of memory",
    "no space left on device",
    "emfile",
    "too many open files",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "eai_again",
    "socket hang up",
    "network error",
    "temporarily unavailable",
    "too many requests",
    "status 429",
    "status code 429",
    "http 429",
    "rate limit",
)


def classify_failure(
    *,
    exit_code: int | None,
    timed_out: bool,
    stderr: str,
    stdout: str = "",
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
) -> FailureClass:
    """Classify one failed attempt from its exit status and output."""

    if timed_out:
        return FailureClass.TIMEOUT
    if exit_code is None:
        return FailureClass.RUNNER_UNAVAILABLE

    haystack = f"{stderr}\n{stdout}".lower()
    if exit_code in (COMMAND_NOT_FOUND_EXIT_CODE, CANNOT_EXECUTE_EXIT_CODE) or _first_match(
        haystack,
        _COMMAND_NOT_FOUND_PATTERNS,
    ):
        return FailureClass.COMMAND_NOT_FOUND
    if _first_match(haystack, _MISSING_MODULE_PATTERNS):
        return FailureClass.MISSING_MODULE
    if _first_match(haystack, _RESOURCE_EXHAUSTED_PATTERNS):
        return FailureClass.RESOURCE_EXHAUSTED
    if exit_code in transient_exit_codes or _first_match(haystack, _TRANSIENT_PATTERNS):
        return FailureClass.TRANSIENT
    return FailureClass.NON_ZERO_EXIT


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
