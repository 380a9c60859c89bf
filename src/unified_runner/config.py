"""Runtime configuration for the task orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from unified_runner.orchestrator.models import (
    PACKAGE_MANAGERS,
    TASK_RUNNERS,
    BackendId,
    CacheStrategy,
)
from unified_runner.orchestrator.selection import SelectionPolicy
from unified_runner.orchestrator.watch import DEFAULT_WATCH_EXTENSIONS

ENV_PREFIX = "UNIFIED_RUNNER_"


@dataclass(slots=True)
class RunnerSettings:
    """Backend preferences and execution switches."""

    package_manager: BackendId = BackendId.DENO
    task_runner: BackendId = BackendId.TURBO
    parallel: bool = True
    fallback_enabled: bool = True
    cache_strategy: CacheStrategy = CacheStrategy.AGGRESSIVE
    cloud_cache: bool = False
    bail: bool = False
    max_workers: int = 4
    detect_timeout_seconds: float = 10.0
    default_timeout_seconds: float = 600.0
    executables: dict[BackendId, str] = field(default_factory=dict)


@dataclass(slots=True)
class SelectionSettings:
    """Heuristic ordering consulted by runner selection."""

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

    def to_policy(self) -> SelectionPolicy:
        return SelectionPolicy(
            caching_backends=self.caching_backends,
            category_backends=self.category_backends,
            keyword_backends=self.keyword_backends,
            priority_order=self.priority_order,
        )


@dataclass(slots=True)
class WatchSettings:
    paths: tuple[Path, ...] = (Path("."),)
    extensions: tuple[str, ...] = DEFAULT_WATCH_EXTENSIONS
    debounce_seconds: float = 1.0
    poll_interval_seconds: float = 0.5
    queue_size: int = 64


@dataclass(slots=True)
class ReportSettings:
    output_dir: Path | None = None
    junit: bool = False
    html: bool = False


@dataclass(slots=True)
class HistorySettings:
    db_path: Path = Path(".unified_runner.db")
    enabled: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    registry_path: Path | None = None
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    selection: SelectionSettings = field(default_factory=SelectionSettings)
    watch: WatchSettings = field(default_factory=WatchSettings)
    reports: ReportSettings = field(default_factory=ReportSettings)
    history: HistorySettings = field(default_factory=HistorySettings)

    @classmethod
    def from_env(cls, registry_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a local monorepo."""

        registry_env = os.getenv(f"{ENV_PREFIX}REGISTRY_PATH", "").strip()
        report_dir_env = os.getenv(f"{ENV_PREFIX}REPORT_DIR", "").strip()
        return cls(
            registry_path=registry_path or (Path(registry_env) if registry_env else None),
            runner=RunnerSettings(
                package_manager=_env_backend(
                    f"{ENV_PREFIX}PACKAGE_MANAGER",
                    default=BackendId.DENO,
                ),
                task_runner=_env_backend(f"{ENV_PREFIX}TASK_RUNNER", default=BackendId.TURBO),
                parallel=_env_bool(f"{ENV_PREFIX}PARALLEL", default=True),
                fallback_enabled=_env_bool(f"{ENV_PREFIX}FALLBACK", default=True),
                cache_strategy=_env_cache_strategy(f"{ENV_PREFIX}CACHE"),
                cloud_cache=_env_bool(f"{ENV_PREFIX}CLOUD_CACHE", default=False),
                bail=_env_bool(f"{ENV_PREFIX}BAIL", default=False),
                max_workers=_env_int(f"{ENV_PREFIX}MAX_WORKERS", default=4),
                detect_timeout_seconds=_env_float(
                    f"{ENV_PREFIX}DETECT_TIMEOUT_SECONDS",
                    default=10.0,
                ),
                default_timeout_seconds=_env_float(
                    f"{ENV_PREFIX}DEFAULT_TIMEOUT_SECONDS",
                    default=600.0,
                ),
                executables=_collect_executable_overrides(),
            ),
            selection=SelectionSettings(
                caching_backends=_env_backend_list(
                    f"{ENV_PREFIX}CACHING_BACKENDS",
                    default=(BackendId.TURBO, BackendId.NX),
                ),
                category_backends=_env_category_backends(
                    f"{ENV_PREFIX}CATEGORY_BACKENDS",
                    default=SelectionSettings().category_backends,
                ),
                keyword_backends=_env_category_backends(
                    f"{ENV_PREFIX}KEYWORD_BACKENDS",
                    default=SelectionSettings().keyword_backends,
                ),
                priority_order=_env_backend_list(
                    f"{ENV_PREFIX}PRIORITY_ORDER",
                    default=SelectionSettings().priority_order,
                ),
            ),
            watch=WatchSettings(
                paths=tuple(
                    Path(part) for part in _env_csv(f"{ENV_PREFIX}WATCH_PATHS", default=(".",))
                ),
                extensions=tuple(
                    _normalize_extension(ext)
                    for ext in _env_csv(
                        f"{ENV_PREFIX}WATCH_EXTENSIONS",
                        default=DEFAULT_WATCH_EXTENSIONS,
                    )
                ),
                debounce_seconds=_env_float(f"{ENV_PREFIX}WATCH_DEBOUNCE_SECONDS", default=1.0),
                poll_interval_seconds=_env_float(
                    f"{ENV_PREFIX}WATCH_POLL_INTERVAL_SECONDS",
                    default=0.5,
                ),
                queue_size=_env_int(f"{ENV_PREFIX}WATCH_QUEUE_SIZE", default=64),
            ),
            reports=ReportSettings(
                output_dir=Path(report_dir_env) if report_dir_env else None,
                junit=_env_bool(f"{ENV_PREFIX}JUNIT", default=False),
                html=_env_bool(f"{ENV_PREFIX}HTML_REPORT", default=False),
            ),
            history=HistorySettings(
                db_path=Path(os.getenv(f"{ENV_PREFIX}DB_PATH", ".unified_runner.db")),
                enabled=_env_bool(f"{ENV_PREFIX}HISTORY", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if values are out of range."""

        runner = self.runner
        if runner.package_manager not in PACKAGE_MANAGERS:
            raise ValueError(
                f"{ENV_PREFIX}PACKAGE_MANAGER must be one of: "
                + ", ".join(backend.value for backend in PACKAGE_MANAGERS),
            )
        if runner.task_runner not in TASK_RUNNERS:
            raise ValueError(
                f"{ENV_PREFIX}TASK_RUNNER must be one of: "
                + ", ".join(backend.value for backend in TASK_RUNNERS),
            )
        if runner.max_workers <= 0:
            raise ValueError(f"{ENV_PREFIX}MAX_WORKERS must be > 0.")
        if runner.detect_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}DETECT_TIMEOUT_SECONDS must be > 0.")
        if runner.default_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}DEFAULT_TIMEOUT_SECONDS must be > 0.")
        if not self.selection.priority_order:
            raise ValueError(f"{ENV_PREFIX}PRIORITY_ORDER must name at least one backend.")
        if self.watch.debounce_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}WATCH_DEBOUNCE_SECONDS must be >= 0.")
        if self.watch.poll_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}WATCH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.watch.queue_size <= 0:
            raise ValueError(f"{ENV_PREFIX}WATCH_QUEUE_SIZE must be > 0.")


def _collect_executable_overrides() -> dict[BackendId, str]:
    overrides: dict[BackendId, str] = {}
    for backend in BackendId:
        value = os.getenv(f"{ENV_PREFIX}{backend.name}_EXECUTABLE", "").strip()
        if value:
            overrides[backend] = value
    return overrides


def _env_category_backends(
    name: str,
    default: tuple[tuple[str, BackendId], ...],
) -> tuple[tuple[str, BackendId], ...]:
    raw = os.getenv(name)
    if raw is None:
        return default

    mapping: list[tuple[str, BackendId]] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                f"Invalid {name} entry: {token!r}. Expected format '<pattern>=<backend>'.",
            )
        prefix, backend_raw = token.split("=", 1)
        mapping.append((prefix.strip(), _parse_backend(name, backend_raw)))
    return tuple(mapping)


def _env_backend_list(name: str, default: tuple[BackendId, ...]) -> tuple[BackendId, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    backends: list[BackendId] = []
    for part in raw.split(","):
        if not part.strip():
            continue
        backend = _parse_backend(name, part)
        if backend not in backends:
            backends.append(backend)
    return tuple(backends)


def _env_backend(name: str, default: BackendId) -> BackendId:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return _parse_backend(name, value)


def _parse_backend(name: str, value: str) -> BackendId:
    try:
        return BackendId.parse(value)
    except ValueError as error:
        raise ValueError(f"Invalid value for {name}: {error}") from error


def _env_cache_strategy(name: str) -> CacheStrategy:
    value = os.getenv(name)
    if value is None or not value.strip():
        return CacheStrategy.AGGRESSIVE
    try:
        return CacheStrategy(value.strip().lower())
    except ValueError as error:
        supported = ", ".join(strategy.value for strategy in CacheStrategy)
        raise ValueError(
            f"Invalid value for {name}: {value!r}. Use one of: {supported}.",
        ) from error


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _normalize_extension(value: str) -> str:
    value = value.strip().lower()
    return value if value.startswith(".") else f".{value}"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
