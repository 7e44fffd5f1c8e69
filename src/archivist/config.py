from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = "~/.config/archivist/config.toml"


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be read or is malformed."""


@dataclass(slots=True)
class SupervisorConfig:
    state_dir: str = "~/.local/state/archivist"
    max_workers: int = 2
    max_workers_limit: int = 8
    grace_seconds: float = 30.0
    history_size: int = 20
    log_retention: int = 4
    output_tail_bytes: int = 8192
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def worker_slots(self) -> int:
        return max(1, min(int(self.max_workers), max(1, int(self.max_workers_limit))))


@dataclass(slots=True)
class RetryConfig:
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 3600.0
    max_attempts: int = 5
    jitter_seconds: float = 10.0


@dataclass(slots=True)
class RoutineConfig:
    args: list[str] | None = None
    timeout_seconds: float | None = None
    transient_exit_codes: list[int] | None = None


@dataclass(slots=True)
class ScheduleConfig:
    interval_seconds: float
    jitter_seconds: float = 0.0


@dataclass(slots=True)
class RepositoryConfig:
    name: str
    path: str
    priority: int = 0
    routines: dict[str, ScheduleConfig] = field(default_factory=dict)


@dataclass(slots=True)
class ArchivistConfig:
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    routines: dict[str, RoutineConfig] = field(default_factory=dict)
    repositories: list[RepositoryConfig] = field(default_factory=list)

    @classmethod
    def default(cls) -> ArchivistConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchivistConfig:
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a table.")
        routines: dict[str, RoutineConfig] = {}
        for name, payload in _table(data, "routines").items():
            routines[str(name)] = _section(RoutineConfig, payload, f"routines.{name}")
        repositories: list[RepositoryConfig] = []
        raw_repositories = data.get("repositories", [])
        if not isinstance(raw_repositories, list):
            raise ConfigError("'repositories' must be an array of tables.")
        for index, payload in enumerate(raw_repositories):
            repositories.append(_repository(payload, index))
        names = [repository.name for repository in repositories]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate repository names: {', '.join(duplicates)}")
        return cls(
            supervisor=_section(SupervisorConfig, data.get("supervisor", {}), "supervisor"),
            retry=_section(RetryConfig, data.get("retry", {}), "retry"),
            routines=routines,
            repositories=repositories,
        )

    @property
    def state_dir(self) -> Path:
        return Path(self.supervisor.state_dir).expanduser()


def _table(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a table.")
    return value


def _section(section_type: type, payload: Any, where: str) -> Any:
    if not isinstance(payload, dict):
        raise ConfigError(f"[{where}] must be a table.")
    # Unknown keys are ignored so newer config files keep loading.
    annotations = {item.name: str(item.type) for item in fields(section_type)}
    values = {
        key: _coerce(value, annotations[key], where, key)
        for key, value in payload.items()
        if key in annotations
    }
    try:
        return section_type(**values)
    except TypeError as exc:
        raise ConfigError(f"[{where}] is incomplete: {exc}") from exc


def _coerce(value: Any, annotation: str, where: str, key: str) -> Any:
    base = annotation.removesuffix(" | None")
    if value is None and base != annotation:
        return None
    if base == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"[{where}] {key} must be a number, got {value!r}.")
        return float(value)
    if base == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"[{where}] {key} must be an integer, got {value!r}.")
        return value
    if base == "str":
        if not isinstance(value, str):
            raise ConfigError(f"[{where}] {key} must be a string, got {value!r}.")
        return value
    if base in ("list[str]", "list[int]"):
        item_type = str if base == "list[str]" else int
        if not isinstance(value, list) or any(
            isinstance(item, bool) or not isinstance(item, item_type) for item in value
        ):
            raise ConfigError(f"[{where}] {key} must be an array of {item_type.__name__} values.")
        return list(value)
    return value


def _repository(payload: Any, index: int) -> RepositoryConfig:
    where = f"repositories[{index}]"
    if not isinstance(payload, dict):
        raise ConfigError(f"{where} must be a table.")
    name = payload.get("name")
    path = payload.get("path")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"{where} is missing a 'name'.")
    if not isinstance(path, str) or not path.strip():
        raise ConfigError(f"{where} ('{name}') is missing a 'path'.")
    priority = payload.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ConfigError(f"{where} ('{name}') has a non-integer priority.")
    schedules: dict[str, ScheduleConfig] = {}
    raw_routines = payload.get("routines", {})
    if not isinstance(raw_routines, dict):
        raise ConfigError(f"{where} ('{name}') routines must be a table.")
    for routine_name, schedule in raw_routines.items():
        schedules[str(routine_name)] = _section(
            ScheduleConfig, schedule, f"repositories.{name}.routines.{routine_name}"
        )
    return RepositoryConfig(
        name=name.strip(),
        path=path,
        priority=priority,
        routines=schedules,
    )


def load_config(path: Path) -> ArchivistConfig:
    if not path.exists():
        return ArchivistConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Unable to read config {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Unable to parse config {path}: {exc}") from exc
    return ArchivistConfig.from_dict(data)
