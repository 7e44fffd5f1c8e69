from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from archivist.config import ArchivistConfig, RepositoryConfig
from archivist.routines.base import RoutineDefinition, build_routine_table

logger = logging.getLogger(__name__)

PairKey = tuple[str, str]


@dataclass(frozen=True, slots=True)
class Schedule:
    interval_seconds: float
    jitter_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class Repository:
    name: str
    location: Path
    routines: tuple[str, ...]
    schedules: dict[str, Schedule] = field(default_factory=dict)
    priority: int = 0


@dataclass(frozen=True, slots=True)
class RepositoryRegistry:
    """Immutable snapshot of the configured fleet.

    A reload builds a new registry and swaps it in whole. Repositories that
    fail validation are listed in ``excluded`` with the reason and are never
    scheduled; they do not prevent the rest of the fleet from loading.
    """

    repositories: dict[str, Repository]
    routines: dict[str, RoutineDefinition]
    excluded: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: ArchivistConfig) -> RepositoryRegistry:
        routines = build_routine_table(config.routines)
        repositories: dict[str, Repository] = {}
        excluded: dict[str, str] = {}
        for repository_config in config.repositories:
            try:
                repository = _build_repository(repository_config, routines)
            except ValueError as exc:
                excluded[repository_config.name] = str(exc)
                logger.warning(
                    "Excluding repository %s: %s",
                    repository_config.name,
                    exc,
                    extra={"repository": repository_config.name},
                )
                continue
            repositories[repository.name] = repository
        return cls(repositories=repositories, routines=routines, excluded=excluded)

    def pairs(self) -> list[PairKey]:
        return [
            (repository.name, routine)
            for repository in self.repositories.values()
            for routine in repository.routines
        ]

    def has_pair(self, key: PairKey) -> bool:
        repository = self.repositories.get(key[0])
        return repository is not None and key[1] in repository.routines

    def schedule_for(self, key: PairKey) -> Schedule:
        return self.repositories[key[0]].schedules[key[1]]

    def routine_for(self, key: PairKey) -> RoutineDefinition:
        return self.routines[key[1]]


def _build_repository(
    repository_config: RepositoryConfig,
    routines: dict[str, RoutineDefinition],
) -> Repository:
    location = Path(repository_config.path).expanduser().resolve()
    if not location.exists():
        raise ValueError(f"location does not exist: {location}")
    if not location.is_dir():
        raise ValueError(f"location is not a directory: {location}")
    schedules: dict[str, Schedule] = {}
    for routine_name, schedule_config in repository_config.routines.items():
        if routine_name not in routines:
            raise ValueError(f"unknown routine '{routine_name}'")
        interval = float(schedule_config.interval_seconds)
        jitter = float(schedule_config.jitter_seconds)
        if interval <= 0:
            raise ValueError(f"routine '{routine_name}' interval must be positive")
        if jitter < 0:
            raise ValueError(f"routine '{routine_name}' jitter cannot be negative")
        schedules[routine_name] = Schedule(interval_seconds=interval, jitter_seconds=jitter)
    return Repository(
        name=repository_config.name,
        location=location,
        routines=tuple(schedules),
        schedules=schedules,
        priority=repository_config.priority,
    )
