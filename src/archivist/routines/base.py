from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from archivist.config import ConfigError, RoutineConfig

LOCATION_PLACEHOLDER = "{location}"


class Outcome(StrEnum):
    SUCCESS = "success"
    TRANSIENT = "transient-failure"
    PERMANENT = "permanent-failure"
    TIMEOUT = "timeout"

    @property
    def retriable(self) -> bool:
        return self in {Outcome.TRANSIENT, Outcome.TIMEOUT}


class RoutineKind(StrEnum):
    SYNC = "sync"
    FETCH = "fetch"
    VERIFY = "verify"
    RECLAIM = "reclaim"


@dataclass(frozen=True, slots=True)
class RoutineDefinition:
    kind: RoutineKind
    args: tuple[str, ...]
    timeout_seconds: float
    transient_exit_codes: frozenset[int] = field(default_factory=frozenset)

    @property
    def name(self) -> str:
        return self.kind.value

    def render(self, location: Path) -> list[str]:
        return [arg.replace(LOCATION_PLACEHOLDER, str(location)) for arg in self.args]

    def classify(self, exit_code: int) -> Outcome:
        if exit_code == 0:
            return Outcome.SUCCESS
        if exit_code in self.transient_exit_codes:
            return Outcome.TRANSIENT
        return Outcome.PERMANENT


# Recoverable exit codes are left empty; they come from the operator's config.
DEFAULT_ROUTINES: dict[RoutineKind, RoutineDefinition] = {
    RoutineKind.SYNC: RoutineDefinition(
        kind=RoutineKind.SYNC,
        args=("git", "annex", "assist"),
        timeout_seconds=3600.0,
    ),
    RoutineKind.FETCH: RoutineDefinition(
        kind=RoutineKind.FETCH,
        args=("git", "annex", "satisfy", "--all"),
        timeout_seconds=7200.0,
    ),
    RoutineKind.VERIFY: RoutineDefinition(
        kind=RoutineKind.VERIFY,
        args=("git", "annex", "fsck", "--incremental-schedule=15d", "--time-limit=2h", "--all"),
        timeout_seconds=10800.0,
    ),
    RoutineKind.RECLAIM: RoutineDefinition(
        kind=RoutineKind.RECLAIM,
        # dropunused acts on the list the preceding `unused` scan records.
        args=("sh", "-c", "git annex unused && git annex dropunused all"),
        timeout_seconds=3600.0,
    ),
}


def build_routine_table(overrides: Mapping[str, RoutineConfig]) -> dict[str, RoutineDefinition]:
    table = {kind.value: definition for kind, definition in DEFAULT_ROUTINES.items()}
    for name, override in overrides.items():
        if name not in table:
            raise ConfigError(
                f"Unknown routine '{name}'. Expected one of: {', '.join(sorted(table))}"
            )
        base = table[name]
        args = tuple(str(arg) for arg in override.args) if override.args is not None else base.args
        if not args:
            raise ConfigError(f"Routine '{name}' has an empty argument template.")
        timeout = (
            float(override.timeout_seconds)
            if override.timeout_seconds is not None
            else base.timeout_seconds
        )
        if timeout <= 0:
            raise ConfigError(f"Routine '{name}' timeout must be positive.")
        transient = (
            frozenset(int(code) for code in override.transient_exit_codes)
            if override.transient_exit_codes is not None
            else base.transient_exit_codes
        )
        if 0 in transient:
            raise ConfigError(f"Routine '{name}' cannot list exit code 0 as transient.")
        table[name] = RoutineDefinition(
            kind=base.kind,
            args=args,
            timeout_seconds=timeout,
            transient_exit_codes=transient,
        )
    return table
