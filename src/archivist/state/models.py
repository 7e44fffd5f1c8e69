from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Literal

PairStatus = Literal["idle", "due", "leased", "failed"]
TriggerSource = Literal["schedule", "manual", "recovery"]


def iso_timestamp(epoch: float | None) -> str | None:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, UTC).replace(microsecond=0).isoformat()


def _optional_float(payload: dict[str, Any], key: str) -> float | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number")
    return float(value)


def _optional_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer")
    return value


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{key}' must be a non-empty string")
    return value


@dataclass(slots=True)
class Lease:
    token: str
    acquired_at: float

    @classmethod
    def from_dict(cls, payload: Any) -> Lease | None:
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise ValueError("lease must be an object")
        acquired_at = _optional_float(payload, "acquired_at")
        return cls(token=_required_str(payload, "token"), acquired_at=acquired_at or 0.0)


@dataclass(slots=True)
class RunRecord:
    repository: str
    routine: str
    attempt: int
    started_at: float
    ended_at: float
    outcome: str
    exit_code: int | None = None
    excerpt: str = ""
    trigger: TriggerSource = "schedule"
    log_path: str | None = None

    def __post_init__(self) -> None:
        if self.ended_at < self.started_at:
            raise ValueError("RunRecord cannot end before it starts")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> RunRecord:
        if not isinstance(payload, dict):
            raise ValueError("run record must be an object")
        started_at = _optional_float(payload, "started_at")
        ended_at = _optional_float(payload, "ended_at")
        attempt = _optional_int(payload, "attempt")
        if started_at is None or ended_at is None or attempt is None:
            raise ValueError("run record is missing timing or attempt fields")
        trigger = payload.get("trigger", "schedule")
        if trigger not in {"schedule", "manual", "recovery"}:
            trigger = "schedule"
        log_path = payload.get("log_path")
        return cls(
            repository=_required_str(payload, "repository"),
            routine=_required_str(payload, "routine"),
            attempt=attempt,
            started_at=started_at,
            ended_at=ended_at,
            outcome=_required_str(payload, "outcome"),
            exit_code=_optional_int(payload, "exit_code"),
            excerpt=str(payload.get("excerpt") or ""),
            trigger=trigger,
            log_path=log_path if isinstance(log_path, str) else None,
        )


@dataclass(slots=True)
class PairState:
    repository: str
    routine: str
    next_due_at: float | None = None
    consecutive_failures: int = 0
    attempts: int = 0
    failed: bool = False
    failure_reason: str | None = None
    manual: bool = False
    lease: Lease | None = None
    last_outcome: str | None = None
    last_started_at: float | None = None
    last_ended_at: float | None = None
    last_exit_code: int | None = None
    last_excerpt: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.repository, self.routine)

    def status(self, now: float) -> PairStatus:
        if self.lease is not None:
            return "leased"
        if self.failed:
            return "failed"
        if self.next_due_at is None or self.next_due_at <= now:
            return "due"
        return "idle"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> PairState:
        if not isinstance(payload, dict):
            raise ValueError("pair state must be an object")
        failure_reason = payload.get("failure_reason")
        last_outcome = payload.get("last_outcome")
        return cls(
            repository=_required_str(payload, "repository"),
            routine=_required_str(payload, "routine"),
            next_due_at=_optional_float(payload, "next_due_at"),
            consecutive_failures=max(0, _optional_int(payload, "consecutive_failures") or 0),
            attempts=max(0, _optional_int(payload, "attempts") or 0),
            failed=bool(payload.get("failed", False)),
            failure_reason=failure_reason if isinstance(failure_reason, str) else None,
            manual=bool(payload.get("manual", False)),
            lease=Lease.from_dict(payload.get("lease")),
            last_outcome=last_outcome if isinstance(last_outcome, str) else None,
            last_started_at=_optional_float(payload, "last_started_at"),
            last_ended_at=_optional_float(payload, "last_ended_at"),
            last_exit_code=_optional_int(payload, "last_exit_code"),
            last_excerpt=str(payload.get("last_excerpt") or ""),
        )

    def summary(self, now: float) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "routine": self.routine,
            "status": self.status(now),
            "last_outcome": self.last_outcome,
            "last_exit_code": self.last_exit_code,
            "last_started_at": iso_timestamp(self.last_started_at),
            "last_ended_at": iso_timestamp(self.last_ended_at),
            "next_due_at": iso_timestamp(self.next_due_at),
            "consecutive_failures": self.consecutive_failures,
            "attempts": self.attempts,
            "failure_reason": self.failure_reason,
        }
