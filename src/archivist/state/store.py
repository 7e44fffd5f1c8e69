from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from archivist.state.models import PairState, RunRecord

logger = logging.getLogger(__name__)


class StateError(RuntimeError):
    """Raised when the state directory cannot be used."""


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class StateStore:
    """Directory-backed JSON state, one envelope file per namespace.

    Every write replaces the namespace file atomically, so a crash leaves
    either the previous or the next revision on disk. Unreadable files and
    malformed entries read as missing rather than failing the caller.
    """

    NAMESPACES = {"pairs", "history", "archive", "control", "metrics"}
    SCHEMA_VERSION = 1
    STALE_LOCK_SECONDS = 30.0

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.expanduser()
        self.local_state_dir = self.state_dir / "state"
        self.log_dir = self.state_dir / "logs"
        self.lock_file = self.local_state_dir / ".lock"
        self.pid_file = self.state_dir / "supervisor.pid"
        try:
            self.local_state_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=self.local_state_dir, prefix=".probe-"):
                pass
        except OSError as exc:
            raise StateError(f"State directory is not writable: {self.local_state_dir}: {exc}") from exc

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.local_state_dir / f"{namespace}.json"

    def _lock_holder(self) -> int | None:
        try:
            return int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _break_stale_lock(self) -> bool:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return True
        holder = self._lock_holder()
        if holder is not None and holder != os.getpid() and not _pid_alive(holder):
            logger.warning("Breaking state lock %s left by exited process %d", self.lock_file, holder)
        elif age < self.STALE_LOCK_SECONDS:
            return False
        else:
            logger.warning("Breaking stale state lock %s (%.0fs old)", self.lock_file, age)
        with contextlib.suppress(FileNotFoundError):
            self.lock_file.unlink()
        return True

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._break_stale_lock():
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
            except OSError as exc:
                raise StateError(f"Unable to acquire state lock: {exc}") from exc

        try:
            yield
        finally:
            with contextlib.suppress(FileNotFoundError):
                self.lock_file.unlink()

    def _read_raw_json(self, namespace: str) -> Any:
        local_file = self._local_file(namespace)
        try:
            content = local_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Unable to read state namespace %s: %s", namespace, exc)
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt state namespace %s", namespace)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        target = self._local_file(namespace)
        fd, temp_path = tempfile.mkstemp(dir=self.local_state_dir, prefix=f".{namespace}-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(temp_path)
            raise StateError(f"Unable to write state namespace {namespace}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            try:
                revision = int(raw_payload.get("revision") or 1)
            except (TypeError, ValueError):
                revision = 1
            return {
                "schema_version": raw_payload.get("schema_version") or self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_raw_json(namespace)
        return self._normalize_envelope(raw, default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        envelope = self.get_envelope(namespace, default=default)
        return envelope.get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def _nested(self, namespace: str) -> dict[str, Any]:
        payload = self.get_json(namespace, default={})
        return payload if isinstance(payload, dict) else {}

    def load_pairs(self) -> dict[tuple[str, str], PairState]:
        pairs: dict[tuple[str, str], PairState] = {}
        for repository, routines in self._nested("pairs").items():
            if not isinstance(routines, dict):
                continue
            for routine, payload in routines.items():
                try:
                    state = PairState.from_dict(payload)
                except ValueError as exc:
                    logger.warning(
                        "Treating corrupt state for %s/%s as never run: %s",
                        repository,
                        routine,
                        exc,
                    )
                    continue
                if state.key != (repository, routine):
                    continue
                pairs[state.key] = state
        return pairs

    def save_pair(self, state: PairState) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            routines = result.get(state.repository)
            if not isinstance(routines, dict):
                routines = {}
            routines[state.routine] = state.to_dict()
            result[state.repository] = routines
            return result

        self.update_json("pairs", _updater, default={})

    def archive_pairs(self, states: Iterable[PairState]) -> None:
        archived = list(states)
        if not archived:
            return
        archived_at = self._utcnow_iso()

        def _archive(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            for state in archived:
                entry = state.to_dict()
                entry["archived_at"] = archived_at
                result.setdefault(state.repository, {})[state.routine] = entry
            return result

        def _remove(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            for state in archived:
                routines = result.get(state.repository)
                if isinstance(routines, dict):
                    routines.pop(state.routine, None)
                    if not routines:
                        result.pop(state.repository, None)
            return result

        self.update_json("archive", _archive, default={})
        self.update_json("pairs", _remove, default={})

    def append_run(self, record: RunRecord, keep: int) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            routines = result.get(record.repository)
            if not isinstance(routines, dict):
                routines = {}
            runs = routines.get(record.routine)
            if not isinstance(runs, list):
                runs = []
            runs.append(record.to_dict())
            routines[record.routine] = runs[-max(1, keep) :]
            result[record.repository] = routines
            return result

        self.update_json("history", _updater, default={})

    def get_history(self, repository: str, routine: str) -> list[RunRecord]:
        routines = self._nested("history").get(repository)
        if not isinstance(routines, dict):
            return []
        runs = routines.get(routine)
        if not isinstance(runs, list):
            return []
        records: list[RunRecord] = []
        for payload in runs:
            try:
                records.append(RunRecord.from_dict(payload))
            except ValueError:
                continue
        return sorted(records, key=lambda record: record.attempt)

    def last_attempt(self, repository: str, routine: str) -> int:
        """Highest attempt number recorded for a pair in history or the archive."""
        attempts = [record.attempt for record in self.get_history(repository, routine)]
        routines = self._nested("archive").get(repository)
        entry = routines.get(routine) if isinstance(routines, dict) else None
        if isinstance(entry, dict):
            archived = entry.get("attempts")
            if isinstance(archived, int) and not isinstance(archived, bool):
                attempts.append(archived)
        return max(attempts, default=0)

    def get_control(self) -> dict[str, Any]:
        control = self._nested("control")
        triggers = control.get("triggers")
        return {
            "paused": bool(control.get("paused", False)),
            "triggers": triggers if isinstance(triggers, list) else [],
        }

    def set_paused(self, paused: bool) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result["paused"] = paused
            return result

        self.update_json("control", _updater, default={})

    def add_trigger(self, repository: str, routine: str) -> None:
        requested_at = self._utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            triggers = result.get("triggers")
            if not isinstance(triggers, list):
                triggers = []
            triggers.append(
                {"repository": repository, "routine": routine, "requested_at": requested_at}
            )
            result["triggers"] = triggers
            return result

        self.update_json("control", _updater, default={})

    def consume_triggers(self) -> list[tuple[str, str]]:
        consumed: list[tuple[str, str]] = []

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            triggers = result.get("triggers")
            consumed.clear()
            if isinstance(triggers, list):
                for item in triggers:
                    if not isinstance(item, dict):
                        continue
                    repository = item.get("repository")
                    routine = item.get("routine")
                    if isinstance(repository, str) and isinstance(routine, str):
                        consumed.append((repository, routine))
            result["triggers"] = []
            return result

        self.update_json("control", _updater, default={})
        return consumed

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def update_metrics(self, updater: Callable[[dict[str, Any]], dict[str, Any]]) -> None:
        self.update_json(
            "metrics",
            lambda payload: updater(payload if isinstance(payload, dict) else {}),
            default={},
        )

    def write_pid(self, pid: int) -> None:
        self.pid_file.write_text(f"{pid}\n", encoding="utf-8")

    def clear_pid(self, pid: int) -> None:
        if self.read_pid() == pid:
            with contextlib.suppress(FileNotFoundError):
                self.pid_file.unlink()

    def read_pid(self) -> int | None:
        try:
            return int(self.pid_file.read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None

    def running_pid(self) -> int | None:
        pid = self.read_pid()
        if pid is None or pid == os.getpid() or not _pid_alive(pid):
            return None
        return pid
