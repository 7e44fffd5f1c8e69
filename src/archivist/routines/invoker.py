from __future__ import annotations

import asyncio
import contextlib
import os
import re
import shutil
import signal
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

from archivist.routines.base import Outcome, RoutineDefinition

InvokerEventHook = Callable[[dict[str, Any]], None]

LOG_DT_FORMAT = "%Y-%m-%d-%H%M%S%f"
_READ_CHUNK = 4096
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class InvocationResult:
    outcome: Outcome
    exit_code: int | None
    started_at: float
    ended_at: float
    excerpt: str = ""
    interrupted: bool = False
    log_path: str | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.ended_at - self.started_at)


class OutputTail:
    """Keeps only the last ``limit`` bytes written to it."""

    def __init__(self, limit: int) -> None:
        self.limit = max(0, limit)
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> None:
        if not self.limit:
            return
        self._buffer.extend(chunk)
        overflow = len(self._buffer) - self.limit
        if overflow > 0:
            del self._buffer[:overflow]

    def text(self) -> str:
        return self._buffer.decode("utf-8", errors="replace").strip()


class RoutineInvoker:
    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        output_tail_bytes: int = 8192,
        log_dir: Path | None = None,
        log_retention: int = 4,
        kill_grace_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
        event_hook: InvokerEventHook | None = None,
    ) -> None:
        self.env = dict(env) if env is not None else dict(os.environ)
        self.output_tail_bytes = output_tail_bytes
        self.log_dir = log_dir
        self.log_retention = max(1, log_retention)
        self.kill_grace_seconds = kill_grace_seconds
        self.clock = clock
        self.event_hook = event_hook
        self._processes: set[asyncio.subprocess.Process] = set()
        self._shutting_down = False

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @property
    def active_count(self) -> int:
        return len(self._processes)

    def resolve_executable(self, name: str) -> str | None:
        return shutil.which(name, path=self.env.get("PATH", os.defpath))

    def _result(
        self,
        outcome: Outcome,
        started_at: float,
        excerpt: str,
        *,
        exit_code: int | None = None,
    ) -> InvocationResult:
        return InvocationResult(
            outcome=outcome,
            exit_code=exit_code,
            started_at=started_at,
            ended_at=max(started_at, self.clock()),
            excerpt=excerpt,
        )

    def _open_log(self, repository: str, routine: str, started_at: float) -> IO[bytes] | None:
        if self.log_dir is None:
            return None
        directory = self.log_dir / (_UNSAFE_PATH_CHARS.sub("_", repository) or "_")
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.fromtimestamp(started_at, UTC).strftime(LOG_DT_FORMAT)
        handle = (directory / f"{routine}-{stamp}.log").open("wb")
        logs = sorted(directory.glob(f"{routine}-*.log"))
        for stale in logs[: max(0, len(logs) - self.log_retention)]:
            with contextlib.suppress(FileNotFoundError):
                stale.unlink()
        return handle

    @staticmethod
    async def _pump(
        process: asyncio.subprocess.Process,
        tail: OutputTail,
        log_handle: IO[bytes] | None,
    ) -> None:
        if process.stdout is None:
            return
        while True:
            chunk = await process.stdout.read(_READ_CHUNK)
            if not chunk:
                return
            tail.feed(chunk)
            if log_handle is not None:
                log_handle.write(chunk)

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, signum: int) -> None:
        if process.returncode is not None:
            return
        # Each routine runs in its own session; signal the whole group so helper
        # processes spawned by the tool go down with it.
        try:
            os.killpg(process.pid, signum)
        except (ProcessLookupError, PermissionError):
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(signum)

    async def _stop(self, process: asyncio.subprocess.Process) -> int:
        self._signal(process, signal.SIGTERM)
        try:
            async with asyncio.timeout(self.kill_grace_seconds):
                return await process.wait()
        except TimeoutError:
            self._signal(process, signal.SIGKILL)
            return await process.wait()

    def terminate_all(self) -> None:
        self._shutting_down = True
        for process in list(self._processes):
            self._signal(process, signal.SIGTERM)

    def kill_all(self) -> None:
        self._shutting_down = True
        for process in list(self._processes):
            self._signal(process, signal.SIGKILL)

    async def invoke(
        self,
        routine: RoutineDefinition,
        location: Path,
        *,
        repository: str = "",
    ) -> InvocationResult:
        started_at = self.clock()
        if not location.is_dir():
            return self._result(
                Outcome.PERMANENT, started_at, f"Repository location is missing: {location}"
            )
        command = routine.render(location)
        executable = self.resolve_executable(command[0])
        if executable is None:
            return self._result(
                Outcome.PERMANENT, started_at, f"Executable not found on PATH: {command[0]}"
            )

        self._emit(
            {
                "event": "invoke_start",
                "repository": repository,
                "routine": routine.name,
                "command": command[:4],
            }
        )
        tail = OutputTail(self.output_tail_bytes)
        log_handle = self._open_log(repository or location.name, routine.name, started_at)
        timed_out = False
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    executable,
                    *command[1:],
                    cwd=location,
                    env=self.env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                return self._result(
                    Outcome.PERMANENT, started_at, f"Unable to start {command[0]}: {exc}"
                )

            self._processes.add(process)
            try:
                async with asyncio.timeout(routine.timeout_seconds):
                    await self._pump(process, tail, log_handle)
                    exit_code = await process.wait()
            except TimeoutError:
                timed_out = True
                exit_code = await self._stop(process)
            except asyncio.CancelledError:
                self._signal(process, signal.SIGKILL)
                raise
            finally:
                self._processes.discard(process)
        finally:
            if log_handle is not None:
                log_handle.close()

        interrupted = False
        if timed_out:
            outcome = Outcome.TIMEOUT
            tail.feed(f"\n[timed out after {routine.timeout_seconds:.0f}s]".encode())
        elif self._shutting_down and exit_code != 0:
            outcome = Outcome.TRANSIENT
            interrupted = True
        else:
            outcome = routine.classify(exit_code)

        result = InvocationResult(
            outcome=outcome,
            exit_code=exit_code,
            started_at=started_at,
            ended_at=max(started_at, self.clock()),
            excerpt=tail.text(),
            interrupted=interrupted,
            log_path=log_handle.name if log_handle is not None else None,
        )
        self._emit(
            {
                "event": "invoke_exit",
                "repository": repository,
                "routine": routine.name,
                "exit_code": exit_code,
                "outcome": outcome.value,
                "duration_seconds": round(result.duration_seconds, 3),
            }
        )
        return result
