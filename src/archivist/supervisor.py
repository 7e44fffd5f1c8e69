from __future__ import annotations

import asyncio
import logging
import os
import random
import signal
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from archivist import __version__
from archivist.config import ArchivistConfig, ConfigError, load_config
from archivist.registry import RepositoryRegistry
from archivist.routines.invoker import RoutineInvoker
from archivist.routines.retry import RetryPolicy
from archivist.scheduler import Scheduler
from archivist.state.models import PairState, RunRecord
from archivist.state.store import StateError, StateStore
from archivist.workers import WorkerPool

logger = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_FORCED = 3
EXIT_STARTUP_FAILURE = 4
EXIT_STATE_LOST = 5

_WARNING_EVENTS = {"gave_up", "lease_recovered", "reload_rejected"}
_DEBUG_EVENTS = {"invoke_start", "invoke_exit"}
_KILL_SETTLE_SECONDS = 10.0


class SupervisorError(RuntimeError):
    """Raised when the supervisor cannot start."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def build_status(
    store: StateStore,
    registry: RepositoryRegistry,
    *,
    now: float | None = None,
) -> dict[str, Any]:
    """Status from persisted state alone, without restoring or mutating it."""
    moment = time.time() if now is None else now
    persisted = store.load_pairs()
    pairs = [
        persisted.get(key, PairState(repository=key[0], routine=key[1])).summary(moment)
        for key in sorted(registry.pairs())
    ]
    return {
        "version": __version__,
        "running_pid": store.running_pid(),
        "paused": store.get_control()["paused"],
        "pairs": pairs,
        "excluded": dict(registry.excluded),
        "metrics": _public_metrics(store.get_metrics()),
    }


def _public_metrics(metrics: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in metrics.items() if key != "recent_events"}


class Supervisor:
    def __init__(
        self,
        config: ArchivistConfig,
        *,
        config_path: Path | None = None,
        env: Mapping[str, str] | None = None,
        invoker: RoutineInvoker | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.config_path = config_path
        self.env = dict(env) if env is not None else dict(os.environ)
        self.clock = clock
        self.rng = rng
        self.invoker = invoker
        self.store: StateStore | None = None
        self.scheduler: Scheduler | None = None
        self.stop_reason: str | None = None
        self._draining = False
        self._forced = False

    def _record_event(self, event: dict[str, Any]) -> None:
        name = str(event.get("event", ""))
        if name in _DEBUG_EVENTS:
            level = logging.DEBUG
        elif name in _WARNING_EVENTS:
            level = logging.WARNING
        else:
            level = logging.INFO
        details = " ".join(f"{key}={value}" for key, value in event.items() if key != "event")
        logger.log(level, "%s %s", name, details, extra={"event": event})
        if self.store is None or name in _DEBUG_EVENTS:
            return

        event_payload = dict(event)
        event_payload["at"] = _utcnow_iso()

        def _updater(metrics: dict[str, Any]) -> dict[str, Any]:
            events = metrics.get("recent_events", [])
            if not isinstance(events, list):
                events = []
            events.append(event_payload)
            metrics["recent_events"] = events[-200:]
            counter = f"{name}_count"
            metrics[counter] = int(metrics.get(counter, 0)) + 1
            if name == "run_complete":
                outcome_counter = f"outcome_{event.get('outcome')}_count"
                metrics[outcome_counter] = int(metrics.get(outcome_counter, 0)) + 1
            return metrics

        try:
            self.store.update_metrics(_updater)
        except StateError as exc:
            logger.warning("Unable to record metrics for %s: %s", name, exc)

    def start(self) -> None:
        try:
            store = StateStore(self.config.state_dir)
        except StateError as exc:
            raise SupervisorError(str(exc)) from exc
        try:
            registry = RepositoryRegistry.from_config(self.config)
        except ConfigError as exc:
            raise SupervisorError(str(exc)) from exc
        self.store = store

        supervisor_config = self.config.supervisor
        if self.invoker is None:
            self.invoker = RoutineInvoker(
                env=self.env,
                output_tail_bytes=supervisor_config.output_tail_bytes,
                log_dir=store.log_dir,
                log_retention=supervisor_config.log_retention,
                clock=self.clock,
                event_hook=self._record_event,
            )
        self.scheduler = Scheduler(
            registry,
            store,
            WorkerPool(supervisor_config.worker_slots),
            self.invoker,
            RetryPolicy.from_config(self.config.retry),
            history_size=supervisor_config.history_size,
            clock=self.clock,
            rng=self.rng,
            event_hook=self._record_event,
        )
        try:
            self.scheduler.restore()
            self.poll_control()
        except StateError as exc:
            raise SupervisorError(str(exc)) from exc
        logger.info(
            "Loaded %d repositories (%d excluded), %d scheduled routines, %d worker slots",
            len(registry.repositories),
            len(registry.excluded),
            len(registry.pairs()),
            supervisor_config.worker_slots,
        )

    def _require_scheduler(self) -> Scheduler:
        if self.scheduler is None:
            raise SupervisorError("Supervisor has not been started.")
        return self.scheduler

    def _require_store(self) -> StateStore:
        if self.store is None:
            raise SupervisorError("Supervisor has not been started.")
        return self.store

    def poll_control(self) -> None:
        scheduler = self._require_scheduler()
        store = self._require_store()
        if self._draining:
            # Queued triggers stay on disk for the next start.
            logger.info("Shutting down; control changes apply after restart.")
            return
        scheduler.set_paused(store.get_control()["paused"])
        for repository, routine in store.consume_triggers():
            try:
                scheduler.trigger(repository, routine)
            except KeyError as exc:
                logger.warning("Ignoring trigger: %s", exc.args[0])

    def reload(self) -> bool:
        scheduler = self._require_scheduler()
        if self._draining:
            logger.info("Shutting down; ignoring reload request.")
            return False
        if self.config_path is None:
            logger.warning("Reload requested but no configuration file is known.")
            return False
        try:
            config = load_config(self.config_path)
            registry = RepositoryRegistry.from_config(config)
            retry_policy = RetryPolicy.from_config(config.retry)
        except ConfigError as exc:
            self._record_event({"event": "reload_rejected", "error": str(exc)})
            return False
        if config.supervisor.worker_slots != self.config.supervisor.worker_slots:
            logger.warning("Worker slot changes take effect after a restart.")
        scheduler.apply_registry(registry)
        self.config = config
        scheduler.retry_policy = retry_policy
        scheduler.history_size = max(1, config.supervisor.history_size)
        return True

    def request_shutdown(self, reason: str = "requested") -> None:
        if self._draining and self.invoker is not None:
            logger.warning("Shutdown requested again (%s); killing remaining routines", reason)
            self._forced = True
            self.invoker.kill_all()
            return
        if self.stop_reason is None:
            self.stop_reason = reason
            logger.info("Shutdown requested (%s)", reason)
        if self.scheduler is not None:
            self.scheduler.stop_admitting()

    def _guarded(self, action: Callable[[], Any]) -> Callable[[], None]:
        def _run() -> None:
            try:
                action()
            except StateError as exc:
                logger.error("State store unavailable while handling a signal: %s", exc)
            except SupervisorError as exc:
                logger.error("Ignoring signal: %s", exc)

        return _run

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[int]:
        handlers: dict[int, Callable[[], None]] = {
            signal.SIGTERM: lambda: self.request_shutdown("SIGTERM"),
            signal.SIGINT: lambda: self.request_shutdown("SIGINT"),
            signal.SIGHUP: self._guarded(self.reload),
            signal.SIGUSR1: self._guarded(self.poll_control),
        }
        installed: list[int] = []
        for signum, handler in handlers.items():
            try:
                loop.add_signal_handler(signum, handler)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(signum)
        return installed

    async def shutdown(self) -> int:
        scheduler = self._require_scheduler()
        scheduler.stop_admitting()
        self._draining = True
        in_flight = scheduler.in_flight
        if in_flight:
            logger.info(
                "Waiting up to %.0fs for %d in-flight routine(s)",
                self.config.supervisor.grace_seconds,
                in_flight,
            )
        if self.invoker is not None:
            self.invoker.terminate_all()
        clean = await scheduler.drain(self.config.supervisor.grace_seconds)
        if not clean:
            logger.warning("Grace period expired; killing remaining routines")
            if self.invoker is not None:
                self.invoker.kill_all()
            await scheduler.drain(_KILL_SETTLE_SECONDS)
        if scheduler.fatal_error is not None:
            return EXIT_STATE_LOST
        return EXIT_CLEAN if clean and not self._forced else EXIT_FORCED

    async def run(self) -> int:
        if self.scheduler is None:
            try:
                self.start()
            except SupervisorError as exc:
                logger.error("Startup failed: %s", exc)
                return EXIT_STARTUP_FAILURE
        scheduler = self._require_scheduler()
        store = self._require_store()

        loop = asyncio.get_running_loop()
        pid = os.getpid()
        try:
            store.write_pid(pid)
        except OSError as exc:
            logger.error("Startup failed: unable to write pid file: %s", exc)
            return EXIT_STARTUP_FAILURE
        # Handlers stay installed until the pid file is gone so a repeated
        # SIGTERM during the drain escalates instead of killing the process.
        installed = self._install_signal_handlers(loop)
        logger.info("archivist %s running (pid %d)", __version__, pid)
        state_lost = False
        try:
            try:
                await scheduler.run()
            except StateError as exc:
                logger.critical("State store lost: %s", exc)
                state_lost = True
            exit_code = await self.shutdown()
            store.clear_pid(pid)
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
        if state_lost:
            exit_code = EXIT_STATE_LOST
        logger.info("Stopped with exit code %d", exit_code)
        return exit_code

    async def run_once(self, repository: str, routine: str) -> RunRecord | None:
        if self.scheduler is None:
            self.start()
        scheduler = self._require_scheduler()
        scheduler.trigger(repository, routine)
        return await scheduler.dispatch((repository, routine), self.clock())

    def status(self) -> dict[str, Any]:
        scheduler = self._require_scheduler()
        store = self._require_store()
        return {
            "version": __version__,
            "running_pid": os.getpid(),
            "paused": scheduler.paused,
            "pairs": scheduler.status(),
            "excluded": dict(scheduler.registry.excluded),
            "workers": {
                "slots": scheduler.pool.slots,
                "waiting": scheduler.pool.in_flight - scheduler.pool.running,
                "running": scheduler.pool.running,
            },
            "metrics": _public_metrics(store.get_metrics()),
        }
