from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from archivist.registry import PairKey, Repository, RepositoryRegistry
from archivist.routines.base import Outcome, RoutineDefinition
from archivist.routines.invoker import InvocationResult, RoutineInvoker
from archivist.routines.retry import RetryPolicy
from archivist.state.models import Lease, PairState, RunRecord, TriggerSource
from archivist.state.store import StateError, StateStore
from archivist.workers import ExclusionTimeoutError, WorkerPool

logger = logging.getLogger(__name__)

SchedulerEventHook = Callable[[dict[str, Any]], None]


class Scheduler:
    """Decides when each (repository, routine) pair runs and records what happened.

    Every state transition is applied and persisted synchronously on the event
    loop, without awaiting in between, so transitions on a pair never
    interleave. Pairs whose repository already has a run in flight are
    skipped; completion wakes the loop so the next one starts right away.
    """

    def __init__(
        self,
        registry: RepositoryRegistry,
        store: StateStore,
        pool: WorkerPool,
        invoker: RoutineInvoker,
        retry_policy: RetryPolicy,
        *,
        history_size: int = 20,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
        event_hook: SchedulerEventHook | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.pool = pool
        self.invoker = invoker
        self.retry_policy = retry_policy
        self.history_size = max(1, history_size)
        self.clock = clock
        self.rng = rng or random.Random()
        self.event_hook = event_hook
        self.pairs: dict[PairKey, PairState] = {}
        self.paused = False
        self.fatal_error: StateError | None = None
        self._wake = asyncio.Event()
        self._admitting = True
        self._tasks: dict[asyncio.Task[RunRecord | None], PairKey] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def wake(self) -> None:
        self._wake.set()

    @property
    def admitting(self) -> bool:
        return self._admitting

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def repository_busy(self, repository: str) -> bool:
        return any(
            key[0] == repository for task, key in self._tasks.items() if not task.done()
        )

    def _new_pair(self, key: PairKey) -> PairState:
        # Attempt numbers keep counting for a pair that was archived and re-added.
        state = PairState(
            repository=key[0], routine=key[1], attempts=self.store.last_attempt(*key)
        )
        self.store.save_pair(state)
        return state

    def _recover_lease(self, state: PairState, lease: Lease, now: float) -> None:
        # The tool's own state is authoritative; rerun rather than trust the lease.
        self._emit(
            {
                "event": "lease_recovered",
                "repository": state.repository,
                "routine": state.routine,
                "lease_acquired_at": lease.acquired_at,
            }
        )
        state.lease = None
        state.next_due_at = max(now, state.last_ended_at or now)
        self.store.save_pair(state)

    def _retire(self, states: list[PairState]) -> None:
        """Archive pairs that left the configuration.

        Pairs of excluded repositories stay in the active state untouched so
        they pick up where they left off once the location is back.
        """
        self.store.archive_pairs(
            state for state in states if state.repository not in self.registry.excluded
        )

    def restore(self) -> None:
        persisted = self.store.load_pairs()
        now = self.clock()
        self.pairs = {}
        for key in self.registry.pairs():
            state = persisted.pop(key, None)
            if state is None:
                state = self._new_pair(key)
            elif state.lease is not None:
                self._recover_lease(state, state.lease, now)
            self.pairs[key] = state
        self._retire(list(persisted.values()))

    def _eligible(self, key: PairKey, state: PairState) -> bool:
        if state.lease is not None or not self.registry.has_pair(key):
            return False
        if state.failed and not state.manual:
            return False
        if self.paused and not state.manual:
            return False
        return not self.repository_busy(key[0])

    @staticmethod
    def _due_value(state: PairState) -> float:
        return -math.inf if state.next_due_at is None else state.next_due_at

    def due_pairs(self, now: float) -> list[PairKey]:
        ranked: list[tuple[float, int, str, int, PairKey]] = []
        for key, state in self.pairs.items():
            if not self._eligible(key, state):
                continue
            due = self._due_value(state)
            if due > now:
                continue
            repository = self.registry.repositories[key[0]]
            ranked.append(
                (due, -repository.priority, repository.name, repository.routines.index(key[1]), key)
            )
        ranked.sort()
        return [item[-1] for item in ranked]

    def select_due(self, now: float) -> PairKey | None:
        due = self.due_pairs(now)
        return due[0] if due else None

    def seconds_until_next(self, now: float) -> float | None:
        upcoming = [
            self._due_value(state)
            for key, state in self.pairs.items()
            if self._eligible(key, state)
        ]
        if not upcoming:
            return None
        return max(0.0, min(upcoming) - now)

    def dispatch(self, key: PairKey, now: float) -> asyncio.Task[RunRecord | None]:
        state = self.pairs[key]
        repository = self.registry.repositories[key[0]]
        routine = self.registry.routine_for(key)
        trigger: TriggerSource = "manual" if state.manual else "schedule"
        state.manual = False
        state.attempts += 1
        state.lease = Lease(token=uuid4().hex, acquired_at=now)
        self.store.save_pair(state)
        self._emit(
            {
                "event": "dispatch",
                "repository": key[0],
                "routine": key[1],
                "attempt": state.attempts,
                "trigger": trigger,
            }
        )
        task = asyncio.create_task(
            self._execute(key, repository, routine, state.attempts, trigger),
            name=f"archivist:{key[0]}:{key[1]}",
        )
        self._tasks[task] = key
        task.add_done_callback(lambda done: self._tasks.pop(done, None))
        return task

    async def _execute(
        self,
        key: PairKey,
        repository: Repository,
        routine: RoutineDefinition,
        attempt: int,
        trigger: TriggerSource,
    ) -> RunRecord | None:
        try:
            result = await self.pool.run(
                repository.name,
                lambda: self.invoker.invoke(routine, repository.location, repository=repository.name),
                wait_timeout=routine.timeout_seconds,
            )
        except ExclusionTimeoutError as exc:
            now = self.clock()
            result = InvocationResult(
                outcome=Outcome.TIMEOUT, exit_code=None, started_at=now, ended_at=now, excerpt=str(exc)
            )
        except OSError as exc:
            logger.exception("Invocation of %s on %s failed to run", routine.name, repository.name)
            now = self.clock()
            result = InvocationResult(
                outcome=Outcome.TRANSIENT, exit_code=None, started_at=now, ended_at=now, excerpt=str(exc)
            )
        try:
            return self.complete(key, result, attempt=attempt, trigger=trigger)
        except StateError as exc:
            logger.critical("Lost the state store while recording %s/%s: %s", key[0], key[1], exc)
            self.fatal_error = exc
            self.stop_admitting()
            return None
        finally:
            self.wake()

    def _next_success_due(self, key: PairKey, ended_at: float) -> float:
        if not self.registry.has_pair(key):
            return ended_at
        schedule = self.registry.schedule_for(key)
        jitter = self.rng.uniform(0.0, schedule.jitter_seconds) if schedule.jitter_seconds else 0.0
        return ended_at + schedule.interval_seconds + jitter

    def complete(
        self,
        key: PairKey,
        result: InvocationResult,
        *,
        attempt: int,
        trigger: TriggerSource = "schedule",
    ) -> RunRecord:
        state = self.pairs.get(key) or PairState(repository=key[0], routine=key[1])
        record = RunRecord(
            repository=key[0],
            routine=key[1],
            attempt=attempt,
            started_at=result.started_at,
            ended_at=result.ended_at,
            outcome=result.outcome.value,
            exit_code=result.exit_code,
            excerpt=result.excerpt,
            trigger=trigger,
            log_path=result.log_path,
        )
        self.store.append_run(record, keep=self.history_size)

        now = max(self.clock(), result.ended_at)
        state.lease = None
        state.last_outcome = result.outcome.value
        state.last_started_at = result.started_at
        state.last_ended_at = result.ended_at
        state.last_exit_code = result.exit_code
        state.last_excerpt = result.excerpt
        event: dict[str, Any] = {
            "event": "run_complete",
            "repository": key[0],
            "routine": key[1],
            "attempt": attempt,
            "outcome": result.outcome.value,
            "exit_code": result.exit_code,
            "duration_seconds": round(result.duration_seconds, 3),
        }

        if result.outcome is Outcome.SUCCESS:
            state.consecutive_failures = 0
            state.failed = False
            state.failure_reason = None
            state.next_due_at = self._next_success_due(key, result.ended_at)
        elif result.interrupted:
            # Shutdown interrupted the run; it does not count against the retry budget.
            state.next_due_at = now
            event["interrupted"] = True
        else:
            state.consecutive_failures += 1
            decision = self.retry_policy.next_action(
                state.consecutive_failures, result.outcome, self.rng
            )
            if decision.give_up:
                state.failed = True
                state.failure_reason = decision.reason
                state.next_due_at = now
                self._emit(
                    {
                        "event": "gave_up",
                        "repository": key[0],
                        "routine": key[1],
                        "consecutive_failures": state.consecutive_failures,
                        "reason": decision.reason,
                    }
                )
            else:
                delay = decision.delay_seconds or 0.0
                state.next_due_at = now + delay
                self._emit(
                    {
                        "event": "retry_scheduled",
                        "repository": key[0],
                        "routine": key[1],
                        "consecutive_failures": state.consecutive_failures,
                        "delay_seconds": round(delay, 3),
                    }
                )

        if state.manual:
            # Triggered while leased: run again as soon as this one is recorded.
            state.failed = False
            state.failure_reason = None
            state.consecutive_failures = 0
            state.next_due_at = now

        if self.registry.has_pair(key):
            self.pairs[key] = state
            self.store.save_pair(state)
        else:
            self.pairs.pop(key, None)
            if key[0] in self.registry.excluded:
                self.store.save_pair(state)
            else:
                self.store.archive_pairs([state])
        self._emit(event)
        return record

    def trigger(self, repository: str, routine: str) -> PairState:
        key = (repository, routine)
        if not self.registry.has_pair(key):
            raise KeyError(f"No routine '{routine}' is configured for repository '{repository}'.")
        state = self.pairs.setdefault(key, PairState(repository=repository, routine=routine))
        state.manual = True
        if state.lease is None:
            state.failed = False
            state.failure_reason = None
            state.consecutive_failures = 0
            state.next_due_at = self.clock()
        self.store.save_pair(state)
        self._emit(
            {
                "event": "manual_trigger",
                "repository": repository,
                "routine": routine,
                "leased": state.lease is not None,
            }
        )
        self.wake()
        return state

    def set_paused(self, paused: bool) -> None:
        if paused != self.paused:
            self._emit({"event": "schedule_paused" if paused else "schedule_resumed"})
        self.paused = paused
        self.wake()

    def apply_registry(self, registry: RepositoryRegistry) -> dict[str, list[str]]:
        self.registry = registry
        now = self.clock()
        persisted: dict[PairKey, PairState] | None = None
        added: list[str] = []
        cleared: list[str] = []
        for key in registry.pairs():
            state = self.pairs.get(key)
            if state is None:
                if persisted is None:
                    persisted = self.store.load_pairs()
                state = persisted.get(key)
                if state is None:
                    state = self._new_pair(key)
                elif state.lease is not None:
                    self._recover_lease(state, state.lease, now)
                self.pairs[key] = state
                added.append("/".join(key))
            if state.failed:
                state.failed = False
                state.failure_reason = None
                state.consecutive_failures = 0
                state.next_due_at = now
                self.store.save_pair(state)
                cleared.append("/".join(key))

        removed_states = [
            state
            for key, state in self.pairs.items()
            if not registry.has_pair(key) and state.lease is None
        ]
        for state in removed_states:
            del self.pairs[state.key]
        self._retire(removed_states)
        summary = {
            "added": added,
            "removed": ["/".join(state.key) for state in removed_states],
            "cleared": cleared,
        }
        self._emit({"event": "registry_applied", **summary})
        self.wake()
        return summary

    def stop_admitting(self) -> None:
        self._admitting = False
        self.wake()

    async def drain(self, grace_seconds: float) -> bool:
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=max(0.0, grace_seconds))
        return not pending

    async def run(self) -> None:
        while self._admitting:
            self._wake.clear()
            now = self.clock()
            timeout: float | None = None
            if self.in_flight < self.pool.slots:
                key = self.select_due(now)
                if key is not None:
                    self.dispatch(key, now)
                    continue
                timeout = self.seconds_until_next(now)
            try:
                async with asyncio.timeout(timeout):
                    await self._wake.wait()
            except TimeoutError:
                pass

    def status(self) -> list[dict[str, Any]]:
        now = self.clock()
        return [self.pairs[key].summary(now) for key in sorted(self.pairs)]
