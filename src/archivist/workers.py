from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class ExclusionTimeoutError(RuntimeError):
    """Raised when a repository stays busy past the caller's wait budget."""

    def __init__(self, repository: str, wait_seconds: float | None) -> None:
        super().__init__(
            f"Repository '{repository}' stayed busy for {wait_seconds or 0:.1f}s; giving up the slot."
        )
        self.repository = repository
        self.wait_seconds = wait_seconds


class WorkerPool:
    """Bounded execution slots plus one exclusion token per repository.

    The token is taken before a slot so a unit waiting on a busy repository
    never pins a slot another repository could use.
    """

    def __init__(self, slots: int) -> None:
        self.slots = max(1, int(slots))
        self._semaphore = asyncio.Semaphore(self.slots)
        self._tokens: dict[str, asyncio.Lock] = {}
        self._submitted: Counter[str] = Counter()
        self._running: Counter[str] = Counter()

    @property
    def in_flight(self) -> int:
        return sum(self._submitted.values())

    @property
    def running(self) -> int:
        return sum(self._running.values())

    async def run(
        self,
        repository: str,
        call: Callable[[], Awaitable[T]],
        *,
        wait_timeout: float | None = None,
    ) -> T:
        self._submitted[repository] += 1
        try:
            token = self._tokens.setdefault(repository, asyncio.Lock())
            try:
                async with asyncio.timeout(wait_timeout):
                    await token.acquire()
            except TimeoutError as exc:
                raise ExclusionTimeoutError(repository, wait_timeout) from exc
            try:
                async with self._semaphore:
                    self._running[repository] += 1
                    try:
                        return await call()
                    finally:
                        self._running[repository] -= 1
            finally:
                token.release()
        finally:
            self._submitted[repository] -= 1
            if self._submitted[repository] <= 0:
                del self._submitted[repository]
                if repository in self._tokens and not self._tokens[repository].locked():
                    del self._tokens[repository]
