from __future__ import annotations

import random
from dataclasses import dataclass

from archivist.config import RetryConfig
from archivist.routines.base import Outcome


@dataclass(frozen=True, slots=True)
class RetryDecision:
    give_up: bool
    delay_seconds: float | None = None
    reason: str = ""

    @classmethod
    def retry_after(cls, delay_seconds: float) -> RetryDecision:
        return cls(give_up=False, delay_seconds=delay_seconds)

    @classmethod
    def stop(cls, reason: str) -> RetryDecision:
        return cls(give_up=True, reason=reason)


@dataclass(slots=True)
class RetryPolicy:
    """Maps a failure streak onto the follow-up for a (repository, routine) pair.

    Transient outcomes back off exponentially, ``base * 2**(failures - 1)``
    plus jitter, capped at ``max_delay_seconds``. The streak may reach
    ``max_attempts`` retries; the next transient failure gives up. Permanent
    outcomes give up at once.

    Jitter is never wider than the base delay, so consecutive delays stay
    non-decreasing even with the random offset.
    """

    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 3600.0
    max_attempts: int = 5
    jitter_seconds: float = 10.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            base_delay_seconds=max(0.0, float(config.base_delay_seconds)),
            max_delay_seconds=max(0.0, float(config.max_delay_seconds)),
            max_attempts=max(0, int(config.max_attempts)),
            jitter_seconds=max(0.0, float(config.jitter_seconds)),
        )

    def backoff(self, consecutive_failures: int, rng: random.Random | None = None) -> float:
        exponent = max(0, consecutive_failures - 1)
        delay = self.base_delay_seconds * (2**exponent)
        jitter_bound = min(self.jitter_seconds, self.base_delay_seconds)
        if jitter_bound > 0:
            delay += (rng or random).uniform(0.0, jitter_bound)
        return min(delay, self.max_delay_seconds)

    def next_action(
        self,
        consecutive_failures: int,
        classification: Outcome,
        rng: random.Random | None = None,
    ) -> RetryDecision:
        if classification is Outcome.SUCCESS:
            raise ValueError("A successful run has no retry action.")
        if not classification.retriable:
            return RetryDecision.stop(f"{classification.value}: operator attention required")
        if consecutive_failures > self.max_attempts:
            return RetryDecision.stop(
                f"retry budget exhausted after {consecutive_failures - 1} retries"
            )
        return RetryDecision.retry_after(self.backoff(consecutive_failures, rng))
