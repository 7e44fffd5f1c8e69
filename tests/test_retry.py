import random

import pytest

from archivist.config import RetryConfig
from archivist.routines import Outcome, RetryPolicy


def test_transient_backoff_doubles_from_base() -> None:
    policy = RetryPolicy(base_delay_seconds=5, max_delay_seconds=3600, max_attempts=3, jitter_seconds=0)

    delays = [policy.next_action(failures, Outcome.TRANSIENT).delay_seconds for failures in (1, 2, 3)]

    assert delays == [5, 10, 20]


def test_backoff_is_capped_and_non_decreasing_with_jitter() -> None:
    policy = RetryPolicy(base_delay_seconds=2, max_delay_seconds=30, max_attempts=20, jitter_seconds=50)
    rng = random.Random(7)

    delays = [policy.backoff(failures, rng) for failures in range(1, 15)]

    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) == 30
    assert all(2 <= delay <= 30 for delay in delays)


def test_retry_budget_exhaustion_gives_up() -> None:
    policy = RetryPolicy(base_delay_seconds=5, max_attempts=3, jitter_seconds=0)

    assert not policy.next_action(3, Outcome.TIMEOUT).give_up
    decision = policy.next_action(4, Outcome.TRANSIENT)

    assert decision.give_up
    assert decision.delay_seconds is None
    assert "exhausted" in decision.reason


def test_permanent_failure_gives_up_immediately() -> None:
    policy = RetryPolicy(max_attempts=10)

    decision = policy.next_action(1, Outcome.PERMANENT)

    assert decision.give_up
    assert "permanent-failure" in decision.reason


def test_success_has_no_retry_action() -> None:
    with pytest.raises(ValueError):
        RetryPolicy().next_action(0, Outcome.SUCCESS)


def test_policy_from_config_clamps_negative_values() -> None:
    policy = RetryPolicy.from_config(
        RetryConfig(base_delay_seconds=-1, max_delay_seconds=10, max_attempts=-2, jitter_seconds=-3)
    )

    assert policy.base_delay_seconds == 0
    assert policy.max_attempts == 0
    assert policy.jitter_seconds == 0
    assert policy.next_action(1, Outcome.TRANSIENT).give_up
