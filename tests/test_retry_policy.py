# tests/test_retry_policy.py
import pytest

from bgsched.domain.states import BackoffKind, Outcome
from bgsched.engine.retry import RetryPolicy, Verdict


def test_success_is_terminal_at_any_attempt():
    policy = RetryPolicy(max_attempts=3, base_delay_ms=1_000, max_delay_ms=60_000)
    for attempt in range(5):
        assert policy.decide(Outcome.SUCCESS, attempt).verdict == Verdict.SUCCEEDED


def test_exponential_delays_until_attempts_exhausted():
    policy = RetryPolicy(max_attempts=4, base_delay_ms=1_000, max_delay_ms=60_000)

    d0 = policy.decide(Outcome.RETRY, 0)
    d1 = policy.decide(Outcome.FAILURE, 1)
    d2 = policy.decide(Outcome.RETRY, 2)
    d3 = policy.decide(Outcome.RETRY, 3)

    assert [d0.delay_ms, d1.delay_ms, d2.delay_ms] == [1_000, 2_000, 4_000]
    assert d0.is_retry and d1.is_retry and d2.is_retry
    assert d3.verdict == Verdict.FAILED


def test_delay_is_capped():
    policy = RetryPolicy(max_attempts=100, base_delay_ms=1_000, max_delay_ms=10_000)
    assert policy.delay_for(3) == 8_000
    assert policy.delay_for(4) == 10_000
    assert policy.delay_for(90) == 10_000


def test_linear_backoff():
    policy = RetryPolicy(max_attempts=5, base_delay_ms=500, max_delay_ms=60_000)
    delays = [policy.decide(Outcome.RETRY, a, BackoffKind.LINEAR).delay_ms for a in range(4)]
    assert delays == [500, 1_000, 1_500, 2_000]


def test_single_attempt_policy_never_retries():
    policy = RetryPolicy(max_attempts=1, base_delay_ms=1_000, max_delay_ms=1_000)
    assert policy.decide(Outcome.RETRY, 0).verdict == Verdict.FAILED


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay_ms": 0},
        {"base_delay_ms": 10_000, "max_delay_ms": 1_000},
    ],
)
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
