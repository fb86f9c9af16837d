# src/bgsched/engine/retry.py
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from bgsched.domain.states import BackoffKind, Outcome


class Verdict(StrEnum):
    SUCCEEDED = "SUCCEEDED"
    RETRY = "RETRY"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    delay_ms: int = 0

    @property
    def is_retry(self) -> bool:
        return self.verdict == Verdict.RETRY


@dataclass(frozen=True)
class RetryPolicy:
    """
    Turns an execution outcome into the next step of the attempt chain.

    attempt is the 0-based index of the attempt that just finished. A chain
    gets at most max_attempts executions; the delay before attempt n+1 is
    base_delay_ms * 2**n (or base_delay_ms * (n + 1) for linear backoff),
    capped at max_delay_ms.
    """
    max_attempts: int = 3
    base_delay_ms: int = 30_000
    max_delay_ms: int = 18_000_000

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be > 0")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")

    def delay_for(self, attempt: int, backoff: BackoffKind = BackoffKind.EXPONENTIAL) -> int:
        if backoff == BackoffKind.LINEAR:
            delay = self.base_delay_ms * (attempt + 1)
        else:
            delay = self.base_delay_ms * (2 ** min(attempt, 62))
        return min(delay, self.max_delay_ms)

    def decide(
        self,
        outcome: Outcome,
        attempt: int,
        backoff: BackoffKind = BackoffKind.EXPONENTIAL,
    ) -> Decision:
        if outcome == Outcome.SUCCESS:
            return Decision(Verdict.SUCCEEDED)
        if attempt + 1 < self.max_attempts:
            return Decision(Verdict.RETRY, self.delay_for(attempt, backoff))
        return Decision(Verdict.FAILED)
