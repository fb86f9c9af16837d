# src/bgsched/domain/states.py
from __future__ import annotations

from enum import StrEnum


class InstanceState(StrEnum):
    """
    States of a ScheduledInstance as stored in the DB.

    Transitions:
      - PENDING -> RUNNING -> SUCCEEDED | FAILED
      - PENDING -> CANCELLED
      - RUNNING -> PENDING when the retry policy re-arms the attempt chain

    SUCCEEDED, CANCELLED and FAILED are terminal. FAILED is only written once
    retries are exhausted.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceState.SUCCEEDED, InstanceState.FAILED, InstanceState.CANCELLED)


class Outcome(StrEnum):
    """What a single execution of a work function produced."""

    SUCCESS = "SUCCESS"
    RETRY = "RETRY"
    FAILURE = "FAILURE"


class NetworkState(StrEnum):
    NONE = "NONE"
    METERED = "METERED"
    UNMETERED = "UNMETERED"


class BackoffKind(StrEnum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
