# src/bgsched/domain/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

# Error markers carried in ExecutionResult.error. They never surface as
# exceptions to the registrant; they drive the retry policy.
TIMED_OUT = "TimedOut"
STALE = "Stale"
UNKNOWN_WORK = "UnknownWork"


@dataclass
class BGSBaseError(Exception):
    """
    Base domain error.

    The API layer maps these to HTTP responses consistently.
    """
    message: str
    code: str = "BGS_ERROR"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationError(BGSBaseError):
    code: str = "VALIDATION_ERROR"


@dataclass
class DuplicateTaskError(BGSBaseError):
    code: str = "DUPLICATE_TASK"


@dataclass
class UnknownTaskError(BGSBaseError):
    code: str = "UNKNOWN_TASK"


@dataclass
class PersistenceError(BGSBaseError):
    code: str = "PERSISTENCE_ERROR"


def validation_details(exc: Exception) -> dict[str, Any]:
    """JSON-safe summary of a pydantic ValidationError."""
    errors = getattr(exc, "errors", None)
    if not callable(errors):
        return {"errors": [str(exc)]}
    return {"errors": [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")} for e in errors()]}


class TransientFailure(Exception):
    """
    Raised by a work function to ask for a retry instead of a hard failure.
    """
