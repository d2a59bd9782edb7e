from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class RiskEvaluationError(Exception):
    """A factor lookup failed; the whole evaluation is aborted."""

    def __init__(self, message: str, *, factor: Optional[str] = None) -> None:
        super().__init__(message)
        self.factor = factor


class PolicyEvaluationError(Exception):
    """Access decisioning could not complete because risk scoring failed."""


class DuplicateSessionError(Exception):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session already monitored: {session_id}")
        self.session_id = session_id


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Tagged result for async boundaries.

    ok=True  -> value holds the result
    ok=False -> error holds the failure; value may still carry a
                fail-closed fallback (e.g. a denied decision)
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: BaseException, fallback: Optional[T] = None) -> "Outcome[T]":
        return cls(ok=False, value=fallback, error=error)

    @property
    def error_code(self) -> Optional[str]:
        if self.error is None:
            return None
        return type(self.error).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": None if self.error is None else {"type": self.error_code, "message": str(self.error)},
        }
