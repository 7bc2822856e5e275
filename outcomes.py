from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar


T = TypeVar("T")


class OutcomeStatus(str, Enum):
    ok = "ok"
    not_found = "not_found"
    invalid = "invalid"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a public operation.

    Validation failures and unknown ids are ordinary results, not exceptions:
    callers branch on ``status`` and nothing has been mutated unless ``ok``.
    """

    status: OutcomeStatus
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.ok

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(OutcomeStatus.ok, value=value)

    @classmethod
    def not_found(cls, error: str) -> "Outcome[T]":
        return cls(OutcomeStatus.not_found, error=error)

    @classmethod
    def invalid(cls, error: str) -> "Outcome[T]":
        return cls(OutcomeStatus.invalid, error=error)
