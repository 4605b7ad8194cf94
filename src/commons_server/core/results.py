"""Tagged results and the error taxonomy for service operations.

Service operations return :class:`Result` values instead of raising across
subsystem boundaries. A failed result carries a :class:`ServiceError` whose
:class:`ErrorKind` the boundary adapter maps to a stable wire code and a
user-facing message.

Design intent:
    - Domain refusals (muted, rate limited, validation) are data, not
      exceptions.
    - Infrastructure failures inside the adapter are converted to
      ``INTERNAL_ERROR`` results and recorded by the performance monitor.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(Enum):
    """Every refusal a service can return. Values are the wire codes."""

    UNAUTHORIZED = "UNAUTHORIZED"
    MUTED = "MUTED"
    BANNED = "BANNED"
    RATE_LIMITED = "RATE_LIMITED"
    SLOW_MODE = "SLOW_MODE"
    UNKNOWN_CHANNEL = "UNKNOWN_CHANNEL"
    NOT_FOUND = "NOT_FOUND"
    PLAYER_NOT_FOUND = "PLAYER_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    ALREADY_IN_TRADE = "ALREADY_IN_TRADE"
    NOT_IN_THIS_TRADE = "NOT_IN_THIS_TRADE"
    TERMINAL_STATE = "TERMINAL_STATE"
    BODY_TOO_LONG = "BODY_TOO_LONG"
    EMPTY_AFTER_FILTER = "EMPTY_AFTER_FILTER"
    BLOCKED = "BLOCKED"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def code(self) -> str:
        return self.value

    @property
    def message(self) -> str:
        return DEFAULT_MESSAGES[self]


DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.UNAUTHORIZED: "You are not allowed to do that.",
    ErrorKind.MUTED: "You are muted and cannot send messages.",
    ErrorKind.BANNED: "Your account has been banned.",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please slow down.",
    ErrorKind.SLOW_MODE: "Slow mode is active in this channel.",
    ErrorKind.UNKNOWN_CHANNEL: "That channel does not exist.",
    ErrorKind.NOT_FOUND: "Not found.",
    ErrorKind.PLAYER_NOT_FOUND: "Player not found.",
    ErrorKind.VALIDATION_FAILED: "The request was not valid.",
    ErrorKind.ALREADY_IN_TRADE: "Already in an active trade.",
    ErrorKind.NOT_IN_THIS_TRADE: "You are not part of this trade.",
    ErrorKind.TERMINAL_STATE: "This trade is already finished.",
    ErrorKind.BODY_TOO_LONG: "Message is too long.",
    ErrorKind.EMPTY_AFTER_FILTER: "Message cannot be empty.",
    ErrorKind.BLOCKED: "This player is not accepting your messages.",
    ErrorKind.INTERNAL_ERROR: "Something went wrong. Please try again.",
}


@dataclass(frozen=True, slots=True)
class ServiceError:
    """A structured refusal.

    Attributes:
        kind: The taxonomy entry.
        detail: Optional human-readable specifics, e.g. the validation reason
            ``"Item x not in inventory"``.
    """

    kind: ErrorKind
    detail: str | None = None

    @property
    def message(self) -> str:
        return self.detail or self.kind.message

    def to_dict(self) -> dict:
        return {"code": self.kind.code, "message": self.message, "detail": self.detail}


class ResultError(RuntimeError):
    """Raised by :meth:`Result.unwrap` on a failed result."""

    def __init__(self, error: ServiceError) -> None:
        super().__init__(f"{error.kind.code}: {error.message}")
        self.error = error


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Outcome of a service operation: either a value or a :class:`ServiceError`."""

    value: T | None = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str | None = None) -> Result[T]:
        return cls(error=ServiceError(kind, detail))

    def unwrap(self) -> T:
        """Return the value or raise :class:`ResultError`."""
        if self.error is not None:
            raise ResultError(self.error)
        return self.value  # type: ignore[return-value]
