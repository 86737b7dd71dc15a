"""
Result monad: explicit success/failure tracks for adapter boundaries.

A Result[T] is either Success(value: T) or Failure(error: FailureDescription).
Repository adapters and the duplicate detector return Result instead of
raising, so the orchestrating layer decides what a failure means:

    ┌───────────┐   flat_map    ┌───────────┐   flat_map    ┌──────────┐
    │  lookup   │──Success──────│  decide   │──Success──────│  record  │──→ Result[T]
    └─────┬─────┘               └─────┬─────┘               └─────┬────┘
          │ Failure                   │ Failure                   │ Failure
          └───────────────────────────┴───────────────────────────┴──→ Result[T]

Exceptions raised by the Exchange-facing code (see ksef_client.errors) carry
their own ErrorCode; from_computation / from_awaitable keep that code when
they capture one, so a ConflictError stays a DUPLICATE_ERROR on the railway.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Any, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


@unique
class ErrorCode(Enum):
    """
    Error codes for the failure track.

    The first seven mirror the Exchange error taxonomy; the rest cover local
    infrastructure.
    """

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Caller-fixable document problem, never retried."""

    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    """Credential or challenge failure, or a missing/expired access token."""

    DUPLICATE_ERROR = "DUPLICATE_ERROR"
    """Document already submitted under the same unique key."""

    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    """Exchange answered 429; retried with backoff."""

    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    """Network failure, request timeout or 5xx; retried up to a bounded count."""

    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    """Unexpected response shape or status code; fatal."""

    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    """A polling loop ran out of attempts."""

    PROCESSING_ERROR = "PROCESSING_ERROR"
    """The Exchange finished processing with an error status."""

    CRYPTOGRAPHY_ERROR = "CRYPTOGRAPHY_ERROR"
    """Key wrapping, certificate parsing or cipher failure."""

    SESSION_STATE_ERROR = "SESSION_STATE_ERROR"
    """Operation not permitted in the current session state."""

    DATABASE_ERROR = "DATABASE_ERROR"
    """Local store connectivity or query failure."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """System misconfiguration."""

    CANCELLED = "CANCELLED"
    """Caller-supplied cancellation signal fired."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Unexpected, unclassified failure."""


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "Issuer tax id is required")
    >>> desc.code
    <ErrorCode.VALIDATION_ERROR: 'VALIDATION_ERROR'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


def _code_of(exc: BaseException, default: ErrorCode) -> ErrorCode:
    code = getattr(exc, "code", None)
    return code if isinstance(code, ErrorCode) else default


class Result(Generic[T]):
    """
    Railway-Oriented Programming Result monad.

        >>> Result.success(21).map(lambda x: x * 2).value()
        42
        >>> Result.failure(ErrorCode.VALIDATION_ERROR, "bad").map(lambda x: x * 2).is_failure()
        True
    """

    # ──────────────────────── Introspection ────────────────────────

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def value(self) -> T:
        """Extract the success value. Raises ValueError on a Failure."""
        match self:
            case Success(v):
                return v
            case Failure(err):
                raise ValueError(f"Cannot get value from a Failure: {err.message}")
        raise TypeError("unreachable")  # pragma: no cover

    def error(self) -> FailureDescription:
        """Extract the failure description. Raises ValueError on a Success."""
        match self:
            case Failure(err):
                return err
            case Success(v):
                raise ValueError(f"Cannot get error from a Success: {v}")
        raise TypeError("unreachable")  # pragma: no cover

    # ──────────────────────── Transformations ────────────────────────

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        match self:
            case Success(v):
                return Success(mapper(v))
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        """Chain a Result-returning function. Short-circuits on failure."""
        match self:
            case Success(v):
                return mapper(v)
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def peek(self, action: Callable[[T], Any]) -> Result[T]:
        """Run a side effect on the success value (logging, usually)."""
        match self:
            case Success(v):
                action(v)
        return self

    def peek_failure(self, action: Callable[[FailureDescription], Any]) -> Result[T]:
        match self:
            case Failure(err):
                action(err)
        return self

    def unwrap(self) -> T:
        """
        Return the value or raise the captured exception.

        Used where the railway meets exception-based code: the original
        exception is re-raised when present so its type survives.
        """
        match self:
            case Success(v):
                return v
            case Failure(err):
                if err.exception is not None:
                    raise err.exception
                raise RuntimeError(str(err))
        raise TypeError("unreachable")  # pragma: no cover

    # ──────────────────────── Static Factories ────────────────────────

    @staticmethod
    def success(value: T) -> Result[T]:
        return Success(value)

    @staticmethod
    def failure(
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> Result[T]:
        return Failure(FailureDescription(code=code, message=message, exception=exception))

    @staticmethod
    def from_computation(
        computation: Callable[[], T],
        error_code: ErrorCode,
        error_message: str,
    ) -> Result[T]:
        """
        Create a Result from a computation that may raise.

        A raised exception carrying its own ErrorCode keeps it; anything else
        is filed under `error_code`.
        """
        try:
            return Result.success(computation())
        except Exception as e:
            return Result.failure(_code_of(e, error_code), error_message, e)

    @staticmethod
    async def from_awaitable(
        awaitable: Awaitable[T],
        error_code: ErrorCode,
        error_message: str,
    ) -> Result[T]:
        """Async counterpart of from_computation."""
        try:
            return Result.success(await awaitable)
        except Exception as e:
            return Result.failure(_code_of(e, error_code), error_message, e)

    # ──────────────────────── Async Support ────────────────────────

    async def flat_map_async(self, mapper: Callable[[T], Awaitable[Result[U]]]) -> Result[U]:
        """
        Chain an async Result-returning function; an exception it raises lands on the failure track.

            result = await cursor.flat_map_async(pull_documents)
        """
        match self:
            case Success(v):
                try:
                    return await mapper(v)
                except Exception as e:
                    return Failure(FailureDescription(_code_of(e, ErrorCode.UNKNOWN_ERROR), str(e), e))
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    # ──────────────────────── Dunder methods ────────────────────────

    def __bool__(self) -> bool:
        return self.is_success()


@dataclass(frozen=True, slots=True, init=False)
class Success(Result[T]):
    """The success track: wraps a value of type T."""

    _value: T

    def __init__(self, value: T) -> None:
        if value is None:
            raise TypeError("Success value must not be None")
        object.__setattr__(self, "_value", value)

    def __repr__(self) -> str:
        return f"Success({self._value!r})"


Success.__match_args__ = ("_value",)


@dataclass(frozen=True, slots=True, init=False)
class Failure(Result[T]):
    """The failure track: wraps a FailureDescription."""

    _error: FailureDescription

    def __init__(self, error: FailureDescription) -> None:
        object.__setattr__(self, "_error", error)

    def __repr__(self) -> str:
        return f"Failure({self._error.code.value}: {self._error.message!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Failure):
            return (
                self._error.code == other._error.code
                and self._error.message == other._error.message
            )
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("Failure", self._error.code, self._error.message))


Failure.__match_args__ = ("_error",)
