"""
Exception taxonomy for the Exchange client.

Every exception carries an ErrorCode so it maps onto the Result railway
without a lookup table, and an optional `step` naming the protocol step that
failed (set by the authentication orchestrator and the session manager).

Retry policy is keyed on type: RateLimitError and TransportError are the only
retryable classes. Everything else is surfaced to the caller.
"""

from __future__ import annotations

from ksef_client.result import ErrorCode


class KsefError(Exception):
    """Base class for all client errors."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


# ─────────────────────── Caller-fixable ───────────────────────


class DuplicateError(KsefError):
    """The document was already submitted; `existing_reference` points at the first submission."""

    code = ErrorCode.DUPLICATE_ERROR

    def __init__(self, message: str, existing_reference: str | None = None) -> None:
        super().__init__(message)
        self.existing_reference = existing_reference


class ConflictError(DuplicateError):
    """The submission ledger's uniqueness constraint rejected an insert."""


# ─────────────────────── Authentication ───────────────────────


class AuthenticationError(KsefError):
    code = ErrorCode.AUTHENTICATION_ERROR


class UnauthenticatedError(AuthenticationError):
    """No access token, or the access token has expired."""


# ─────────────────────── Transport / rate limiting ───────────────────────


class RateLimitError(KsefError):
    """HTTP 429. `retry_after` holds the server hint in seconds, when given."""

    code = ErrorCode.RATE_LIMIT_ERROR

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransportError(KsefError):
    """Network failure or request timeout."""

    code = ErrorCode.TRANSPORT_ERROR


class ExchangeUnavailableError(TransportError):
    """The Exchange answered with a 5xx status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


# ─────────────────────── Protocol ───────────────────────


class ProtocolError(KsefError):
    """Unexpected status code or response body."""

    code = ErrorCode.PROTOCOL_ERROR


class UnexpectedResponseError(ProtocolError):
    """A response body did not match any known shape."""


class ExchangeRejectedError(ProtocolError):
    """Non-retryable 4xx; `details` carries the Exchange's exception list."""

    def __init__(self, message: str, status_code: int, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details or []


# ─────────────────────── Polling ───────────────────────


class PollingTimeoutError(KsefError):
    """A polling loop exhausted its attempt budget without a terminal status."""

    code = ErrorCode.TIMEOUT_ERROR

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class AuthTimeoutError(PollingTimeoutError):
    pass


class SessionTimeoutError(PollingTimeoutError):
    pass


class ExportTimeoutError(PollingTimeoutError):
    pass


class ProcessingFailedError(KsefError):
    """The Exchange reached a terminal error status while processing."""

    code = ErrorCode.PROCESSING_ERROR

    def __init__(self, message: str, status_code: int, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details or []


class OperationCancelledError(KsefError):
    code = ErrorCode.CANCELLED


# ─────────────────────── Cryptography ───────────────────────


class CryptographyError(KsefError):
    code = ErrorCode.CRYPTOGRAPHY_ERROR


class KeyWrapError(CryptographyError):
    """No usable public-key certificate, or RSA wrapping failed."""


class CertificateParseError(CryptographyError):
    pass


# ─────────────────────── Configuration ───────────────────────


class ConfigurationError(KsefError):
    """Settings are incomplete or inconsistent at the point of use."""

    code = ErrorCode.CONFIGURATION_ERROR


# ─────────────────────── Session state ───────────────────────


class SessionStateError(KsefError):
    code = ErrorCode.SESSION_STATE_ERROR


RETRYABLE_ERRORS: tuple[type[KsefError], ...] = (RateLimitError, TransportError)
