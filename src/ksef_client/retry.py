"""
Rate-limit / retry governor.

Every outbound Exchange call goes through RetryGovernor.call(). Responses are
classified first (classify_response), then tenacity decides:

  2xx                 → success
  429                 → RateLimitError, retried; server Retry-After (capped at max_delay) wins over backoff
  5xx / network       → TransportError, retried with exponential backoff
  any other 4xx       → fatal (auth, duplicate, rejected), surfaced at once

Calls that leave a side effect on the Exchange (SubmitAuth, OpenSession,
SendDocument, redeem, export start) are made with idempotent=False and get a
single attempt: the error goes back to the caller, who must confirm state via
a status call before trying again.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ksef_client.errors import (
    RETRYABLE_ERRORS,
    AuthenticationError,
    DuplicateError,
    ExchangeRejectedError,
    ExchangeUnavailableError,
    RateLimitError,
    TransportError,
    UnauthenticatedError,
)

log = structlog.get_logger()

T = TypeVar("T")


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Retry-After as delta-seconds or an HTTP date; None when absent or unparsable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - (now or datetime.now(UTC))).total_seconds())


def _exception_details(response: httpx.Response) -> list[str]:
    """Pull the human-readable part of the Exchange's error envelope, if any."""
    try:
        body = response.json()
    except ValueError:
        return [response.text[:500]] if response.text else []
    if not isinstance(body, dict):
        return []
    envelope = body.get("exception") or {}
    entries = envelope.get("exceptionDetailList") if isinstance(envelope, dict) else None
    details: list[str] = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        text = entry.get("exceptionDescription") or ""
        extra = entry.get("details") or []
        code = entry.get("exceptionCode")
        line = f"{code}: {text}" if code is not None else str(text)
        if extra:
            line += " (" + "; ".join(str(x) for x in extra) + ")"
        details.append(line)
    if not details and body.get("message"):
        details.append(str(body["message"]))
    return details


def classify_response(response: httpx.Response) -> httpx.Response:
    """Return a 2xx response unchanged; raise the matching typed error otherwise."""
    status = response.status_code
    if 200 <= status < 300:
        return response

    where = f"{response.request.method} {response.request.url.path}"
    details = _exception_details(response)
    summary = f"{where} returned {status}" + (f": {details[0]}" if details else "")

    if status == 429:
        raise RateLimitError(summary, retry_after=parse_retry_after(response.headers.get("Retry-After")))
    if status >= 500:
        raise ExchangeUnavailableError(summary, status_code=status)
    if status == 401:
        raise UnauthenticatedError(summary)
    if status == 403:
        raise AuthenticationError(summary)
    if status == 409:
        raise DuplicateError(summary)
    raise ExchangeRejectedError(summary, status_code=status, details=details)


class wait_retry_after:  # noqa: N801 - tenacity wait strategies are lowercase
    """
    Use the server's Retry-After hint when the last error carried one, else the fallback.

    The hint is capped at `ceiling` seconds.
    """

    def __init__(self, fallback: Callable[[RetryCallState], float], ceiling: float) -> None:
        self._fallback = fallback
        self._ceiling = ceiling

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            return min(exc.retry_after, self._ceiling)
        return self._fallback(retry_state)


class RetryGovernor:
    """
    Wrap async calls with bounded exponential backoff.

    Only RateLimitError and TransportError are retried, and no single wait
    exceeds `max_delay`, Retry-After included. `sleep` is injectable
    so tests can observe the computed delays without waiting.
    """

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._max_attempts = max_attempts
        self._wait = wait_retry_after(wait_exponential(multiplier=base_delay, max=max_delay), ceiling=max_delay)
        self._sleep = sleep

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        idempotent: bool = True,
    ) -> T:
        attempts = self._max_attempts if idempotent else 1
        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=self._wait,
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=lambda state: log.warning(
                "governor.retrying",
                operation=name,
                attempt=state.attempt_number,
                delay_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
            reraise=True,
            **kwargs,
        )
        return await retrying(operation)


async def send(
    client: httpx.AsyncClient,
    governor: RetryGovernor,
    method: str,
    url: str,
    *,
    idempotent: bool = True,
    **request_kwargs: Any,
) -> httpx.Response:
    """One classified HTTP exchange under the governor; httpx failures become TransportError."""

    async def attempt() -> httpx.Response:
        try:
            response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {url} timed out") from e
        except httpx.RequestError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        return classify_response(response)

    return await governor.call(attempt, name=f"{method} {url}", idempotent=idempotent)
