"""
Authentication orchestrator: challenge → encrypt token → submit → poll → redeem.

State machine:

    Idle → ChallengeRequested → TokenEncrypted → AuthSubmitted → Polling → Redeeming → Redeemed
                    └──────────────┴─────────────────┴─────────────┴───────────┴──→ Failed

Each step is public so it can be driven (and tested) on its own;
authenticate() runs them in order. The first failure moves the orchestrator
to Failed, tags the exception with the step name and re-raises it. Nothing is
retried here: the caller restarts from get_challenge() after reset().

One orchestrator belongs to one tenant worker; it is not safe to share
across concurrent flows.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum

import structlog

from ksef_client.adapters.crypto import CryptographyService
from ksef_client.adapters.http_client import ExchangeHttpClient
from ksef_client.adapters.wire import parse_challenge_timestamp
from ksef_client.domain.models import AuthSubmission, AuthTokenPair, Challenge, Credential
from ksef_client.errors import (
    AuthenticationError,
    AuthTimeoutError,
    KsefError,
    UnauthenticatedError,
)
from ksef_client.polling import PollPolicy, poll

log = structlog.get_logger()

AUTH_SUCCEEDED = 200
AUTH_ERROR_THRESHOLD = 400


class AuthState(Enum):
    IDLE = "idle"
    CHALLENGE_REQUESTED = "challenge_requested"
    TOKEN_ENCRYPTED = "token_encrypted"
    AUTH_SUBMITTED = "auth_submitted"
    POLLING = "polling"
    REDEEMING = "redeeming"
    REDEEMED = "redeemed"
    FAILED = "failed"


class AuthenticationOrchestrator:
    def __init__(
        self,
        client: ExchangeHttpClient,
        crypto: CryptographyService,
        polling: PollPolicy | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._client = client
        self._crypto = crypto
        self._polling = polling or PollPolicy(max_attempts=30, delay_seconds=2.0)
        self._clock = clock
        self._state = AuthState.IDLE
        self._tokens: AuthTokenPair | None = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def tokens(self) -> AuthTokenPair | None:
        return self._tokens

    def reset(self) -> None:
        self._state = AuthState.IDLE
        self._tokens = None

    @contextmanager
    def _step(self, name: str, entering: AuthState) -> Iterator[None]:
        self._state = entering
        try:
            yield
        except KsefError as e:
            self._state = AuthState.FAILED
            e.step = e.step or name
            log.warning("auth.step_failed", step=name, error_code=e.code.value, error=e.message)
            raise
        except asyncio.CancelledError:
            self._state = AuthState.FAILED
            raise

    # ─────────────────────── Full flow ───────────────────────

    async def authenticate(
        self, credential: Credential, cancel: asyncio.Event | None = None
    ) -> AuthTokenPair:
        """Run every step and keep the resulting token pair for current_access_token()."""
        if self._state not in (AuthState.IDLE, AuthState.REDEEMED):
            raise AuthenticationError(
                f"Cannot start authentication from state {self._state.value}; reset first",
                step="start",
            )
        self._tokens = None
        log.info("auth.started", tax_id=credential.issuer_tax_id, environment=credential.environment.value)

        challenge = await self.get_challenge()
        encrypted = await self.encrypt_token(credential, challenge)
        submission = await self.submit_auth(challenge, credential.issuer_tax_id, encrypted)
        await self.poll_auth_status(
            submission.reference_number, submission.authentication_token, cancel=cancel
        )
        tokens = await self.redeem_token(submission.authentication_token)
        log.info(
            "auth.completed",
            tax_id=credential.issuer_tax_id,
            access_expires_at=tokens.access_expires_at.isoformat(),
        )
        return tokens

    # ─────────────────────── Steps ───────────────────────

    async def get_challenge(self) -> Challenge:
        with self._step("challenge", AuthState.CHALLENGE_REQUESTED):
            response = await self._client.get_challenge()
            challenge = Challenge(
                challenge=response.challenge,
                timestamp_ms=parse_challenge_timestamp(response.timestamp),
            )
        log.debug("auth.challenge_received", timestamp_ms=challenge.timestamp_ms)
        return challenge

    async def encrypt_token(self, credential: Credential, challenge: Challenge) -> str:
        with self._step("encrypt_token", AuthState.TOKEN_ENCRYPTED):
            return await self._crypto.encrypt_token(credential.token, challenge.timestamp_ms)

    async def submit_auth(self, challenge: Challenge, tax_id: str, encrypted_token: str) -> AuthSubmission:
        with self._step("submit", AuthState.AUTH_SUBMITTED):
            response = await self._client.submit_token_auth(challenge.challenge, tax_id, encrypted_token)
        log.info("auth.submitted", reference=response.reference_number)
        return AuthSubmission(
            reference_number=response.reference_number,
            authentication_token=response.authentication_token.token,
        )

    async def poll_auth_status(
        self,
        reference: str,
        authentication_token: str,
        max_checks: int | None = None,
        delay: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Poll until the Exchange reports success; AuthTimeoutError after `max_checks` attempts."""
        policy = PollPolicy(
            max_attempts=max_checks if max_checks is not None else self._polling.max_attempts,
            delay_seconds=delay if delay is not None else self._polling.delay_seconds,
        )

        async def check(attempt: int) -> bool | None:
            status = (await self._client.get_auth_status(reference, authentication_token)).status
            log.debug("auth.status", reference=reference, attempt=attempt, code=status.code)
            if status.code == AUTH_SUCCEEDED:
                return True
            if status.code >= AUTH_ERROR_THRESHOLD:
                detail = "; ".join(status.details or [])
                raise AuthenticationError(
                    f"Authentication rejected ({status.code}): {status.description}"
                    + (f" [{detail}]" if detail else "")
                )
            return None

        with self._step("poll", AuthState.POLLING):
            await poll(
                check,
                policy,
                on_exhausted=lambda n: AuthTimeoutError(
                    f"Authentication {reference} not confirmed after {n} checks", attempts=n
                ),
                cancel=cancel,
                what="authentication polling",
            )

    async def redeem_token(self, authentication_token: str) -> AuthTokenPair:
        with self._step("redeem", AuthState.REDEEMING):
            tokens = await self._client.redeem_token(authentication_token)
        self._tokens = tokens
        self._state = AuthState.REDEEMED
        return tokens

    async def refresh(self) -> AuthTokenPair:
        """Exchange the refresh token for a new access token, keeping the refresh token."""
        now = self._clock()
        if self._tokens is None or not self._tokens.is_refresh_valid(now):
            raise UnauthenticatedError("No valid refresh token; authenticate again", step="refresh")
        current = self._tokens
        with self._step("refresh", AuthState.REDEEMED):
            fresh = await self._client.refresh_token(current.refresh_token or "")
        self._tokens = AuthTokenPair(
            access_token=fresh.access_token,
            access_expires_at=fresh.access_expires_at,
            refresh_token=fresh.refresh_token or current.refresh_token,
            refresh_expires_at=fresh.refresh_expires_at or current.refresh_expires_at,
        )
        self._state = AuthState.REDEEMED
        log.info("auth.refreshed", access_expires_at=self._tokens.access_expires_at.isoformat())
        return self._tokens

    def current_access_token(self) -> str:
        """The access token to attach to calls; UnauthenticatedError when absent or expired."""
        if self._tokens is None:
            raise UnauthenticatedError("Not authenticated")
        if not self._tokens.is_access_valid(self._clock()):
            raise UnauthenticatedError("Access token has expired")
        return self._tokens.access_token
