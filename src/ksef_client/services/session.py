"""
Online session manager.

    Unopened → Opened → DocumentSent → Closed → Processing → Completed | Failed

A session owns exactly one EncryptionContext. Documents may be sent while
the session is Opened/DocumentSent; after close() any send fails with
SessionStateError("no active session"). reset() destroys the key material and
returns the session to Unopened. Using the session as an async context
manager guarantees reset() runs after every attempt, success or failure, so
a key is never reused across sessions.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from types import TracebackType

import structlog

from ksef_client.adapters.crypto import CryptographyService
from ksef_client.adapters.http_client import ExchangeHttpClient
from ksef_client.adapters.wire import SessionStatusResponse
from ksef_client.domain.models import (
    ConfirmationReference,
    EncryptionContext,
    FormCode,
    SessionDocumentStatus,
    SessionState,
    SessionStatus,
)
from ksef_client.errors import (
    ProcessingFailedError,
    SessionStateError,
    SessionTimeoutError,
)
from ksef_client.polling import PollPolicy, poll

log = structlog.get_logger()

STATUS_PROCESSED = 200
STATUS_ERROR_THRESHOLD = 400

_SENDABLE = (SessionState.OPENED, SessionState.DOCUMENT_SENT)


def _to_status(response: SessionStatusResponse) -> SessionStatus:
    confirmation = None
    if response.upo is not None and response.upo.pages:
        page = response.upo.pages[0]
        confirmation = ConfirmationReference(
            reference_number=page.reference_number,
            download_url=page.download_url,
            expires_at=page.download_url_expiration_date,
        )
    return SessionStatus(
        code=response.status.code,
        description=response.status.description,
        invoice_count=response.invoice_count or 0,
        successful_count=response.successful_invoice_count or 0,
        failed_count=response.failed_invoice_count or 0,
        confirmation=confirmation,
        details=tuple(response.status.details or ()),
    )


class OnlineSession:
    """
    One interactive session against the Exchange.

    `access_token` is called before every request and must raise
    UnauthenticatedError when there is no valid token.
    """

    def __init__(
        self,
        client: ExchangeHttpClient,
        crypto: CryptographyService,
        access_token: Callable[[], str],
        polling: PollPolicy | None = None,
    ) -> None:
        self._client = client
        self._crypto = crypto
        self._access_token = access_token
        self._polling = polling or PollPolicy(max_attempts=30, delay_seconds=2.0)
        self._state = SessionState.UNOPENED
        self._reference: str | None = None
        self._context: EncryptionContext | None = None
        self._documents: list[str] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def reference(self) -> str | None:
        return self._reference

    @property
    def document_references(self) -> list[str]:
        return list(self._documents)

    async def __aenter__(self) -> OnlineSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.reset()

    def _require_reference(self) -> str:
        if self._reference is None:
            raise SessionStateError("No active session")
        return self._reference

    # ─────────────────────── Operations ───────────────────────

    async def open(self, form: FormCode | None = None) -> str:
        """Generate a fresh EncryptionContext and open the session; returns its reference."""
        if self._state is not SessionState.UNOPENED:
            raise SessionStateError(f"Session already {self._state.value}; reset before opening again")
        form = form or FormCode()
        token = self._access_token()
        context = await self._crypto.generate_encryption_context()
        try:
            response = await self._client.open_online_session(token, form, context)
        except BaseException:
            context.destroy()
            raise
        self._context = context
        self._reference = response.reference_number
        self._documents = []
        self._state = SessionState.OPENED
        log.info(
            "session.opened",
            reference=self._reference,
            form=form.system_code,
            valid_until=response.valid_until.isoformat() if response.valid_until else None,
        )
        return self._reference

    async def send(self, payload: bytes) -> str:
        """Encrypt and submit one document; returns the per-document reference."""
        if self._state not in _SENDABLE or self._context is None:
            raise SessionStateError("No active session")
        reference = self._require_reference()
        token = self._access_token()
        encrypted = self._crypto.encrypt_payload(payload, self._context)
        response = await self._client.send_invoice(token, reference, encrypted)
        self._documents.append(response.reference_number)
        self._state = SessionState.DOCUMENT_SENT
        log.info(
            "session.document_sent",
            session=reference,
            document=response.reference_number,
            size_bytes=encrypted.plain.size,
        )
        return response.reference_number

    async def close(self) -> None:
        if self._state not in _SENDABLE:
            raise SessionStateError("No active session")
        reference = self._require_reference()
        await self._client.close_online_session(self._access_token(), reference)
        self._state = SessionState.CLOSED
        log.info("session.closed", reference=reference, documents=len(self._documents))

    async def get_status(self) -> SessionStatus:
        reference = self._require_reference()
        status = _to_status(await self._client.get_session_status(self._access_token(), reference))
        if self._state in (SessionState.CLOSED, SessionState.PROCESSING):
            if status.code == STATUS_PROCESSED:
                self._state = SessionState.COMPLETED
            elif status.code >= STATUS_ERROR_THRESHOLD:
                self._state = SessionState.FAILED
            else:
                self._state = SessionState.PROCESSING
        return status

    async def wait_for_completion(
        self,
        max_attempts: int | None = None,
        delay: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SessionStatus:
        """Poll get_status() until the processed code; raise on error codes or exhaustion."""
        if self._state in _SENDABLE or self._state is SessionState.UNOPENED:
            raise SessionStateError("Session must be closed before waiting for completion")
        reference = self._require_reference()
        policy = PollPolicy(
            max_attempts=max_attempts if max_attempts is not None else self._polling.max_attempts,
            delay_seconds=delay if delay is not None else self._polling.delay_seconds,
        )

        async def check(attempt: int) -> SessionStatus | None:
            status = await self.get_status()
            log.debug("session.status", reference=reference, attempt=attempt, code=status.code)
            if status.code == STATUS_PROCESSED:
                return status
            if status.code >= STATUS_ERROR_THRESHOLD:
                raise ProcessingFailedError(
                    f"Session {reference} failed ({status.code}): {status.description}",
                    status_code=status.code,
                    details=list(status.details),
                )
            return None

        status = await poll(
            check,
            policy,
            on_exhausted=lambda n: SessionTimeoutError(
                f"Session {reference} not processed after {n} checks", attempts=n
            ),
            cancel=cancel,
            what="session polling",
        )
        log.info(
            "session.completed",
            reference=reference,
            successful=status.successful_count,
            failed=status.failed_count,
            confirmation=status.confirmation.reference_number if status.confirmation else None,
        )
        return status

    async def list_session_documents(self) -> list[SessionDocumentStatus]:
        """Per-document processing status for everything sent in this session."""
        reference = self._require_reference()
        token = self._access_token()
        documents: list[SessionDocumentStatus] = []
        continuation: str | None = None
        while True:
            page = await self._client.list_session_invoices(token, reference, continuation)
            documents.extend(
                SessionDocumentStatus(
                    reference_number=item.reference_number,
                    status_code=item.status.code,
                    description=item.status.description,
                    invoice_number=item.invoice_number,
                    ksef_number=item.ksef_number,
                )
                for item in page.invoices
            )
            continuation = page.continuation_token
            if not continuation:
                return documents

    def reset(self) -> None:
        """Destroy the key material and forget the session reference."""
        if self._context is not None:
            self._context.destroy()
        self._context = None
        self._reference = None
        self._documents = []
        self._state = SessionState.UNOPENED
