"""
Inbound submission facade: SubmitDocument and TestConnection.

submit_document() runs the whole outbound path and never raises for domain
failures; every outcome is a SubmitResult:

  validate → render FA(3) → payload limits → duplicate pre-check
    → [per-issuer lock] duplicate re-check → authenticate → open → send
    → close → wait → per-document status → record in ledger
    → verification link

Cheap local checks come first so no key is generated or token spent on a
document that cannot be accepted. Submissions for the same issuer are
serialized; different issuers proceed concurrently. A lock lives only while
some submission holds or awaits it.

When the ledger rejects the record because the same document was recorded
concurrently, the result is a DUPLICATE_ERROR carrying the existing reference.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from ksef_client.adapters.exchange import ExchangeBinding
from ksef_client.domain.invoice_xml import render_invoice_xml
from ksef_client.domain.models import (
    ConfirmationReference,
    ConnectionTestResult,
    Counterparty,
    Credential,
    Environment,
    FormCode,
    Invoice,
    IssuerProfile,
    SubmissionRecord,
    SubmitResult,
)
from ksef_client.domain.validation import normalize_tax_id, validate, validate_payload
from ksef_client.domain.verification import verification_url
from ksef_client.errors import (
    DuplicateError,
    ExchangeRejectedError,
    KsefError,
    ProcessingFailedError,
)
from ksef_client.polling import PollPolicy
from ksef_client.result import ErrorCode
from ksef_client.services.auth import AuthenticationOrchestrator
from ksef_client.services.duplicates import DuplicateDetector
from ksef_client.services.session import OnlineSession

log = structlog.get_logger()

EXCHANGE_DUPLICATE_STATUS = 440
DOCUMENT_ERROR_THRESHOLD = 400


@dataclass(frozen=True, slots=True)
class _Transmission:
    session_reference: str
    document_reference: str
    ksef_number: str | None
    confirmation: ConfirmationReference | None


class SubmissionService:
    def __init__(
        self,
        bindings: Callable[[Environment], ExchangeBinding],
        detector: DuplicateDetector,
        form: FormCode | None = None,
        auth_polling: PollPolicy | None = None,
        session_polling: PollPolicy | None = None,
        system_info: str = "ksef-sync",
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._bindings = bindings
        self._detector = detector
        self._form = form or FormCode()
        self._auth_polling = auth_polling
        self._session_polling = session_polling
        self._system_info = system_info
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def submit_document(
        self,
        document: Invoice,
        issuer: IssuerProfile,
        counterparty: Counterparty,
        credential: Credential,
        cancel: asyncio.Event | None = None,
    ) -> SubmitResult:
        report = validate(document, issuer, counterparty, today=self._clock().date())
        warnings = [f"{w.code}: {w.message}" for w in report.warnings]
        if not report.valid:
            log.info("submission.invalid", number=document.number, errors=report.codes())
            return SubmitResult(
                success=False,
                errors=[f"{e.code}: {e.message}" for e in report.errors],
                warnings=warnings,
                error_code=ErrorCode.VALIDATION_ERROR,
            )

        payload = render_invoice_xml(
            document, issuer, counterparty, self._form, self._system_info, self._clock()
        )
        payload_issues = validate_payload(payload, document.has_attachments)
        if payload_issues:
            return SubmitResult(
                success=False,
                errors=[f"{i.code}: {i.message}" for i in payload_issues],
                warnings=warnings,
                error_code=ErrorCode.VALIDATION_ERROR,
            )

        tax_id = normalize_tax_id(issuer.tax_id)
        number = document.number.strip()
        duplicate = await self._duplicate_result(tax_id, document.kind, number, warnings)
        if duplicate is not None:
            return duplicate

        async with self._lock_for(tax_id):
            # re-checked under the lock; a concurrent submission may have recorded it
            duplicate = await self._duplicate_result(tax_id, document.kind, number, warnings)
            if duplicate is not None:
                return duplicate
            try:
                sent = await self._transmit(payload, credential, cancel)
            except KsefError as e:
                log.warning(
                    "submission.failed",
                    number=number,
                    step=e.step,
                    error_code=e.code.value,
                    error=e.message,
                )
                details = getattr(e, "details", None) or []
                return SubmitResult(
                    success=False,
                    errors=[str(e), *details],
                    warnings=warnings,
                    error_code=e.code,
                    existing_reference=getattr(e, "existing_reference", None),
                )

            recorded = await self._detector.mark_submitted(
                SubmissionRecord(
                    issuer_tax_id=tax_id,
                    document_kind=document.kind,
                    document_number=number,
                    exchange_reference=sent.ksef_number or sent.document_reference,
                    submitted_at=self._clock(),
                    session_reference=sent.session_reference,
                    ksef_number=sent.ksef_number,
                )
            )
        if recorded.is_failure():
            err = recorded.error()
            if err.code is ErrorCode.DUPLICATE_ERROR:
                existing = getattr(err.exception, "existing_reference", None)
                log.warning(
                    "submission.recorded_elsewhere",
                    number=number,
                    reference=sent.document_reference,
                    existing_reference=existing,
                )
                return SubmitResult(
                    success=False,
                    reference_number=sent.document_reference,
                    ksef_number=sent.ksef_number,
                    session_reference=sent.session_reference,
                    errors=[f"Document {number} ({document.kind}) is already recorded as {existing}"],
                    warnings=warnings,
                    error_code=ErrorCode.DUPLICATE_ERROR,
                    existing_reference=existing,
                )
            warnings.append(f"Accepted by the Exchange but not recorded locally: {err.message}")

        log.info(
            "submission.accepted",
            number=number,
            reference=sent.document_reference,
            ksef_number=sent.ksef_number,
        )
        return SubmitResult(
            success=True,
            reference_number=sent.document_reference,
            ksef_number=sent.ksef_number,
            session_reference=sent.session_reference,
            confirmation_url=sent.confirmation.download_url if sent.confirmation else None,
            warnings=warnings,
            verification_url=(
                verification_url(credential.environment, tax_id, document.issue_date, payload)
                if document.issue_date else None
            ),
        )

    def _lock_for(self, tax_id: str) -> asyncio.Lock:
        lock = self._locks.get(tax_id)
        if lock is None:
            lock = self._locks[tax_id] = asyncio.Lock()
        return lock

    async def _duplicate_result(
        self, tax_id: str, kind: str, number: str, warnings: list[str]
    ) -> SubmitResult | None:
        checked = await self._detector.check(tax_id, kind, number)
        if checked.is_failure():
            err = checked.error()
            return SubmitResult(success=False, errors=[str(err)], warnings=warnings, error_code=err.code)
        if checked.value().is_duplicate:
            existing = checked.value().existing_reference
            return SubmitResult(
                success=False,
                errors=[f"Document {number} ({kind}) was already submitted as {existing}"],
                warnings=warnings,
                error_code=ErrorCode.DUPLICATE_ERROR,
                existing_reference=existing,
            )
        return None

    async def _transmit(
        self, payload: bytes, credential: Credential, cancel: asyncio.Event | None
    ) -> _Transmission:
        binding = self._bindings(credential.environment)
        auth = AuthenticationOrchestrator(binding.client, binding.crypto, self._auth_polling)
        await auth.authenticate(credential, cancel)

        async with OnlineSession(
            binding.client, binding.crypto, auth.current_access_token, self._session_polling
        ) as session:
            session_reference = await session.open(self._form)
            document_reference = await session.send(payload)
            await session.close()
            status = await session.wait_for_completion(cancel=cancel)
            documents = await session.list_session_documents()

        mine = next((d for d in documents if d.reference_number == document_reference), None)
        if mine is not None and mine.status_code == EXCHANGE_DUPLICATE_STATUS:
            raise DuplicateError(
                f"The Exchange reports document {mine.invoice_number or document_reference} as a duplicate",
                existing_reference=mine.ksef_number,
            )
        if mine is not None and mine.status_code >= DOCUMENT_ERROR_THRESHOLD:
            raise ProcessingFailedError(
                f"Document {document_reference} rejected ({mine.status_code}): {mine.description}",
                status_code=mine.status_code,
            )
        if mine is None and status.failed_count:
            raise ProcessingFailedError(
                f"Session {session_reference} finished with {status.failed_count} failed document(s)",
                status_code=status.code,
            )
        return _Transmission(
            session_reference=session_reference,
            document_reference=document_reference,
            ksef_number=mine.ksef_number if mine else None,
            confirmation=status.confirmation,
        )

    async def test_connection(self, credential: Credential) -> ConnectionTestResult:
        """Authenticate end to end and report whether it worked."""
        binding = self._bindings(credential.environment)
        auth = AuthenticationOrchestrator(binding.client, binding.crypto, self._auth_polling)
        try:
            await auth.authenticate(credential)
        except KsefError as e:
            log.warning("connection_test.failed", tax_id=credential.issuer_tax_id, error=str(e))
            message = str(e)
            if isinstance(e, ExchangeRejectedError) and e.details:
                message += ": " + "; ".join(e.details)
            return ConnectionTestResult(success=False, environment=credential.environment, error=message)
        log.info("connection_test.succeeded", tax_id=credential.issuer_tax_id)
        return ConnectionTestResult(success=True, environment=credential.environment)
