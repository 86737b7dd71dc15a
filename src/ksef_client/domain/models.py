"""
Domain models: value objects for documents, credentials, sessions and sync state.

Everything here is a frozen dataclass except EncryptionContext, which owns key
material that must be zeroed in place when a session is reset.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum, StrEnum
from typing import Any

from ksef_client.result import ErrorCode


class Environment(StrEnum):
    TEST = "test"
    DEMO = "demo"
    PRODUCTION = "production"


class SubjectType(StrEnum):
    """Role of the tenant on a remote document (seller, buyer, third party, authorized)."""

    SUBJECT1 = "Subject1"
    SUBJECT2 = "Subject2"
    SUBJECT3 = "Subject3"
    SUBJECT_AUTHORIZED = "SubjectAuthorized"


# ─────────────────────── Credentials & tokens ───────────────────────


@dataclass(frozen=True, slots=True)
class Credential:
    """
    Caller-supplied Exchange credential.

    The raw token is excluded from repr so it never reaches a log line.
    """

    issuer_tax_id: str
    token: str = field(repr=False)
    environment: Environment = Environment.TEST


@dataclass(frozen=True, slots=True)
class Challenge:
    challenge: str
    timestamp_ms: int

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000, tz=UTC)


@dataclass(frozen=True, slots=True)
class AuthSubmission:
    """Reference and short-lived authentication token returned by SubmitAuth."""

    reference_number: str
    authentication_token: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class AuthTokenPair:
    access_token: str = field(repr=False)
    access_expires_at: datetime
    refresh_token: str | None = field(default=None, repr=False)
    refresh_expires_at: datetime | None = None

    def is_access_valid(self, now: datetime, leeway_seconds: int = 30) -> bool:
        return (self.access_expires_at - now).total_seconds() > leeway_seconds

    def is_refresh_valid(self, now: datetime) -> bool:
        return (
            self.refresh_token is not None
            and self.refresh_expires_at is not None
            and now < self.refresh_expires_at
        )


# ─────────────────────── Cryptography ───────────────────────


@dataclass(slots=True)
class EncryptionContext:
    """
    Symmetric key material for one session or one export.

    Mutable on purpose: destroy() overwrites the key and IV buffers in place.
    """

    symmetric_key: bytearray = field(repr=False)
    initialization_vector: bytearray = field(repr=False)
    wrapped_key: str
    destroyed: bool = False

    @property
    def iv_b64(self) -> str:
        return base64.b64encode(bytes(self.initialization_vector)).decode("ascii")

    def destroy(self) -> None:
        for buf in (self.symmetric_key, self.initialization_vector):
            for i in range(len(buf)):
                buf[i] = 0
        self.destroyed = True


@dataclass(frozen=True, slots=True)
class FileDigest:
    """Base64 SHA-256 hash and byte size of a payload."""

    sha256_b64: str
    size: int


@dataclass(frozen=True, slots=True)
class EncryptedPayload:
    ciphertext: bytes = field(repr=False)
    plain: FileDigest
    encrypted: FileDigest


# ─────────────────────── Sessions ───────────────────────


@dataclass(frozen=True, slots=True)
class FormCode:
    system_code: str = "FA (3)"
    schema_version: str = "1-0E"
    value: str = "FA"


class SessionState(Enum):
    UNOPENED = "unopened"
    OPENED = "opened"
    DOCUMENT_SENT = "document_sent"
    CLOSED = "closed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ConfirmationReference:
    """Downloadable confirmation (UPO) issued once a session is processed."""

    reference_number: str
    download_url: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class SessionStatus:
    code: int
    description: str
    invoice_count: int = 0
    successful_count: int = 0
    failed_count: int = 0
    confirmation: ConfirmationReference | None = None
    details: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SessionDocumentStatus:
    reference_number: str
    status_code: int
    description: str = ""
    invoice_number: str | None = None
    ksef_number: str | None = None


# ─────────────────────── Submission ledger ───────────────────────


@dataclass(frozen=True, slots=True)
class SubmissionKey:
    issuer_tax_id: str
    document_kind: str
    document_number: str


@dataclass(frozen=True, slots=True)
class SubmissionRecord:
    """
    One successfully submitted document.

    (issuer_tax_id, document_kind, document_number) is unique across the
    retention window.
    """

    issuer_tax_id: str
    document_kind: str
    document_number: str
    exchange_reference: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    session_reference: str | None = None
    ksef_number: str | None = None

    @property
    def key(self) -> SubmissionKey:
        return SubmissionKey(self.issuer_tax_id, self.document_kind, self.document_number)


@dataclass(frozen=True, slots=True)
class DuplicateCheck:
    is_duplicate: bool
    existing_reference: str | None = None


# ─────────────────────── Sync ───────────────────────


@dataclass(frozen=True, slots=True)
class SyncCursor:
    """High-water mark for one (tenant, subject type) pair; None until the first sync."""

    tenant_id: str
    subject_type: SubjectType
    high_water_mark: datetime | None = None


@dataclass(frozen=True, slots=True)
class RemoteDocument:
    """A document retrieved from the Exchange, keyed by its Exchange number."""

    ksef_number: str
    subject_type: SubjectType
    storage_date: datetime
    xml: str = field(repr=False)
    invoice_number: str | None = None
    issue_date: date | None = None
    seller_tax_id: str | None = None
    buyer_tax_id: str | None = None
    gross_amount: Decimal | None = None
    currency: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True, slots=True)
class Tenant:
    tenant_id: str
    credential: Credential


@dataclass(frozen=True, slots=True)
class SyncRunResult:
    """Write-once audit record of one tenant's sync run."""

    tenant_id: str
    started_at: datetime
    finished_at: datetime
    per_subject_counts: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def total_documents(self) -> int:
        return sum(self.per_subject_counts.values())

    @property
    def succeeded(self) -> bool:
        return not self.errors


# ─────────────────────── Documents ───────────────────────


@dataclass(frozen=True, slots=True)
class InvoiceLine:
    name: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: str = "23"
    unit: str | None = None

    @property
    def net_value(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def vat_value(self) -> Decimal:
        if not self.vat_rate.isdigit():
            return Decimal("0")
        return (self.net_value * Decimal(self.vat_rate) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True, slots=True)
class Invoice:
    """
    The outbound document. Totals are declared by the caller and checked
    against the line items during validation.
    """

    number: str
    issue_date: date | None
    lines: tuple[InvoiceLine, ...] = ()
    kind: str = "VAT"
    currency: str = "PLN"
    sale_date: date | None = None
    total_net: Decimal | None = None
    total_gross: Decimal | None = None
    has_attachments: bool = False


@dataclass(frozen=True, slots=True)
class IssuerProfile:
    tax_id: str
    name: str
    address_line: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country_code: str = "PL"


@dataclass(frozen=True, slots=True)
class Counterparty:
    name: str
    tax_id: str | None = None
    address_line: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country_code: str = "PL"


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    field: str
    code: str
    message: str


@dataclass(frozen=True, slots=True)
class ValidationReport:
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.errors

    def codes(self) -> list[str]:
        return [issue.code for issue in self.errors]


# ─────────────────────── Inbound results ───────────────────────


@dataclass(frozen=True, slots=True)
class SubmitResult:
    success: bool
    reference_number: str | None = None
    ksef_number: str | None = None
    session_reference: str | None = None
    confirmation_url: str | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_code: ErrorCode | None = None
    existing_reference: str | None = None
    verification_url: str | None = None


@dataclass(frozen=True, slots=True)
class ConnectionTestResult:
    success: bool
    environment: Environment
    error: str | None = None
