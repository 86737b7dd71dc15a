"""
PostgreSQL repository adapters: submission ledger, cursors, documents, run log, tenants.

Adapter layer: implements the persistence ports using psycopg (v3) async
connections and raw parameterized SQL. Every public method returns a Result;
exceptions are captured at this boundary with Result.from_awaitable().

The duplicate guard lives in the database: submission_records has a UNIQUE
constraint on (issuer_tax_id, document_kind, document_number) and insert()
relies on it (UniqueViolation → ConflictError), never on a prior SELECT.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

import psycopg
import structlog
from cryptography.fernet import Fernet, InvalidToken
from psycopg.types.json import Jsonb

from ksef_client.domain.models import (
    Credential,
    DuplicateCheck,
    Environment,
    RemoteDocument,
    SubjectType,
    SubmissionKey,
    SubmissionRecord,
    SyncCursor,
    SyncRunResult,
    Tenant,
)
from ksef_client.errors import ConflictError
from ksef_client.result import ErrorCode, Result

log = structlog.get_logger()

_INSERT_SUBMISSION = """
INSERT INTO submission_records (
    issuer_tax_id, document_kind, document_number, exchange_reference,
    session_reference, ksef_number, submitted_at
) VALUES (%s, %s, %s, %s, %s, %s, %s)
"""

_FIND_SUBMISSION = """
SELECT exchange_reference FROM submission_records
WHERE issuer_tax_id = %s AND document_kind = %s AND document_number = %s
"""

_ADVANCE_CURSOR = """
INSERT INTO sync_cursors (tenant_id, subject_type, high_water_mark, updated_at)
VALUES (%s, %s, %s, now())
ON CONFLICT (tenant_id, subject_type) DO UPDATE
SET high_water_mark = GREATEST(sync_cursors.high_water_mark, EXCLUDED.high_water_mark),
    updated_at = now()
RETURNING high_water_mark
"""

_UPSERT_DOCUMENT = """
INSERT INTO received_documents (
    tenant_id, ksef_number, subject_type, storage_date, invoice_number, issue_date,
    seller_tax_id, buyer_tax_id, gross_amount, currency, xml, metadata
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (tenant_id, ksef_number) DO UPDATE
SET storage_date = EXCLUDED.storage_date,
    xml = EXCLUDED.xml,
    metadata = EXCLUDED.metadata,
    received_at = now()
"""

_INSERT_RUN = """
INSERT INTO sync_runs (tenant_id, started_at, finished_at, per_subject_counts, errors)
VALUES (%s, %s, %s, %s, %s)
"""

_UPSERT_INTEGRATION = """
INSERT INTO exchange_integrations (tenant_id, issuer_tax_id, environment, encrypted_token, is_active)
VALUES (%s, %s, %s, %s, %s)
ON CONFLICT (tenant_id) DO UPDATE
SET issuer_tax_id = EXCLUDED.issuer_tax_id,
    environment = EXCLUDED.environment,
    encrypted_token = EXCLUDED.encrypted_token,
    is_active = EXCLUDED.is_active,
    updated_at = now()
"""

_ACTIVE_INTEGRATIONS = """
SELECT tenant_id, issuer_tax_id, environment, encrypted_token
FROM exchange_integrations
WHERE is_active
ORDER BY tenant_id
"""


class _PsycopgAdapter:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    async def _connect(self) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(self._dsn)


class PsycopgSubmissionLedger(_PsycopgAdapter):
    """Implements the SubmissionLedger port."""

    async def lookup(self, key: SubmissionKey) -> Result[DuplicateCheck]:
        return await Result.from_awaitable(
            self._lookup(key), ErrorCode.DATABASE_ERROR, "Failed to query submission ledger"
        )

    async def _lookup(self, key: SubmissionKey) -> DuplicateCheck:
        reference = await self._find_reference(key)
        return DuplicateCheck(is_duplicate=reference is not None, existing_reference=reference)

    async def _find_reference(self, key: SubmissionKey) -> str | None:
        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(_FIND_SUBMISSION, (key.issuer_tax_id, key.document_kind, key.document_number))
            row = await cur.fetchone()
        return row[0] if row else None

    async def insert(self, record: SubmissionRecord) -> Result[SubmissionRecord]:
        return await Result.from_awaitable(
            self._insert(record), ErrorCode.DATABASE_ERROR, "Failed to record submission"
        )

    async def _insert(self, record: SubmissionRecord) -> SubmissionRecord:
        try:
            async with await self._connect() as conn:
                await conn.execute(
                    _INSERT_SUBMISSION,
                    (
                        record.issuer_tax_id,
                        record.document_kind,
                        record.document_number,
                        record.exchange_reference,
                        record.session_reference,
                        record.ksef_number,
                        record.submitted_at,
                    ),
                )
        except psycopg.errors.UniqueViolation as e:
            existing = await self._find_reference(record.key)
            raise ConflictError(
                f"Document {record.document_number} ({record.document_kind}) of "
                f"{record.issuer_tax_id} is already recorded",
                existing_reference=existing,
            ) from e
        log.info("repository.submission_recorded", reference=record.exchange_reference)
        return record

    async def delete_submitted_before(self, cutoff: datetime) -> Result[int]:
        return await Result.from_awaitable(
            self._delete_before(cutoff), ErrorCode.DATABASE_ERROR, "Failed to purge submission ledger"
        )

    async def _delete_before(self, cutoff: datetime) -> int:
        async with await self._connect() as conn, conn.transaction(), conn.cursor() as cur:
            await cur.execute("DELETE FROM submission_records WHERE submitted_at < %s", (cutoff,))
            return cur.rowcount


class PsycopgSyncCursorStore(_PsycopgAdapter):
    """Implements the SyncCursorStore port; the database enforces forward-only movement."""

    async def get(self, tenant_id: str, subject_type: SubjectType) -> Result[SyncCursor]:
        return await Result.from_awaitable(
            self._get(tenant_id, subject_type), ErrorCode.DATABASE_ERROR, "Failed to read sync cursor"
        )

    async def _get(self, tenant_id: str, subject_type: SubjectType) -> SyncCursor:
        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(
                "SELECT high_water_mark FROM sync_cursors WHERE tenant_id = %s AND subject_type = %s",
                (tenant_id, subject_type.value),
            )
            row = await cur.fetchone()
        return SyncCursor(tenant_id, subject_type, row[0] if row else None)

    async def advance(self, cursor: SyncCursor) -> Result[SyncCursor]:
        return await Result.from_awaitable(
            self._advance(cursor), ErrorCode.DATABASE_ERROR, "Failed to advance sync cursor"
        )

    async def _advance(self, cursor: SyncCursor) -> SyncCursor:
        if cursor.high_water_mark is None:
            raise ValueError("Cannot advance a cursor to an empty high-water mark")
        async with await self._connect() as conn, conn.transaction(), conn.cursor() as cur:
            await cur.execute(
                _ADVANCE_CURSOR, (cursor.tenant_id, cursor.subject_type.value, cursor.high_water_mark)
            )
            row = await cur.fetchone()
        if row is None:
            raise RuntimeError(
                f"Cursor upsert for {cursor.tenant_id}/{cursor.subject_type.value} returned no row"
            )
        log.info(
            "repository.cursor_advanced",
            tenant_id=cursor.tenant_id,
            subject=cursor.subject_type.value,
            high_water_mark=row[0].isoformat(),
        )
        return SyncCursor(cursor.tenant_id, cursor.subject_type, row[0])

    async def reset(self, tenant_id: str, subject_type: SubjectType | None = None) -> Result[int]:
        return await Result.from_awaitable(
            self._reset(tenant_id, subject_type), ErrorCode.DATABASE_ERROR, "Failed to reset sync cursor"
        )

    async def _reset(self, tenant_id: str, subject_type: SubjectType | None) -> int:
        async with await self._connect() as conn, conn.transaction(), conn.cursor() as cur:
            if subject_type is None:
                await cur.execute("DELETE FROM sync_cursors WHERE tenant_id = %s", (tenant_id,))
            else:
                await cur.execute(
                    "DELETE FROM sync_cursors WHERE tenant_id = %s AND subject_type = %s",
                    (tenant_id, subject_type.value),
                )
            removed = cur.rowcount
        log.info("repository.cursor_reset", tenant_id=tenant_id, removed=removed)
        return removed


class PsycopgDocumentStore(_PsycopgAdapter):
    """Implements the DocumentStore port; re-saving a document overwrites it."""

    async def save_all(self, tenant_id: str, documents: Sequence[RemoteDocument]) -> Result[int]:
        return await Result.from_awaitable(
            self._save_all(tenant_id, documents), ErrorCode.DATABASE_ERROR, "Failed to persist documents"
        )

    async def _save_all(self, tenant_id: str, documents: Sequence[RemoteDocument]) -> int:
        if not documents:
            return 0
        async with await self._connect() as conn, conn.transaction(), conn.cursor() as cur:
            await cur.executemany(
                _UPSERT_DOCUMENT,
                [
                    (
                        tenant_id,
                        d.ksef_number,
                        d.subject_type.value,
                        d.storage_date,
                        d.invoice_number,
                        d.issue_date,
                        d.seller_tax_id,
                        d.buyer_tax_id,
                        d.gross_amount,
                        d.currency,
                        d.xml,
                        Jsonb(d.metadata),
                    )
                    for d in documents
                ],
            )
        log.info("repository.documents_stored", tenant_id=tenant_id, documents=len(documents))
        return len(documents)


class PsycopgSyncRunLog(_PsycopgAdapter):
    """Implements the SyncRunLog port."""

    async def append(self, run: SyncRunResult) -> Result[SyncRunResult]:
        return await Result.from_awaitable(
            self._append(run), ErrorCode.DATABASE_ERROR, "Failed to write sync run log"
        )

    async def _append(self, run: SyncRunResult) -> SyncRunResult:
        async with await self._connect() as conn:
            await conn.execute(
                _INSERT_RUN,
                (
                    run.tenant_id,
                    run.started_at,
                    run.finished_at,
                    Jsonb(run.per_subject_counts),
                    Jsonb(run.errors),
                ),
            )
        return run


class PsycopgTenantDirectory(_PsycopgAdapter):
    """
    Implements the TenantDirectory port.

    Exchange tokens are stored Fernet-encrypted and decrypted only into the
    in-process Credential. A row whose token cannot be decrypted is skipped
    and reported, so one bad row does not hide every other tenant.
    """

    def __init__(self, dsn: str, credential_key: str) -> None:
        super().__init__(dsn)
        self._fernet = Fernet(credential_key.encode("ascii"))

    async def active_tenants(self) -> Result[list[Tenant]]:
        return await Result.from_awaitable(
            self._active_tenants(), ErrorCode.DATABASE_ERROR, "Failed to load tenants"
        )

    async def _active_tenants(self) -> list[Tenant]:
        async with await self._connect() as conn, conn.cursor() as cur:
            await cur.execute(_ACTIVE_INTEGRATIONS)
            rows = await cur.fetchall()
        tenants: list[Tenant] = []
        for tenant_id, tax_id, environment, encrypted_token in rows:
            try:
                token = self._fernet.decrypt(encrypted_token.encode("ascii")).decode("utf-8")
            except InvalidToken:
                log.error("repository.token_undecryptable", tenant_id=tenant_id)
                continue
            tenants.append(Tenant(tenant_id, Credential(tax_id, token, Environment(environment))))
        return tenants

    async def register(self, tenant_id: str, credential: Credential, active: bool = True) -> Result[Tenant]:
        """Store (or replace) a tenant's integration with its token encrypted."""
        return await Result.from_awaitable(
            self._register(tenant_id, credential, active), ErrorCode.DATABASE_ERROR, "Failed to register tenant"
        )

    async def _register(self, tenant_id: str, credential: Credential, active: bool) -> Tenant:
        encrypted = self._fernet.encrypt(credential.token.encode("utf-8")).decode("ascii")
        async with await self._connect() as conn:
            await conn.execute(
                _UPSERT_INTEGRATION,
                (tenant_id, credential.issuer_tax_id, credential.environment.value, encrypted, active),
            )
        log.info("repository.tenant_registered", tenant_id=tenant_id, active=active)
        return Tenant(tenant_id, credential)
