"""
Integration tests for the psycopg repository adapters.

Tests run against a real PostgreSQL instance via testcontainers, with the
production DDL applied. They cover the guarantees that live in SQL rather
than in Python: the UNIQUE duplicate guard, the forward-only cursor
(GREATEST) and idempotent document upserts.

Markers: @pytest.mark.integration: requires Docker + PostgreSQL.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import psycopg
import pytest
from cryptography.fernet import Fernet

from ksef_client.adapters.repository import (
    PsycopgDocumentStore,
    PsycopgSubmissionLedger,
    PsycopgSyncCursorStore,
    PsycopgSyncRunLog,
    PsycopgTenantDirectory,
)
from ksef_client.domain.models import (
    Credential,
    Environment,
    RemoteDocument,
    SubjectType,
    SubmissionKey,
    SubmissionRecord,
    SyncCursor,
    SyncRunResult,
)
from ksef_client.errors import ConflictError
from ksef_client.result import ErrorCode
from tests.assertions import ResultAssertions

pytestmark = pytest.mark.integration


# ── Helpers ──────────────────────────────────────────────────────────────────


def _record(number: str = "FV/1", reference: str = "EE-1", submitted_at: datetime | None = None) -> SubmissionRecord:
    return SubmissionRecord(
        issuer_tax_id="1234563218",
        document_kind="VAT",
        document_number=number,
        exchange_reference=reference,
        submitted_at=submitted_at or datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
        ksef_number=f"K-{reference}",
    )


def _document(ksef_number: str, xml: str = "<Faktura/>") -> RemoteDocument:
    return RemoteDocument(
        ksef_number=ksef_number,
        subject_type=SubjectType.SUBJECT2,
        storage_date=datetime(2025, 5, 20, 10, 0, tzinfo=UTC),
        xml=xml,
        invoice_number="FV/2025/05/7",
        issue_date=date(2025, 5, 19),
        seller_tax_id="5265877635",
        buyer_tax_id="1234563218",
        gross_amount=Decimal("1230.00"),
        currency="PLN",
        metadata={"invoiceType": "Vat"},
    )


def _scalar(dsn: str, query: str) -> object:
    with psycopg.connect(dsn) as conn:
        row = conn.execute(query).fetchone()
    return row[0] if row else None


# ── Submission ledger ────────────────────────────────────────────────────────


class TestSubmissionLedger:
    async def test_insert_then_lookup_finds_reference(self, dsn: str) -> None:
        ledger = PsycopgSubmissionLedger(dsn)

        ResultAssertions.assert_success(await ledger.insert(_record()))
        check = ResultAssertions.assert_success(
            await ledger.lookup(SubmissionKey("1234563218", "VAT", "FV/1"))
        )

        assert check.is_duplicate
        assert check.existing_reference == "EE-1"

    async def test_lookup_of_unknown_key_is_not_duplicate(self, dsn: str) -> None:
        check = ResultAssertions.assert_success(
            await PsycopgSubmissionLedger(dsn).lookup(SubmissionKey("1234563218", "VAT", "FV/404"))
        )
        assert not check.is_duplicate
        assert check.existing_reference is None

    async def test_second_insert_is_rejected_by_unique_constraint(self, dsn: str) -> None:
        """
        GIVEN a document already recorded
        WHEN the same (issuer, kind, number) is inserted again
        THEN the insert fails as a duplicate carrying the first reference
             and only one row exists.
        """
        ledger = PsycopgSubmissionLedger(dsn)
        ResultAssertions.assert_success(await ledger.insert(_record(reference="WINNER")))

        error = ResultAssertions.assert_failure(
            await ledger.insert(_record(reference="LOSER")), ErrorCode.DUPLICATE_ERROR
        )

        assert isinstance(error.exception, ConflictError)
        assert error.exception.existing_reference == "WINNER"
        assert _scalar(dsn, "SELECT count(*) FROM submission_records") == 1

    async def test_delete_submitted_before_is_strict(self, dsn: str) -> None:
        ledger = PsycopgSubmissionLedger(dsn)
        cutoff = datetime(2015, 12, 31, 23, 59, 59, tzinfo=UTC)
        await ledger.insert(_record("FV/old", "EE-old", datetime(2015, 6, 1, tzinfo=UTC)))
        await ledger.insert(_record("FV/edge", "EE-edge", cutoff))
        await ledger.insert(_record("FV/new", "EE-new", datetime(2016, 1, 1, tzinfo=UTC)))

        removed = ResultAssertions.assert_success(await ledger.delete_submitted_before(cutoff))

        assert removed == 1
        assert _scalar(dsn, "SELECT count(*) FROM submission_records") == 2


# ── Sync cursors ─────────────────────────────────────────────────────────────


class TestSyncCursorStore:
    async def test_missing_cursor_has_no_high_water_mark(self, dsn: str) -> None:
        cursor = ResultAssertions.assert_success(
            await PsycopgSyncCursorStore(dsn).get("acme", SubjectType.SUBJECT1)
        )
        assert cursor == SyncCursor("acme", SubjectType.SUBJECT1, None)

    async def test_cursor_never_moves_backwards(self, dsn: str) -> None:
        """
        GIVEN a cursor at 2025-05-25
        WHEN it is advanced to an earlier timestamp
        THEN the stored high-water mark stays at 2025-05-25.
        """
        store = PsycopgSyncCursorStore(dsn)
        later = datetime(2025, 5, 25, 10, 0, tzinfo=UTC)
        earlier = datetime(2025, 5, 20, 10, 0, tzinfo=UTC)

        await store.advance(SyncCursor("acme", SubjectType.SUBJECT1, later))
        advanced = ResultAssertions.assert_success(
            await store.advance(SyncCursor("acme", SubjectType.SUBJECT1, earlier))
        )
        stored = ResultAssertions.assert_success(await store.get("acme", SubjectType.SUBJECT1))

        assert advanced.high_water_mark == later
        assert stored.high_water_mark == later

    async def test_advance_without_mark_fails(self, dsn: str) -> None:
        result = await PsycopgSyncCursorStore(dsn).advance(SyncCursor("acme", SubjectType.SUBJECT1))
        ResultAssertions.assert_failure(result, ErrorCode.DATABASE_ERROR)

    async def test_reset_one_subject_or_all(self, dsn: str) -> None:
        store = PsycopgSyncCursorStore(dsn)
        mark = datetime(2025, 5, 25, tzinfo=UTC)
        for subject in (SubjectType.SUBJECT1, SubjectType.SUBJECT2, SubjectType.SUBJECT3):
            await store.advance(SyncCursor("acme", subject, mark))

        assert ResultAssertions.assert_success(await store.reset("acme", SubjectType.SUBJECT2)) == 1
        assert ResultAssertions.assert_success(await store.reset("acme")) == 2
        assert _scalar(dsn, "SELECT count(*) FROM sync_cursors") == 0


# ── Documents and run log ────────────────────────────────────────────────────


class TestDocumentStore:
    async def test_resaving_a_document_overwrites_it(self, dsn: str) -> None:
        store = PsycopgDocumentStore(dsn)

        await store.save_all("acme", [_document("K-1"), _document("K-2")])
        saved = ResultAssertions.assert_success(
            await store.save_all("acme", [_document("K-1", xml="<Faktura v='2'/>")])
        )

        assert saved == 1
        assert _scalar(dsn, "SELECT count(*) FROM received_documents") == 2
        assert _scalar(dsn, "SELECT xml FROM received_documents WHERE ksef_number = 'K-1'") == "<Faktura v='2'/>"
        assert _scalar(dsn, "SELECT gross_amount FROM received_documents WHERE ksef_number = 'K-2'") == Decimal(
            "1230.00"
        )

    async def test_empty_batch_is_zero(self, dsn: str) -> None:
        assert ResultAssertions.assert_success(await PsycopgDocumentStore(dsn).save_all("acme", [])) == 0


class TestSyncRunLog:
    async def test_append_stores_counts_and_errors(self, dsn: str) -> None:
        run = SyncRunResult(
            tenant_id="acme",
            started_at=datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
            finished_at=datetime(2025, 6, 1, 12, 1, tzinfo=UTC),
            per_subject_counts={"Subject1": 4},
            errors=["Subject2: timeout"],
        )

        ResultAssertions.assert_success(await PsycopgSyncRunLog(dsn).append(run))

        with psycopg.connect(dsn) as conn:
            counts, errors = conn.execute("SELECT per_subject_counts, errors FROM sync_runs").fetchone()
        assert counts == {"Subject1": 4}
        assert errors == ["Subject2: timeout"]


# ── Tenant directory ─────────────────────────────────────────────────────────


class TestTenantDirectory:
    async def test_registered_token_is_encrypted_at_rest(self, dsn: str) -> None:
        """
        GIVEN a tenant registered with a plaintext token
        WHEN the directory lists active tenants
        THEN the token round-trips while the stored column holds only ciphertext.
        """
        directory = PsycopgTenantDirectory(dsn, Fernet.generate_key().decode())

        await directory.register("acme", Credential("1234563218", "secret-token", Environment.DEMO))
        [tenant] = ResultAssertions.assert_success(await directory.active_tenants())

        assert tenant.tenant_id == "acme"
        assert tenant.credential.token == "secret-token"
        assert tenant.credential.environment is Environment.DEMO
        assert "secret-token" not in str(_scalar(dsn, "SELECT encrypted_token FROM exchange_integrations"))

    async def test_inactive_and_undecryptable_tenants_are_skipped(self, dsn: str) -> None:
        key = Fernet.generate_key().decode()
        directory = PsycopgTenantDirectory(dsn, key)
        await directory.register("acme", Credential("1234563218", "a"))
        await directory.register("dormant", Credential("1234563218", "b"), active=False)
        await PsycopgTenantDirectory(dsn, Fernet.generate_key().decode()).register(
            "rotated", Credential("5265877635", "c")
        )

        tenants = ResultAssertions.assert_success(await directory.active_tenants())

        assert [t.tenant_id for t in tenants] == ["acme"]
