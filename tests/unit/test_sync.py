"""
Unit tests for the sync runner.

Tenants, cursors, documents and the run log are in-memory fakes; the Exchange
is respx. The clock is fixed so the initial lookback window is predictable.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from ksef_client.adapters.crypto import CryptographyService
from ksef_client.adapters.exchange import ExchangeBinding
from ksef_client.adapters.http_client import ExchangeHttpClient
from ksef_client.domain.models import Credential, Environment, SubjectType, Tenant
from ksef_client.polling import PollPolicy
from ksef_client.retry import RetryGovernor
from ksef_client.sync import ALL_TENANTS, SyncRunner
from tests.exchange_stub import BASE_URL, metadata_item, stub_auth, stub_metadata
from tests.fakes import (
    InMemoryCursorStore,
    InMemoryDocumentStore,
    InMemoryRunLog,
    StaticCertificates,
    StaticTenantDirectory,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
ACME = Tenant("acme", Credential("1234563218", "acme-token"))
GLOBEX = Tenant("globex", Credential("5265877635", "globex-token"))


@pytest.fixture()
async def client() -> AsyncIterator[ExchangeHttpClient]:
    async with ExchangeHttpClient(BASE_URL, RetryGovernor(max_attempts=1)) as c:
        yield c


@pytest.fixture()
def exchange() -> respx.Router:
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
        yield router


@pytest.fixture()
def bindings(
    client: ExchangeHttpClient, static_certificates: StaticCertificates
) -> Callable[[Environment], ExchangeBinding]:
    crypto = CryptographyService(static_certificates)
    return lambda environment: ExchangeBinding(environment, client, crypto)


@pytest.fixture()
def cursors() -> InMemoryCursorStore:
    return InMemoryCursorStore()


@pytest.fixture()
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def run_log() -> InMemoryRunLog:
    return InMemoryRunLog()


@pytest.fixture()
def make_runner(
    bindings: Callable[[Environment], ExchangeBinding],
    cursors: InMemoryCursorStore,
    documents: InMemoryDocumentStore,
    run_log: InMemoryRunLog,
) -> Callable[..., SyncRunner]:
    def build(tenants: list[Tenant] | StaticTenantDirectory, **overrides: object) -> SyncRunner:
        directory = tenants if isinstance(tenants, StaticTenantDirectory) else StaticTenantDirectory(tenants)
        options: dict[str, object] = {
            "subject_types": (SubjectType.SUBJECT1,),
            "auth_polling": PollPolicy(3, 0),
            "clock": lambda: NOW,
            "sleep": AsyncMock(),
            **overrides,
        }
        return SyncRunner(directory, cursors, documents, run_log, bindings, **options)

    return build


# ─────────────────────── Incremental sync ───────────────────────


class TestIncrementalSync:
    async def test_first_run_mirrors_documents_and_advances_cursor(
        self,
        make_runner: Callable[..., SyncRunner],
        exchange: respx.Router,
        cursors: InMemoryCursorStore,
        documents: InMemoryDocumentStore,
        run_log: InMemoryRunLog,
    ) -> None:
        """
        GIVEN a tenant with no cursor and two remote documents
        WHEN the runner syncs
        THEN both are stored, the cursor sits at the newest storage date and a run is logged.
        """
        stub_auth(exchange)
        routes = stub_metadata(exchange, [[
            metadata_item("K-1", "2025-05-20T10:00:00Z"),
            metadata_item("K-2", "2025-05-25T10:00:00Z"),
        ]])

        [result] = await make_runner([ACME]).run()

        assert result.succeeded
        assert result.per_subject_counts == {"Subject1": 2}
        assert set(documents.documents) == {("acme", "K-1"), ("acme", "K-2")}
        assert cursors.marks[("acme", SubjectType.SUBJECT1)] == datetime(2025, 5, 25, 10, 0, tzinfo=UTC)
        assert run_log.runs == [result]

        query = routes["query"].calls.last.request
        assert b'"from":"2025-05-02T12:00:00Z"' in query.content.replace(b" ", b"")

    async def test_second_run_with_nothing_new_is_a_no_op(
        self,
        make_runner: Callable[..., SyncRunner],
        exchange: respx.Router,
        cursors: InMemoryCursorStore,
    ) -> None:
        """
        GIVEN a completed sync and no new remote documents
        WHEN the runner syncs again
        THEN zero documents are counted and the cursor is unchanged.
        """
        stub_auth(exchange)
        stub_metadata(exchange, [[metadata_item("K-1", "2025-05-20T10:00:00Z")]])
        runner = make_runner([ACME])

        await runner.run()
        mark = cursors.marks[("acme", SubjectType.SUBJECT1)]
        [second] = await runner.run()

        assert second.succeeded
        assert second.per_subject_counts == {"Subject1": 0}
        assert cursors.marks[("acme", SubjectType.SUBJECT1)] == mark
        assert len(cursors.advances) == 1

    async def test_cursor_not_advanced_when_save_fails(
        self,
        make_runner: Callable[..., SyncRunner],
        exchange: respx.Router,
        cursors: InMemoryCursorStore,
        documents: InMemoryDocumentStore,
    ) -> None:
        stub_auth(exchange)
        stub_metadata(exchange, [[metadata_item("K-1", "2025-05-20T10:00:00Z")]])
        documents.fail_with = "disk full"

        [result] = await make_runner([ACME]).run()

        assert not result.succeeded
        assert result.errors == ["Subject1: disk full"]
        assert cursors.marks == {}

    async def test_retrieval_failure_is_recorded_per_subject(
        self,
        make_runner: Callable[..., SyncRunner],
        exchange: respx.Router,
        cursors: InMemoryCursorStore,
    ) -> None:
        """
        GIVEN a metadata query the Exchange rejects
        WHEN the runner syncs
        THEN the subject records the rejection, its count is zero and no cursor moves.
        """
        stub_auth(exchange)
        exchange.post("/invoices/query/metadata").mock(
            return_value=httpx.Response(400, json={"message": "Invalid date range"})
        )

        [result] = await make_runner([ACME]).run()

        assert result.per_subject_counts == {"Subject1": 0}
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Subject1: ")
        assert "Unexpected error" not in result.errors[0]
        assert cursors.marks == {}

    async def test_each_subject_type_has_its_own_cursor(
        self,
        make_runner: Callable[..., SyncRunner],
        exchange: respx.Router,
        cursors: InMemoryCursorStore,
    ) -> None:
        stub_auth(exchange)
        stub_metadata(exchange, [[metadata_item("K-1", "2025-05-20T10:00:00Z")]])

        [result] = await make_runner(
            [ACME], subject_types=(SubjectType.SUBJECT1, SubjectType.SUBJECT2)
        ).run()

        assert result.per_subject_counts == {"Subject1": 1, "Subject2": 1}
        assert set(cursors.marks) == {("acme", SubjectType.SUBJECT1), ("acme", SubjectType.SUBJECT2)}


# ─────────────────────── Tenants ───────────────────────


class TestTenants:
    async def test_failing_tenant_does_not_affect_others(
        self,
        make_runner: Callable[..., SyncRunner],
        exchange: respx.Router,
        cursors: InMemoryCursorStore,
        run_log: InMemoryRunLog,
    ) -> None:
        """
        GIVEN two tenants where the Exchange rejects one tenant's token
        WHEN the runner syncs
        THEN the rejected tenant's run records an authentication error
             and the other tenant still advances its cursor.
        """
        stub_auth(exchange)
        stub_metadata(exchange, [[metadata_item("K-1", "2025-05-20T10:00:00Z")]])

        def submit(request: httpx.Request) -> httpx.Response:
            if b'"value":"5265877635"' in request.content.replace(b" ", b""):
                return httpx.Response(401, json={"message": "Invalid token"})
            return httpx.Response(
                202,
                json={"referenceNumber": "20250601-AU-0000000001",
                      "authenticationToken": {"token": "authentication-token"}},
            )

        exchange.post("/auth/ksef-token").mock(side_effect=submit)

        results = {r.tenant_id: r for r in await make_runner([ACME, GLOBEX]).run()}

        assert results["acme"].succeeded
        assert not results["globex"].succeeded
        assert results["globex"].errors[0].startswith("authentication:")
        assert ("globex", SubjectType.SUBJECT1) not in cursors.marks
        assert ("acme", SubjectType.SUBJECT1) in cursors.marks
        assert {r.tenant_id for r in run_log.runs} == {"acme", "globex"}

    async def test_tenants_run_in_batches_with_delay(
        self, make_runner: Callable[..., SyncRunner], exchange: respx.Router
    ) -> None:
        stub_auth(exchange)
        stub_metadata(exchange, [[]])
        sleep = AsyncMock()
        tenants = [Tenant(f"t{i}", Credential("1234563218", f"token-{i}")) for i in range(5)]

        results = await make_runner(tenants, batch_size=2, batch_delay=1.5, sleep=sleep).run()

        assert [r.tenant_id for r in results] == ["t0", "t1", "t2", "t3", "t4"]
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)

    async def test_manual_sync_of_one_tenant(
        self, make_runner: Callable[..., SyncRunner], exchange: respx.Router
    ) -> None:
        stub_auth(exchange)
        stub_metadata(exchange, [[]])

        results = await make_runner([ACME, GLOBEX]).run_manual_sync("globex")

        assert [r.tenant_id for r in results] == ["globex"]

    async def test_unknown_tenant_is_reported(self, make_runner: Callable[..., SyncRunner]) -> None:
        [result] = await make_runner([ACME]).run("nobody")
        assert not result.succeeded
        assert result.tenant_id == "nobody"
        assert "not found" in result.errors[0]

    async def test_tenant_directory_failure(self, make_runner: Callable[..., SyncRunner]) -> None:
        [result] = await make_runner(StaticTenantDirectory([], fail_with="connection refused")).run()
        assert result.tenant_id == ALL_TENANTS
        assert result.errors == ["Cannot load tenants: connection refused"]
