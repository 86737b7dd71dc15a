"""
Sync runner: incremental mirror of remote documents across tenants.

For each tenant with an active integration:

  authenticate
    → for each subject type (sequentially):
        read cursor → fetch documents stored after it → persist → advance cursor
  → append SyncRunResult to the run log

The cursor only moves after the documents are persisted. Tenants run as
concurrent tasks bounded by a semaphore, in batches separated by a fixed
delay. A failure in one tenant or subject is recorded in that tenant's
SyncRunResult.errors and the run moves on.

run(tenant_id) with an explicit tenant is the manual trigger.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from ksef_client.adapters.exchange import ExchangeBinding
from ksef_client.domain.models import Environment, SubjectType, SyncCursor, SyncRunResult, Tenant
from ksef_client.domain.ports import DocumentStore, SyncCursorStore, SyncRunLog, TenantDirectory
from ksef_client.errors import KsefError, UnauthenticatedError
from ksef_client.polling import PollPolicy
from ksef_client.result import Result
from ksef_client.services.auth import AuthenticationOrchestrator
from ksef_client.services.retrieval import InvoiceRetriever

log = structlog.get_logger()

ALL_TENANTS = "*"


class SyncRunner:
    def __init__(
        self,
        tenants: TenantDirectory,
        cursors: SyncCursorStore,
        documents: DocumentStore,
        run_log: SyncRunLog,
        bindings: Callable[[Environment], ExchangeBinding],
        subject_types: Sequence[SubjectType] = (SubjectType.SUBJECT1, SubjectType.SUBJECT2, SubjectType.SUBJECT3),
        max_concurrent: int = 3,
        batch_size: int = 3,
        batch_delay: float = 2.0,
        initial_lookback_days: int = 30,
        retrieval_mode: str = "metadata",
        page_size: int = 100,
        auth_polling: PollPolicy | None = None,
        export_polling: PollPolicy | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._tenants = tenants
        self._cursors = cursors
        self._documents = documents
        self._run_log = run_log
        self._bindings = bindings
        self._subject_types = list(subject_types)
        self._max_concurrent = max_concurrent
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._lookback = timedelta(days=initial_lookback_days)
        self._retrieval_mode = retrieval_mode
        self._page_size = page_size
        self._auth_polling = auth_polling
        self._export_polling = export_polling
        self._clock = clock
        self._sleep = sleep

    async def run(self, tenant_id: str | None = None) -> list[SyncRunResult]:
        """Sync every active tenant, or only `tenant_id`; one SyncRunResult per tenant."""
        started = self._clock()
        listed = await self._tenants.active_tenants()
        if listed.is_failure():
            err = listed.error()
            log.error("sync.tenants_unavailable", error=err.message)
            return [self._failed_run(tenant_id or ALL_TENANTS, started, f"Cannot load tenants: {err.message}")]

        tenants = listed.value()
        if tenant_id is not None:
            tenants = [t for t in tenants if t.tenant_id == tenant_id]
            if not tenants:
                return [self._failed_run(tenant_id, started, "Tenant not found or integration inactive")]

        log.info("sync.run_started", tenants=len(tenants), subjects=[s.value for s in self._subject_types])
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def bounded(tenant: Tenant) -> SyncRunResult:
            async with semaphore:
                return await self._guarded(tenant)

        results: list[SyncRunResult] = []
        for index in range(0, len(tenants), self._batch_size):
            if index:
                await self._sleep(self._batch_delay)
            batch = tenants[index:index + self._batch_size]
            results.extend(await asyncio.gather(*(bounded(t) for t in batch)))

        log.info(
            "sync.run_completed",
            tenants=len(results),
            documents=sum(r.total_documents for r in results),
            failed_tenants=sum(1 for r in results if not r.succeeded),
        )
        return results

    async def run_manual_sync(self, tenant_id: str | None = None) -> list[SyncRunResult]:
        log.info("sync.manual_trigger", tenant_id=tenant_id or ALL_TENANTS)
        return await self.run(tenant_id)

    def _failed_run(self, tenant_id: str, started: datetime, message: str) -> SyncRunResult:
        return SyncRunResult(tenant_id=tenant_id, started_at=started, finished_at=self._clock(), errors=[message])

    async def _guarded(self, tenant: Tenant) -> SyncRunResult:
        started = self._clock()
        with structlog.contextvars.bound_contextvars(tenant_id=tenant.tenant_id):
            try:
                result = await self._sync_tenant(tenant, started)
            except Exception as e:
                log.exception("sync.tenant_crashed")
                result = self._failed_run(tenant.tenant_id, started, f"Unexpected error: {e}")
            appended = await self._run_log.append(result)
            if appended.is_failure():
                log.warning("sync.run_log_failed", error=appended.error().message)
        return result

    async def _sync_tenant(self, tenant: Tenant, started: datetime) -> SyncRunResult:
        binding = self._bindings(tenant.credential.environment)
        auth = AuthenticationOrchestrator(binding.client, binding.crypto, self._auth_polling, self._clock)
        try:
            await auth.authenticate(tenant.credential)
        except KsefError as e:
            log.warning("sync.authentication_failed", error=str(e))
            return self._failed_run(tenant.tenant_id, started, f"authentication: {e}")

        retriever = InvoiceRetriever(
            binding, self._retrieval_mode, self._page_size, self._export_polling, self._clock
        )
        counts: dict[str, int] = {}
        errors: list[str] = []
        for subject in self._subject_types:
            outcome = await self._sync_subject(tenant.tenant_id, subject, auth, retriever)
            if outcome.is_success():
                counts[subject.value] = outcome.value()
                log.info("sync.subject_completed", subject=subject.value, documents=outcome.value())
            else:
                counts[subject.value] = 0
                err = outcome.error()
                errors.append(f"{subject.value}: {err.message}")
                log.warning("sync.subject_failed", subject=subject.value, code=err.code.value, error=err.message)

        return SyncRunResult(
            tenant_id=tenant.tenant_id,
            started_at=started,
            finished_at=self._clock(),
            per_subject_counts=counts,
            errors=errors,
        )

    async def _sync_subject(
        self,
        tenant_id: str,
        subject: SubjectType,
        auth: AuthenticationOrchestrator,
        retriever: InvoiceRetriever,
    ) -> Result[int]:
        cursor = await self._cursors.get(tenant_id, subject)
        return await cursor.flat_map_async(lambda c: self._pull(c, auth, retriever))

    async def _pull(
        self, cursor: SyncCursor, auth: AuthenticationOrchestrator, retriever: InvoiceRetriever
    ) -> Result[int]:
        since = cursor.high_water_mark or (self._clock() - self._lookback)
        try:
            token = await self._access_token(auth)
            documents = await retriever.fetch_since(token, cursor.subject_type, since)
        except KsefError as e:
            return Result.failure(e.code, str(e), e)
        if not documents:
            return Result.success(0)

        newest = max(d.storage_date for d in documents)
        saved = await self._documents.save_all(cursor.tenant_id, documents)
        advanced = await saved.flat_map_async(
            lambda _: self._cursors.advance(
                SyncCursor(cursor.tenant_id, cursor.subject_type, newest)
            )
        )
        return advanced.map(lambda _: len(documents))

    @staticmethod
    async def _access_token(auth: AuthenticationOrchestrator) -> str:
        try:
            return auth.current_access_token()
        except UnauthenticatedError:
            await auth.refresh()
            return auth.current_access_token()
