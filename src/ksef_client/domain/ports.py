"""
Ports: Protocol-based interfaces for persistence adapters.

The Exchange-facing code (crypto, auth, session) raises typed exceptions; the
persistence ports below return Result so store failures ride the railway and
the sync runner can record them per unit of work without try/except noise.

Each port is a Protocol (structural typing): the psycopg adapters and the
in-memory test doubles satisfy it by shape alone.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

from ksef_client.domain.models import (
    DuplicateCheck,
    RemoteDocument,
    SubjectType,
    SubmissionKey,
    SubmissionRecord,
    SyncCursor,
    SyncRunResult,
    Tenant,
)
from ksef_client.result import Result


@runtime_checkable
class SubmissionLedger(Protocol):
    """
    Port: append-only record of submitted documents.

    `insert` must be guarded by a store-level uniqueness constraint on
    (issuer_tax_id, document_kind, document_number) and fail with a
    DUPLICATE_ERROR carrying a ConflictError when the key already exists.
    """

    async def lookup(self, key: SubmissionKey) -> Result[DuplicateCheck]: ...

    async def insert(self, record: SubmissionRecord) -> Result[SubmissionRecord]: ...

    async def delete_submitted_before(self, cutoff: datetime) -> Result[int]: ...


@runtime_checkable
class SyncCursorStore(Protocol):
    """
    Port: per (tenant, subject type) high-water marks.

    `advance` never moves a cursor backwards; `reset` is the only rewind.
    """

    async def get(self, tenant_id: str, subject_type: SubjectType) -> Result[SyncCursor]: ...

    async def advance(self, cursor: SyncCursor) -> Result[SyncCursor]: ...

    async def reset(self, tenant_id: str, subject_type: SubjectType | None = None) -> Result[int]: ...


@runtime_checkable
class DocumentStore(Protocol):
    """Port: local mirror of remote documents, idempotent on (tenant, Exchange number)."""

    async def save_all(self, tenant_id: str, documents: Sequence[RemoteDocument]) -> Result[int]: ...


@runtime_checkable
class SyncRunLog(Protocol):
    async def append(self, run: SyncRunResult) -> Result[SyncRunResult]: ...


@runtime_checkable
class TenantDirectory(Protocol):
    """Port: tenants with an active Exchange integration, credentials decrypted."""

    async def active_tenants(self) -> Result[list[Tenant]]: ...
