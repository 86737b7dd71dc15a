"""
PostgreSQL schema for the client's persisted state.

  submission_records     ledger of submitted documents; the UNIQUE key is the duplicate guard
  sync_cursors           high-water mark per (tenant, subject type)
  received_documents     local mirror of remote documents
  sync_runs              append-only run log
  exchange_integrations  tenants with an Exchange token (Fernet-encrypted at rest)
"""

from __future__ import annotations

import psycopg

DDL = """
CREATE TABLE IF NOT EXISTS submission_records (
    issuer_tax_id       TEXT NOT NULL,
    document_kind       TEXT NOT NULL,
    document_number     TEXT NOT NULL,
    exchange_reference  TEXT NOT NULL,
    session_reference   TEXT,
    ksef_number         TEXT,
    submitted_at        TIMESTAMPTZ NOT NULL,
    CONSTRAINT submission_records_key UNIQUE (issuer_tax_id, document_kind, document_number)
);

CREATE INDEX IF NOT EXISTS submission_records_submitted_at
    ON submission_records (submitted_at);

CREATE TABLE IF NOT EXISTS sync_cursors (
    tenant_id        TEXT NOT NULL,
    subject_type     TEXT NOT NULL,
    high_water_mark  TIMESTAMPTZ NOT NULL,
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, subject_type)
);

CREATE TABLE IF NOT EXISTS received_documents (
    tenant_id       TEXT NOT NULL,
    ksef_number     TEXT NOT NULL,
    subject_type    TEXT NOT NULL,
    storage_date    TIMESTAMPTZ NOT NULL,
    invoice_number  TEXT,
    issue_date      DATE,
    seller_tax_id   TEXT,
    buyer_tax_id    TEXT,
    gross_amount    NUMERIC(18, 2),
    currency        TEXT,
    xml             TEXT NOT NULL,
    metadata        JSONB NOT NULL DEFAULT '{}'::jsonb,
    received_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, ksef_number)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id                  BIGSERIAL PRIMARY KEY,
    tenant_id           TEXT NOT NULL,
    started_at          TIMESTAMPTZ NOT NULL,
    finished_at         TIMESTAMPTZ NOT NULL,
    per_subject_counts  JSONB NOT NULL,
    errors              JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS exchange_integrations (
    tenant_id        TEXT PRIMARY KEY,
    issuer_tax_id    TEXT NOT NULL,
    environment      TEXT NOT NULL,
    encrypted_token  TEXT NOT NULL,
    is_active        BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

TABLES = (
    "submission_records",
    "sync_cursors",
    "received_documents",
    "sync_runs",
    "exchange_integrations",
)


async def apply_schema(dsn: str) -> None:
    """Create any missing tables; safe to run repeatedly."""
    async with await psycopg.AsyncConnection.connect(dsn) as conn:
        await conn.execute(DDL)
