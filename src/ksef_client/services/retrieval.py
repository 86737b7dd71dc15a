"""
Remote document retrieval for the sync runner.

Two modes, both filtered on permanent-storage date:

  metadata  page POST /invoices/query/metadata, then GET /invoices/ksef/{n} per document
  export    POST /invoices/exports with a fresh key, poll until Completed,
            download the package parts, concatenate, AES-decrypt, unzip;
            `_metadata.json` inside the archive describes the XML files

Only documents stored strictly after `since` are returned, so feeding the
newest returned storage date back in as the next `since` makes a repeated
run a no-op.
"""

from __future__ import annotations

import asyncio
import io
import json
import zipfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import PurePosixPath

import structlog

from ksef_client.adapters.exchange import ExchangeBinding
from ksef_client.adapters.wire import ExportStatusResponse, InvoiceMetadata, decode
from ksef_client.domain.models import RemoteDocument, SubjectType
from ksef_client.errors import ExportTimeoutError, ProcessingFailedError, ProtocolError
from ksef_client.polling import PollPolicy, poll, raise_if_cancelled

log = structlog.get_logger()

METADATA_FILE = "_metadata.json"


def _document(meta: InvoiceMetadata, subject: SubjectType, xml: str) -> RemoteDocument:
    return RemoteDocument(
        ksef_number=meta.ksef_number,
        subject_type=subject,
        storage_date=meta.permanent_storage_date,
        xml=xml,
        invoice_number=meta.invoice_number,
        issue_date=meta.issue_date,
        seller_tax_id=meta.seller.nip if meta.seller else None,
        buyer_tax_id=meta.buyer.nip if meta.buyer else None,
        gross_amount=meta.gross_amount,
        currency=meta.currency,
        metadata=meta.model_dump(mode="json", by_alias=True),
    )


def unpack_export_package(
    archive: bytes, subject: SubjectType, fallback_storage_date: datetime
) -> list[RemoteDocument]:
    """Read the decrypted export archive: every XML file, matched to `_metadata.json` by Exchange number."""
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as package:
            names = [n for n in package.namelist() if not n.endswith("/")]
            metadata: dict[str, InvoiceMetadata] = {}
            meta_name = next((n for n in names if n.lower().endswith(METADATA_FILE)), None)
            if meta_name is not None:
                body = json.loads(package.read(meta_name).decode("utf-8"))
                for item in body.get("invoices", []):
                    meta = decode(InvoiceMetadata, item, "export metadata")
                    metadata[meta.ksef_number] = meta
            documents = []
            for name in names:
                if not name.lower().endswith(".xml"):
                    continue
                ksef_number = PurePosixPath(name).stem
                xml = package.read(name).decode("utf-8")
                meta = metadata.get(ksef_number)
                if meta is None:
                    documents.append(RemoteDocument(
                        ksef_number=ksef_number,
                        subject_type=subject,
                        storage_date=fallback_storage_date,
                        xml=xml,
                    ))
                else:
                    documents.append(_document(meta, subject, xml))
            return documents
    except (zipfile.BadZipFile, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Corrupt export package: {e}") from e


class InvoiceRetriever:
    def __init__(
        self,
        binding: ExchangeBinding,
        mode: str = "metadata",
        page_size: int = 100,
        export_polling: PollPolicy | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if mode not in ("metadata", "export"):
            raise ValueError(f"Unknown retrieval mode {mode!r}")
        self._binding = binding
        self._mode = mode
        self._page_size = page_size
        self._export_polling = export_polling or PollPolicy(max_attempts=60, delay_seconds=5.0)
        self._clock = clock

    async def fetch_since(
        self,
        access_token: str,
        subject: SubjectType,
        since: datetime,
        cancel: asyncio.Event | None = None,
    ) -> list[RemoteDocument]:
        if self._mode == "export":
            documents = await self._via_export(access_token, subject, since, cancel)
        else:
            documents = await self._via_metadata(access_token, subject, since, cancel)
        newer = [d for d in documents if d.storage_date > since]
        newer.sort(key=lambda d: d.storage_date)
        return newer

    async def _via_metadata(
        self, access_token: str, subject: SubjectType, since: datetime, cancel: asyncio.Event | None
    ) -> list[RemoteDocument]:
        client = self._binding.client
        until = self._clock()
        documents: list[RemoteDocument] = []
        page_offset = 0
        while True:
            raise_if_cancelled(cancel, "metadata retrieval")
            page = await client.query_metadata(
                access_token, subject, since, until, page_offset=page_offset, page_size=self._page_size
            )
            for meta in page.invoices:
                if meta.permanent_storage_date <= since:
                    continue
                xml = await client.get_invoice_xml(access_token, meta.ksef_number)
                documents.append(_document(meta, subject, xml))
            if page.is_truncated:
                log.warning("retrieval.truncated", subject=subject.value, since=since.isoformat())
            if not page.has_more or not page.invoices:
                return documents
            page_offset += 1

    async def _via_export(
        self, access_token: str, subject: SubjectType, since: datetime, cancel: asyncio.Event | None
    ) -> list[RemoteDocument]:
        client, crypto = self._binding.client, self._binding.crypto
        ctx = await crypto.generate_encryption_context()
        try:
            reference = (await client.start_export(access_token, subject, since, ctx)).reference_number
            log.info("retrieval.export_started", reference=reference, subject=subject.value)

            async def check(attempt: int) -> ExportStatusResponse | None:
                status = await client.get_export_status(access_token, reference)
                match status.status.lower():
                    case "completed":
                        return status
                    case "failed":
                        raise ProcessingFailedError(
                            f"Export {reference} failed: {status.error_message or 'no reason given'}",
                            status_code=400,
                        )
                    case _:
                        return None

            status = await poll(
                check,
                self._export_polling,
                on_exhausted=lambda n: ExportTimeoutError(
                    f"Export {reference} not completed after {n} checks", attempts=n
                ),
                cancel=cancel,
                what="export polling",
            )
            if not status.package_parts:
                return []
            parts = sorted(status.package_parts, key=lambda p: p.part_number)
            encrypted = b"".join([await client.download_package_part(p.download_url) for p in parts])
            archive = crypto.decrypt_payload(encrypted, ctx)
        finally:
            ctx.destroy()

        fallback = status.last_permanent_storage_date or self._clock()
        documents = unpack_export_package(archive, subject, fallback)
        log.info("retrieval.export_unpacked", reference=reference, documents=len(documents))
        return documents
