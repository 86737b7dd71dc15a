"""
Duplicate detector over the submission ledger.

check() is an optimization run before any cryptographic work; the
authoritative guard is the ledger's uniqueness constraint, hit by
mark_submitted(). Two submitters racing past check() are resolved there: the
loser receives a DUPLICATE_ERROR failure carrying a ConflictError.
"""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from ksef_client.domain.models import DuplicateCheck, SubmissionKey, SubmissionRecord
from ksef_client.domain.ports import SubmissionLedger
from ksef_client.result import Result

log = structlog.get_logger()

RETENTION_YEARS = 10


def retention_cutoff(now: datetime) -> datetime:
    """Records submitted before this instant are past retention (end of year, ten years back)."""
    return datetime(now.year - RETENTION_YEARS, 12, 31, 23, 59, 59, tzinfo=UTC)


class DuplicateDetector:
    def __init__(self, ledger: SubmissionLedger) -> None:
        self._ledger = ledger

    async def check(self, issuer_tax_id: str, document_kind: str, document_number: str) -> Result[DuplicateCheck]:
        key = SubmissionKey(issuer_tax_id, document_kind, document_number.strip())

        def _log(found: DuplicateCheck) -> None:
            if found.is_duplicate:
                log.info(
                    "duplicates.found",
                    tax_id=issuer_tax_id,
                    kind=document_kind,
                    number=key.document_number,
                    existing_reference=found.existing_reference,
                )

        return (await self._ledger.lookup(key)).peek(_log)

    async def mark_submitted(self, record: SubmissionRecord) -> Result[SubmissionRecord]:
        result = await self._ledger.insert(record)
        return result.peek(
            lambda stored: log.info(
                "duplicates.recorded",
                tax_id=stored.issuer_tax_id,
                number=stored.document_number,
                reference=stored.exchange_reference,
            )
        ).peek_failure(
            lambda err: log.warning("duplicates.record_failed", code=err.code.value, error=err.message)
        )

    async def purge_expired(self, now: datetime | None = None) -> Result[int]:
        cutoff = retention_cutoff(now or datetime.now(UTC))
        return (await self._ledger.delete_submitted_before(cutoff)).peek(
            lambda removed: log.info("duplicates.purged", cutoff=cutoff.isoformat(), removed=removed)
        )
