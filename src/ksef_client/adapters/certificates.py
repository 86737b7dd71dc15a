"""
Exchange public-key certificates: fetched once per environment and cached.

The Exchange publishes its encryption certificates at
GET /security/public-key-certificates, each tagged with one or more usages.
The cache keeps the list until the earliest selected certificate expires (or
a day passes), then refetches. An empty list is never cached.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Protocol, runtime_checkable

import structlog

from ksef_client.adapters.wire import PublicKeyCertificate

log = structlog.get_logger()

_MAX_CACHE_AGE = timedelta(hours=24)


class CertificateUsage(StrEnum):
    TOKEN_ENCRYPTION = "KsefTokenEncryption"
    SYMMETRIC_KEY_ENCRYPTION = "SymmetricKeyEncryption"


@runtime_checkable
class CertificateProvider(Protocol):
    """Port: the certificate (base64 DER or PEM) currently published for a usage, or None."""

    async def certificate_for(self, usage: CertificateUsage) -> str | None: ...


class CachedCertificateProvider:
    """
    Implements CertificateProvider over a fetch function (normally the HTTP client's).

    One instance per environment; concurrent callers share a single refresh.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[list[PublicKeyCertificate]]],
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._fetch = fetch
        self._clock = clock
        self._certificates: list[PublicKeyCertificate] = []
        self._expires_at: datetime | None = None
        self._lock = asyncio.Lock()

    async def certificate_for(self, usage: CertificateUsage) -> str | None:
        async with self._lock:
            now = self._clock()
            if self._expires_at is None or now >= self._expires_at:
                await self._refresh(now)
            selected = self._select(usage, now)
        return selected.certificate if selected else None

    async def _refresh(self, now: datetime) -> None:
        self._certificates = await self._fetch()
        if not self._certificates:
            self._expires_at = None
            log.warning("certificates.empty_list")
            return
        expiries = [c.valid_to for c in self._certificates if c.valid_to is not None and c.valid_to > now]
        self._expires_at = min([now + _MAX_CACHE_AGE, *expiries])
        log.info(
            "certificates.refreshed",
            count=len(self._certificates),
            cached_until=self._expires_at.isoformat(),
        )

    def _select(self, usage: CertificateUsage, now: datetime) -> PublicKeyCertificate | None:
        candidates = [
            c for c in self._certificates
            if usage.value in c.usage
            and (c.valid_from is None or c.valid_from <= now)
            and (c.valid_to is None or now < c.valid_to)
        ]
        if not candidates:
            log.warning("certificates.none_for_usage", usage=usage.value)
            return None
        epoch = datetime.min.replace(tzinfo=UTC)
        return max(candidates, key=lambda c: c.valid_from or epoch)
