"""
Per-environment Exchange bindings.

A credential names its environment (test, demo, production). The registry
lazily builds one HTTP client, certificate cache and cryptography service per
environment and hands them out as an ExchangeBinding, so the certificate
cache is shared by every flow against the same environment.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import httpx
import structlog

from ksef_client.adapters.certificates import CachedCertificateProvider
from ksef_client.adapters.crypto import CryptographyService
from ksef_client.adapters.http_client import ExchangeHttpClient
from ksef_client.domain.models import Environment
from ksef_client.retry import RetryGovernor

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ExchangeBinding:
    environment: Environment
    client: ExchangeHttpClient
    crypto: CryptographyService

    @classmethod
    def create(cls, environment: Environment, client: ExchangeHttpClient) -> ExchangeBinding:
        certificates = CachedCertificateProvider(client.list_public_key_certificates)
        return cls(environment=environment, client=client, crypto=CryptographyService(certificates))


class ExchangeRegistry:
    def __init__(
        self,
        url_for: Callable[[Environment], str],
        governor: RetryGovernor,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url_for = url_for
        self._governor = governor
        self._timeout = timeout
        self._transport = transport
        self._bindings: dict[Environment, ExchangeBinding] = {}

    def binding(self, environment: Environment) -> ExchangeBinding:
        if environment not in self._bindings:
            client = ExchangeHttpClient(
                base_url=self._url_for(environment),
                governor=self._governor,
                timeout=self._timeout,
                transport=self._transport,
            )
            self._bindings[environment] = ExchangeBinding.create(environment, client)
            log.info("exchange.binding_created", environment=environment.value, base_url=client.base_url)
        return self._bindings[environment]

    async def aclose(self) -> None:
        for binding in self._bindings.values():
            await binding.client.aclose()
        self._bindings.clear()
