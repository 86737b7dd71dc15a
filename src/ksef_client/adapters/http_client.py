"""
HTTP adapter: the Exchange's REST API over httpx.

Adapter layer: one method per Exchange endpoint. Each call runs through the
RetryGovernor (ksef_client.retry) and its JSON body is decoded by a wire
model. Methods raise typed KsefError subclasses; the services decide what a
failure means for their state machine.

Endpoints:
  GET  /security/public-key-certificates
  POST /auth/challenge                          (retryable)
  POST /auth/ksef-token                         (single attempt)
  GET  /auth/{reference}                        (retryable)
  POST /auth/token/redeem                       (single attempt)
  POST /auth/token/refresh                      (single attempt)
  POST /sessions/online                         (single attempt)
  POST /sessions/online/{ref}/invoices          (single attempt)
  POST /sessions/online/{ref}/close             (retryable)
  GET  /sessions/online/{ref}/status            (retryable)
  GET  /sessions/online/{ref}/invoices          (retryable)
  POST /invoices/query/metadata                 (retryable)
  GET  /invoices/ksef/{number}                  (retryable)
  POST /invoices/exports                        (single attempt)
  GET  /invoices/exports/{ref}                  (retryable)
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from ksef_client.adapters.wire import (
    AuthInitResponse,
    AuthStatusResponse,
    ChallengeResponse,
    ExportStatusResponse,
    MetadataPage,
    OpenSessionResponse,
    PublicKeyCertificate,
    ReferenceResponse,
    SessionInvoicesResponse,
    SessionStatusResponse,
    decode,
    decode_token_pair,
)
from ksef_client.domain.models import (
    AuthTokenPair,
    EncryptedPayload,
    EncryptionContext,
    FormCode,
    SubjectType,
)
from ksef_client.errors import UnexpectedResponseError
from ksef_client.retry import RetryGovernor, send

log = structlog.get_logger()


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise UnexpectedResponseError(
            f"{response.request.method} {response.request.url.path} returned non-JSON body"
        ) from e


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class ExchangeHttpClient:
    """
    Async client for one Exchange environment.

    Owns an httpx.AsyncClient; use as an async context manager or call
    aclose(). Pass `transport` to route requests elsewhere (tests).
    """

    def __init__(
        self,
        base_url: str,
        governor: RetryGovernor | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._governor = governor or RetryGovernor()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> ExchangeHttpClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, path: str, *, idempotent: bool = True, **kwargs: Any) -> httpx.Response:
        return await send(self._client, self._governor, method, path, idempotent=idempotent, **kwargs)

    # ─────────────────────── Security ───────────────────────

    async def list_public_key_certificates(self) -> list[PublicKeyCertificate]:
        response = await self._call("GET", "/security/public-key-certificates")
        body = _json(response)
        if not isinstance(body, list):
            raise UnexpectedResponseError("Certificate list response is not a JSON array")
        return [decode(PublicKeyCertificate, item, "certificate") for item in body]

    # ─────────────────────── Authentication ───────────────────────

    async def get_challenge(self) -> ChallengeResponse:
        response = await self._call("POST", "/auth/challenge")
        return decode(ChallengeResponse, _json(response), "challenge")

    async def submit_token_auth(
        self, challenge: str, tax_id: str, encrypted_token: str
    ) -> AuthInitResponse:
        response = await self._call(
            "POST",
            "/auth/ksef-token",
            idempotent=False,
            json={
                "challenge": challenge,
                "contextIdentifier": {"type": "nip", "value": tax_id},
                "encryptedToken": encrypted_token,
            },
        )
        return decode(AuthInitResponse, _json(response), "authentication submit")

    async def get_auth_status(self, reference: str, authentication_token: str) -> AuthStatusResponse:
        response = await self._call("GET", f"/auth/{reference}", headers=_bearer(authentication_token))
        return decode(AuthStatusResponse, _json(response), "authentication status")

    async def redeem_token(self, authentication_token: str) -> AuthTokenPair:
        response = await self._call(
            "POST", "/auth/token/redeem", idempotent=False, headers=_bearer(authentication_token)
        )
        return decode_token_pair(_json(response), now=datetime.now(UTC))

    async def refresh_token(self, refresh_token: str) -> AuthTokenPair:
        response = await self._call(
            "POST", "/auth/token/refresh", idempotent=False, headers=_bearer(refresh_token)
        )
        return decode_token_pair(_json(response), now=datetime.now(UTC), require_refresh=False)

    # ─────────────────────── Online sessions ───────────────────────

    async def open_online_session(
        self, access_token: str, form: FormCode, ctx: EncryptionContext
    ) -> OpenSessionResponse:
        response = await self._call(
            "POST",
            "/sessions/online",
            idempotent=False,
            headers=_bearer(access_token),
            json={
                "formCode": {
                    "systemCode": form.system_code,
                    "schemaVersion": form.schema_version,
                    "value": form.value,
                },
                "encryption": {
                    "encryptedSymmetricKey": ctx.wrapped_key,
                    "initializationVector": ctx.iv_b64,
                },
            },
        )
        return decode(OpenSessionResponse, _json(response), "open session")

    async def send_invoice(
        self, access_token: str, session_reference: str, payload: EncryptedPayload
    ) -> ReferenceResponse:
        response = await self._call(
            "POST",
            f"/sessions/online/{session_reference}/invoices",
            idempotent=False,
            headers=_bearer(access_token),
            json={
                "invoiceHash": payload.plain.sha256_b64,
                "invoiceSize": payload.plain.size,
                "encryptedInvoiceHash": payload.encrypted.sha256_b64,
                "encryptedInvoiceSize": payload.encrypted.size,
                "encryptedInvoiceContent": base64.b64encode(payload.ciphertext).decode("ascii"),
            },
        )
        return decode(ReferenceResponse, _json(response), "send invoice")

    async def close_online_session(self, access_token: str, session_reference: str) -> None:
        await self._call(
            "POST", f"/sessions/online/{session_reference}/close", headers=_bearer(access_token)
        )

    async def get_session_status(self, access_token: str, session_reference: str) -> SessionStatusResponse:
        response = await self._call(
            "GET", f"/sessions/online/{session_reference}/status", headers=_bearer(access_token)
        )
        return decode(SessionStatusResponse, _json(response), "session status")

    async def list_session_invoices(
        self, access_token: str, session_reference: str, continuation_token: str | None = None
    ) -> SessionInvoicesResponse:
        headers = _bearer(access_token)
        if continuation_token:
            headers["x-continuation-token"] = continuation_token
        response = await self._call(
            "GET", f"/sessions/online/{session_reference}/invoices", headers=headers
        )
        return decode(SessionInvoicesResponse, _json(response), "session invoices")

    # ─────────────────────── Retrieval ───────────────────────

    async def query_metadata(
        self,
        access_token: str,
        subject_type: SubjectType,
        date_from: datetime,
        date_to: datetime,
        page_offset: int = 0,
        page_size: int = 100,
    ) -> MetadataPage:
        response = await self._call(
            "POST",
            "/invoices/query/metadata",
            headers=_bearer(access_token),
            params={"pageOffset": page_offset, "pageSize": page_size, "sortOrder": "Asc"},
            json={
                "subjectType": subject_type.value,
                "dateRange": {
                    "dateType": "PermanentStorage",
                    "from": _iso(date_from),
                    "to": _iso(date_to),
                },
            },
        )
        return decode(MetadataPage, _json(response), "metadata query")

    async def get_invoice_xml(self, access_token: str, ksef_number: str) -> str:
        response = await self._call(
            "GET",
            f"/invoices/ksef/{ksef_number}",
            headers={**_bearer(access_token), "Accept": "application/xml"},
        )
        return response.text

    async def start_export(
        self,
        access_token: str,
        subject_type: SubjectType,
        date_from: datetime,
        ctx: EncryptionContext,
    ) -> ReferenceResponse:
        response = await self._call(
            "POST",
            "/invoices/exports",
            idempotent=False,
            headers=_bearer(access_token),
            json={
                "encryption": {
                    "encryptedSymmetricKey": ctx.wrapped_key,
                    "initializationVector": ctx.iv_b64,
                },
                "filters": {
                    "subjectType": subject_type.value,
                    "dateRange": {
                        "dateType": "PermanentStorage",
                        "from": _iso(date_from),
                        "restrictToPermanentStorageHwmDate": True,
                    },
                },
            },
        )
        return decode(ReferenceResponse, _json(response), "export start")

    async def get_export_status(self, access_token: str, reference: str) -> ExportStatusResponse:
        response = await self._call("GET", f"/invoices/exports/{reference}", headers=_bearer(access_token))
        return decode(ExportStatusResponse, _json(response), "export status")

    async def download_package_part(self, url: str) -> bytes:
        """Package parts live at pre-signed absolute URLs; no bearer token is sent."""
        response = await self._call("GET", url, headers={"Accept": "application/octet-stream"})
        log.debug("export.part_downloaded", size_bytes=len(response.content))
        return response.content
