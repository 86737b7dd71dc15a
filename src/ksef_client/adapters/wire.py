"""
Wire models: pydantic decoders for Exchange JSON responses.

Every response body is validated here before it reaches the services; a body
that does not fit raises UnexpectedResponseError instead of being coerced.
Field names follow the Exchange's camelCase through an alias generator.

Token redemption answers in one of two shapes, decoded as an explicit tagged
union (see decode_token_pair):

    nested  {"accessToken": {"token", "validUntil"}, "refreshToken": {...}}
    flat    {"access_token", "refresh_token", "expires_in", "refresh_expires_in"}
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Annotated, Any, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ksef_client.domain.models import AuthTokenPair
from ksef_client.errors import UnexpectedResponseError

DEFAULT_ACCESS_TTL = timedelta(seconds=3600)
DEFAULT_REFRESH_TTL = timedelta(seconds=86400)

M = TypeVar("M", bound=BaseModel)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def decode(model: type[M], body: Any, what: str) -> M:
    """Validate a JSON body against a wire model, mapping failures to UnexpectedResponseError."""
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        raise UnexpectedResponseError(f"Unexpected {what} response: {e.error_count()} field error(s)") from e


# ─────────────────────── Certificates ───────────────────────


class PublicKeyCertificate(WireModel):
    certificate: str
    valid_from: UtcDatetime | None = None
    valid_to: UtcDatetime | None = None
    usage: list[str] = Field(default_factory=list)


# ─────────────────────── Authentication ───────────────────────


_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_challenge_timestamp(value: Any) -> int:
    """
    Challenge timestamp in epoch milliseconds.

    Accepts ISO-8601 text, Unix seconds (converted) or epoch milliseconds.
    Numbers below 10^11 are taken as seconds.
    """
    if isinstance(value, bool):
        raise UnexpectedResponseError(f"Unrecognized challenge timestamp: {value!r}")
    if isinstance(value, str) and re.fullmatch(r"\d+(\.\d+)?", value.strip()):
        value = float(value)
    if isinstance(value, int | float):
        return int(value * 1000) if value < 1e11 else int(value)
    if isinstance(value, str):
        text = _FRACTION.sub(r"\1", value.strip()).replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise UnexpectedResponseError(f"Unrecognized challenge timestamp: {value!r}") from e
        return int(_as_utc(parsed).timestamp() * 1000)
    raise UnexpectedResponseError(f"Unrecognized challenge timestamp: {value!r}")


class ChallengeResponse(WireModel):
    challenge: str
    timestamp: str | int | float


class TokenInfo(WireModel):
    token: str
    valid_until: UtcDatetime | None = None
    expires_in: int | None = None


class AuthInitResponse(WireModel):
    reference_number: str
    authentication_token: TokenInfo


class StatusInfo(WireModel):
    code: int
    description: str = ""
    details: list[str] | None = None


class AuthStatusResponse(WireModel):
    status: StatusInfo


class _NestedTokens(WireModel):
    access_token: TokenInfo
    refresh_token: TokenInfo | None = None


class _FlatTokens(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    refresh_expires_in: int | None = None


def _expiry(info: TokenInfo, now: datetime, default: timedelta) -> datetime:
    if info.valid_until is not None:
        return info.valid_until
    if info.expires_in is not None:
        return now + timedelta(seconds=info.expires_in)
    return now + default


def decode_token_pair(body: Any, now: datetime, require_refresh: bool = True) -> AuthTokenPair:
    """Normalize either token response shape to AuthTokenPair; anything else is rejected."""
    if not isinstance(body, dict):
        raise UnexpectedResponseError("Token response is not a JSON object")

    if isinstance(body.get("accessToken"), dict):
        nested = decode(_NestedTokens, body, "token (nested)")
        refresh = nested.refresh_token
        pair = AuthTokenPair(
            access_token=nested.access_token.token,
            access_expires_at=_expiry(nested.access_token, now, DEFAULT_ACCESS_TTL),
            refresh_token=refresh.token if refresh else None,
            refresh_expires_at=_expiry(refresh, now, DEFAULT_REFRESH_TTL) if refresh else None,
        )
    elif isinstance(body.get("access_token"), str):
        flat = decode(_FlatTokens, body, "token (flat)")
        pair = AuthTokenPair(
            access_token=flat.access_token,
            access_expires_at=now + timedelta(seconds=flat.expires_in or DEFAULT_ACCESS_TTL.total_seconds()),
            refresh_token=flat.refresh_token,
            refresh_expires_at=(
                now + timedelta(seconds=flat.refresh_expires_in or DEFAULT_REFRESH_TTL.total_seconds())
                if flat.refresh_token else None
            ),
        )
    else:
        raise UnexpectedResponseError(
            f"Unrecognized token response shape (keys: {sorted(body)})"
        )

    if require_refresh and pair.refresh_token is None:
        raise UnexpectedResponseError("Token response carries no refresh token")
    return pair


# ─────────────────────── Sessions ───────────────────────


class OpenSessionResponse(WireModel):
    reference_number: str
    valid_until: UtcDatetime | None = None


class ReferenceResponse(WireModel):
    reference_number: str


class UpoPage(WireModel):
    reference_number: str
    download_url: str | None = None
    download_url_expiration_date: UtcDatetime | None = None


class Upo(WireModel):
    pages: list[UpoPage] = Field(default_factory=list)


class SessionStatusResponse(WireModel):
    status: StatusInfo
    invoice_count: int | None = None
    successful_invoice_count: int | None = None
    failed_invoice_count: int | None = None
    upo: Upo | None = None


class SessionInvoice(WireModel):
    reference_number: str
    status: StatusInfo
    invoice_number: str | None = None
    ksef_number: str | None = None


class SessionInvoicesResponse(WireModel):
    invoices: list[SessionInvoice] = Field(default_factory=list)
    continuation_token: str | None = None


# ─────────────────────── Retrieval ───────────────────────


class Party(WireModel):
    nip: str | None = None
    name: str | None = None


class InvoiceMetadata(WireModel):
    ksef_number: str
    permanent_storage_date: UtcDatetime
    invoice_number: str | None = None
    issue_date: date | None = None
    seller: Party | None = None
    buyer: Party | None = None
    gross_amount: Decimal | None = None
    currency: str | None = None


class MetadataPage(WireModel):
    invoices: list[InvoiceMetadata] = Field(default_factory=list)
    has_more: bool = False
    is_truncated: bool = False


class PackagePart(WireModel):
    part_number: int
    download_url: str


class ExportStatusResponse(WireModel):
    status: str
    package_parts: list[PackagePart] = Field(default_factory=list)
    is_truncated: bool = False
    permanent_storage_hwm_date: UtcDatetime | None = None
    last_permanent_storage_date: UtcDatetime | None = None
    error_message: str | None = None
