"""
Document validation: pure functions, no I/O.

validate() collects every violation instead of stopping at the first one, so
a caller can present a complete remediation list. Errors block submission;
warnings never do.

validate_payload() checks the rendered XML bytes against the Exchange's
transport limits (size cap, UTF-8, no byte-order mark).
"""

from __future__ import annotations

import codecs
from datetime import date
from decimal import Decimal

from ksef_client.domain.models import (
    Counterparty,
    Invoice,
    IssuerProfile,
    ValidationIssue,
    ValidationReport,
)

TAX_ID_WEIGHTS = (6, 5, 7, 2, 3, 4, 5, 6, 7)
TOTALS_TOLERANCE = Decimal("0.02")
MAX_PAYLOAD_BYTES = 1_000_000
MAX_PAYLOAD_BYTES_WITH_ATTACHMENTS = 3_000_000


def normalize_tax_id(raw: str | None) -> str:
    """Strip separators and an optional PL prefix: 'PL 123-456-32-18' → '1234563218'."""
    if not raw:
        return ""
    cleaned = "".join(ch for ch in raw if ch.isalnum()).upper()
    if cleaned.startswith("PL"):
        cleaned = cleaned[2:]
    return cleaned


def is_valid_tax_id(raw: str | None) -> bool:
    """
    Mod-11 checksum over the first nine digits compared with the tenth.

    >>> is_valid_tax_id("1234563218")
    True
    >>> is_valid_tax_id("1234563219")
    False
    """
    digits = normalize_tax_id(raw)
    if len(digits) != 10 or not digits.isdigit():
        return False
    checksum = sum(int(d) * w for d, w in zip(digits[:9], TAX_ID_WEIGHTS)) % 11
    return checksum == int(digits[9])


def validate(
    document: Invoice,
    issuer: IssuerProfile,
    counterparty: Counterparty,
    today: date | None = None,
) -> ValidationReport:
    """Run every document check and return all errors and warnings found."""
    today = today or date.today()
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    # Issuer
    if not issuer.tax_id or not issuer.tax_id.strip():
        errors.append(ValidationIssue("issuer.tax_id", "SELLER_NIP_REQUIRED", "Issuer tax id is required"))
    elif not is_valid_tax_id(issuer.tax_id):
        errors.append(ValidationIssue(
            "issuer.tax_id", "INVALID_NIP_FORMAT",
            f"Issuer tax id {issuer.tax_id!r} fails the checksum",
        ))
    if not issuer.name or not issuer.name.strip():
        errors.append(ValidationIssue("issuer.name", "SELLER_NAME_REQUIRED", "Issuer name is required"))
    if not issuer.address_line:
        warnings.append(ValidationIssue("issuer.address_line", "SELLER_ADDRESS_MISSING", "Issuer address is missing"))
    if not issuer.city:
        warnings.append(ValidationIssue("issuer.city", "SELLER_CITY_MISSING", "Issuer city is missing"))
    if not issuer.postal_code:
        warnings.append(ValidationIssue(
            "issuer.postal_code", "SELLER_POSTAL_CODE_MISSING", "Issuer postal code is missing",
        ))

    # Counterparty
    if not counterparty.name or not counterparty.name.strip():
        errors.append(ValidationIssue("counterparty.name", "BUYER_NAME_REQUIRED", "Counterparty name is required"))
    if counterparty.tax_id and not is_valid_tax_id(counterparty.tax_id):
        warnings.append(ValidationIssue(
            "counterparty.tax_id", "BUYER_NIP_INVALID",
            f"Counterparty tax id {counterparty.tax_id!r} fails the checksum",
        ))

    # Header
    if not document.number or not document.number.strip():
        errors.append(ValidationIssue("number", "INVOICE_NUMBER_REQUIRED", "Document number is required"))
    if document.issue_date is None:
        errors.append(ValidationIssue("issue_date", "ISSUE_DATE_REQUIRED", "Issue date is required"))
    elif document.issue_date > today:
        errors.append(ValidationIssue(
            "issue_date", "ISSUE_DATE_IN_FUTURE",
            f"Issue date {document.issue_date.isoformat()} is in the future",
        ))

    # Lines
    if not document.lines:
        errors.append(ValidationIssue("lines", "NO_ITEMS", "At least one line item is required"))
    for index, line in enumerate(document.lines, start=1):
        where = f"lines[{index}]"
        if not line.name or not line.name.strip():
            errors.append(ValidationIssue(f"{where}.name", "ITEM_NAME_REQUIRED", f"Line {index}: name is required"))
        if line.quantity <= 0:
            errors.append(ValidationIssue(
                f"{where}.quantity", "INVALID_QUANTITY", f"Line {index}: quantity must be greater than 0",
            ))
        if line.unit_price < 0:
            errors.append(ValidationIssue(
                f"{where}.unit_price", "INVALID_UNIT_PRICE", f"Line {index}: unit price must not be negative",
            ))
        if not line.unit:
            warnings.append(ValidationIssue(f"{where}.unit", "ITEM_UNIT_MISSING", f"Line {index}: unit is missing"))

    errors.extend(_check_totals(document))
    return ValidationReport(errors=tuple(errors), warnings=tuple(warnings))


def _check_totals(document: Invoice) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if document.total_net is None:
        issues.append(ValidationIssue("total_net", "TOTAL_NET_REQUIRED", "Declared net total is required"))
    if document.total_gross is None:
        issues.append(ValidationIssue("total_gross", "TOTAL_GROSS_REQUIRED", "Declared gross total is required"))
    if not document.lines:
        return issues

    net = sum((line.net_value for line in document.lines), Decimal("0"))
    gross = net + sum((line.vat_value for line in document.lines), Decimal("0"))
    if document.total_net is not None and abs(document.total_net - net) > TOTALS_TOLERANCE:
        issues.append(ValidationIssue(
            "total_net", "TOTALS_MISMATCH",
            f"Declared net total {document.total_net} does not match line items ({net})",
        ))
    if document.total_gross is not None and abs(document.total_gross - gross) > TOTALS_TOLERANCE:
        issues.append(ValidationIssue(
            "total_gross", "GROSS_TOTALS_MISMATCH",
            f"Declared gross total {document.total_gross} does not match line items ({gross})",
        ))
    return issues


def validate_payload(payload: bytes, has_attachments: bool = False) -> list[ValidationIssue]:
    """Transport-level checks on the serialized document."""
    if not payload:
        return [ValidationIssue("payload", "EMPTY_PAYLOAD", "Payload is empty")]

    issues: list[ValidationIssue] = []
    limit = MAX_PAYLOAD_BYTES_WITH_ATTACHMENTS if has_attachments else MAX_PAYLOAD_BYTES
    if len(payload) > limit:
        issues.append(ValidationIssue(
            "payload", "PAYLOAD_TOO_LARGE", f"Payload is {len(payload)} bytes; the limit is {limit}",
        ))
    if payload.startswith(codecs.BOM_UTF8):
        issues.append(ValidationIssue("payload", "PAYLOAD_HAS_BOM", "Payload must not start with a byte-order mark"))
    try:
        payload.decode("utf-8")
    except UnicodeDecodeError as e:
        issues.append(ValidationIssue("payload", "PAYLOAD_NOT_UTF8", f"Payload is not valid UTF-8: {e.reason}"))
    return issues
