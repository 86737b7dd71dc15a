"""
Unit tests for document validation.

validate() is pure: every test builds a document, runs it, and inspects the
error and warning codes. All violations are collected, never just the first.
"""

from __future__ import annotations

import codecs
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from ksef_client.domain.models import Counterparty, Invoice, InvoiceLine, IssuerProfile
from ksef_client.domain.validation import (
    MAX_PAYLOAD_BYTES,
    is_valid_tax_id,
    normalize_tax_id,
    validate,
    validate_payload,
)

TODAY = date(2025, 6, 1)


def _issuer(**overrides: object) -> IssuerProfile:
    base = IssuerProfile(
        tax_id="1234563218",
        name="Seller Sp. z o.o.",
        address_line="ul. Prosta 1",
        city="Warszawa",
        postal_code="00-001",
    )
    return replace(base, **overrides)


def _counterparty(**overrides: object) -> Counterparty:
    return replace(Counterparty(name="Buyer S.A.", tax_id="5265877635"), **overrides)


def _document(**overrides: object) -> Invoice:
    base = Invoice(
        number="FV/2025/06/001",
        issue_date=TODAY,
        lines=(InvoiceLine("Consulting", Decimal("2"), Decimal("100"), unit="h"),),
        total_net=Decimal("200"),
        total_gross=Decimal("246"),
    )
    return replace(base, **overrides)


# ─────────────────────── Tax id checksum ───────────────────────


class TestTaxIdChecksum:
    @pytest.mark.parametrize("tax_id", ["1234563218", "5265877635", "PL 526-587-76-35"])
    def test_accepts_valid_checksums(self, tax_id: str) -> None:
        assert is_valid_tax_id(tax_id)

    @pytest.mark.parametrize("tax_id", ["1234563219", "123456321", "12345632180", "ABCDEFGHIJ", "", None])
    def test_rejects_invalid_values(self, tax_id: str | None) -> None:
        assert not is_valid_tax_id(tax_id)

    def test_checksum_rule_matches_weighted_sum(self) -> None:
        """
        GIVEN the first nine digits 123456321
        WHEN the weighted sum is taken mod 11
        THEN only a tenth digit equal to it is accepted.
        """
        weights = [6, 5, 7, 2, 3, 4, 5, 6, 7]
        prefix = "123456321"
        expected = sum(int(d) * w for d, w in zip(prefix, weights)) % 11
        for last in range(10):
            assert is_valid_tax_id(prefix + str(last)) == (last == expected)

    def test_normalize_strips_prefix_and_separators(self) -> None:
        assert normalize_tax_id("pl 123-456-32-18") == "1234563218"


# ─────────────────────── validate() ───────────────────────


class TestValidDocument:
    def test_complete_document_has_no_errors_or_warnings(self) -> None:
        report = validate(_document(), _issuer(), _counterparty(), today=TODAY)
        assert report.valid
        assert report.errors == ()
        assert report.warnings == ()

    def test_totals_within_tolerance_pass(self) -> None:
        """
        GIVEN one line 2 × 100 and declared net 200.02
        WHEN validated
        THEN the 0.02 tolerance accepts it.
        """
        report = validate(
            _document(total_net=Decimal("200.02")), _issuer(), _counterparty(), today=TODAY
        )
        assert report.valid


class TestTotals:
    def test_declared_net_199_is_a_totals_mismatch(self) -> None:
        """
        GIVEN items [{qty: 2, price: 100}] and declared net 199
        WHEN validated
        THEN a TOTALS_MISMATCH error is reported.
        """
        report = validate(_document(total_net=Decimal("199")), _issuer(), _counterparty(), today=TODAY)
        assert not report.valid
        assert "TOTALS_MISMATCH" in report.codes()

    def test_gross_mismatch_is_reported_separately(self) -> None:
        report = validate(_document(total_gross=Decimal("200")), _issuer(), _counterparty(), today=TODAY)
        assert report.codes() == ["GROSS_TOTALS_MISMATCH"]

    def test_missing_totals_are_required(self) -> None:
        report = validate(
            _document(total_net=None, total_gross=None), _issuer(), _counterparty(), today=TODAY
        )
        assert {"TOTAL_NET_REQUIRED", "TOTAL_GROSS_REQUIRED"} <= set(report.codes())


class TestLineItems:
    @pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-1")])
    def test_non_positive_quantity_is_invalid(self, quantity: Decimal) -> None:
        line = InvoiceLine("Consulting", quantity, Decimal("100"), unit="h")
        report = validate(_document(lines=(line,)), _issuer(), _counterparty(), today=TODAY)
        assert not report.valid
        assert "INVALID_QUANTITY" in report.codes()

    def test_negative_unit_price_is_invalid(self) -> None:
        line = InvoiceLine("Refund", Decimal("1"), Decimal("-5"), unit="szt.")
        report = validate(_document(lines=(line,)), _issuer(), _counterparty(), today=TODAY)
        assert "INVALID_UNIT_PRICE" in report.codes()

    def test_zero_unit_price_is_allowed(self) -> None:
        line = InvoiceLine("Gift", Decimal("1"), Decimal("0"), unit="szt.")
        report = validate(
            _document(lines=(line,), total_net=Decimal("0"), total_gross=Decimal("0")),
            _issuer(), _counterparty(), today=TODAY,
        )
        assert report.valid

    def test_no_lines(self) -> None:
        report = validate(_document(lines=()), _issuer(), _counterparty(), today=TODAY)
        assert "NO_ITEMS" in report.codes()

    def test_missing_unit_is_only_a_warning(self) -> None:
        line = InvoiceLine("Consulting", Decimal("2"), Decimal("100"))
        report = validate(_document(lines=(line,)), _issuer(), _counterparty(), today=TODAY)
        assert report.valid
        assert [w.code for w in report.warnings] == ["ITEM_UNIT_MISSING"]


class TestCollectsEveryViolation:
    def test_all_errors_are_returned_together(self) -> None:
        """
        GIVEN a document with a bad tax id, no buyer name, no number and a zero quantity
        WHEN validated
        THEN every one of those errors is listed.
        """
        report = validate(
            _document(
                number=" ",
                lines=(InvoiceLine("Consulting", Decimal("0"), Decimal("100"), unit="h"),),
                total_net=Decimal("0"),
                total_gross=Decimal("0"),
            ),
            _issuer(tax_id="1234563219"),
            _counterparty(name=""),
            today=TODAY,
        )
        assert set(report.codes()) == {
            "INVALID_NIP_FORMAT",
            "BUYER_NAME_REQUIRED",
            "INVOICE_NUMBER_REQUIRED",
            "INVALID_QUANTITY",
        }

    def test_issuer_problems(self) -> None:
        report = validate(_document(), _issuer(tax_id="", name=""), _counterparty(), today=TODAY)
        assert {"SELLER_NIP_REQUIRED", "SELLER_NAME_REQUIRED"} <= set(report.codes())

    def test_issue_date_rules(self) -> None:
        missing = validate(_document(issue_date=None), _issuer(), _counterparty(), today=TODAY)
        future = validate(_document(issue_date=date(2025, 6, 2)), _issuer(), _counterparty(), today=TODAY)
        assert "ISSUE_DATE_REQUIRED" in missing.codes()
        assert "ISSUE_DATE_IN_FUTURE" in future.codes()


class TestWarnings:
    def test_missing_issuer_address_fields_warn(self) -> None:
        report = validate(
            _document(), _issuer(address_line=None, city=None, postal_code=None), _counterparty(), today=TODAY
        )
        assert report.valid
        assert {w.code for w in report.warnings} == {
            "SELLER_ADDRESS_MISSING",
            "SELLER_CITY_MISSING",
            "SELLER_POSTAL_CODE_MISSING",
        }

    def test_invalid_counterparty_tax_id_warns(self) -> None:
        report = validate(_document(), _issuer(), _counterparty(tax_id="1111111112"), today=TODAY)
        assert report.valid
        assert [w.code for w in report.warnings] == ["BUYER_NIP_INVALID"]


# ─────────────────────── validate_payload() ───────────────────────


class TestPayloadLimits:
    def test_plain_xml_passes(self) -> None:
        assert validate_payload(b"<?xml version='1.0' encoding='UTF-8'?><Faktura/>") == []

    def test_empty_payload(self) -> None:
        assert [i.code for i in validate_payload(b"")] == ["EMPTY_PAYLOAD"]

    def test_size_cap_depends_on_attachments(self) -> None:
        """
        GIVEN a payload one byte over 1 MB
        WHEN checked without and with attachments
        THEN only the plain limit rejects it.
        """
        payload = b"a" * (MAX_PAYLOAD_BYTES + 1)
        assert [i.code for i in validate_payload(payload)] == ["PAYLOAD_TOO_LARGE"]
        assert validate_payload(payload, has_attachments=True) == []

    def test_byte_order_mark_is_rejected(self) -> None:
        codes = [i.code for i in validate_payload(codecs.BOM_UTF8 + b"<Faktura/>")]
        assert codes == ["PAYLOAD_HAS_BOM"]

    def test_non_utf8_is_rejected(self) -> None:
        codes = [i.code for i in validate_payload("<Faktura>Zażółć</Faktura>".encode("cp1250"))]
        assert codes == ["PAYLOAD_NOT_UTF8"]
