"""
FA(3) document rendering.

Builds the structured `Faktura` XML submitted inside an online session:
header (Naglowek), seller (Podmiot1), buyer (Podmiot2) and the Fa block with
line items and totals. Output is UTF-8 without a byte-order mark.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from lxml import etree

from ksef_client.domain.models import Counterparty, FormCode, Invoice, IssuerProfile
from ksef_client.domain.validation import normalize_tax_id

FA3_NAMESPACE = "http://crd.gov.pl/wzor/2025/06/25/13775/"
_NSMAP = {None: FA3_NAMESPACE}
_CENT = Decimal("0.01")


def _money(value: Decimal) -> str:
    return str(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def _quantity(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _sub(parent: etree._Element, tag: str, text: str | None = None, **attrs: str) -> etree._Element:
    element = etree.SubElement(parent, f"{{{FA3_NAMESPACE}}}{tag}", **attrs)
    if text is not None:
        element.text = text
    return element


def _address(parent: etree._Element, country: str, line1: str | None, postal: str | None, city: str | None) -> None:
    address = _sub(parent, "Adres")
    _sub(address, "KodKraju", country)
    _sub(address, "AdresL1", line1 or "-")
    line2 = " ".join(part for part in (postal, city) if part)
    if line2:
        _sub(address, "AdresL2", line2)


def render_invoice_xml(
    document: Invoice,
    issuer: IssuerProfile,
    counterparty: Counterparty,
    form: FormCode | None = None,
    system_info: str = "ksef-sync",
    generated_at: datetime | None = None,
) -> bytes:
    """Render the document as FA(3) XML bytes."""
    form = form or FormCode()
    generated_at = generated_at or datetime.now(UTC)
    root = etree.Element(f"{{{FA3_NAMESPACE}}}Faktura", nsmap=_NSMAP)

    header = _sub(root, "Naglowek")
    _sub(
        header,
        "KodFormularza",
        form.value,
        kodSystemowy=form.system_code,
        wersjaSchemy=form.schema_version,
    )
    _sub(header, "WariantFormularza", "3")
    _sub(header, "DataWytworzeniaFa", generated_at.strftime("%Y-%m-%dT%H:%M:%SZ"))
    _sub(header, "SystemInfo", system_info)

    seller = _sub(root, "Podmiot1")
    seller_ids = _sub(seller, "DaneIdentyfikacyjne")
    _sub(seller_ids, "NIP", normalize_tax_id(issuer.tax_id))
    _sub(seller_ids, "Nazwa", issuer.name.strip()[:512])
    _address(seller, issuer.country_code, issuer.address_line, issuer.postal_code, issuer.city)

    buyer = _sub(root, "Podmiot2")
    buyer_ids = _sub(buyer, "DaneIdentyfikacyjne")
    if counterparty.tax_id:
        _sub(buyer_ids, "NIP", normalize_tax_id(counterparty.tax_id))
    else:
        _sub(buyer_ids, "BrakID", "1")
    _sub(buyer_ids, "Nazwa", counterparty.name.strip()[:512])
    if counterparty.address_line or counterparty.city:
        _address(
            buyer,
            counterparty.country_code,
            counterparty.address_line,
            counterparty.postal_code,
            counterparty.city,
        )

    fa = _sub(root, "Fa")
    _sub(fa, "KodWaluty", document.currency)
    if document.issue_date is not None:
        _sub(fa, "P_1", document.issue_date.isoformat())
    _sub(fa, "P_2", document.number)
    if document.sale_date is not None:
        _sub(fa, "P_6", document.sale_date.isoformat())

    net = sum((line.net_value for line in document.lines), Decimal("0"))
    vat = sum((line.vat_value for line in document.lines), Decimal("0"))
    _sub(fa, "P_13_1", _money(document.total_net if document.total_net is not None else net))
    _sub(fa, "P_14_1", _money(vat))
    _sub(fa, "P_15", _money(document.total_gross if document.total_gross is not None else net + vat))
    _sub(fa, "RodzajFaktury", document.kind)

    for index, line in enumerate(document.lines, start=1):
        row = _sub(fa, "FaWiersz")
        _sub(row, "NrWierszaFa", str(index))
        _sub(row, "P_7", line.name.strip()[:512])
        _sub(row, "P_8A", line.unit or "szt.")
        _sub(row, "P_8B", _quantity(line.quantity))
        _sub(row, "P_9A", _money(line.unit_price))
        _sub(row, "P_11", _money(line.net_value))
        _sub(row, "P_12", line.vat_rate)

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)
