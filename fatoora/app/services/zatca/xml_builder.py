"""UBL 2.1 XML generation for ZATCA e-invoices.

Element order is fixed: the same invoice always serializes to the same bytes.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from lxml import etree

# ─── UBL Namespaces ─────────────────────────────────────────────────────────

INVOICE_NS = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
CAC = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
CBC = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
DS = "http://www.w3.org/2000/09/xmldsig#"

NSMAP_INVOICE = {
    None: INVOICE_NS,
    "cac": CAC,
    "cbc": CBC,
}

# ─── Fixed rates and codes ──────────────────────────────────────────────────

VAT_RATE = Decimal("0.15")
VAT_PERCENT = "15.00"
CURRENCY = "SAR"
Q2 = Decimal("0.01")


class InvoiceTypeCode(str, enum.Enum):
    TAX_INVOICE = "388"
    CREDIT_NOTE = "381"
    DEBIT_NOTE = "383"


class InvoiceSubType(str, enum.Enum):
    STANDARD = "0100000"  # B2B, buyer is VAT-registered
    SIMPLIFIED = "0200000"  # B2C


# ─── Money and time formatting ──────────────────────────────────────────────


def q2(value: Decimal | int | str) -> Decimal:
    """Round half-up to 2 decimal places."""
    return Decimal(str(value)).quantize(Q2, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal | int | str) -> str:
    return str(q2(value))


def line_tax(amount: Decimal) -> Decimal:
    return q2(amount * VAT_RATE)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime, *, milliseconds: bool = False) -> str:
    """ISO 8601 UTC: ``YYYY-MM-DDTHH:MM:SSZ`` or ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    utc = to_utc(value)
    if milliseconds:
        return f"{utc.strftime('%Y-%m-%dT%H:%M:%S')}.{utc.microsecond // 1000:03d}Z"
    return utc.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    vat_amount: Decimal
    total: Decimal


def compute_totals(line_amounts: Iterable[Decimal]) -> Totals:
    subtotal = q2(sum((Decimal(str(a)) for a in line_amounts), Decimal("0")))
    vat_amount = q2(subtotal * VAT_RATE)
    return Totals(subtotal=subtotal, vat_amount=vat_amount, total=subtotal + vat_amount)


# ─── Data classes ────────────────────────────────────────────────────────────


@dataclass
class SellerInfo:
    name: str
    vat_number: str
    address: str
    country_code: str = "SA"


@dataclass
class BuyerInfo:
    name: str
    vat_number: str | None = None
    address: str | None = None
    country_code: str = "SA"


@dataclass
class InvoiceLineData:
    line_id: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal

    @property
    def tax_amount(self) -> Decimal:
        return line_tax(self.amount)


@dataclass
class InvoiceData:
    invoice_number: str
    uuid: str
    issue_date: datetime
    seller: SellerInfo
    buyer: BuyerInfo
    lines: list[InvoiceLineData]
    subtotal: Decimal
    vat_amount: Decimal
    total: Decimal
    due_date: datetime | None = None
    previous_invoice_hash: str | None = None
    icv: int | None = None  # position in the organization's hash chain
    type_code: InvoiceTypeCode = InvoiceTypeCode.TAX_INVOICE

    @property
    def sub_type(self) -> InvoiceSubType:
        if self.buyer.vat_number:
            return InvoiceSubType.STANDARD
        return InvoiceSubType.SIMPLIFIED


# ─── Builder helpers ─────────────────────────────────────────────────────────


def _sub(parent: etree._Element, tag: str, text: str | None = None, **attribs: str) -> etree._Element:
    """Add a sub-element with optional text and attributes."""
    el = etree.SubElement(parent, tag)
    if text is not None:
        el.text = text
    for k, v in attribs.items():
        el.set(k, v)
    return el


def _cbc(parent: etree._Element, local: str, text: str | None = None, **attribs: str) -> etree._Element:
    return _sub(parent, f"{{{CBC}}}{local}", text, **attribs)


def _cac(parent: etree._Element, local: str) -> etree._Element:
    return _sub(parent, f"{{{CAC}}}{local}")


def _amount(parent: etree._Element, local: str, value: Decimal) -> etree._Element:
    return _cbc(parent, local, format_amount(value), currencyID=CURRENCY)


def _quantity(value: Decimal) -> str:
    return format(Decimal(str(value)).normalize(), "f")


def _tax_scheme(parent: etree._Element) -> None:
    scheme = _cac(parent, "TaxScheme")
    _cbc(scheme, "ID", "VAT")


# ─── Main builders ───────────────────────────────────────────────────────────


def build_invoice_xml(data: InvoiceData) -> etree._Element:
    """Build the canonical UBL 2.1 Invoice element."""
    root = etree.Element(f"{{{INVOICE_NS}}}Invoice", nsmap=NSMAP_INVOICE)

    _cbc(root, "ID", data.invoice_number)
    _cbc(root, "UUID", data.uuid)
    _cbc(root, "IssueDate", to_utc(data.issue_date).strftime("%Y-%m-%d"))
    if data.due_date is not None:
        _cbc(root, "DueDate", to_utc(data.due_date).strftime("%Y-%m-%d"))
    _cbc(root, "InvoiceTypeCode", data.type_code.value, name=data.sub_type.value)
    _cbc(root, "DocumentCurrencyCode", CURRENCY)
    _cbc(root, "TaxCurrencyCode", CURRENCY)

    # ICV: chain position + previous invoice hash
    if data.previous_invoice_hash:
        adr = _cac(root, "AdditionalDocumentReference")
        _cbc(adr, "ID", "ICV")
        if data.icv is not None:
            _cbc(adr, "UUID", str(data.icv))
        attach = _cac(adr, "Attachment")
        _cbc(attach, "EmbeddedDocumentBinaryObject", data.previous_invoice_hash, mimeCode="text/plain")

    _build_supplier_party(root, data.seller)
    _build_customer_party(root, data.buyer)
    _build_tax_total(root, data)
    _build_monetary_total(root, data)
    for line in data.lines:
        _build_line(root, line)

    return root


def serialize_xml(root: etree._Element) -> str:
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")


def party_vat_number(xml: str | bytes, party: str) -> str | None:
    """CompanyID of ``AccountingSupplierParty`` or ``AccountingCustomerParty`` in a serialized invoice."""
    raw = xml.encode("utf-8") if isinstance(xml, str) else xml
    root = etree.fromstring(raw)
    el = root.find(f"{{{CAC}}}{party}/{{{CAC}}}Party/{{{CAC}}}PartyTaxScheme/{{{CBC}}}CompanyID")
    if el is None or not el.text:
        return None
    return el.text


def _build_supplier_party(root: etree._Element, seller: SellerInfo) -> None:
    supplier = _cac(root, "AccountingSupplierParty")
    party = _cac(supplier, "Party")

    addr = _cac(party, "PostalAddress")
    _cbc(addr, "StreetName", seller.address)
    country = _cac(addr, "Country")
    _cbc(country, "IdentificationCode", seller.country_code)

    pts = _cac(party, "PartyTaxScheme")
    _cbc(pts, "CompanyID", seller.vat_number)
    _tax_scheme(pts)

    ple = _cac(party, "PartyLegalEntity")
    _cbc(ple, "RegistrationName", seller.name)


def _build_customer_party(root: etree._Element, buyer: BuyerInfo) -> None:
    customer = _cac(root, "AccountingCustomerParty")
    party = _cac(customer, "Party")

    if buyer.address:
        addr = _cac(party, "PostalAddress")
        _cbc(addr, "StreetName", buyer.address)
        country = _cac(addr, "Country")
        _cbc(country, "IdentificationCode", buyer.country_code)

    # B2C buyers have no tax scheme block
    if buyer.vat_number:
        pts = _cac(party, "PartyTaxScheme")
        _cbc(pts, "CompanyID", buyer.vat_number)
        _tax_scheme(pts)

    ple = _cac(party, "PartyLegalEntity")
    _cbc(ple, "RegistrationName", buyer.name)


def _build_tax_total(root: etree._Element, data: InvoiceData) -> None:
    tt = _cac(root, "TaxTotal")
    _amount(tt, "TaxAmount", data.vat_amount)
    sub = _cac(tt, "TaxSubtotal")
    _amount(sub, "TaxableAmount", data.subtotal)
    _amount(sub, "TaxAmount", data.vat_amount)
    cat = _cac(sub, "TaxCategory")
    _cbc(cat, "ID", "S")
    _cbc(cat, "Percent", VAT_PERCENT)
    _tax_scheme(cat)


def _build_monetary_total(root: etree._Element, data: InvoiceData) -> None:
    # payable == tax-inclusive == subtotal + VAT
    lmt = _cac(root, "LegalMonetaryTotal")
    _amount(lmt, "LineExtensionAmount", data.subtotal)
    _amount(lmt, "TaxExclusiveAmount", data.subtotal)
    _amount(lmt, "TaxInclusiveAmount", data.total)
    _amount(lmt, "PayableAmount", data.total)


def _build_line(root: etree._Element, line: InvoiceLineData) -> None:
    line_el = _cac(root, "InvoiceLine")
    _cbc(line_el, "ID", line.line_id)
    _cbc(line_el, "InvoicedQuantity", _quantity(line.quantity), unitCode="PCE")
    _amount(line_el, "LineExtensionAmount", line.amount)

    tt = _cac(line_el, "TaxTotal")
    _amount(tt, "TaxAmount", line.tax_amount)
    _amount(tt, "RoundingAmount", q2(line.amount) + line.tax_amount)

    item = _cac(line_el, "Item")
    _cbc(item, "Name", line.description)
    ct = _cac(item, "ClassifiedTaxCategory")
    _cbc(ct, "ID", "S")
    _cbc(ct, "Percent", VAT_PERCENT)
    _tax_scheme(ct)

    price = _cac(line_el, "Price")
    _amount(price, "PriceAmount", line.unit_price)
