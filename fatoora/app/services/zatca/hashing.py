"""Invoice content hashing and XML canonicalization for ZATCA e-invoices."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from lxml import etree

from fatoora.app.services.zatca.xml_builder import DS, InvoiceData, format_amount, format_timestamp

# Bump when the field order or formatting of the canonical string changes;
# previously issued hashes are only reproducible under their own version.
CANONICAL_HASH_VERSION = 1

_SIGNATURE_XPATH = f"//*[local-name()='Signature' and namespace-uri()='{DS}']"


@dataclass(frozen=True)
class InvoiceCore:
    """The fields an invoice's content hash is derived from."""

    invoice_number: str
    issue_date: datetime
    total: Decimal
    vat_amount: Decimal
    seller_vat: str
    buyer_vat: str | None = None

    @classmethod
    def from_invoice_data(cls, data: InvoiceData) -> InvoiceCore:
        return cls(
            invoice_number=data.invoice_number,
            issue_date=data.issue_date,
            total=data.total,
            vat_amount=data.vat_amount,
            seller_vat=data.seller.vat_number,
            buyer_vat=data.buyer.vat_number,
        )


def canonical_string(core: InvoiceCore) -> str:
    """``number|issueISO|total|vat|sellerVAT|buyerVAT`` (empty when B2C)."""
    return "|".join([
        core.invoice_number,
        format_timestamp(core.issue_date, milliseconds=True),
        format_amount(core.total),
        format_amount(core.vat_amount),
        core.seller_vat,
        core.buyer_vat or "",
    ])


def compute_hash(core: InvoiceCore) -> str:
    """SHA-256 hex digest of the canonical string. Deterministic, unsalted."""
    return hashlib.sha256(canonical_string(core).encode("utf-8")).hexdigest()


def canonicalize_xml(xml_element: etree._Element) -> bytes:
    """C14N of the invoice with any enveloped ds:Signature removed."""
    # Work on a deep copy to avoid mutating the original
    tree = etree.fromstring(etree.tostring(xml_element))
    for el in tree.xpath(_SIGNATURE_XPATH):
        el.getparent().remove(el)
    return etree.tostring(tree, method="c14n")


def hash_invoice_xml(xml_element: etree._Element) -> str:
    """SHA-256 of canonicalized XML, returned as base64 string."""
    digest = hashlib.sha256(canonicalize_xml(xml_element)).digest()
    return base64.b64encode(digest).decode("ascii")
