"""Canonical invoice encoding: validated UBL XML plus QR payload, all or nothing."""

from __future__ import annotations

from dataclasses import dataclass

from fatoora.app.services.zatca.errors import ValidationError
from fatoora.app.services.zatca.qr_code import generate_invoice_qr
from fatoora.app.services.zatca.validation import validate_invoice_data
from fatoora.app.services.zatca.xml_builder import InvoiceData, build_invoice_xml, serialize_xml


@dataclass(frozen=True)
class EncodedInvoice:
    xml: str
    qr_payload: str


def encode_invoice(data: InvoiceData) -> EncodedInvoice:
    errors = validate_invoice_data(data)
    if errors:
        raise ValidationError(errors)

    try:
        xml = serialize_xml(build_invoice_xml(data))
    except ValueError as exc:
        # lxml refuses text it cannot serialize
        raise ValidationError([f"Invoice cannot be encoded as XML: {exc}"]) from exc
    qr_payload = generate_invoice_qr(data)
    return EncodedInvoice(xml=xml, qr_payload=qr_payload)
