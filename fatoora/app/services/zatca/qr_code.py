"""TLV/Base64 QR payload (tags 1-5) for ZATCA e-invoices."""

from __future__ import annotations

import base64
import binascii
import struct

from fatoora.app.services.zatca.errors import ValidationError
from fatoora.app.services.zatca.xml_builder import InvoiceData, format_amount, format_timestamp

TAG_NAMES = {
    1: "seller_name",
    2: "vat_number",
    3: "timestamp",
    4: "total_amount",
    5: "vat_amount",
}


def _tlv(tag: int, value: bytes) -> bytes:
    """Encode a single TLV field with 1-byte tag and 1-byte length (max 255)."""
    length = len(value)
    if length > 255:
        raise ValidationError([f"QR tag {tag} ({TAG_NAMES.get(tag, tag)}) is {length} bytes (max 255)"])
    return struct.pack("BB", tag, length) + value


def _tlv_utf8(tag: int, text: str) -> bytes:
    return _tlv(tag, text.encode("utf-8"))


def generate_qr(
    seller_name: str,
    vat_number: str,
    timestamp: str,
    total_amount: str,
    vat_amount: str,
) -> str:
    """Return the Base64 of tags 1-5 concatenated in order."""
    tlv_data = b"".join([
        _tlv_utf8(1, seller_name),
        _tlv_utf8(2, vat_number),
        _tlv_utf8(3, timestamp),
        _tlv_utf8(4, total_amount),
        _tlv_utf8(5, vat_amount),
    ])
    return base64.b64encode(tlv_data).decode("ascii")


def generate_invoice_qr(data: InvoiceData) -> str:
    return generate_qr(
        seller_name=data.seller.name,
        vat_number=data.seller.vat_number,
        timestamp=format_timestamp(data.issue_date),
        total_amount=format_amount(data.total),
        vat_amount=format_amount(data.vat_amount),
    )


def decode_tlv(payload: str) -> list[tuple[int, str]]:
    """Decode a Base64 TLV payload into ``(tag, value)`` pairs, in payload order."""
    try:
        data = base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"QR payload is not valid Base64: {exc}") from exc

    fields: list[tuple[int, str]] = []
    i = 0
    while i < len(data):
        if i + 1 >= len(data):
            raise ValueError(f"Truncated TLV data at position {i}")
        tag = data[i]
        length = data[i + 1]
        if i + 2 + length > len(data):
            raise ValueError(
                f"Tag {tag} claims length {length} but only "
                f"{len(data) - i - 2} bytes remain"
            )
        fields.append((tag, data[i + 2 : i + 2 + length].decode("utf-8")))
        i += 2 + length
    return fields


def decode_qr(payload: str) -> dict[str, str]:
    """Decode a QR payload keyed by field name."""
    return {TAG_NAMES.get(tag, f"tag_{tag}"): value for tag, value in decode_tlv(payload)}
