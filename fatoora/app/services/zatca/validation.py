"""Invoice and identity validation, run before any hashing, encoding or signing."""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Any

from fatoora.app.services.zatca.xml_builder import VAT_RATE, InvoiceData, compute_totals, q2, to_utc

VAT_NUMBER_PATTERN = re.compile(r"^3\d{14}$")
VAT_NUMBER_FORMAT = "Saudi Arabia VAT format (15 digits, starts with 3)"

_UUID_PATTERN = re.compile(r"^[0-9a-fA-F-]{36}$")
# Characters outside the XML 1.0 Char production
_XML_INVALID_CHARS = re.compile(r"[^\u0009\u000a\u000d\u0020-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")
_TOLERANCE = Decimal("0.01")
_QR_MAX_BYTES = 255


def is_valid_vat_number(vat_number: str | None) -> bool:
    return bool(vat_number) and VAT_NUMBER_PATTERN.fullmatch(vat_number) is not None  # type: ignore[arg-type]


def validate_vat(vat_number: str) -> dict[str, Any]:
    return {
        "vat_number": vat_number,
        "is_valid": is_valid_vat_number(vat_number),
        "country": "SA",
        "format": VAT_NUMBER_FORMAT,
    }


def validate_invoice_data(data: InvoiceData) -> list[str]:
    """Returns list of errors (empty = valid)."""
    errors: list[str] = []

    if not data.invoice_number:
        errors.append("Invoice number is mandatory")
    if not _UUID_PATTERN.match(data.uuid or ""):
        errors.append("UUID must be 36 chars (hex digits and dashes)")

    # Seller identity
    seller = data.seller
    if not seller.name:
        errors.append("Seller name is mandatory")
    elif len(seller.name.encode("utf-8")) > _QR_MAX_BYTES:
        errors.append(f"Seller name exceeds {_QR_MAX_BYTES} UTF-8 bytes")
    if not seller.vat_number:
        errors.append("Seller VAT number is mandatory")
    elif not is_valid_vat_number(seller.vat_number):
        errors.append("Seller VAT number must be 15 digits starting with 3")
    if not seller.address:
        errors.append("Seller address is mandatory")

    # Buyer identity
    buyer = data.buyer
    if buyer is None or not buyer.name:
        errors.append("Buyer name is mandatory")
    elif buyer.vat_number and not is_valid_vat_number(buyer.vat_number):
        errors.append("Buyer VAT number must be 15 digits starting with 3")

    # Lines
    if not data.lines:
        errors.append("Invoice must have at least one line item")
    for line in data.lines:
        if not line.description:
            errors.append(f"Line {line.line_id} description is mandatory")
        if line.quantity <= 0:
            errors.append(f"Line {line.line_id} quantity must be positive")
        expected = q2(line.unit_price * line.quantity)
        if abs(expected - q2(line.amount)) > _TOLERANCE:
            errors.append(
                f"Line {line.line_id} amount ({q2(line.amount)}) "
                f"!= unit_price * qty ({expected})"
            )

    # Totals: VAT is always 15% of the subtotal
    totals = compute_totals(line.amount for line in data.lines)
    if abs(q2(data.subtotal) - totals.subtotal) > _TOLERANCE:
        errors.append(f"Subtotal ({q2(data.subtotal)}) != sum of line amounts ({totals.subtotal})")
    if q2(data.vat_amount) != q2(q2(data.subtotal) * VAT_RATE):
        errors.append(f"VAT amount ({q2(data.vat_amount)}) != 15% of subtotal")
    if q2(data.total) != q2(data.subtotal) + q2(data.vat_amount):
        errors.append(f"Total ({q2(data.total)}) != subtotal + VAT")

    if data.due_date is not None and to_utc(data.due_date) < to_utc(data.issue_date):
        errors.append("Due date precedes issue date")

    errors.extend(
        f"{label} contains characters not allowed in XML"
        for label, value in _text_fields(data)
        if value and _XML_INVALID_CHARS.search(value)
    )

    return errors


def _text_fields(data: InvoiceData) -> list[tuple[str, str | None]]:
    fields: list[tuple[str, str | None]] = [
        ("Invoice number", data.invoice_number),
        ("UUID", data.uuid),
        ("Previous invoice hash", data.previous_invoice_hash),
        ("Seller name", data.seller.name),
        ("Seller VAT number", data.seller.vat_number),
        ("Seller address", data.seller.address),
        ("Seller country code", data.seller.country_code),
    ]
    if data.buyer is not None:
        fields += [
            ("Buyer name", data.buyer.name),
            ("Buyer VAT number", data.buyer.vat_number),
            ("Buyer address", data.buyer.address),
            ("Buyer country code", data.buyer.country_code),
        ]
    fields += [(f"Line {line.line_id} description", line.description) for line in data.lines]
    return fields
