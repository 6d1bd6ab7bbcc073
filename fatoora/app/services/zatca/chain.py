"""Per-organization invoice hash chain.

Every processed invoice stores the content hash of the invoice processed
before it for the same organization. ``ChainHead`` is the single latest-hash
pointer: it is read under a row lock and advanced in the same transaction
that writes the new invoice, so the chain can only be extended, never forked.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fatoora.app.models.chain import ChainHead
from fatoora.app.models.invoice import Invoice
from fatoora.app.services.zatca.errors import ChainIntegrityError

logger = logging.getLogger(__name__)

GENESIS_HASH = "00000000"


@dataclass(frozen=True)
class ChainLink:
    previous_hash: str
    sequence: int


@dataclass
class ChainReport:
    organization_id: int
    length: int
    valid: bool
    broken_at: str | None = None
    reason: str | None = None


def _locked_head(db: Session, organization_id: int) -> ChainHead | None:
    stmt = (
        select(ChainHead)
        .where(ChainHead.organization_id == organization_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def link_to_chain(db: Session, organization_id: int) -> ChainLink:
    """Return the previous hash and position the next invoice must take.

    Fails closed: a head that cannot be matched to a stored invoice hash, or
    processed invoices without a head, raise ``ChainIntegrityError``.
    """
    head = _locked_head(db, organization_id)

    if head is None:
        processed = db.scalar(
            select(func.count())
            .select_from(Invoice)
            .where(Invoice.organization_id == organization_id, Invoice.zatca_hash.is_not(None))
        )
        if processed:
            raise ChainIntegrityError(
                f"Organization {organization_id} has {processed} processed invoices but no chain head"
            )
        return ChainLink(previous_hash=GENESIS_HASH, sequence=1)

    latest = db.get(Invoice, head.latest_invoice_id)
    if latest is None or latest.organization_id != organization_id:
        raise ChainIntegrityError(
            f"Chain head of organization {organization_id} points at missing invoice {head.latest_invoice_id}"
        )
    if not latest.zatca_hash:
        raise ChainIntegrityError(
            f"Invoice {latest.invoice_number} at the chain head has no stored hash"
        )
    if latest.zatca_hash != head.latest_hash or latest.zatca_sequence != head.sequence:
        raise ChainIntegrityError(
            f"Invoice {latest.invoice_number} does not match the chain head of organization {organization_id}"
        )
    return ChainLink(previous_hash=head.latest_hash, sequence=head.sequence + 1)


def advance_chain(
    db: Session,
    organization_id: int,
    *,
    invoice_id: int,
    content_hash: str,
    link: ChainLink,
) -> None:
    """Move the head to ``content_hash``. The link must still describe the current head."""
    head = db.get(ChainHead, organization_id)
    if head is None:
        if link.sequence != 1 or link.previous_hash != GENESIS_HASH:
            raise ChainIntegrityError(
                f"Chain head of organization {organization_id} vanished while linking"
            )
        db.add(
            ChainHead(
                organization_id=organization_id,
                latest_invoice_id=invoice_id,
                latest_hash=content_hash,
                sequence=1,
            )
        )
    else:
        if head.sequence + 1 != link.sequence or head.latest_hash != link.previous_hash:
            raise ChainIntegrityError(
                f"Chain head of organization {organization_id} moved while linking"
            )
        head.latest_invoice_id = invoice_id
        head.latest_hash = content_hash
        head.sequence = link.sequence
    db.flush()
    logger.info(
        "Chain advanced: org=%s sequence=%s invoice_id=%s", organization_id, link.sequence, invoice_id
    )


def verify_chain(
    db: Session,
    organization_id: int,
    recompute: Callable[[Invoice], str] | None = None,
) -> ChainReport:
    """Walk the chain in sequence order and report the first broken link.

    When ``recompute`` is given, each invoice's stored hash is also checked
    against a fresh computation from its current fields.
    """
    invoices = db.scalars(
        select(Invoice)
        .where(Invoice.organization_id == organization_id, Invoice.zatca_sequence.is_not(None))
        .order_by(Invoice.zatca_sequence)
    ).all()

    def _broken(inv: Invoice, reason: str) -> ChainReport:
        logger.warning("Chain broken: org=%s invoice=%s reason=%s", organization_id, inv.invoice_number, reason)
        return ChainReport(organization_id, len(invoices), False, inv.invoice_number, reason)

    expected_prev = GENESIS_HASH
    for position, inv in enumerate(invoices, start=1):
        if inv.zatca_sequence != position:
            return _broken(inv, f"sequence gap: expected {position}, found {inv.zatca_sequence}")
        if inv.zatca_prev_hash != expected_prev:
            return _broken(inv, "previous hash does not match the preceding invoice")
        if recompute is not None and recompute(inv) != inv.zatca_hash:
            return _broken(inv, "stored content hash does not match invoice fields")
        expected_prev = inv.zatca_hash  # type: ignore[assignment]

    head = db.get(ChainHead, organization_id)
    if invoices and (head is None or head.latest_hash != expected_prev or head.sequence != len(invoices)):
        return _broken(invoices[-1], "chain head does not point at the last invoice")

    return ChainReport(organization_id, len(invoices), True)
