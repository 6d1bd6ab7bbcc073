"""E-Invoice orchestrator: build data → link chain → encode → hash → store → submit.

This is the entry point the HTTP layer calls. Processing writes the whole
ZATCA bundle in one transaction under the organization's chain lock;
submission always returns a ``{success, ...}`` dict and updates the invoice
status whichever way the authority answered.
"""

from __future__ import annotations

import base64
import binascii
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fatoora.app.core.config import Environment, ZatcaConfig
from fatoora.app.core.locks import chain_locks
from fatoora.app.models.client import Client
from fatoora.app.models.invoice import Invoice, InvoiceStatus, SubmissionType, ZatcaStatus
from fatoora.app.models.organization import OnboardingStatus, Organization
from fatoora.app.services.audit import log_action
from fatoora.app.services.zatca.api_client import Credentials
from fatoora.app.services.zatca.chain import ChainLink, ChainReport, advance_chain, link_to_chain, verify_chain
from fatoora.app.services.zatca.encoder import encode_invoice
from fatoora.app.services.zatca.errors import ChainIntegrityError, NotFoundError, ValidationError, ZatcaError
from fatoora.app.services.zatca.hashing import InvoiceCore, compute_hash
from fatoora.app.services.zatca.qr_code import generate_qr
from fatoora.app.services.zatca.submission import (
    Cleared,
    Rejected,
    Reported,
    SigningMaterial,
    SubmissionBundle,
    SubmissionOutcome,
    TransportFailure,
    claim_submission,
    error_entry,
    failed_results,
    record_outcome,
    requires_clearance,
    submit,
    to_result,
)
from fatoora.app.services.zatca.xml_builder import (
    BuyerInfo,
    InvoiceData,
    InvoiceLineData,
    SellerInfo,
    compute_totals,
    format_amount,
    format_timestamp,
    party_vat_number,
    q2,
)

logger = logging.getLogger(__name__)


# ─── Lookups ────────────────────────────────────────────────────────────────


def get_organization(db: Session, organization_id: int) -> Organization:
    org = db.get(Organization, organization_id)
    if org is None:
        raise NotFoundError(f"Organization {organization_id} not found")
    return org


def get_invoice(db: Session, invoice_id: int, organization_id: int) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if invoice is None or invoice.organization_id != organization_id:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def _seller_info(org: Organization) -> SellerInfo:
    return SellerInfo(
        name=org.name,
        vat_number=org.vat_number or "",
        address=org.address or "",
        country_code=org.country_code or "SA",
    )


def _buyer_info(client: Client | None) -> BuyerInfo:
    if client is None:
        raise ValidationError(["Invoice has no client"])
    return BuyerInfo(
        name=client.name,
        vat_number=client.vat_number or None,
        address=client.address,
    )


def build_invoice_data(
    org: Organization,
    client: Client | None,
    invoice: Invoice,
    *,
    invoice_uuid: str,
    link: ChainLink,
) -> InvoiceData:
    """Snapshot the invoice rows into encoder input.

    Totals are recomputed from the line amounts; stored totals that disagree
    are rejected rather than silently replaced.
    """
    lines = [
        InvoiceLineData(
            line_id=str(idx),
            description=item.description,
            quantity=Decimal(item.quantity),
            unit_price=Decimal(item.unit_price),
            amount=Decimal(item.amount),
        )
        for idx, item in enumerate(invoice.items, start=1)
    ]
    totals = compute_totals(line.amount for line in lines)

    mismatches = []
    if q2(invoice.subtotal) != totals.subtotal:
        mismatches.append(f"Stored subtotal {format_amount(invoice.subtotal)} != {format_amount(totals.subtotal)}")
    if q2(invoice.tax_total) != totals.vat_amount:
        mismatches.append(f"Stored VAT {format_amount(invoice.tax_total)} != {format_amount(totals.vat_amount)}")
    if q2(invoice.total) != totals.total:
        mismatches.append(f"Stored total {format_amount(invoice.total)} != {format_amount(totals.total)}")
    if lines and mismatches:
        raise ValidationError(mismatches)

    return InvoiceData(
        invoice_number=invoice.invoice_number,
        uuid=invoice_uuid,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        seller=_seller_info(org),
        buyer=_buyer_info(client),
        lines=lines,
        subtotal=totals.subtotal,
        vat_amount=totals.vat_amount,
        total=totals.total,
        previous_invoice_hash=link.previous_hash,
        icv=link.sequence,
    )


def _bundle_view(invoice: Invoice, config: ZatcaConfig) -> dict[str, Any]:
    buyer_vat = party_vat_number(invoice.zatca_xml or "", "AccountingCustomerParty")
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "uuid": invoice.zatca_uuid,
        "hash": invoice.zatca_hash,
        "previous_hash": invoice.zatca_prev_hash,
        "sequence": invoice.zatca_sequence,
        "qr_code": invoice.zatca_qr,
        "xml": invoice.zatca_xml,
        "requires_clearance": requires_clearance(buyer_vat, invoice.total, config.clearance_threshold),
    }


# ─── Processing ─────────────────────────────────────────────────────────────


def process_invoice(
    db: Session,
    invoice_id: int,
    organization_id: int,
    *,
    config: ZatcaConfig | None = None,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Derive and store the ZATCA bundle for one invoice.

    Idempotent: an invoice that already has a bundle gets it back unchanged.
    The UUID is assigned here once and never reassigned.
    """
    config = config or ZatcaConfig.from_settings()
    org = get_organization(db, organization_id)
    invoice = get_invoice(db, invoice_id, organization_id)
    if invoice.zatca_hash:
        return _bundle_view(invoice, config)

    with chain_locks.hold(organization_id):
        # Re-read under the lock: a concurrent call may have processed it
        invoice = db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        if invoice.zatca_hash:
            db.rollback()
            return _bundle_view(invoice, config)

        try:
            link = link_to_chain(db, organization_id)
            client = db.get(Client, invoice.client_id) if invoice.client_id is not None else None
            invoice_uuid = invoice.zatca_uuid or str(uuid.uuid4())
            data = build_invoice_data(org, client, invoice, invoice_uuid=invoice_uuid, link=link)

            encoded = encode_invoice(data)
            content_hash = compute_hash(InvoiceCore.from_invoice_data(data))

            invoice.zatca_uuid = invoice_uuid
            invoice.zatca_hash = content_hash
            invoice.zatca_prev_hash = link.previous_hash
            invoice.zatca_sequence = link.sequence
            invoice.zatca_xml = encoded.xml
            invoice.zatca_qr = encoded.qr_payload
            invoice.zatca_status = ZatcaStatus.PROCESSED.value
            db.flush()

            advance_chain(
                db,
                organization_id,
                invoice_id=invoice.id,
                content_hash=content_hash,
                link=link,
            )
            log_action(
                db,
                organization_id=organization_id,
                user_id=user_id,
                action="ZATCA_PROCESSED",
                entity="invoice",
                entity_id=str(invoice.id),
                details=f"Invoice {invoice.invoice_number} processed at chain position {link.sequence}",
                changes={"uuid": invoice_uuid, "hash": content_hash, "previous_hash": link.previous_hash},
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.warning("Chain position conflict for org %s invoice %s", organization_id, invoice_id)
            raise ChainIntegrityError(
                f"Invoice {invoice_id} lost the race for its chain position; retry processing"
            ) from exc
        except ZatcaError:
            db.rollback()
            raise
        except Exception:
            db.rollback()
            logger.exception("ZATCA processing failed: org=%s invoice_id=%s", organization_id, invoice_id)
            raise

    logger.info(
        "ZATCA processed: org=%s invoice=%s sequence=%s",
        organization_id,
        invoice.invoice_number,
        invoice.zatca_sequence,
    )
    return _bundle_view(invoice, config)


def get_or_generate_qr(db: Session, invoice_id: int, organization_id: int) -> str:
    """Stored QR payload if processed, otherwise one built from the current rows (not stored)."""
    invoice = get_invoice(db, invoice_id, organization_id)
    if invoice.zatca_qr:
        return invoice.zatca_qr

    org = get_organization(db, organization_id)
    return generate_qr(
        seller_name=org.name,
        vat_number=org.vat_number or "",
        timestamp=format_timestamp(invoice.issue_date),
        total_amount=format_amount(invoice.total),
        vat_amount=format_amount(invoice.tax_total),
    )


def get_invoice_xml(db: Session, invoice_id: int, organization_id: int) -> tuple[str, str]:
    """Return ``(filename, xml)``: the cleared document, else the signed one, else canonical."""
    invoice = get_invoice(db, invoice_id, organization_id)
    xml = invoice.zatca_cleared_xml or invoice.zatca_signed_xml or invoice.zatca_xml
    if not xml:
        raise NotFoundError(f"Invoice {invoice.invoice_number} has not been processed for ZATCA yet")
    return f"invoice-{invoice.invoice_number}.xml", xml


# ─── Reporting ──────────────────────────────────────────────────────────────


def compliance_status(db: Session, organization_id: int) -> dict[str, Any]:
    org = get_organization(db, organization_id)
    total = db.scalar(
        select(func.count()).select_from(Invoice).where(Invoice.organization_id == organization_id)
    ) or 0
    rows = db.execute(
        select(Invoice.zatca_status, func.count())
        .where(Invoice.organization_id == organization_id, Invoice.zatca_status.is_not(None))
        .group_by(Invoice.zatca_status)
    ).all()
    by_status = {status: count for status, count in rows}
    processed = sum(by_status.values())
    percentage = Decimal(processed * 100) / Decimal(total) if total else Decimal("0")

    return {
        "organization": {
            "name": org.name,
            "vat_number": org.vat_number,
            "onboarding_status": org.onboarding_status,
            "has_zatca_credentials": org.has_sandbox_credentials or org.has_production_credentials,
        },
        "invoices": {
            "total": total,
            "processed": processed,
            "pending": total - processed,
            "compliance_percentage": format_amount(percentage),
            "by_status": by_status,
        },
    }


def _recompute_hash(invoice: Invoice) -> str:
    # VAT numbers come from the stored XML so later edits to org/client rows
    # do not read as tampering
    xml = invoice.zatca_xml or ""
    return compute_hash(
        InvoiceCore(
            invoice_number=invoice.invoice_number,
            issue_date=invoice.issue_date,
            total=invoice.total,
            vat_amount=invoice.tax_total,
            seller_vat=party_vat_number(xml, "AccountingSupplierParty") or "",
            buyer_vat=party_vat_number(xml, "AccountingCustomerParty"),
        )
    )


def audit_chain(db: Session, organization_id: int) -> ChainReport:
    get_organization(db, organization_id)
    return verify_chain(db, organization_id, recompute=_recompute_hash)


# ─── Submission ─────────────────────────────────────────────────────────────


def _submission_material(
    org: Organization, environment: Environment, config: ZatcaConfig
) -> tuple[Credentials | None, SigningMaterial | None]:
    """Credential set for one environment. Sandbox and production never fall back to each other."""
    if environment == "production":
        if org.onboarding_status != OnboardingStatus.PRODUCTION_READY.value or not org.has_production_credentials:
            return None, None
        token, secret, cert = org.production_token, org.production_secret, org.production_certificate_pem
    else:
        if not org.has_sandbox_credentials:
            return None, None
        token, secret, cert = org.sandbox_token, org.sandbox_secret, org.sandbox_certificate_pem

    credentials = Credentials(token=token or "", secret=secret or "")
    if not org.private_key_pem or not cert:
        return credentials, None
    return credentials, SigningMaterial(
        private_key_pem=org.private_key_pem,
        certificate_pem=cert,
        passphrase=config.key_passphrase,
    )


def _apply_outcome(invoice: Invoice, outcome: SubmissionOutcome) -> None:
    response = outcome.response
    invoice.zatca_validation_results = response.validation_results
    invoice.submitted_at = datetime.now(timezone.utc)
    if outcome.signed_xml is not None:
        invoice.zatca_signed_xml = outcome.signed_xml
        invoice.zatca_signature = outcome.signature

    if isinstance(response, Cleared):
        invoice.status = InvoiceStatus.SUBMITTED.value
        invoice.zatca_status = ZatcaStatus.CLEARED.value
        if response.cleared_invoice:
            try:
                invoice.zatca_cleared_xml = base64.b64decode(response.cleared_invoice).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                logger.warning("clearedInvoice for %s is not base64 XML; not stored", invoice.invoice_number)
    elif isinstance(response, Reported):
        invoice.status = InvoiceStatus.SUBMITTED.value
        invoice.zatca_status = ZatcaStatus.REPORTED.value
    elif isinstance(response, Rejected):
        invoice.zatca_status = ZatcaStatus.REJECTED.value
    elif isinstance(response, TransportFailure):
        invoice.zatca_status = ZatcaStatus.SUBMISSION_FAILED.value


async def submit_invoice(
    db: Session,
    invoice_id: int,
    organization_id: int,
    *,
    use_sandbox: bool = True,
    config: ZatcaConfig | None = None,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Submit a processed invoice (processing it first if needed).

    Returns ``{success, submission_type, validation_results, cleared_invoice,
    qr_code_data}``. A repeat call for an already accepted ``{uuid, hash}``
    replays the stored result without contacting the authority.
    """
    config = config or ZatcaConfig.from_settings()
    org = get_organization(db, organization_id)
    invoice = get_invoice(db, invoice_id, organization_id)
    if not invoice.zatca_hash:
        process_invoice(db, invoice_id, organization_id, config=config, user_id=user_id)
        db.refresh(invoice)

    environment: Environment = "sandbox" if use_sandbox else "production"
    bundle = SubmissionBundle(
        invoice_number=invoice.invoice_number,
        uuid=invoice.zatca_uuid or "",
        content_hash=invoice.zatca_hash or "",
        xml=invoice.zatca_xml or "",
        total=invoice.total,
        buyer_vat=party_vat_number(invoice.zatca_xml or "", "AccountingCustomerParty"),
    )
    if invoice.submission_type:
        submission_type = SubmissionType(invoice.submission_type)
    elif requires_clearance(bundle.buyer_vat, bundle.total, config.clearance_threshold):
        submission_type = SubmissionType.CLEARANCE
    else:
        submission_type = SubmissionType.REPORTING

    credentials, signing = _submission_material(org, environment, config)
    if credentials is None or signing is None:
        outcome = await submit(
            bundle,
            credentials=credentials,
            signing=signing,
            environment=environment,
            config=config,
            submission_type=submission_type,
        )
        return to_result(outcome)

    record, replay = claim_submission(
        db,
        invoice_id=invoice.id,
        bundle=bundle,
        environment=environment,
        submission_type=submission_type,
        stale_after=timedelta(seconds=config.http_timeout * 2),
    )
    if replay is not None:
        logger.info("ZATCA submission of %s already accepted; replaying result", bundle.invoice_number)
        return replay
    if record is None:
        return {
            "success": False,
            "submission_type": submission_type.value,
            "validation_results": failed_results(
                error_entry("SUBMISSION_IN_PROGRESS", f"Invoice {bundle.invoice_number} is already being submitted")
            ),
            "cleared_invoice": None,
            "qr_code_data": None,
            "retryable": True,
        }

    outcome = await submit(
        bundle,
        credentials=credentials,
        signing=signing,
        environment=environment,
        config=config,
        submission_type=submission_type,
    )

    invoice.submission_type = invoice.submission_type or outcome.submission_type.value
    _apply_outcome(invoice, outcome)
    result = record_outcome(db, record, outcome)
    log_action(
        db,
        organization_id=organization_id,
        user_id=user_id,
        action="ZATCA_SUBMITTED",
        entity="invoice",
        entity_id=str(invoice.id),
        details=f"ZATCA {outcome.submission_type.value} ({environment}): {'SUCCESS' if outcome.success else 'FAILED'}",
        changes={"uuid": bundle.uuid, "zatca_status": invoice.zatca_status},
    )
    db.commit()
    return result
