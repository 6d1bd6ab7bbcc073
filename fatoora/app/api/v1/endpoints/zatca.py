from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from fatoora.app.api.deps import get_organization_id, get_user_id, get_zatca_config
from fatoora.app.core.config import ZatcaConfig
from fatoora.app.core.database import get_db
from fatoora.app.schemas.zatca import (
    ChainVerificationOut,
    ComplianceStatusOut,
    ProcessInvoiceOut,
    QrCodeOut,
    SubmitInvoiceIn,
    SubmitInvoiceOut,
    VatValidationIn,
    VatValidationOut,
)
from fatoora.app.services.zatca import einvoice_service
from fatoora.app.services.zatca.validation import validate_vat

logger = logging.getLogger(__name__)

router = APIRouter()


# ─── Invoice bundle ─────────────────────────────────────────────────────────


@router.post("/process/{invoice_id}", response_model=ProcessInvoiceOut)
def process_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    organization_id: int = Depends(get_organization_id),
    user_id: str | None = Depends(get_user_id),
    config: ZatcaConfig = Depends(get_zatca_config),
) -> ProcessInvoiceOut:
    result = einvoice_service.process_invoice(
        db, invoice_id, organization_id, config=config, user_id=user_id
    )
    return ProcessInvoiceOut(**result)


@router.get("/qrcode/{invoice_id}", response_model=QrCodeOut)
def get_qr_code(
    invoice_id: int,
    db: Session = Depends(get_db),
    organization_id: int = Depends(get_organization_id),
) -> QrCodeOut:
    return QrCodeOut(qr_code=einvoice_service.get_or_generate_qr(db, invoice_id, organization_id))


@router.get("/xml/{invoice_id}")
def download_xml(
    invoice_id: int,
    db: Session = Depends(get_db),
    organization_id: int = Depends(get_organization_id),
) -> Response:
    filename, xml = einvoice_service.get_invoice_xml(db, invoice_id, organization_id)
    return Response(
        content=xml.encode("utf-8"),
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ─── Submission ─────────────────────────────────────────────────────────────


@router.post("/submit/{invoice_id}", response_model=SubmitInvoiceOut)
async def submit_invoice(
    invoice_id: int,
    payload: SubmitInvoiceIn | None = None,
    db: Session = Depends(get_db),
    organization_id: int = Depends(get_organization_id),
    user_id: str | None = Depends(get_user_id),
    config: ZatcaConfig = Depends(get_zatca_config),
) -> SubmitInvoiceOut:
    use_sandbox = payload.use_sandbox if payload is not None else True
    result = await einvoice_service.submit_invoice(
        db,
        invoice_id,
        organization_id,
        use_sandbox=use_sandbox,
        config=config,
        user_id=user_id,
    )
    logger.info(
        "Submit endpoint: org=%s invoice_id=%s success=%s", organization_id, invoice_id, result["success"]
    )
    return SubmitInvoiceOut(**result)


# ─── Utilities ──────────────────────────────────────────────────────────────


@router.post("/validate-vat", response_model=VatValidationOut)
def validate_vat_number(payload: VatValidationIn) -> VatValidationOut:
    return VatValidationOut(**validate_vat(payload.vat_number))


@router.get("/compliance-status", response_model=ComplianceStatusOut)
def get_compliance_status(
    db: Session = Depends(get_db),
    organization_id: int = Depends(get_organization_id),
) -> ComplianceStatusOut:
    return ComplianceStatusOut(**einvoice_service.compliance_status(db, organization_id))


@router.get("/chain-verification", response_model=ChainVerificationOut)
def verify_chain(
    db: Session = Depends(get_db),
    organization_id: int = Depends(get_organization_id),
) -> ChainVerificationOut:
    report = einvoice_service.audit_chain(db, organization_id)
    return ChainVerificationOut(**asdict(report))
