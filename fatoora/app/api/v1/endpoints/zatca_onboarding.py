from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from fatoora.app.api.deps import get_current_organization, get_user_id, get_zatca_config
from fatoora.app.core.config import ZatcaConfig
from fatoora.app.core.database import get_db
from fatoora.app.models.organization import Organization
from fatoora.app.services.zatca import onboarding

router = APIRouter()


# ─── Schemas ─────────────────────────────────────────────────────────────────


class CsrRequest(BaseModel):
    org_unit: str | None = None
    organization_identifier: str | None = None
    invoice_type: str | None = None
    location: str | None = None
    industry: str | None = None


class CsrResponse(BaseModel):
    csr: str
    csr_pem: str
    private_key: str
    message: str


class ComplianceCheckRequest(BaseModel):
    otp: str = Field(min_length=1)
    csr: str | None = None


class CsidResponse(BaseModel):
    binary_security_token: str
    request_id: str
    disposition_message: str
    message: str


class ProductionCsidRequest(BaseModel):
    compliance_request_id: str | None = None


class RenewCsidRequest(BaseModel):
    otp: str = Field(min_length=1)


class OnboardingStatusResponse(BaseModel):
    onboarding_status: str
    has_csr: bool = False
    has_sandbox_credentials: bool = False
    has_production_credentials: bool = False
    submission_environment: str | None = None


def _csid_response(result: onboarding.CsidResult, message: str) -> CsidResponse:
    # The secret is returned by the authority once; it stays in storage only
    return CsidResponse(
        binary_security_token=result.token,
        request_id=result.request_id,
        disposition_message=result.disposition_message,
        message=message,
    )


# ─── Endpoints ───────────────────────────────────────────────────────────────


@router.post("/generate-csr", response_model=CsrResponse)
def generate_csr_endpoint(
    payload: CsrRequest | None = None,
    db: Session = Depends(get_db),
    org: Organization = Depends(get_current_organization),
    user_id: str | None = Depends(get_user_id),
    config: ZatcaConfig = Depends(get_zatca_config),
) -> CsrResponse:
    payload = payload or CsrRequest()
    identity = onboarding.identity_for(
        org,
        org_unit=payload.org_unit,
        organization_identifier=payload.organization_identifier,
        invoice_type=payload.invoice_type,
        location=payload.location,
        industry=payload.industry,
    )
    result = onboarding.generate_csr_for_org(db, org, config=config, identity=identity, user_id=user_id)
    return CsrResponse(
        csr=result.csr_base64,
        csr_pem=result.csr_pem,
        private_key=result.private_key_pem,
        message="CSR generated. Save the private key now; it is not shown again. Submit the CSR with an OTP.",
    )


@router.post("/compliance-check", response_model=CsidResponse)
async def compliance_check(
    payload: ComplianceCheckRequest,
    db: Session = Depends(get_db),
    org: Organization = Depends(get_current_organization),
    user_id: str | None = Depends(get_user_id),
    config: ZatcaConfig = Depends(get_zatca_config),
) -> CsidResponse:
    result = await onboarding.compliance_check(
        db, org, config=config, otp=payload.otp, csr=payload.csr, user_id=user_id
    )
    return _csid_response(result, "Compliance CSID received. Test in sandbox, then request the production CSID.")


@router.post("/production-csid", response_model=CsidResponse)
async def production_csid(
    payload: ProductionCsidRequest | None = None,
    db: Session = Depends(get_db),
    org: Organization = Depends(get_current_organization),
    user_id: str | None = Depends(get_user_id),
    config: ZatcaConfig = Depends(get_zatca_config),
) -> CsidResponse:
    req_id = payload.compliance_request_id if payload is not None else None
    result = await onboarding.request_production_csid(
        db, org, config=config, compliance_request_id=req_id, user_id=user_id
    )
    return _csid_response(result, "Production CSID received. ZATCA integration is now live.")


@router.post("/renew-csid", response_model=CsidResponse)
async def renew_csid(
    payload: RenewCsidRequest,
    db: Session = Depends(get_db),
    org: Organization = Depends(get_current_organization),
    user_id: str | None = Depends(get_user_id),
    config: ZatcaConfig = Depends(get_zatca_config),
) -> CsidResponse:
    result = await onboarding.renew_production_csid(db, org, config=config, otp=payload.otp, user_id=user_id)
    return _csid_response(result, "Production CSID renewed successfully.")


@router.get("/onboarding-status", response_model=OnboardingStatusResponse)
def get_onboarding_status(org: Organization = Depends(get_current_organization)) -> OnboardingStatusResponse:
    return OnboardingStatusResponse(**onboarding.onboarding_status(org))
