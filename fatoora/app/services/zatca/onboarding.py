"""ZATCA onboarding state machine.

NOT_CONFIGURED → CSR_GENERATED → COMPLIANCE_VERIFIED → PRODUCTION_READY

Each step validates the current state, does its crypto/network work, and
only then writes to the organization row. A failure at any point leaves the
stored state and credentials exactly as they were. Concurrent steps for the
same organization are detected by the row's version column: the loser gets
``OnboardingConflictError`` and nothing it did is persisted.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from fatoora.app.core.config import ZatcaConfig
from fatoora.app.models.organization import OnboardingStatus, Organization
from fatoora.app.services.audit import log_action
from fatoora.app.services.zatca.api_client import Credentials, ZatcaApiClient
from fatoora.app.services.zatca.errors import (
    AuthorityError,
    OnboardingConflictError,
    OnboardingStateError,
    ValidationError,
)
from fatoora.app.services.zatca.signing import (
    CsrIdentity,
    certificate_from_token,
    encode_csr,
    generate_csr,
    generate_key_pair,
)

logger = logging.getLogger(__name__)


@dataclass
class CsrResult:
    csr_pem: str
    csr_base64: str
    private_key_pem: str


@dataclass
class CsidResult:
    token: str
    secret: str
    request_id: str
    disposition_message: str


def _status(org: Organization) -> OnboardingStatus:
    return OnboardingStatus(org.onboarding_status or OnboardingStatus.NOT_CONFIGURED.value)


def _require(org: Organization, *allowed: OnboardingStatus, step: str) -> OnboardingStatus:
    current = _status(org)
    if current not in allowed:
        expected = " or ".join(s.value for s in allowed)
        raise OnboardingStateError(
            f"Cannot run {step} while onboarding is {current.value}; requires {expected}"
        )
    return current


def _commit(db: Session, organization_id: int, step: str) -> None:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Onboarding %s for org %s lost a concurrent update", step, organization_id)
        raise OnboardingConflictError(
            f"Organization {organization_id} was changed by a concurrent onboarding step; {step} was not saved"
        ) from exc


def _issued_credentials(result: dict[str, Any], step: str) -> tuple[str, str, bytes, str, str]:
    """Pull token, secret, certificate and request id out of a CSID response."""
    disposition = str(result.get("dispositionMessage", ""))
    if disposition != "ISSUED":
        raise AuthorityError(
            status_code=200,
            error_code="NOT_ISSUED",
            message=f"ZATCA did not issue {step} certificate. dispositionMessage: {disposition}",
        )
    token = result.get("binarySecurityToken") or ""
    secret = result.get("secret") or ""
    if not token or not secret:
        raise AuthorityError(
            status_code=200,
            error_code="INCOMPLETE_RESPONSE",
            message=f"ZATCA {step} response is missing binarySecurityToken or secret",
        )
    cert_pem = certificate_from_token(token)
    # ZATCA may return requestID as int
    request_id = str(result.get("requestID", ""))
    return token, secret, cert_pem, request_id, disposition


def identity_for(
    org: Organization,
    *,
    org_unit: str | None = None,
    organization_identifier: str | None = None,
    invoice_type: str | None = None,
    location: str | None = None,
    industry: str | None = None,
) -> CsrIdentity:
    return CsrIdentity(
        common_name=org.name,
        organization=org.name,
        serial_number=org.vat_number or "",
        organization_identifier=organization_identifier or org.vat_number or "",
        org_unit=org_unit or CsrIdentity.org_unit,
        country=org.country_code or CsrIdentity.country,
        invoice_type=invoice_type or CsrIdentity.invoice_type,
        location=location or org.address or CsrIdentity.location,
        industry=industry or CsrIdentity.industry,
    )


# ─── Steps ──────────────────────────────────────────────────────────────────


def generate_csr_for_org(
    db: Session,
    org: Organization,
    *,
    config: ZatcaConfig,
    identity: CsrIdentity | None = None,
    user_id: str | None = None,
) -> CsrResult:
    """NOT_CONFIGURED|CSR_GENERATED → CSR_GENERATED. No network call.

    Generates a new key pair; the private key PEM is returned once and stored
    (encrypted when a passphrase is configured).
    """
    _require(org, OnboardingStatus.NOT_CONFIGURED, OnboardingStatus.CSR_GENERATED, step="CSR generation")
    org_id = org.id
    identity = identity or identity_for(org)

    key_pair = generate_key_pair(
        algorithm=config.key_algorithm,  # type: ignore[arg-type]
        key_size=config.rsa_key_size,
        passphrase=config.key_passphrase,
    )
    csr_pem = generate_csr(
        identity,
        key_pair.private_key_pem,
        environment=config.onboarding_environment,
        passphrase=config.key_passphrase,
    )

    org.private_key_pem = key_pair.private_key_pem
    org.csr_pem = csr_pem
    org.onboarding_status = OnboardingStatus.CSR_GENERATED.value

    log_action(
        db,
        organization_id=org_id,
        user_id=user_id,
        action="CSR_GENERATED",
        entity="organization",
        entity_id=str(org_id),
        details=f"CSR generated for {identity.common_name} ({config.key_algorithm})",
        changes={"org_unit": identity.org_unit, "invoice_type": identity.invoice_type},
    )
    _commit(db, org_id, "CSR generation")
    logger.info("Onboarding: org=%s CSR generated", org_id)

    return CsrResult(
        csr_pem=csr_pem.decode("utf-8"),
        csr_base64=encode_csr(csr_pem),
        private_key_pem=key_pair.private_key_pem.decode("utf-8"),
    )


def _resolve_csr(org: Organization, csr: str | None) -> str:
    """Return base64(PEM) of the CSR to submit, checking a caller CSR belongs to the stored key."""
    if not org.csr_pem:
        raise OnboardingStateError("No CSR stored. Generate CSR first.")
    if not csr:
        return encode_csr(org.csr_pem)

    candidate = csr.strip()
    if not candidate.startswith("-----BEGIN"):
        try:
            candidate = base64.b64decode(candidate, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValidationError(["CSR must be PEM or base64-encoded PEM"]) from exc
    try:
        supplied = x509.load_pem_x509_csr(candidate.encode("utf-8"))
    except ValueError as exc:
        raise ValidationError(["CSR could not be parsed"]) from exc

    stored = x509.load_pem_x509_csr(org.csr_pem)
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der = serialization.Encoding.DER
    if supplied.public_key().public_bytes(der, spki) != stored.public_key().public_bytes(der, spki):
        raise ValidationError(["CSR was not generated from this organization's stored key"])
    return encode_csr(candidate.encode("utf-8"))


async def compliance_check(
    db: Session,
    org: Organization,
    *,
    config: ZatcaConfig,
    otp: str,
    csr: str | None = None,
    user_id: str | None = None,
) -> CsidResult:
    """CSR_GENERATED|COMPLIANCE_VERIFIED → COMPLIANCE_VERIFIED.

    Exchanges the CSR + OTP for the compliance (sandbox) CSID. A rejected
    OTP raises ``AuthorityError`` and nothing is written.
    """
    _require(
        org,
        OnboardingStatus.CSR_GENERATED,
        OnboardingStatus.COMPLIANCE_VERIFIED,
        step="compliance check",
    )
    if not otp or not otp.strip():
        raise ValidationError(["OTP is required"])
    org_id = org.id
    csr_b64 = _resolve_csr(org, csr)

    client = ZatcaApiClient(config, environment=config.onboarding_environment)
    result = await client.request_compliance_csid(csr_b64, otp.strip())
    token, secret, cert_pem, request_id, disposition = _issued_credentials(result, "compliance")

    org.sandbox_token = token
    org.sandbox_secret = secret
    org.sandbox_certificate_pem = cert_pem
    org.compliance_request_id = request_id
    org.onboarding_status = OnboardingStatus.COMPLIANCE_VERIFIED.value

    log_action(
        db,
        organization_id=org_id,
        user_id=user_id,
        action="COMPLIANCE_CSID_RECEIVED",
        entity="organization",
        entity_id=str(org_id),
        details=f"Compliance check passed (request {request_id})",
        changes={"request_id": request_id, "disposition": disposition},
    )
    _commit(db, org_id, "compliance check")
    logger.info("Onboarding: org=%s compliance CSID issued request_id=%s", org_id, request_id)

    return CsidResult(token=token, secret=secret, request_id=request_id, disposition_message=disposition)


async def request_production_csid(
    db: Session,
    org: Organization,
    *,
    config: ZatcaConfig,
    compliance_request_id: str | None = None,
    user_id: str | None = None,
) -> CsidResult:
    """COMPLIANCE_VERIFIED → PRODUCTION_READY.

    Authenticates with the compliance CSID. On failure the organization stays
    at COMPLIANCE_VERIFIED and can keep submitting in sandbox.
    """
    _require(org, OnboardingStatus.COMPLIANCE_VERIFIED, step="production CSID request")
    if not org.has_sandbox_credentials:
        raise OnboardingStateError("Compliance credentials missing. Run the compliance check first.")
    req_id = compliance_request_id or org.compliance_request_id
    if not req_id:
        raise OnboardingStateError("No compliance_request_id provided or stored.")
    org_id = org.id

    client = ZatcaApiClient(
        config,
        environment=config.onboarding_environment,
        credentials=Credentials(token=org.sandbox_token or "", secret=org.sandbox_secret or ""),
    )
    result = await client.request_production_csid(req_id)
    token, secret, cert_pem, request_id, disposition = _issued_credentials(result, "production")

    org.production_token = token
    org.production_secret = secret
    org.production_certificate_pem = cert_pem
    org.production_request_id = request_id
    org.onboarding_status = OnboardingStatus.PRODUCTION_READY.value

    log_action(
        db,
        organization_id=org_id,
        user_id=user_id,
        action="PRODUCTION_CSID_RECEIVED",
        entity="organization",
        entity_id=str(org_id),
        details=f"Production CSID issued (request {request_id})",
        changes={"request_id": request_id, "compliance_request_id": req_id, "disposition": disposition},
    )
    _commit(db, org_id, "production CSID request")
    logger.info("Onboarding: org=%s production CSID issued request_id=%s", org_id, request_id)

    return CsidResult(token=token, secret=secret, request_id=request_id, disposition_message=disposition)


async def renew_production_csid(
    db: Session,
    org: Organization,
    *,
    config: ZatcaConfig,
    otp: str,
    user_id: str | None = None,
) -> CsidResult:
    """PRODUCTION_READY → PRODUCTION_READY with a superseding production CSID.

    Sends the stored CSR with a fresh OTP, authenticated by the current
    production CSID. The old credentials stay in place until this succeeds.
    """
    _require(org, OnboardingStatus.PRODUCTION_READY, step="production CSID renewal")
    if not org.has_production_credentials:
        raise OnboardingStateError("Production credentials missing. Complete onboarding first.")
    if not otp or not otp.strip():
        raise ValidationError(["OTP is required"])
    org_id = org.id
    csr_b64 = _resolve_csr(org, None)

    client = ZatcaApiClient(
        config,
        environment=config.onboarding_environment,
        credentials=Credentials(token=org.production_token or "", secret=org.production_secret or ""),
    )
    result = await client.renew_production_csid(csr_b64, otp.strip())
    token, secret, cert_pem, request_id, disposition = _issued_credentials(result, "renewed production")

    org.production_token = token
    org.production_secret = secret
    org.production_certificate_pem = cert_pem
    org.production_request_id = request_id

    log_action(
        db,
        organization_id=org_id,
        user_id=user_id,
        action="PRODUCTION_CSID_RENEWED",
        entity="organization",
        entity_id=str(org_id),
        details=f"Production CSID renewed (request {request_id})",
        changes={"request_id": request_id, "disposition": disposition},
    )
    _commit(db, org_id, "production CSID renewal")
    logger.info("Onboarding: org=%s production CSID renewed request_id=%s", org_id, request_id)

    return CsidResult(token=token, secret=secret, request_id=request_id, disposition_message=disposition)


def onboarding_status(org: Organization) -> dict[str, Any]:
    status = _status(org)
    if status == OnboardingStatus.PRODUCTION_READY:
        environment: str | None = "production"
    elif org.has_sandbox_credentials:
        environment = "sandbox"
    else:
        environment = None
    return {
        "onboarding_status": status.value,
        "has_csr": org.csr_pem is not None,
        "has_sandbox_credentials": org.has_sandbox_credentials,
        "has_production_credentials": org.has_production_credentials,
        "submission_environment": environment,
    }
