from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ProcessInvoiceOut(BaseModel):
    invoice_id: int
    invoice_number: str
    uuid: str
    hash: str
    previous_hash: str
    sequence: int
    qr_code: str
    xml: str
    requires_clearance: bool


class QrCodeOut(BaseModel):
    qr_code: str


class SubmitInvoiceIn(BaseModel):
    use_sandbox: bool = True


class SubmitInvoiceOut(BaseModel):
    success: bool
    submission_type: str
    validation_results: dict[str, Any] | None = None
    cleared_invoice: str | None = None
    qr_code_data: str | None = None
    retryable: bool = False


class VatValidationIn(BaseModel):
    vat_number: str = Field(min_length=1)


class VatValidationOut(BaseModel):
    vat_number: str
    is_valid: bool
    country: str
    format: str


class OrganizationComplianceOut(BaseModel):
    name: str
    vat_number: str | None
    onboarding_status: str
    has_zatca_credentials: bool


class InvoiceComplianceOut(BaseModel):
    total: int
    processed: int
    pending: int
    compliance_percentage: str
    by_status: dict[str, int]


class ComplianceStatusOut(BaseModel):
    organization: OrganizationComplianceOut
    invoices: InvoiceComplianceOut


class ChainVerificationOut(BaseModel):
    organization_id: int
    length: int
    valid: bool
    broken_at: str | None = None
    reason: str | None = None
