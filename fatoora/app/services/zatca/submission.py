"""Submission gateway: clearance vs reporting, signed envelope, typed outcome.

``submit`` never raises. Every path ends in one of the four outcome variants,
and ``to_result`` flattens any of them into the ``{success, ...}`` shape callers
use to update the invoice status.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fatoora.app.core.config import Environment, ZatcaConfig
from fatoora.app.models.invoice import SubmissionType
from fatoora.app.models.submission import ZatcaSubmission
from fatoora.app.services.zatca.api_client import Credentials, ZatcaApiClient
from fatoora.app.services.zatca.errors import AuthorityError, SigningError, TransportError
from fatoora.app.services.zatca.signing import extract_signature_value, sign_invoice_xml

logger = logging.getLogger(__name__)

OUTCOME_PENDING = "pending"


def requires_clearance(buyer_vat: str | None, total: Decimal, threshold: Decimal) -> bool:
    """B2C buyers, and any invoice under the threshold, go through clearance."""
    if not buyer_vat:
        return True
    return Decimal(total) < threshold


def error_entry(code: str, message: str, category: str = "TECHNICAL") -> dict[str, str]:
    return {
        "type": "ERROR",
        "code": code,
        "category": category,
        "message": message,
        "status": "ERROR",
    }


def failed_results(*entries: dict[str, Any]) -> dict[str, Any]:
    return {"status": "FAILED", "errorMessages": list(entries)}


# ─── Outcome variants ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Cleared:
    validation_results: dict[str, Any]
    cleared_invoice: str | None = None
    qr_code_data: str | None = None


@dataclass(frozen=True)
class Reported:
    validation_results: dict[str, Any]


@dataclass(frozen=True)
class Rejected:
    validation_results: dict[str, Any]
    status_code: int | None = None


@dataclass(frozen=True)
class TransportFailure:
    cause: str
    validation_results: dict[str, Any] = field(default_factory=dict)


AuthorityResponse = Union[Cleared, Reported, Rejected, TransportFailure]


def outcome_name(outcome: AuthorityResponse) -> str:
    if isinstance(outcome, Cleared):
        return "cleared"
    if isinstance(outcome, Reported):
        return "reported"
    if isinstance(outcome, Rejected):
        return "rejected"
    if isinstance(outcome, TransportFailure):
        return "transport_failure"
    raise TypeError(f"Unknown submission outcome: {outcome!r}")


def is_success(outcome: AuthorityResponse) -> bool:
    return isinstance(outcome, (Cleared, Reported))


@dataclass(frozen=True)
class SubmissionBundle:
    """What goes to the authority for one processed invoice."""

    invoice_number: str
    uuid: str
    content_hash: str
    xml: str
    total: Decimal
    buyer_vat: str | None = None


@dataclass(frozen=True)
class SigningMaterial:
    private_key_pem: bytes
    certificate_pem: bytes
    passphrase: str = ""


@dataclass(frozen=True)
class SubmissionOutcome:
    submission_type: SubmissionType
    response: AuthorityResponse
    signed_xml: str | None = None
    signature: str | None = None

    @property
    def success(self) -> bool:
        return is_success(self.response)


def classify_response(result: dict[str, Any], submission_type: SubmissionType) -> AuthorityResponse:
    """Map a parsed authority body onto an outcome. Any errorMessages means rejected."""
    validation_results: dict[str, Any] = result.get("validationResults") or {}
    errors = validation_results.get("errorMessages") or []
    if errors:
        return Rejected(validation_results=validation_results)
    if result.get("clearanceStatus") == "NOT_CLEARED" or result.get("reportingStatus") == "NOT_REPORTED":
        return Rejected(validation_results=validation_results)
    if submission_type == SubmissionType.CLEARANCE:
        return Cleared(
            validation_results=validation_results,
            cleared_invoice=result.get("clearedInvoice"),
            qr_code_data=result.get("qrCodeData"),
        )
    return Reported(validation_results=validation_results)


def to_result(outcome: SubmissionOutcome) -> dict[str, Any]:
    """Flatten an outcome into ``{success, submission_type, validation_results, ...}``."""
    response = outcome.response
    result: dict[str, Any] = {
        "success": outcome.success,
        "submission_type": outcome.submission_type.value,
        "validation_results": response.validation_results,
        "cleared_invoice": None,
        "qr_code_data": None,
    }
    if isinstance(response, Cleared):
        result["cleared_invoice"] = response.cleared_invoice
        result["qr_code_data"] = response.qr_code_data
    elif isinstance(response, TransportFailure):
        result["retryable"] = True
    return result


# ─── Submit ─────────────────────────────────────────────────────────────────


async def submit(
    bundle: SubmissionBundle,
    *,
    credentials: Credentials | None,
    signing: SigningMaterial | None,
    environment: Environment,
    config: ZatcaConfig,
    submission_type: SubmissionType | None = None,
) -> SubmissionOutcome:
    """Sign ``bundle`` and send it to the clearance or reporting endpoint.

    ``submission_type`` is taken as given when the invoice already has one
    recorded; otherwise it is decided here from the bundle's buyer and total.
    """
    if submission_type is None:
        clearance = requires_clearance(bundle.buyer_vat, bundle.total, config.clearance_threshold)
        submission_type = SubmissionType.CLEARANCE if clearance else SubmissionType.REPORTING

    if credentials is None or not credentials.token or not credentials.secret or signing is None:
        logger.warning(
            "ZATCA %s credentials not configured for invoice %s", environment, bundle.invoice_number
        )
        return SubmissionOutcome(
            submission_type,
            Rejected(
                failed_results(
                    error_entry(
                        "CREDENTIALS_NOT_CONFIGURED",
                        f"No {environment} credentials. Complete onboarding first.",
                        category="CONFIGURATION",
                    )
                )
            ),
        )

    try:
        # RSA signing is CPU-bound; keep it off the event loop
        signed_xml = await asyncio.to_thread(
            sign_invoice_xml,
            bundle.xml,
            signing.private_key_pem,
            signing.certificate_pem,
            signing.passphrase,
        )
        signature = extract_signature_value(signed_xml)
    except SigningError as exc:
        logger.error("Signing failed for invoice %s: %s", bundle.invoice_number, exc)
        return SubmissionOutcome(
            submission_type,
            Rejected(failed_results(error_entry("SIGNING_ERROR", str(exc), category="SIGNING"))),
        )

    xml_b64 = base64.b64encode(signed_xml.encode("utf-8")).decode("ascii")
    client = ZatcaApiClient(config, environment=environment, credentials=credentials)

    try:
        if submission_type == SubmissionType.CLEARANCE:
            result = await client.clear_invoice(bundle.content_hash, bundle.uuid, xml_b64)
        else:
            result = await client.report_invoice(bundle.content_hash, bundle.uuid, xml_b64)
    except TransportError as exc:
        logger.warning("ZATCA %s for %s failed in transit: %s", submission_type.value, bundle.invoice_number, exc)
        response: AuthorityResponse = TransportFailure(
            cause=str(exc),
            validation_results=failed_results(error_entry("SUBMISSION_ERROR", str(exc))),
        )
    except AuthorityError as exc:
        logger.warning(
            "ZATCA %s for %s rejected: code=%s status=%s",
            submission_type.value,
            bundle.invoice_number,
            exc.error_code,
            exc.status_code,
        )
        entries = exc.raw_errors or [error_entry(exc.error_code, str(exc), category="AUTHORITY")]
        response = Rejected(failed_results(*entries), status_code=exc.status_code)
    else:
        response = classify_response(result, submission_type)

    outcome = SubmissionOutcome(submission_type, response, signed_xml=signed_xml, signature=signature)
    logger.info(
        "ZATCA %s for %s (%s): %s",
        submission_type.value,
        bundle.invoice_number,
        environment,
        outcome_name(response),
    )
    return outcome


# ─── Idempotency records ────────────────────────────────────────────────────


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def claim_submission(
    db: Session,
    *,
    invoice_id: int,
    bundle: SubmissionBundle,
    environment: Environment,
    submission_type: SubmissionType,
    stale_after: timedelta,
) -> tuple[ZatcaSubmission | None, dict[str, Any] | None]:
    """Reserve the ``{uuid, hash, environment}`` key before calling the authority.

    Returns ``(record, None)`` when this caller may submit, ``(None, result)``
    when a previous success should be replayed, and ``(None, None)`` when
    another attempt is in flight. Failed attempts can be claimed again.
    """
    now = datetime.now(timezone.utc)
    stmt = select(ZatcaSubmission).where(
        ZatcaSubmission.invoice_uuid == bundle.uuid,
        ZatcaSubmission.invoice_hash == bundle.content_hash,
        ZatcaSubmission.environment == environment,
    )
    record = db.execute(stmt.with_for_update()).scalar_one_or_none()

    if record is None:
        record = ZatcaSubmission(
            invoice_id=invoice_id,
            invoice_uuid=bundle.uuid,
            invoice_hash=bundle.content_hash,
            environment=environment,
            submission_type=submission_type.value,
            outcome=OUTCOME_PENDING,
            success=False,
            attempts=1,
            updated_at=now,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Submission of %s already claimed by a concurrent request", bundle.invoice_number)
            return None, None
        return record, None

    if record.success:
        return None, dict(record.response or {})

    if record.outcome == OUTCOME_PENDING:
        claimed_at = _aware(record.updated_at)
        if claimed_at is not None and now - claimed_at < stale_after:
            return None, None
        logger.warning("Reclaiming stale submission of %s", bundle.invoice_number)

    record.outcome = OUTCOME_PENDING
    record.attempts = (record.attempts or 0) + 1
    record.updated_at = now
    db.commit()
    return record, None


def record_outcome(db: Session, record: ZatcaSubmission, outcome: SubmissionOutcome) -> dict[str, Any]:
    """Store the flattened result on the idempotency row. Does not commit."""
    result = to_result(outcome)
    record.outcome = outcome_name(outcome.response)
    record.success = outcome.success
    record.response = result
    return result
