from __future__ import annotations

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from fatoora.app.core.config import ZatcaConfig
from fatoora.app.core.database import get_db
from fatoora.app.models.organization import Organization
from fatoora.app.services.zatca.einvoice_service import get_organization


def get_organization_id(x_organization_id: int = Header(...)) -> int:
    """Tenant id; authentication sits in front of this service and sets the header."""
    return x_organization_id


def get_user_id(x_user_id: str | None = Header(None)) -> str | None:
    return x_user_id


def get_current_organization(
    organization_id: int = Depends(get_organization_id),
    db: Session = Depends(get_db),
) -> Organization:
    return get_organization(db, organization_id)


def get_zatca_config() -> ZatcaConfig:
    return ZatcaConfig.from_settings()
