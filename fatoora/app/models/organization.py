from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Integer, LargeBinary, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from fatoora.app.core.database import Base


class OnboardingStatus(str, enum.Enum):
    NOT_CONFIGURED = "NOT_CONFIGURED"
    CSR_GENERATED = "CSR_GENERATED"
    COMPLIANCE_VERIFIED = "COMPLIANCE_VERIFIED"
    PRODUCTION_READY = "PRODUCTION_READY"


class Organization(Base):
    """Seller identity plus its ZATCA credential state.

    Sandbox (compliance) and production credential sets live in separate
    columns and are never read interchangeably. ``version`` is checked on
    every UPDATE so a stale onboarding step cannot overwrite a newer one.
    """

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    vat_number: Mapped[str | None] = mapped_column(String(15), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False, default="SA")

    # Key material
    private_key_pem: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    csr_pem: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    # Compliance (sandbox) CSID
    sandbox_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    sandbox_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sandbox_certificate_pem: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    compliance_request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Production CSID
    production_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    production_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    production_certificate_pem: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    production_request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # NOT_CONFIGURED → CSR_GENERATED → COMPLIANCE_VERIFIED → PRODUCTION_READY
    onboarding_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=OnboardingStatus.NOT_CONFIGURED.value
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_sandbox_credentials(self) -> bool:
        return bool(self.sandbox_token and self.sandbox_secret)

    @property
    def has_production_credentials(self) -> bool:
        return bool(self.production_token and self.production_secret)
