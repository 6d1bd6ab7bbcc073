from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from fatoora.app.core.database import Base


class ChainHead(Base):
    """Per-organization pointer to the latest link of the invoice hash chain."""

    __tablename__ = "zatca_chain_heads"

    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id"), primary_key=True
    )
    latest_invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    latest_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
