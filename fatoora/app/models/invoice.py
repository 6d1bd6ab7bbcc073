from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fatoora.app.core.database import Base, UTCDateTime


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    SENT = "sent"
    PAID = "paid"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


class ZatcaStatus(str, enum.Enum):
    PROCESSED = "processed"
    CLEARED = "cleared"
    REPORTED = "reported"
    REJECTED = "rejected"
    SUBMISSION_FAILED = "submission_failed"


class SubmissionType(str, enum.Enum):
    CLEARANCE = "clearance"
    REPORTING = "reporting"


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.DRAFT.value
    )

    issue_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=2), nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=2), nullable=False)

    # ZATCA bundle, written once at processing time
    zatca_uuid: Mapped[str | None] = mapped_column(String(36), unique=True, nullable=True)
    zatca_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    zatca_prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    zatca_sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    zatca_xml: Mapped[str | None] = mapped_column(Text, nullable=True)
    zatca_qr: Mapped[str | None] = mapped_column(Text, nullable=True)
    zatca_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    zatca_status: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # Submission outcome
    submission_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    zatca_validation_results: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    zatca_signed_xml: Mapped[str | None] = mapped_column(Text, nullable=True)
    zatca_cleared_xml: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    items: Mapped[list[InvoiceItem]] = relationship(
        back_populates="invoice",
        order_by="InvoiceItem.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        # One invoice per chain position: a second writer linking to the same
        # head fails on insert instead of forking the chain.
        UniqueConstraint("organization_id", "zatca_sequence", name="uq_invoices_org_chain_seq"),
        Index("ix_invoices_organization_id", "organization_id"),
        Index("ix_invoices_zatca_status", "zatca_status"),
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=2), nullable=False)

    invoice: Mapped[Invoice] = relationship(back_populates="items")
