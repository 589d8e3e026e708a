"""Invoice and invoice line models.

An invoice always belongs to a Location. Whether it is billed to the
location or to its parent company is decided at sync time from
Location.bill_with_parent and is never stored on the invoice.

Money is stored as text to keep decimal precision.
"""

import enum
import uuid
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class InvoiceStatus(str, enum.Enum):
    draft = "draft"
    sent = "sent"
    partial_paid = "partial_paid"
    paid = "paid"
    void = "void"
    cancelled = "cancelled"


# Line items can no longer change once an invoice reaches these states
LOCKED_STATUSES = {InvoiceStatus.paid.value, InvoiceStatus.void.value}


class Invoice(Base):
    """Invoice for work performed at a location."""

    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint(
            "(qbo_invoice_id IS NULL) = (qbo_sync_token IS NULL)",
            name="ck_invoices_qbo_link",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    location_id = Column(String(36), ForeignKey("locations.id", ondelete="CASCADE"), nullable=False, index=True)
    # Denormalized parent reference for querying
    customer_company_id = Column(
        String(36), ForeignKey("customer_companies.id", ondelete="SET NULL"), nullable=True, index=True
    )

    invoice_number = Column(String(50))
    status = Column(String(20), default=InvoiceStatus.draft.value, nullable=False)
    issue_date = Column(String(10), nullable=False)  # YYYY-MM-DD
    due_date = Column(String(10))
    currency = Column(String(3), default="CAD", nullable=False)

    subtotal = Column(String(32), default="0", nullable=False)
    tax_total = Column(String(32), default="0", nullable=False)
    total = Column(String(32), default="0", nullable=False)

    notes_internal = Column(Text)  # QBO PrivateNote
    notes_customer = Column(Text)  # QBO CustomerMemo

    is_active = Column(Boolean, default=True, nullable=False)

    # QBO link
    qbo_invoice_id = Column(String(50), index=True)
    qbo_sync_token = Column(String(50))
    qbo_doc_number = Column(String(50))
    qbo_last_synced_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    lines = relationship(
        "InvoiceLine",
        back_populates="invoice",
        order_by="InvoiceLine.line_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Invoice {self.invoice_number or self.id}>"

    @property
    def is_synced(self) -> bool:
        return self.qbo_invoice_id is not None

    @property
    def lines_locked(self) -> bool:
        return self.status in LOCKED_STATUSES


class InvoiceLine(Base):
    """Single line on an invoice. line_number defines the QBO ordering."""

    __tablename__ = "invoice_lines"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    quantity = Column(String(32), default="1", nullable=False)
    unit_price = Column(String(32), default="0", nullable=False)
    line_subtotal = Column(String(32), default="0", nullable=False)
    tax_code = Column(String(50))

    qbo_item_ref_id = Column(String(50))
    qbo_tax_code_ref_id = Column(String(50))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    invoice = relationship("Invoice", back_populates="lines")

    def __repr__(self):
        return f"<InvoiceLine {self.line_number}: {self.description}>"

    def calculate_subtotal(self) -> Decimal:
        """quantity x unit_price, ignoring whatever line_subtotal holds."""
        return Decimal(self.quantity or "0") * Decimal(self.unit_price or "0")
