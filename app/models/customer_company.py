"""Customer company model: the parent (top tier) billing entity.

Maps to a top-level QuickBooks Customer. Locations hang off a company
and map to QuickBooks Sub-Customers.
"""

import uuid
from sqlalchemy import Column, String, Boolean, DateTime, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class CustomerCompany(Base):
    __tablename__ = "customer_companies"
    __table_args__ = (
        # A company is either fully linked to QBO or not linked at all
        CheckConstraint(
            "(qbo_customer_id IS NULL) = (qbo_sync_token IS NULL)",
            name="ck_customer_companies_qbo_link",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    legal_name = Column(String(255))
    phone = Column(String(50))
    email = Column(String(255))

    # Billing address (QBO BillAddr)
    billing_street = Column(String(255))
    billing_city = Column(String(100))
    billing_province = Column(String(50))
    billing_postal_code = Column(String(20))
    billing_country = Column(String(50))

    is_active = Column(Boolean, default=True, nullable=False)

    # QBO link
    qbo_customer_id = Column(String(50), index=True)
    qbo_sync_token = Column(String(50))
    qbo_last_synced_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    locations = relationship("Location", back_populates="parent_company")

    def __repr__(self):
        return f"<CustomerCompany {self.name}>"

    @property
    def is_synced(self) -> bool:
        return self.qbo_customer_id is not None
