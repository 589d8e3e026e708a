"""Location model: a serviced site, the child (second tier) billing entity.

A location with a parent company syncs as a QBO Sub-Customer
("Parent: Location"); without one it syncs as a standalone Customer.
"""

import uuid
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class Location(Base):
    __tablename__ = "locations"
    __table_args__ = (
        CheckConstraint(
            "(qbo_customer_id IS NULL) = (qbo_sync_token IS NULL)",
            name="ck_locations_qbo_link",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    parent_company_id = Column(
        String(36), ForeignKey("customer_companies.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Display name parts: company_name is the client name, location_name the site
    company_name = Column(String(255), nullable=False)
    location_name = Column(String(255))

    # Service address
    address = Column(String(255))
    city = Column(String(100))
    province = Column(String(50))
    postal_code = Column(String(20))

    contact_name = Column(String(255))
    phone = Column(String(50))
    email = Column(String(255))
    notes = Column(Text)

    bill_with_parent = Column(Boolean, default=True, nullable=False)
    inactive = Column(Boolean, default=False, nullable=False)

    # QBO link; qbo_parent_customer_id mirrors the QBO ParentRef and can lag
    # behind parent_company_id until the next sync
    qbo_customer_id = Column(String(50), index=True)
    qbo_sync_token = Column(String(50))
    qbo_parent_customer_id = Column(String(50))
    qbo_last_synced_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    parent_company = relationship("CustomerCompany", back_populates="locations")

    def __repr__(self):
        return f"<Location {self.display_label}>"

    @property
    def display_label(self) -> str:
        """Location name, falling back to the client name."""
        return self.location_name or self.company_name

    @property
    def is_synced(self) -> bool:
        return self.qbo_customer_id is not None
