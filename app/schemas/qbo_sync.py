"""Schemas for QuickBooks sync results and parsed QBO records."""

from typing import Optional, Any
from pydantic import BaseModel, Field

from app.exceptions import QBOSyncError, SyncErrorCode


class SyncErrorInfo(BaseModel):
    code: SyncErrorCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class SyncResult(BaseModel):
    """Outcome of syncing one local entity."""

    entity_type: str
    entity_id: str
    success: bool
    action: Optional[str] = None  # create, update, deactivate, void, skip
    qbo_id: Optional[str] = None
    qbo_sync_token: Optional[str] = None
    qbo_doc_number: Optional[str] = None
    attempts: int = 0
    # False when a concurrent sync already moved the local link on
    link_saved: bool = False
    error: Optional[SyncErrorInfo] = None

    @classmethod
    def failed(cls, entity_type: str, entity_id: str, error: QBOSyncError, attempts: int = 0) -> "SyncResult":
        return cls(
            entity_type=entity_type,
            entity_id=entity_id,
            success=False,
            attempts=attempts,
            error=SyncErrorInfo(code=error.code, message=error.message, details=error.details),
        )

    @property
    def error_code(self) -> Optional[SyncErrorCode]:
        return self.error.code if self.error else None


class BatchSyncResult(BaseModel):
    """Per-entity results of a bulk sync, companies first."""

    companies: list[SyncResult] = Field(default_factory=list)
    locations: list[SyncResult] = Field(default_factory=list)

    @staticmethod
    def _describe(results: list[SyncResult], noun: str) -> str:
        synced = sum(1 for r in results if r.success)
        text = f"{synced} of {len(results)} {noun} synced"
        blocked = sum(1 for r in results if r.error_code == SyncErrorCode.PARENT_NOT_SYNCED)
        failed = len(results) - synced - blocked
        if blocked:
            text += f"; {blocked} blocked on parent"
        if failed:
            text += f"; {failed} failed"
        return text

    def summary(self) -> str:
        """e.g. "2 of 2 companies synced, 8 of 10 locations synced; 2 blocked on parent"."""
        return ", ".join([
            self._describe(self.companies, "companies"),
            self._describe(self.locations, "locations"),
        ])

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.companies + self.locations)


class ParsedAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class ParsedQBOCustomer(BaseModel):
    """A QBO Customer or Sub-Customer in local terms."""

    qbo_customer_id: Optional[str] = None
    qbo_sync_token: Optional[str] = None
    is_sub_customer: bool = False
    parent_qbo_id: Optional[str] = None
    display_name: str
    # Only set for sub-customers whose DisplayName follows "Parent: Location"
    parent_name: Optional[str] = None
    location_name: Optional[str] = None
    company_name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[ParsedAddress] = None
    is_active: bool = True
    bill_with_parent: bool = False
    created_time: Optional[str] = None
    last_updated_time: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class ParsedQBOInvoiceLine(BaseModel):
    line_number: int
    description: str
    quantity: str
    unit_price: str
    line_subtotal: str
    qbo_item_ref_id: Optional[str] = None
    qbo_tax_code_ref_id: Optional[str] = None


class ParsedQBOInvoice(BaseModel):
    qbo_invoice_id: str
    qbo_sync_token: str
    qbo_doc_number: Optional[str] = None
    customer_ref_id: str
    issue_date: Optional[str] = None
    due_date: Optional[str] = None
    currency: str
    total: str
    balance: str
    customer_memo: Optional[str] = None
    private_note: Optional[str] = None
    # Display hint derived from TotalAmt/Balance, never a business rule input
    status: str
    lines: list[ParsedQBOInvoiceLine] = Field(default_factory=list)
    billing_address: Optional[ParsedAddress] = None
    shipping_address: Optional[ParsedAddress] = None
    created_time: Optional[str] = None
    last_updated_time: Optional[str] = None


class HierarchyCheck(BaseModel):
    valid: bool
    reason: Optional[str] = None


class CustomerReconciliation(BaseModel):
    """How one pulled QBO customer lines up with local records."""

    qbo_customer_id: str
    display_name: str
    valid: bool = True
    entity_type: Optional[str] = None  # company or location
    entity_id: Optional[str] = None
    link_refreshed: bool = False
    warnings: list[str] = Field(default_factory=list)
    error: Optional[SyncErrorInfo] = None


class InvoiceReconciliation(BaseModel):
    """How one pulled QBO invoice lines up with local records."""

    qbo_invoice_id: str
    invoice_id: Optional[str] = None
    location_id: Optional[str] = None
    customer_company_id: Optional[str] = None
    matched_by: Optional[str] = None  # qbo_id, memo, customer_ref
    action: str = "unresolved"  # linked, imported, unresolved
    status: Optional[str] = None
    error: Optional[str] = None
