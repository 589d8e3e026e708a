from app.schemas.qbo_sync import (
    SyncErrorInfo,
    SyncResult,
    BatchSyncResult,
    ParsedAddress,
    ParsedQBOCustomer,
    ParsedQBOInvoice,
    ParsedQBOInvoiceLine,
    HierarchyCheck,
    CustomerReconciliation,
    InvoiceReconciliation,
)

__all__ = [
    # Sync results
    "SyncErrorInfo",
    "SyncResult",
    "BatchSyncResult",
    # Parsed QBO records
    "ParsedAddress",
    "ParsedQBOCustomer",
    "ParsedQBOInvoice",
    "ParsedQBOInvoiceLine",
    "HierarchyCheck",
    # Reconciliation
    "CustomerReconciliation",
    "InvoiceReconciliation",
]
