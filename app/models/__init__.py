from app.models.customer_company import CustomerCompany
from app.models.location import Location
from app.models.invoice import Invoice, InvoiceLine, InvoiceStatus

__all__ = [
    "CustomerCompany",
    "Location",
    "Invoice",
    "InvoiceLine",
    "InvoiceStatus",
]
