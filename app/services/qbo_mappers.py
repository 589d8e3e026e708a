"""
QuickBooks Online payload mappers.

Pure functions that translate local billing entities into QBO JSON payloads
and QBO responses back into local terms. Nothing here touches the database
or the network, and entities are only ever read.

QBO hierarchy: Customer -> Sub-Customer (two levels, never more).
- CustomerCompany      -> Customer
- Location with parent -> Sub-Customer, DisplayName "Parent: Location"
- Location, no parent  -> standalone Customer
"""

import logging
import re
import time
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Mapping, Optional

from app.exceptions import BillingTargetError, MissingExternalIdError
from app.models.customer_company import CustomerCompany
from app.models.invoice import Invoice, InvoiceLine, InvoiceStatus
from app.models.location import Location
from app.schemas.qbo_sync import (
    HierarchyCheck,
    ParsedAddress,
    ParsedQBOCustomer,
    ParsedQBOInvoice,
    ParsedQBOInvoiceLine,
)

logger = logging.getLogger(__name__)

DISPLAY_NAME_DELIMITER = ": "
DEFAULT_CURRENCY = "CAD"
CENTS = Decimal("0.01")

_LOCATION_ID_PATTERN = re.compile(r"\(Location ID: ([^)]+)\)")
_SERVICE_LOCATION_SUFFIX = re.compile(r"(?:\n\n)?Service Location: [^\n]*\(Location ID: [^)]+\)\s*$")


# ── Helpers ─────────────────────────────────────────────────


def _build_address(
    street: Optional[str],
    city: Optional[str],
    province: Optional[str],
    postal_code: Optional[str],
    country: Optional[str] = None,
) -> Optional[dict]:
    """QBO address block with empty parts left out; None when nothing is set.

    QBO treats an empty BillAddr differently from a missing one, so callers
    omit the key entirely when this returns None.
    """
    address = {
        "Line1": street,
        "City": city,
        "CountrySubDivisionCode": province,
        "PostalCode": postal_code,
        "Country": country,
    }
    address = {k: v for k, v in address.items() if v}
    return address or None


def _parse_address(data: Optional[dict]) -> Optional[ParsedAddress]:
    if not data:
        return None
    return ParsedAddress(
        street=data.get("Line1") or None,
        city=data.get("City") or None,
        province=data.get("CountrySubDivisionCode") or None,
        postal_code=data.get("PostalCode") or None,
        country=data.get("Country") or None,
    )


def _split_contact_name(contact_name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """"Jane van Dyke" -> ("Jane", "van Dyke")."""
    if not contact_name or not contact_name.strip():
        return None, None
    parts = contact_name.split()
    return parts[0], " ".join(parts[1:]) or None


def _add_contact(payload: dict, phone: Optional[str], email: Optional[str]) -> None:
    if phone:
        payload["PrimaryPhone"] = {"FreeFormNumber": phone}
    if email:
        payload["PrimaryEmailAddr"] = {"Address": email}


def _attach_update_fields(
    payload: dict,
    entity_type: str,
    entity_id: str,
    qbo_id: Optional[str],
    sync_token: Optional[str],
) -> None:
    """Update payloads must carry Id + SyncToken; never fall back to a create."""
    if not qbo_id or sync_token is None or sync_token == "":
        raise MissingExternalIdError(entity_type, entity_id)
    payload["Id"] = qbo_id
    payload["SyncToken"] = sync_token


def to_decimal(value) -> Decimal:
    """Parse a money/quantity value stored as text (or a JSON number)."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid decimal value: {value!r}")


def line_amount(quantity, unit_price) -> Decimal:
    """quantity x unit_price rounded to cents."""
    return (to_decimal(quantity) * to_decimal(unit_price)).quantize(CENTS, rounding=ROUND_HALF_UP)


# ── Display names ───────────────────────────────────────────


def build_sub_customer_display_name(parent_name: str, location_name: str) -> str:
    """QBO sub-customer convention: "ParentName: LocationName"."""
    return f"{parent_name}{DISPLAY_NAME_DELIMITER}{location_name}"


def split_display_name(display_name: str) -> tuple[Optional[str], Optional[str]]:
    """Split "Parent: Location" on the first delimiter only.

    Everything after the first ": " belongs to the location name, so a
    location called "Dock: North" survives the round trip.
    """
    if DISPLAY_NAME_DELIMITER not in display_name:
        return None, None
    parent_name, location_name = display_name.split(DISPLAY_NAME_DELIMITER, 1)
    return parent_name, location_name


def build_unique_display_name(
    base_name: str,
    existing_names: Iterable[str],
    max_attempts: int = 100,
) -> str:
    """Return base_name, or the first free "base_name (n)" for n >= 2.

    QBO rejects duplicate DisplayNames outright, so this runs before the
    outbound call. Past max_attempts a millisecond timestamp is used.
    """
    taken = set(existing_names)
    if base_name not in taken:
        return base_name

    for i in range(2, max_attempts + 1):
        candidate = f"{base_name} ({i})"
        if candidate not in taken:
            return candidate

    return f"{base_name} ({int(time.time() * 1000)})"


# ── App -> QBO: customers ───────────────────────────────────


def map_customer_company_to_qbo(
    company: CustomerCompany,
    for_update: bool = False,
    active: Optional[bool] = None,
    display_name: Optional[str] = None,
) -> dict:
    """Map a CustomerCompany to a top-level QBO Customer payload.

    Args:
        company: Source company (read only)
        for_update: Attach Id + SyncToken; raises MissingExternalIdError if absent
        active: Override for Active (deactivation sends False)
        display_name: Override for DisplayName (duplicate-name retries)
    """
    payload = {
        "DisplayName": display_name or company.name,
        "CompanyName": company.legal_name or company.name,
        "Active": company.is_active if active is None else active,
    }
    _add_contact(payload, company.phone, company.email)

    bill_addr = _build_address(
        company.billing_street,
        company.billing_city,
        company.billing_province,
        company.billing_postal_code,
        company.billing_country,
    )
    if bill_addr:
        payload["BillAddr"] = bill_addr

    if for_update:
        _attach_update_fields(payload, "company", company.id, company.qbo_customer_id, company.qbo_sync_token)
    return payload


def _location_base_payload(location: Location, display_name: str, active: Optional[bool]) -> dict:
    payload = {
        "DisplayName": display_name,
        "CompanyName": location.company_name,
        "Active": (not location.inactive) if active is None else active,
    }
    given_name, family_name = _split_contact_name(location.contact_name)
    if given_name:
        payload["GivenName"] = given_name
    if family_name:
        payload["FamilyName"] = family_name
    _add_contact(payload, location.phone, location.email)

    bill_addr = _build_address(location.address, location.city, location.province, location.postal_code)
    if bill_addr:
        payload["BillAddr"] = bill_addr
    return payload


def map_location_to_qbo_sub_customer(
    location: Location,
    parent_company_name: str,
    parent_qbo_customer_id: str,
    for_update: bool = False,
    active: Optional[bool] = None,
    display_name: Optional[str] = None,
) -> dict:
    """Map a Location under a parent company to a QBO Sub-Customer payload.

    Job, ParentRef and BillWithParent are sent on every call, updates
    included, since each can change independently of the others.
    """
    name = display_name or build_sub_customer_display_name(parent_company_name, location.display_label)
    payload = _location_base_payload(location, name, active)
    payload["Job"] = True
    payload["ParentRef"] = {"value": parent_qbo_customer_id}
    payload["BillWithParent"] = bool(location.bill_with_parent)

    if for_update:
        _attach_update_fields(payload, "location", location.id, location.qbo_customer_id, location.qbo_sync_token)
    return payload


def map_standalone_location_to_qbo(
    location: Location,
    for_update: bool = False,
    active: Optional[bool] = None,
    display_name: Optional[str] = None,
) -> dict:
    """Map a Location with no parent company to a top-level QBO Customer."""
    if display_name is None:
        display_name = location.company_name
        if location.location_name:
            display_name = build_sub_customer_display_name(location.company_name, location.location_name)
    payload = _location_base_payload(location, display_name, active)

    if for_update:
        _attach_update_fields(payload, "location", location.id, location.qbo_customer_id, location.qbo_sync_token)
    return payload


# ── QBO -> App: customers ───────────────────────────────────


def parse_qbo_customer(data: dict) -> ParsedQBOCustomer:
    """Parse a QBO Customer (or Sub-Customer) response.

    A sub-customer without the "Parent: Location" delimiter is tolerated
    (customers created in the QBO console often lack it) and reported as
    a warning instead of an error.
    """
    parent_ref = data.get("ParentRef") or {}
    parent_qbo_id = parent_ref.get("value") or None
    display_name = data.get("DisplayName") or ""
    is_sub_customer = parent_qbo_id is not None or bool(data.get("Job"))

    parent_name = location_name = None
    warnings = []
    if is_sub_customer:
        parent_name, location_name = split_display_name(display_name)
        if parent_name is None:
            warnings.append(
                f'Sub-customer "{display_name}" does not follow the "Parent: Location" naming convention'
            )
            logger.warning("QBO sub-customer %s has a non-standard DisplayName: %r", data.get("Id"), display_name)

    meta = data.get("MetaData") or {}
    return ParsedQBOCustomer(
        qbo_customer_id=data.get("Id"),
        qbo_sync_token=data.get("SyncToken"),
        is_sub_customer=is_sub_customer,
        parent_qbo_id=parent_qbo_id,
        display_name=display_name,
        parent_name=parent_name,
        location_name=location_name,
        company_name=data.get("CompanyName") or None,
        given_name=data.get("GivenName") or None,
        family_name=data.get("FamilyName") or None,
        phone=(data.get("PrimaryPhone") or {}).get("FreeFormNumber") or None,
        email=(data.get("PrimaryEmailAddr") or {}).get("Address") or None,
        address=_parse_address(data.get("BillAddr")),
        is_active=data.get("Active", True),
        bill_with_parent=bool(data.get("BillWithParent", False)),
        created_time=meta.get("CreateTime"),
        last_updated_time=meta.get("LastUpdatedTime"),
        warnings=warnings,
    )


def validate_qbo_hierarchy_depth(customer: dict, all_customers: Mapping[str, dict]) -> HierarchyCheck:
    """Reject a customer whose parent is itself a sub-customer.

    Walks ParentRef exactly once. A parent missing from the lookup is
    assumed to be top level.
    """
    parent_ref = customer.get("ParentRef") or {}
    parent_id = parent_ref.get("value")
    if not parent_id:
        return HierarchyCheck(valid=True)

    parent = all_customers.get(parent_id)
    if parent is None:
        return HierarchyCheck(valid=True)

    if (parent.get("ParentRef") or {}).get("value"):
        return HierarchyCheck(
            valid=False,
            reason=(
                f'Customer "{customer.get("DisplayName")}" is a sub-customer of a sub-customer '
                "(depth > 2). QBO only supports 2 levels."
            ),
        )
    return HierarchyCheck(valid=True)


# ── App -> QBO: invoices ────────────────────────────────────


def resolve_billing_target(
    invoice: Invoice,
    location: Location,
    company: Optional[CustomerCompany],
) -> tuple[str, bool]:
    """Return (customer_ref, bills_parent) for an invoice.

    Derived from Location.bill_with_parent at sync time. Raises
    BillingTargetError rather than guessing when neither the parent nor
    the location has a QBO Id.
    """
    if location.bill_with_parent and company is not None and company.qbo_customer_id:
        return company.qbo_customer_id, True
    if location.qbo_customer_id:
        return location.qbo_customer_id, False
    raise BillingTargetError(invoice.id, location.id)


def build_customer_memo(invoice: Invoice, location: Location) -> str:
    """Customer note followed by the service location token.

    The "(Location ID: ...)" token lets a pulled invoice billed to a parent
    find its way back to the location that was serviced.
    """
    if location.location_name:
        label = f"{location.company_name} - {location.location_name}"
    else:
        label = location.company_name
    memo = f"Service Location: {label} (Location ID: {location.id})"
    if invoice.notes_customer:
        memo = f"{invoice.notes_customer}\n\n{memo}"
    return memo


def _map_invoice_line(line: InvoiceLine, position: int) -> dict:
    quantity = to_decimal(line.quantity)
    unit_price = to_decimal(line.unit_price)
    detail = {"Qty": quantity, "UnitPrice": unit_price}
    if line.qbo_item_ref_id:
        detail["ItemRef"] = {"value": line.qbo_item_ref_id}
    if line.qbo_tax_code_ref_id:
        detail["TaxCodeRef"] = {"value": line.qbo_tax_code_ref_id}
    return {
        "LineNum": line.line_number or position,
        "Description": line.description,
        # Recomputed; the stored line_subtotal may be stale
        "Amount": line_amount(quantity, unit_price),
        "DetailType": "SalesItemLineDetail",
        "SalesItemLineDetail": detail,
    }


def to_qbo_invoice_payload(
    invoice: Invoice,
    location: Location,
    company: Optional[CustomerCompany],
    lines: Iterable[InvoiceLine],
    for_update: bool = False,
    default_currency: str = DEFAULT_CURRENCY,
) -> dict:
    """Map an invoice and its lines to a QBO Invoice payload.

    - CustomerRef: parent company when billing the parent, else the location
    - BillAddr: the billed entity's address
    - ShipAddr: always the location's service address
    """
    customer_ref, bills_parent = resolve_billing_target(invoice, location, company)

    payload = {
        "CustomerRef": {"value": customer_ref},
        "TxnDate": invoice.issue_date,
        "Line": [],
    }
    if invoice.invoice_number:
        payload["DocNumber"] = invoice.invoice_number
    if invoice.due_date:
        payload["DueDate"] = invoice.due_date
    if invoice.currency and invoice.currency != default_currency:
        payload["CurrencyRef"] = {"value": invoice.currency}

    service_addr = _build_address(location.address, location.city, location.province, location.postal_code)
    if bills_parent:
        bill_addr = _build_address(
            company.billing_street,
            company.billing_city,
            company.billing_province,
            company.billing_postal_code,
            company.billing_country,
        )
    else:
        bill_addr = service_addr
    if bill_addr:
        payload["BillAddr"] = bill_addr
    if service_addr:
        payload["ShipAddr"] = dict(service_addr)

    payload["CustomerMemo"] = {"value": build_customer_memo(invoice, location)}
    if invoice.notes_internal:
        payload["PrivateNote"] = invoice.notes_internal

    ordered = sorted(
        enumerate(lines, start=1),
        key=lambda item: (item[1].line_number is None, item[1].line_number or item[0]),
    )
    payload["Line"] = [_map_invoice_line(line, position) for position, line in ordered]

    if for_update:
        _attach_update_fields(payload, "invoice", invoice.id, invoice.qbo_invoice_id, invoice.qbo_sync_token)
    return payload


# ── QBO -> App: invoices ────────────────────────────────────


def infer_invoice_status(total, balance) -> str:
    """Approximate local status from QBO money fields.

    QBO has no status field; this is a display convenience only.
    """
    total = to_decimal(total)
    balance = to_decimal(balance)
    if balance == 0 and total > 0:
        return InvoiceStatus.paid.value
    if total == 0 and balance == 0:
        return InvoiceStatus.void.value
    return InvoiceStatus.sent.value


def _format_number(value) -> str:
    return str(to_decimal(value))


def from_qbo_invoice_payload(data: dict, default_currency: str = DEFAULT_CURRENCY) -> ParsedQBOInvoice:
    """Parse a QBO Invoice response. Non-item lines (subtotals, discounts) are dropped."""
    lines = []
    item_lines = [
        line for line in data.get("Line") or []
        if line.get("DetailType") == "SalesItemLineDetail" and line.get("SalesItemLineDetail")
    ]
    for index, line in enumerate(item_lines, start=1):
        detail = line["SalesItemLineDetail"]
        lines.append(ParsedQBOInvoiceLine(
            line_number=line.get("LineNum") or index,
            description=line.get("Description") or "",
            quantity=_format_number(detail.get("Qty") if detail.get("Qty") is not None else 1),
            unit_price=_format_number(detail.get("UnitPrice") or 0),
            line_subtotal=_format_number(line.get("Amount") or 0),
            qbo_item_ref_id=(detail.get("ItemRef") or {}).get("value"),
            qbo_tax_code_ref_id=(detail.get("TaxCodeRef") or {}).get("value"),
        ))

    total = data.get("TotalAmt") or 0
    balance = data.get("Balance") or 0
    meta = data.get("MetaData") or {}
    return ParsedQBOInvoice(
        qbo_invoice_id=data["Id"],
        qbo_sync_token=data["SyncToken"],
        qbo_doc_number=data.get("DocNumber"),
        customer_ref_id=data["CustomerRef"]["value"],
        issue_date=data.get("TxnDate"),
        due_date=data.get("DueDate"),
        currency=(data.get("CurrencyRef") or {}).get("value") or default_currency,
        total=_format_number(total),
        balance=_format_number(balance),
        customer_memo=(data.get("CustomerMemo") or {}).get("value"),
        private_note=data.get("PrivateNote"),
        status=infer_invoice_status(total, balance),
        lines=lines,
        billing_address=_parse_address(data.get("BillAddr")),
        shipping_address=_parse_address(data.get("ShipAddr")),
        created_time=meta.get("CreateTime"),
        last_updated_time=meta.get("LastUpdatedTime"),
    )


def extract_location_id_from_memo(memo: Optional[str]) -> Optional[str]:
    """Recover the location id from "... (Location ID: <id>)", if present.

    The generated token is always last, so it wins over any look-alike in
    the customer note.
    """
    if not memo:
        return None
    matches = _LOCATION_ID_PATTERN.findall(memo)
    return matches[-1] if matches else None


def strip_service_location(memo: Optional[str]) -> Optional[str]:
    """Customer note with the generated "Service Location: ..." suffix removed."""
    if not memo:
        return None
    note = _SERVICE_LOCATION_SUFFIX.sub("", memo).strip()
    return note or None
