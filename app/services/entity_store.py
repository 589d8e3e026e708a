"""
Entity store for billing records synced with QuickBooks.

Every method opens its own short-lived session, so nothing here keeps a
transaction open while the sync engine waits on QBO. Loaded entities are
detached snapshots (expire_on_commit=False); edit them through the store.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session_maker
from app.exceptions import EntityNotFoundError, InvoiceLockedError
from app.models.customer_company import CustomerCompany
from app.models.invoice import Invoice, InvoiceLine
from app.models.location import Location
from app.schemas.qbo_sync import ParsedQBOInvoice

logger = logging.getLogger(__name__)

COMPANY = "company"
LOCATION = "location"
INVOICE = "invoice"

# entity type -> (model, column holding the QBO Id)
_LINK_COLUMNS = {
    COMPANY: (CustomerCompany, "qbo_customer_id"),
    LOCATION: (Location, "qbo_customer_id"),
    INVOICE: (Invoice, "qbo_invoice_id"),
}

# Marker for "don't check this column" in conditional writes
ANY = object()


@dataclass(frozen=True)
class EntityRef:
    entity_type: str
    entity_id: str

    def __str__(self):
        return f"{self.entity_type}:{self.entity_id}"


class EntityStore:
    """Canonical local state for companies, locations and invoices."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] = async_session_maker):
        self._session_maker = session_maker

    # ── Reads ───────────────────────────────────────────────

    async def get_company(self, company_id: str) -> Optional[CustomerCompany]:
        async with self._session_maker() as session:
            return await session.get(CustomerCompany, company_id)

    async def get_location(self, location_id: str) -> Optional[Location]:
        async with self._session_maker() as session:
            return await session.get(Location, location_id)

    async def get_invoice_with_lines(self, invoice_id: str) -> Optional[Invoice]:
        async with self._session_maker() as session:
            result = await session.execute(select(Invoice).where(Invoice.id == invoice_id))
            return result.scalar_one_or_none()

    async def get_invoice_by_qbo_id(self, qbo_invoice_id: str) -> Optional[Invoice]:
        async with self._session_maker() as session:
            result = await session.execute(select(Invoice).where(Invoice.qbo_invoice_id == qbo_invoice_id))
            return result.scalars().first()

    async def list_companies(self) -> list[CustomerCompany]:
        async with self._session_maker() as session:
            result = await session.execute(select(CustomerCompany).order_by(CustomerCompany.created_at))
            return list(result.scalars().all())

    async def list_locations(self, parent_company_id: Optional[str] = None) -> list[Location]:
        async with self._session_maker() as session:
            query = select(Location).order_by(Location.created_at)
            if parent_company_id is not None:
                query = query.where(Location.parent_company_id == parent_company_id)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def customer_link_map(self) -> dict[str, EntityRef]:
        """QBO customer Id -> linked local company or location."""
        links: dict[str, EntityRef] = {}
        async with self._session_maker() as session:
            for entity_type in (COMPANY, LOCATION):
                model, column = _LINK_COLUMNS[entity_type]
                rows = await session.execute(
                    select(model.id, getattr(model, column)).where(getattr(model, column).is_not(None))
                )
                for entity_id, qbo_id in rows.all():
                    links[qbo_id] = EntityRef(entity_type, entity_id)
        return links

    # ── Writes ──────────────────────────────────────────────

    async def add(self, *entities: Any) -> None:
        async with self._session_maker() as session:
            session.add_all(entities)
            await session.commit()

    async def save_external_link(
        self,
        ref: EntityRef,
        qbo_id: str,
        sync_token: str,
        *,
        expected_qbo_id: Optional[str],
        expected_sync_token: Any = ANY,
        qbo_parent_customer_id: Any = ANY,
        qbo_doc_number: Any = ANY,
    ) -> bool:
        """Write the QBO Id/SyncToken pair back onto an entity.

        Compare-and-set: the row is only touched if its stored QBO Id (and
        SyncToken, when given) still match what the caller read before
        calling QBO. Returns False when another sync got there first.
        """
        if not qbo_id or sync_token is None or sync_token == "":
            raise ValueError(f"Refusing partial QBO link for {ref}: id={qbo_id!r} token={sync_token!r}")

        model, column = _LINK_COLUMNS[ref.entity_type]
        id_column = getattr(model, column)
        stmt = update(model).where(model.id == ref.entity_id)
        stmt = stmt.where(id_column.is_(None) if expected_qbo_id is None else id_column == expected_qbo_id)
        if expected_sync_token is not ANY:
            stmt = stmt.where(
                model.qbo_sync_token.is_(None)
                if expected_sync_token is None
                else model.qbo_sync_token == expected_sync_token
            )

        values = {column: qbo_id, "qbo_sync_token": sync_token, "qbo_last_synced_at": datetime.now(timezone.utc)}
        if qbo_parent_customer_id is not ANY and ref.entity_type == LOCATION:
            values["qbo_parent_customer_id"] = qbo_parent_customer_id
        if qbo_doc_number is not ANY and ref.entity_type == INVOICE:
            values["qbo_doc_number"] = qbo_doc_number

        async with self._session_maker() as session:
            result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            await session.commit()

        saved = result.rowcount == 1
        if not saved:
            logger.warning(f"Skipped QBO link write for {ref}: stored link changed since it was read")
        return saved

    async def replace_invoice_lines(self, invoice_id: str, lines: Iterable[dict]) -> Invoice:
        """Replace an invoice's line items and recompute its subtotal/total.

        Paid and voided invoices are locked. Line subtotals are always
        recomputed from quantity x unit_price.
        """
        async with self._session_maker() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                raise EntityNotFoundError("Invoice", invoice_id)
            if invoice.lines_locked:
                raise InvoiceLockedError(invoice_id, invoice.status)

            new_lines = []
            for position, data in enumerate(lines, start=1):
                line = InvoiceLine(
                    line_number=data.get("line_number") or position,
                    description=data["description"],
                    quantity=str(data.get("quantity", "1")),
                    unit_price=str(data.get("unit_price", "0")),
                    tax_code=data.get("tax_code"),
                    qbo_item_ref_id=data.get("qbo_item_ref_id"),
                    qbo_tax_code_ref_id=data.get("qbo_tax_code_ref_id"),
                )
                line.line_subtotal = str(line.calculate_subtotal())
                new_lines.append(line)
            invoice.lines = new_lines

            subtotal = sum((line.calculate_subtotal() for line in new_lines), Decimal("0"))
            invoice.subtotal = str(subtotal)
            invoice.total = str(subtotal + Decimal(invoice.tax_total or "0"))
            await session.commit()
            await session.refresh(invoice, attribute_names=["lines"])
            return invoice

    async def create_invoice_from_qbo(
        self,
        parsed: ParsedQBOInvoice,
        location_id: str,
        customer_company_id: Optional[str],
        customer_note: Optional[str],
    ) -> Invoice:
        """Import a QBO invoice that has no local counterpart yet."""
        lines = [
            InvoiceLine(
                line_number=line.line_number,
                description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_subtotal=line.line_subtotal,
                qbo_item_ref_id=line.qbo_item_ref_id,
                qbo_tax_code_ref_id=line.qbo_tax_code_ref_id,
            )
            for line in parsed.lines
        ]
        subtotal = sum((Decimal(line.line_subtotal) for line in parsed.lines), Decimal("0"))
        invoice = Invoice(
            location_id=location_id,
            customer_company_id=customer_company_id,
            invoice_number=parsed.qbo_doc_number,
            status=parsed.status,
            issue_date=parsed.issue_date or datetime.now(timezone.utc).date().isoformat(),
            due_date=parsed.due_date,
            currency=parsed.currency,
            subtotal=str(subtotal),
            tax_total=str(Decimal(parsed.total) - subtotal),
            total=parsed.total,
            notes_customer=customer_note,
            notes_internal=parsed.private_note,
            qbo_invoice_id=parsed.qbo_invoice_id,
            qbo_sync_token=parsed.qbo_sync_token,
            qbo_doc_number=parsed.qbo_doc_number,
            qbo_last_synced_at=datetime.now(timezone.utc),
            lines=lines,
        )
        async with self._session_maker() as session:
            session.add(invoice)
            await session.commit()
        logger.info(f"Imported QBO invoice {parsed.qbo_invoice_id} as local invoice {invoice.id}")
        return invoice
