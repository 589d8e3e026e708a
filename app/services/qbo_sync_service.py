"""
QuickBooks Online sync service.

Pushes local companies, locations and invoices to QBO and pulls QBO
records back for reconciliation.

Per entity, keyed on whether it already has a QBO Id:
- unsynced -> create; the returned Id/SyncToken are written back
- synced   -> update with the stored SyncToken; QBO's new token is written back
- deactivated -> update with Active=false (QBO customers are never deleted)
- voided/cancelled invoice -> QBO void operation

Write-back happens only after QBO confirms, and only if the stored link is
still what was read when the payload was built (see EntityStore.save_external_link).
Single-entity calls and batches return SyncResults instead of raising, so a
batch always reports one result per entity.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Iterable, Mapping, Optional

from app.config import Settings
from app.exceptions import (
    DuplicateNameError,
    EntityNotFoundError,
    HierarchyDepthError,
    MissingExternalIdError,
    ParentNotSyncedError,
    QBONotConfiguredError,
    QBOSyncError,
    SyncErrorCode,
)
from app.models.customer_company import CustomerCompany
from app.models.invoice import Invoice, InvoiceLine, InvoiceStatus
from app.models.location import Location
from app.schemas.qbo_sync import (
    BatchSyncResult,
    CustomerReconciliation,
    InvoiceReconciliation,
    ParsedQBOInvoice,
    SyncErrorInfo,
    SyncResult,
)
from app.services.entity_store import COMPANY, INVOICE, LOCATION, EntityRef, EntityStore
from app.services.qbo_client import ExternalAccountingClient
from app.services.qbo_mappers import (
    DEFAULT_CURRENCY,
    build_unique_display_name,
    extract_location_id_from_memo,
    from_qbo_invoice_payload,
    map_customer_company_to_qbo,
    map_location_to_qbo_sub_customer,
    map_standalone_location_to_qbo,
    parse_qbo_customer,
    strip_service_location,
    to_qbo_invoice_payload,
    validate_qbo_hierarchy_depth,
)
from app.services.qbo_retry import RetryPolicy

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
DEACTIVATE = "deactivate"
VOID = "void"
SKIP = "skip"

VOID_STATUSES = {InvoiceStatus.void.value, InvoiceStatus.cancelled.value}

ResultSink = Callable[[SyncResult], None]


def _is_newer(candidate: Optional[str], current: Optional[str]) -> bool:
    """True if candidate is a later SyncToken than current."""
    if candidate is None:
        return False
    if current is None:
        return True
    try:
        return int(candidate) > int(current)
    except ValueError:
        return candidate != current


class QBOSyncService:
    """Syncs billing entities with one QBO realm.

    Build one per request or batch around a client scoped to that realm's
    credentials; the service itself holds no credential state.
    """

    def __init__(
        self,
        client: ExternalAccountingClient,
        store: EntityStore,
        retry_policy: Optional[RetryPolicy] = None,
        default_currency: str = DEFAULT_CURRENCY,
        display_name_max_attempts: int = 100,
        result_sink: Optional[ResultSink] = None,
    ):
        self._client = client
        self._store = store
        self._retry = retry_policy or RetryPolicy()
        self._default_currency = default_currency
        self._max_name_attempts = display_name_max_attempts
        self._result_sink = result_sink

    @classmethod
    def from_settings(
        cls,
        client: ExternalAccountingClient,
        store: EntityStore,
        settings: Settings,
        result_sink: Optional[ResultSink] = None,
    ) -> "QBOSyncService":
        return cls(
            client,
            store,
            retry_policy=RetryPolicy.from_settings(settings),
            default_currency=settings.QBO_DEFAULT_CURRENCY,
            display_name_max_attempts=settings.QBO_DISPLAY_NAME_MAX_ATTEMPTS,
            result_sink=result_sink,
        )

    @property
    def is_configured(self) -> bool:
        return self._client.is_configured

    # ── Plumbing ────────────────────────────────────────────

    def _require_configured(self) -> None:
        if not self._client.is_configured:
            raise QBONotConfiguredError()

    def _publish(self, result: SyncResult) -> SyncResult:
        """Hand a result to the audit/notification sink, if any."""
        if self._result_sink is not None:
            try:
                self._result_sink(result)
            except Exception:
                logger.error("QBO sync result sink failed", exc_info=True)
        return result

    async def _guarded(self, ref: EntityRef, failure_code: SyncErrorCode, work) -> SyncResult:
        """Await one entity's sync, turning any failure into a failed SyncResult."""
        try:
            result = await work
        except QBOSyncError as exc:
            logger.warning(f"QBO sync of {ref} failed: {exc.code.value} - {exc.message}")
            result = SyncResult.failed(ref.entity_type, ref.entity_id, exc, attempts=exc.details.get("attempts", 0))
        except Exception as exc:
            logger.error(f"Unexpected error during QBO sync of {ref}", exc_info=True)
            error = QBOSyncError(str(exc) or type(exc).__name__, failure_code, details={"kind": "unexpected"})
            result = SyncResult.failed(ref.entity_type, ref.entity_id, error)
        return self._publish(result)

    def _skipped(self, ref: EntityRef) -> SyncResult:
        return self._publish(
            SyncResult(entity_type=ref.entity_type, entity_id=ref.entity_id, success=True, action=SKIP)
        )

    def _parent_not_synced(self, location: Location, parent_name: Optional[str] = None) -> SyncResult:
        error = ParentNotSyncedError(location.id, location.parent_company_id, parent_name)
        logger.warning(f"QBO sync of location {location.id} blocked: {error.message}")
        return self._publish(SyncResult.failed(LOCATION, location.id, error))

    async def _record_link(
        self,
        ref: EntityRef,
        response: dict,
        sent_qbo_id: Optional[str],
        sent_sync_token: Optional[str],
        action: str,
        attempts: int,
        **extra,
    ) -> SyncResult:
        """Write QBO's Id/SyncToken back and build the success result."""
        qbo_id = str(response["Id"])
        sync_token = str(response["SyncToken"])
        if sent_qbo_id is not None and qbo_id != sent_qbo_id:
            logger.warning(f"QBO answered {action} of {ref} with Id {qbo_id}, expected {sent_qbo_id}; not linking")
            saved = False
        else:
            saved = await self._store.save_external_link(
                ref,
                qbo_id,
                sync_token,
                expected_qbo_id=sent_qbo_id,
                expected_sync_token=sent_sync_token,
                **extra,
            )
        logger.info(f"QBO {action} of {ref} succeeded (Id {qbo_id}, SyncToken {sync_token})")
        return SyncResult(
            entity_type=ref.entity_type,
            entity_id=ref.entity_id,
            success=True,
            action=action,
            qbo_id=qbo_id,
            qbo_sync_token=sync_token,
            qbo_doc_number=response.get("DocNumber"),
            attempts=attempts,
            link_saved=saved,
        )

    # ── Customers (shared by companies and locations) ───────

    async def _push_customer(
        self,
        ref: EntityRef,
        entity,
        build_payload: Callable[[Optional[str]], dict],
        action: str,
        **extra,
    ) -> SyncResult:
        """Create or update a QBO customer, renaming once on a duplicate DisplayName."""
        self._require_configured()
        sent_qbo_id, sent_sync_token = entity.qbo_customer_id, entity.qbo_sync_token
        payload = build_payload(None)

        is_create = action == CREATE
        send = self._client.create_customer if is_create else self._client.update_customer
        failure_code = SyncErrorCode.CREATE_FAILED if is_create else SyncErrorCode.UPDATE_FAILED
        description = f"QBO {action} of {ref}"
        logger.debug(f"{description} payload: {payload}")

        try:
            response, attempts = await self._retry.run(
                partial(send, payload), failure_code, description, context={"display_name": payload["DisplayName"]}
            )
        except DuplicateNameError as exc:
            taken = await self.existing_display_names(exclude_qbo_id=sent_qbo_id)
            unique_name = build_unique_display_name(payload["DisplayName"], taken, self._max_name_attempts)
            logger.info(f'DisplayName "{payload["DisplayName"]}" is taken in QBO; retrying {ref} as "{unique_name}"')
            payload = build_payload(unique_name)
            response, attempts = await self._retry.run(
                partial(send, payload), failure_code, description, context={"display_name": unique_name}
            )
            attempts += exc.details.get("attempts", 1)

        return await self._record_link(ref, response, sent_qbo_id, sent_sync_token, action, attempts, **extra)

    async def existing_display_names(self, exclude_qbo_id: Optional[str] = None) -> set[str]:
        """DisplayNames in use, minus the one held by exclude_qbo_id (the record being updated)."""
        return {
            c["DisplayName"]
            for c in await self.fetch_all_customers()
            if c.get("DisplayName") and c.get("Id") != exclude_qbo_id
        }

    # ── Customer companies ──────────────────────────────────

    async def create_customer_company(self, company: CustomerCompany) -> SyncResult:
        ref = EntityRef(COMPANY, company.id)
        build = partial(self._company_payload, company, False, None)
        return await self._guarded(ref, SyncErrorCode.CREATE_FAILED, self._push_customer(ref, company, build, CREATE))

    async def update_customer_company(self, company: CustomerCompany) -> SyncResult:
        ref = EntityRef(COMPANY, company.id)
        build = partial(self._company_payload, company, True, None)
        return await self._guarded(ref, SyncErrorCode.UPDATE_FAILED, self._push_customer(ref, company, build, UPDATE))

    async def deactivate_customer_company(self, company: CustomerCompany) -> SyncResult:
        """Mark the QBO customer inactive. Nothing to do if it was never synced."""
        ref = EntityRef(COMPANY, company.id)
        if not company.qbo_customer_id:
            return self._skipped(ref)
        build = partial(self._company_payload, company, True, False)
        return await self._guarded(
            ref, SyncErrorCode.UPDATE_FAILED, self._push_customer(ref, company, build, DEACTIVATE)
        )

    async def sync_customer_company(self, company: CustomerCompany) -> SyncResult:
        if company.qbo_customer_id:
            return await self.update_customer_company(company)
        return await self.create_customer_company(company)

    @staticmethod
    def _company_payload(company, for_update, active, display_name):
        return map_customer_company_to_qbo(company, for_update=for_update, active=active, display_name=display_name)

    # ── Locations ───────────────────────────────────────────

    @staticmethod
    def _location_payload(location, parent_name, parent_qbo_id, for_update, active, display_name):
        if location.parent_company_id is None:
            return map_standalone_location_to_qbo(
                location, for_update=for_update, active=active, display_name=display_name
            )
        return map_location_to_qbo_sub_customer(
            location, parent_name, parent_qbo_id, for_update=for_update, active=active, display_name=display_name
        )

    async def _push_location(
        self,
        location: Location,
        parent_name: Optional[str],
        parent_qbo_id: Optional[str],
        action: str,
        known_customers: Optional[Mapping[str, dict]] = None,
    ) -> SyncResult:
        if location.parent_company_id is not None and not parent_qbo_id:
            return self._parent_not_synced(location, parent_name)

        ref = EntityRef(LOCATION, location.id)
        active = False if action == DEACTIVATE else None
        build = partial(self._location_payload, location, parent_name, parent_qbo_id, action != CREATE, active)
        if location.parent_company_id is None:
            parent_qbo_id = None
        failure_code = SyncErrorCode.CREATE_FAILED if action == CREATE else SyncErrorCode.UPDATE_FAILED
        return await self._guarded(
            ref,
            failure_code,
            self._send_location(ref, location, build, action, parent_qbo_id, known_customers),
        )

    async def _send_location(self, ref, location, build, action, parent_qbo_id, known_customers) -> SyncResult:
        if action != CREATE:
            await self._check_hierarchy_depth(location, known_customers)
        return await self._push_customer(ref, location, build, action, qbo_parent_customer_id=parent_qbo_id)

    async def _check_hierarchy_depth(
        self, location: Location, known_customers: Optional[Mapping[str, dict]]
    ) -> None:
        """Refuse a linked location that sits three levels deep in QBO.

        Updating it would send ParentRef = its company and silently re-parent
        the QBO record; that has to be resolved by hand first.
        """
        if known_customers is None:
            known_customers = await self.customer_lookup()
        record = known_customers.get(location.qbo_customer_id)
        if record is not None and not validate_qbo_hierarchy_depth(record, known_customers).valid:
            raise HierarchyDepthError(
                record.get("DisplayName", ""), location.qbo_customer_id, (record.get("ParentRef") or {}).get("value")
            )

    async def create_location(
        self, location: Location, parent_name: Optional[str] = None, parent_qbo_id: Optional[str] = None
    ) -> SyncResult:
        """Create a location as a QBO Sub-Customer, or a standalone Customer if it has no parent."""
        return await self._push_location(location, parent_name, parent_qbo_id, CREATE)

    async def update_location(
        self,
        location: Location,
        parent_name: Optional[str] = None,
        parent_qbo_id: Optional[str] = None,
        known_customers: Optional[Mapping[str, dict]] = None,
    ) -> SyncResult:
        """Update a linked location after checking its QBO hierarchy depth.

        known_customers (QBO Id -> customer) saves the lookup fetch when the
        caller already has one.
        """
        return await self._push_location(location, parent_name, parent_qbo_id, UPDATE, known_customers)

    async def deactivate_location(
        self,
        location: Location,
        parent_name: Optional[str] = None,
        parent_qbo_id: Optional[str] = None,
        known_customers: Optional[Mapping[str, dict]] = None,
    ) -> SyncResult:
        if not location.qbo_customer_id:
            return self._skipped(EntityRef(LOCATION, location.id))
        return await self._push_location(location, parent_name, parent_qbo_id, DEACTIVATE, known_customers)

    async def sync_location(
        self,
        location: Location,
        parent_name: Optional[str] = None,
        parent_qbo_id: Optional[str] = None,
        known_customers: Optional[Mapping[str, dict]] = None,
    ) -> SyncResult:
        if location.qbo_customer_id:
            return await self.update_location(location, parent_name, parent_qbo_id, known_customers)
        return await self.create_location(location, parent_name, parent_qbo_id)

    # ── On-demand, by id ────────────────────────────────────

    async def _load_company(self, company_id: str) -> CustomerCompany:
        company = await self._store.get_company(company_id)
        if company is None:
            raise EntityNotFoundError("CustomerCompany", company_id)
        return company

    async def _load_location(self, location_id: str) -> Location:
        location = await self._store.get_location(location_id)
        if location is None:
            raise EntityNotFoundError("Location", location_id)
        return location

    async def _parent_of(self, location: Location) -> tuple[Optional[CustomerCompany], Optional[str], Optional[str]]:
        """(company, name, qbo_id) of the location's parent, from stored state."""
        if location.parent_company_id is None:
            return None, None, None
        parent = await self._store.get_company(location.parent_company_id)
        if parent is None:
            return None, None, None
        return parent, parent.name, parent.qbo_customer_id

    async def sync_company_by_id(self, company_id: str) -> SyncResult:
        return await self.sync_customer_company(await self._load_company(company_id))

    async def deactivate_company_by_id(self, company_id: str) -> SyncResult:
        return await self.deactivate_customer_company(await self._load_company(company_id))

    async def sync_location_by_id(self, location_id: str) -> SyncResult:
        location = await self._load_location(location_id)
        _, parent_name, parent_qbo_id = await self._parent_of(location)
        return await self.sync_location(location, parent_name, parent_qbo_id)

    async def deactivate_location_by_id(self, location_id: str) -> SyncResult:
        location = await self._load_location(location_id)
        _, parent_name, parent_qbo_id = await self._parent_of(location)
        return await self.deactivate_location(location, parent_name, parent_qbo_id)

    async def sync_invoice_by_id(self, invoice_id: str) -> SyncResult:
        invoice = await self._store.get_invoice_with_lines(invoice_id)
        if invoice is None:
            raise EntityNotFoundError("Invoice", invoice_id)
        location = await self._load_location(invoice.location_id)
        company, _, _ = await self._parent_of(location)
        return await self.sync_invoice(invoice, location, company)

    # ── Bulk ────────────────────────────────────────────────

    async def sync_all_to_qbo(
        self,
        companies: Iterable[CustomerCompany],
        locations: Iterable[Location],
        known_customers: Optional[Mapping[str, dict]] = None,
    ) -> BatchSyncResult:
        """Sync companies, then their locations.

        Parents come strictly first. The parent lookup is built from this
        batch's company results, so a company created a moment ago is
        usable by its locations, and a location whose parent failed (or was
        not in the batch) gets PARENT_NOT_SYNCED without touching QBO.

        Linked locations are checked against the QBO hierarchy with one
        customer lookup for the whole batch, fetched after the companies
        unless the caller passes known_customers.

        Each entity runs shielded: cancelling the batch stops it between
        entities, never halfway through one.
        """
        companies = list(companies)
        locations = list(locations)
        batch = BatchSyncResult()

        for company in companies:
            batch.companies.append(await asyncio.shield(self.sync_customer_company(company)))

        if known_customers is None and any(location.qbo_customer_id for location in locations):
            try:
                known_customers = await self.customer_lookup()
            except QBOSyncError as exc:
                # Each linked location then fetches, and reports failure, on its own
                logger.warning(f"QBO customer lookup for batch hierarchy check failed: {exc.message}")

        names = {company.id: company.name for company in companies}
        parents = {
            company.id: result.qbo_id
            for company, result in zip(companies, batch.companies)
            if result.success and result.qbo_id
        }

        for location in locations:
            if location.parent_company_id is None:
                result = await asyncio.shield(self.sync_location(location, known_customers=known_customers))
            elif location.parent_company_id not in parents:
                result = self._parent_not_synced(location, names.get(location.parent_company_id))
            else:
                result = await asyncio.shield(self.sync_location(
                    location,
                    names[location.parent_company_id],
                    parents[location.parent_company_id],
                    known_customers=known_customers,
                ))
            batch.locations.append(result)

        logger.info(f"QBO batch sync finished: {batch.summary()}")
        return batch

    # ── Invoices ────────────────────────────────────────────

    async def _push_invoice(
        self,
        ref: EntityRef,
        invoice: Invoice,
        location: Location,
        company: Optional[CustomerCompany],
        lines: Optional[Iterable[InvoiceLine]],
        action: str,
    ) -> SyncResult:
        self._require_configured()
        sent_qbo_id, sent_sync_token = invoice.qbo_invoice_id, invoice.qbo_sync_token
        payload = to_qbo_invoice_payload(
            invoice,
            location,
            company,
            invoice.lines if lines is None else lines,
            for_update=action == UPDATE,
            default_currency=self._default_currency,
        )
        if action == CREATE:
            send, failure_code = self._client.create_invoice, SyncErrorCode.CREATE_FAILED
        else:
            send, failure_code = self._client.update_invoice, SyncErrorCode.UPDATE_FAILED
        logger.debug(f"QBO {action} of {ref} payload: {payload}")

        response, attempts = await self._retry.run(partial(send, payload), failure_code, f"QBO {action} of {ref}")
        return await self._record_link(
            ref, response, sent_qbo_id, sent_sync_token, action, attempts, qbo_doc_number=response.get("DocNumber")
        )

    async def create_invoice(
        self,
        invoice: Invoice,
        location: Location,
        company: Optional[CustomerCompany],
        lines: Optional[Iterable[InvoiceLine]] = None,
    ) -> SyncResult:
        """Create the invoice in QBO, billed per location.bill_with_parent."""
        ref = EntityRef(INVOICE, invoice.id)
        return await self._guarded(
            ref, SyncErrorCode.CREATE_FAILED, self._push_invoice(ref, invoice, location, company, lines, CREATE)
        )

    async def update_invoice(
        self,
        invoice: Invoice,
        location: Location,
        company: Optional[CustomerCompany],
        lines: Optional[Iterable[InvoiceLine]] = None,
    ) -> SyncResult:
        ref = EntityRef(INVOICE, invoice.id)
        return await self._guarded(
            ref, SyncErrorCode.UPDATE_FAILED, self._push_invoice(ref, invoice, location, company, lines, UPDATE)
        )

    async def _void(self, ref: EntityRef, invoice: Invoice) -> SyncResult:
        self._require_configured()
        qbo_id, sync_token = invoice.qbo_invoice_id, invoice.qbo_sync_token
        if not sync_token:
            raise MissingExternalIdError(INVOICE, invoice.id)
        response, attempts = await self._retry.run(
            partial(self._client.void_invoice, qbo_id, sync_token), SyncErrorCode.VOID_FAILED, f"QBO void of {ref}"
        )
        return await self._record_link(ref, response, qbo_id, sync_token, VOID, attempts)

    async def void_invoice(self, invoice: Invoice) -> SyncResult:
        """Void in QBO (invoices are never deleted there). No-op if never synced."""
        ref = EntityRef(INVOICE, invoice.id)
        if not invoice.qbo_invoice_id:
            return self._skipped(ref)
        return await self._guarded(ref, SyncErrorCode.VOID_FAILED, self._void(ref, invoice))

    async def sync_invoice(
        self,
        invoice: Invoice,
        location: Location,
        company: Optional[CustomerCompany],
        lines: Optional[Iterable[InvoiceLine]] = None,
    ) -> SyncResult:
        """Void, update or create depending on status and link state.

        Paid invoices still get pushed so QBO sees their final state.
        """
        if invoice.status in VOID_STATUSES or not invoice.is_active:
            return await self.void_invoice(invoice)
        if invoice.qbo_invoice_id:
            return await self.update_invoice(invoice, location, company, lines)
        return await self.create_invoice(invoice, location, company, lines)

    # ── Pull: customers ─────────────────────────────────────

    async def fetch_all_customers(self) -> list[dict]:
        """All QBO customers, active and inactive."""
        self._require_configured()
        customers, _ = await self._retry.run(
            self._client.fetch_all_customers, SyncErrorCode.FETCH_FAILED, "QBO customer fetch"
        )
        return customers

    async def customer_lookup(self) -> dict[str, dict]:
        """QBO customers keyed by Id, for hierarchy checks."""
        return {c["Id"]: c for c in await self.fetch_all_customers()}

    async def reconcile_customers(self) -> list[CustomerReconciliation]:
        """Check every QBO customer against the two-level rule and local links.

        Valid linked customers get their SyncToken (and ParentRef, for
        locations) refreshed. Customers more than two levels deep are
        reported and left alone.
        """
        customers = await self.fetch_all_customers()
        lookup = {c["Id"]: c for c in customers}
        links = await self._store.customer_link_map()
        results = []

        for customer in customers:
            parsed = parse_qbo_customer(customer)
            ref = links.get(parsed.qbo_customer_id)
            reconciliation = CustomerReconciliation(
                qbo_customer_id=parsed.qbo_customer_id,
                display_name=parsed.display_name,
                entity_type=ref.entity_type if ref else None,
                entity_id=ref.entity_id if ref else None,
                warnings=parsed.warnings,
            )

            check = validate_qbo_hierarchy_depth(customer, lookup)
            if not check.valid:
                error = HierarchyDepthError(parsed.display_name, parsed.qbo_customer_id, parsed.parent_qbo_id)
                logger.warning(check.reason)
                reconciliation.valid = False
                reconciliation.error = SyncErrorInfo(code=error.code, message=error.message, details=error.details)
            elif ref is not None:
                reconciliation.link_refreshed = await self._refresh_customer_link(ref, parsed.qbo_customer_id,
                                                                                  parsed.qbo_sync_token,
                                                                                  parsed.parent_qbo_id)
            results.append(reconciliation)

        return results

    async def _refresh_customer_link(
        self, ref: EntityRef, qbo_id: str, sync_token: str, parent_qbo_id: Optional[str]
    ) -> bool:
        if ref.entity_type == COMPANY:
            entity = await self._store.get_company(ref.entity_id)
            extra = {}
        else:
            entity = await self._store.get_location(ref.entity_id)
            extra = {"qbo_parent_customer_id": parent_qbo_id}
        if entity is None or not _is_newer(sync_token, entity.qbo_sync_token):
            return False
        return await self._store.save_external_link(
            ref, qbo_id, sync_token, expected_qbo_id=qbo_id, expected_sync_token=entity.qbo_sync_token, **extra
        )

    # ── Pull: invoices ──────────────────────────────────────

    async def fetch_invoices(self, since: Optional[datetime] = None) -> list[dict]:
        self._require_configured()
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        invoices, _ = await self._retry.run(
            partial(self._client.fetch_invoices, since), SyncErrorCode.FETCH_FAILED, "QBO invoice fetch"
        )
        return invoices

    @staticmethod
    def process_qbo_invoice(
        parsed: ParsedQBOInvoice, customer_links: Mapping[str, EntityRef]
    ) -> InvoiceReconciliation:
        """Work out which location a pulled invoice belongs to.

        The memo's "(Location ID: ...)" token wins; otherwise CustomerRef is
        used, which only identifies a location when the invoice was billed
        to the location itself.
        """
        location_id = extract_location_id_from_memo(parsed.customer_memo)
        matched_by = "memo" if location_id else None
        company_id = None

        ref = customer_links.get(parsed.customer_ref_id)
        if ref is not None and ref.entity_type == COMPANY:
            company_id = ref.entity_id
        if location_id is None and ref is not None and ref.entity_type == LOCATION:
            location_id = ref.entity_id
            matched_by = "customer_ref"

        return InvoiceReconciliation(
            qbo_invoice_id=parsed.qbo_invoice_id,
            location_id=location_id,
            customer_company_id=company_id,
            matched_by=matched_by,
            status=parsed.status,
            error=None if location_id else "Could not determine location for invoice",
        )

    async def _reconcile_invoice(self, record: dict, customer_links: Mapping[str, EntityRef]) -> InvoiceReconciliation:
        parsed = from_qbo_invoice_payload(record, self._default_currency)

        local = await self._store.get_invoice_by_qbo_id(parsed.qbo_invoice_id)
        if local is not None:
            if _is_newer(parsed.qbo_sync_token, local.qbo_sync_token):
                await self._store.save_external_link(
                    EntityRef(INVOICE, local.id),
                    parsed.qbo_invoice_id,
                    parsed.qbo_sync_token,
                    expected_qbo_id=parsed.qbo_invoice_id,
                    expected_sync_token=local.qbo_sync_token,
                    qbo_doc_number=parsed.qbo_doc_number,
                )
            return InvoiceReconciliation(
                qbo_invoice_id=parsed.qbo_invoice_id,
                invoice_id=local.id,
                location_id=local.location_id,
                customer_company_id=local.customer_company_id,
                matched_by="qbo_id",
                action="linked",
                status=parsed.status,
            )

        reconciliation = self.process_qbo_invoice(parsed, customer_links)
        location = await self._store.get_location(reconciliation.location_id) if reconciliation.location_id else None
        if location is None and reconciliation.matched_by == "memo":
            # Memo hint is best effort; fall back to CustomerRef
            logger.warning(
                f"QBO invoice {parsed.qbo_invoice_id} memo names unknown location {reconciliation.location_id}"
            )
            reconciliation = self.process_qbo_invoice(parsed.model_copy(update={"customer_memo": None}), customer_links)
            location = (
                await self._store.get_location(reconciliation.location_id) if reconciliation.location_id else None
            )

        if location is None and reconciliation.customer_company_id:
            candidates = await self._store.list_locations(parent_company_id=reconciliation.customer_company_id)
            if len(candidates) == 1:
                location = candidates[0]
                reconciliation.matched_by = "customer_ref"

        if location is None:
            reconciliation.location_id = None
            reconciliation.error = "Could not determine location for invoice"
            logger.warning(f"QBO invoice {parsed.qbo_invoice_id} left unresolved: no matching location")
            return reconciliation

        company_id = reconciliation.customer_company_id or location.parent_company_id
        invoice = await self._store.create_invoice_from_qbo(
            parsed, location.id, company_id, strip_service_location(parsed.customer_memo)
        )
        reconciliation.invoice_id = invoice.id
        reconciliation.location_id = location.id
        reconciliation.customer_company_id = company_id
        reconciliation.action = "imported"
        reconciliation.error = None
        return reconciliation

    async def pull_invoices(self, since: Optional[datetime] = None) -> list[InvoiceReconciliation]:
        """Fetch QBO invoices and reconcile each against local records."""
        records = await self.fetch_invoices(since)
        customer_links = await self._store.customer_link_map()
        results = [await self._reconcile_invoice(record, customer_links) for record in records]
        imported = sum(1 for r in results if r.action == "imported")
        unresolved = sum(1 for r in results if r.action == "unresolved")
        logger.info(f"QBO invoice pull: {len(results)} fetched, {imported} imported, {unresolved} unresolved")
        return results
