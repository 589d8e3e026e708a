"""
Tests for the QBO sync service.

Runs against InMemoryQBOClient, which enforces QBO's DisplayName and
SyncToken rules, and a real (SQLite) entity store.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.exceptions import SyncErrorCode
from app.services.entity_store import COMPANY, LOCATION, EntityRef
from app.services.qbo_client import InMemoryQBOClient, QBOApiError
from app.services.qbo_mappers import from_qbo_invoice_payload
from app.services.qbo_sync_service import QBOSyncService
from tests.factories import CustomerCompanyFactory, InvoiceFactory, LocationFactory


class RejectingQBOClient(InMemoryQBOClient):
    """Rejects customer creates for the given DisplayNames with a validation fault."""

    def __init__(self, rejected_names):
        super().__init__()
        self.rejected_names = set(rejected_names)

    async def create_customer(self, payload):
        if payload["DisplayName"] in self.rejected_names:
            self.calls.append(("create_customer", payload))
            raise QBOApiError(400, "Invalid BillAddr", fault_code="2010", fault_type="ValidationFault")
        return await super().create_customer(payload)


class GatedQBOClient(InMemoryQBOClient):
    """Holds every customer create until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def create_customer(self, payload):
        self.entered.set()
        await self.release.wait()
        return await super().create_customer(payload)


async def synced_company(service, store, **kwargs):
    company = CustomerCompanyFactory(**kwargs)
    await store.add(company)
    result = await service.sync_customer_company(company)
    assert result.success
    return await store.get_company(company.id)


async def synced_location(service, store, company, **kwargs):
    location = LocationFactory(parent=company, **kwargs)
    await store.add(location)
    result = await service.sync_location(location, company.name, company.qbo_customer_id)
    assert result.success
    return await store.get_location(location.id)


class TestCompanySync:
    """Tests for company create/update/deactivate."""

    @pytest.mark.asyncio
    async def test_create_links_company(self, service, store, fake_qbo):
        company = CustomerCompanyFactory(name="Acme")
        await store.add(company)

        result = await service.create_customer_company(company)

        assert result.success is True
        assert result.action == "create"
        assert result.qbo_id == "1"
        assert result.qbo_sync_token == "0"
        assert result.link_saved is True
        assert result.attempts == 1

        stored = await store.get_company(company.id)
        assert stored.qbo_customer_id == "1"
        assert stored.qbo_sync_token == "0"
        assert fake_qbo.customers["1"]["DisplayName"] == "Acme"

    @pytest.mark.asyncio
    async def test_sync_updates_linked_company(self, service, store, fake_qbo):
        company = await synced_company(service, store, name="Acme")
        company.phone = "416-555-0100"

        result = await service.sync_customer_company(company)

        assert result.action == "update"
        assert result.qbo_sync_token == "1"
        assert fake_qbo.calls_for("update_customer")[0]["SyncToken"] == "0"
        assert fake_qbo.customers["1"]["PrimaryPhone"] == {"FreeFormNumber": "416-555-0100"}
        assert (await store.get_company(company.id)).qbo_sync_token == "1"

    @pytest.mark.asyncio
    async def test_not_configured_makes_no_calls(self, store):
        client = InMemoryQBOClient(configured=False)
        service = QBOSyncService(client, store)
        company = CustomerCompanyFactory()
        await store.add(company)

        result = await service.sync_customer_company(company)

        assert result.success is False
        assert result.error_code == SyncErrorCode.NOT_CONFIGURED
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_update_without_link_is_caller_error(self, service, store, fake_qbo):
        company = CustomerCompanyFactory()
        await store.add(company)

        result = await service.update_customer_company(company)

        assert result.success is False
        assert result.error_code == SyncErrorCode.MISSING_EXTERNAL_ID
        assert fake_qbo.calls == []

    @pytest.mark.asyncio
    async def test_deactivate_unsynced_is_noop(self, service, store, fake_qbo):
        company = CustomerCompanyFactory()
        await store.add(company)

        result = await service.deactivate_customer_company(company)

        assert result.success is True
        assert result.action == "skip"
        assert fake_qbo.calls == []

    @pytest.mark.asyncio
    async def test_deactivate_marks_customer_inactive(self, service, store, fake_qbo):
        company = await synced_company(service, store)

        result = await service.deactivate_customer_company(company)

        assert result.action == "deactivate"
        assert fake_qbo.customers[company.qbo_customer_id]["Active"] is False
        assert (await store.get_company(company.id)).qbo_sync_token == "1"

    @pytest.mark.asyncio
    async def test_duplicate_name_is_renamed_once(self, service, store, fake_qbo):
        await fake_qbo.create_customer({"DisplayName": "Acme"})
        company = CustomerCompanyFactory(name="Acme")
        await store.add(company)

        result = await service.create_customer_company(company)

        assert result.success is True
        assert fake_qbo.customers[result.qbo_id]["DisplayName"] == "Acme (2)"
        assert len(fake_qbo.calls_for("fetch_all_customers")) == 1
        # Local name is untouched
        assert (await store.get_company(company.id)).name == "Acme"

    @pytest.mark.asyncio
    async def test_renamed_company_keeps_its_name_on_update(self, service, store, fake_qbo):
        await fake_qbo.create_customer({"DisplayName": "Acme"})
        company = CustomerCompanyFactory(name="Acme")
        await store.add(company)
        created = await service.create_customer_company(company)

        names = []
        for _ in range(2):
            result = await service.update_customer_company(await store.get_company(company.id))
            assert result.success is True
            names.append(fake_qbo.customers[created.qbo_id]["DisplayName"])

        assert names == ["Acme (2)", "Acme (2)"]

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, service, store, fake_qbo, sleeps):
        fake_qbo.queue_failure("create_customer", QBOApiError(503, "Service Unavailable"), times=2)
        company = CustomerCompanyFactory()
        await store.add(company)

        result = await service.create_customer_company(company)

        assert result.success is True
        assert result.attempts == 3
        assert sleeps.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_company_unlinked(self, service, store, fake_qbo):
        fake_qbo.queue_failure("create_customer", QBOApiError(503, "Service Unavailable"), times=4)
        company = CustomerCompanyFactory()
        await store.add(company)

        result = await service.create_customer_company(company)

        assert result.success is False
        assert result.error_code == SyncErrorCode.CREATE_FAILED
        assert result.attempts == 4
        assert fake_qbo.customers == {}
        stored = await store.get_company(company.id)
        assert stored.qbo_customer_id is None
        assert stored.qbo_sync_token is None

    @pytest.mark.asyncio
    async def test_stale_token_conflict_is_not_retried(self, service, store, fake_qbo, sleeps):
        company = await synced_company(service, store)
        # Someone edits the customer in QBO directly
        await fake_qbo.update_customer({**fake_qbo.customers[company.qbo_customer_id], "Notes": "edited"})

        result = await service.update_customer_company(company)

        assert result.success is False
        assert result.error_code == SyncErrorCode.UPDATE_FAILED
        assert result.error.details["kind"] == "conflict"
        assert sleeps.delays == []
        assert (await store.get_company(company.id)).qbo_sync_token == "0"

    @pytest.mark.asyncio
    async def test_stale_snapshot_does_not_overwrite_link(self, service, store, fake_qbo):
        company = CustomerCompanyFactory(name="Acme")
        await store.add(company)
        first = await store.get_company(company.id)
        second = await store.get_company(company.id)

        winner = await service.sync_customer_company(first)
        loser = await service.sync_customer_company(second)

        assert winner.link_saved is True
        assert loser.success is True
        assert loser.link_saved is False
        assert (await store.get_company(company.id)).qbo_customer_id == winner.qbo_id

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_result(self, service, store, fake_qbo):
        fake_qbo.queue_failure("create_customer", RuntimeError("socket exploded"))
        company = CustomerCompanyFactory()
        await store.add(company)

        result = await service.create_customer_company(company)

        assert result.success is False
        assert result.error_code == SyncErrorCode.CREATE_FAILED
        assert result.error.details["kind"] == "unexpected"

    @pytest.mark.asyncio
    async def test_results_reach_sink(self, service, store, published):
        company = CustomerCompanyFactory()
        await store.add(company)

        result = await service.sync_customer_company(company)

        assert published == [result]

    @pytest.mark.asyncio
    async def test_company_not_found(self, service):
        from app.exceptions import EntityNotFoundError

        with pytest.raises(EntityNotFoundError):
            await service.sync_company_by_id("missing")


class TestLocationSync:
    """Tests for location sync as sub-customer or standalone customer."""

    @pytest.mark.asyncio
    async def test_create_sub_customer(self, service, store, fake_qbo):
        company = await synced_company(service, store, name="Acme")
        location = LocationFactory(parent=company, location_name="Maple Towers")
        await store.add(location)

        result = await service.create_location(location, company.name, company.qbo_customer_id)

        record = fake_qbo.customers[result.qbo_id]
        assert record["DisplayName"] == "Acme: Maple Towers"
        assert record["ParentRef"] == {"value": company.qbo_customer_id}
        assert record["Job"] is True
        stored = await store.get_location(location.id)
        assert stored.qbo_customer_id == result.qbo_id
        assert stored.qbo_parent_customer_id == company.qbo_customer_id

    @pytest.mark.asyncio
    async def test_parent_not_synced_makes_no_calls(self, service, store, fake_qbo):
        company = CustomerCompanyFactory(name="Acme")
        location = LocationFactory(parent=company)
        await store.add(company, location)

        result = await service.sync_location_by_id(location.id)

        assert result.success is False
        assert result.error_code == SyncErrorCode.PARENT_NOT_SYNCED
        assert "Acme" in result.error.message
        assert fake_qbo.calls == []

    @pytest.mark.asyncio
    async def test_sync_by_id_resolves_parent(self, service, store, fake_qbo):
        company = await synced_company(service, store)
        location = LocationFactory(parent=company)
        await store.add(location)

        result = await service.sync_location_by_id(location.id)

        assert result.success is True
        assert fake_qbo.customers[result.qbo_id]["ParentRef"] == {"value": company.qbo_customer_id}

    @pytest.mark.asyncio
    async def test_update_sends_hierarchy_fields(self, service, store, fake_qbo):
        company = await synced_company(service, store)
        location = await synced_location(service, store, company)
        location.bill_with_parent = False

        result = await service.sync_location(location, company.name, company.qbo_customer_id)

        payload = fake_qbo.calls_for("update_customer")[-1]
        assert result.action == "update"
        assert payload["ParentRef"] == {"value": company.qbo_customer_id}
        assert payload["Job"] is True
        assert payload["BillWithParent"] is False

    @pytest.mark.asyncio
    async def test_standalone_location_round_trip(self, service, store, fake_qbo):
        location = LocationFactory(company_name="Birch Holdings", location_name="Unit 4")
        await store.add(location)

        created = await service.sync_location_by_id(location.id)
        updated = await service.sync_location_by_id(location.id)

        assert created.action == "create"
        assert updated.action == "update"
        payload = fake_qbo.calls_for("update_customer")[0]
        assert "ParentRef" not in payload
        assert payload["DisplayName"] == "Birch Holdings: Unit 4"
        assert (await store.get_location(location.id)).qbo_parent_customer_id is None

    @pytest.mark.asyncio
    async def test_deactivate_location(self, service, store, fake_qbo):
        company = await synced_company(service, store)
        location = await synced_location(service, store, company)

        result = await service.deactivate_location_by_id(location.id)

        assert result.action == "deactivate"
        assert fake_qbo.customers[location.qbo_customer_id]["Active"] is False

    @pytest.mark.asyncio
    async def test_too_deep_hierarchy_is_refused(self, service, store, fake_qbo):
        location = LocationFactory(qbo_customer_id="3", qbo_sync_token="0")
        await store.add(location)
        known = {
            "1": {"Id": "1", "DisplayName": "Acme"},
            "2": {"Id": "2", "DisplayName": "Acme: Tower", "ParentRef": {"value": "1"}},
            "3": {"Id": "3", "DisplayName": "Acme: Tower: Lobby", "ParentRef": {"value": "2"}},
        }

        result = await service.sync_location(location, known_customers=known)

        assert result.error_code == SyncErrorCode.HIERARCHY_TOO_DEEP
        assert fake_qbo.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["sync_location_by_id", "deactivate_location_by_id"])
    async def test_too_deep_hierarchy_is_refused_by_id(self, service, store, fake_qbo, operation):
        top = await fake_qbo.create_customer({"DisplayName": "Acme"})
        middle = await fake_qbo.create_customer(
            {"DisplayName": "Acme: Tower", "Job": True, "ParentRef": {"value": top["Id"]}}
        )
        deep = await fake_qbo.create_customer(
            {"DisplayName": "Acme: Tower: Lobby", "Job": True, "ParentRef": {"value": middle["Id"]}}
        )
        company = CustomerCompanyFactory(name="Acme", qbo_customer_id=top["Id"], qbo_sync_token="0")
        location = LocationFactory(
            parent=company, location_name="Lobby", qbo_customer_id=deep["Id"], qbo_sync_token="0"
        )
        await store.add(company, location)

        result = await getattr(service, operation)(location.id)

        assert result.success is False
        assert result.error_code == SyncErrorCode.HIERARCHY_TOO_DEEP
        assert fake_qbo.calls_for("update_customer") == []
        assert fake_qbo.customers[deep["Id"]]["ParentRef"] == {"value": middle["Id"]}
        assert fake_qbo.customers[deep["Id"]]["Active"] is True

    @pytest.mark.asyncio
    async def test_update_checks_hierarchy_first(self, service, store, fake_qbo):
        company = await synced_company(service, store)
        location = await synced_location(service, store, company)
        fake_qbo.calls.clear()

        result = await service.update_location(location, company.name, company.qbo_customer_id)

        assert result.success is True
        assert [op for op, _ in fake_qbo.calls] == ["fetch_all_customers", "update_customer"]


class TestBatchSync:
    """Tests for sync_all_to_qbo."""

    @pytest.mark.asyncio
    async def test_failed_parent_blocks_only_its_locations(self, store, retry_policy):
        client = RejectingQBOClient({"Beta Holdings"})
        service = QBOSyncService(client, store, retry_policy)
        alpha = CustomerCompanyFactory(name="Alpha Properties")
        beta = CustomerCompanyFactory(name="Beta Holdings")
        a1 = LocationFactory(parent=alpha)
        a2 = LocationFactory(parent=alpha)
        b1 = LocationFactory(parent=beta)
        await store.add(alpha, beta, a1, a2, b1)

        batch = await service.sync_all_to_qbo([alpha, beta], [a1, a2, b1])

        assert [r.success for r in batch.companies] == [True, False]
        assert batch.companies[1].error_code == SyncErrorCode.CREATE_FAILED
        assert [r.success for r in batch.locations] == [True, True, False]
        assert batch.locations[2].error_code == SyncErrorCode.PARENT_NOT_SYNCED

        alpha_id = batch.companies[0].qbo_id
        for result in batch.locations[:2]:
            assert client.customers[result.qbo_id]["ParentRef"] == {"value": alpha_id}

        # alpha, beta (rejected), a1, a2; b1 never sent
        assert len(client.calls_for("create_customer")) == 4
        assert batch.summary() == (
            "1 of 2 companies synced; 1 failed, 2 of 3 locations synced; 1 blocked on parent"
        )
        assert batch.all_succeeded is False

    @pytest.mark.asyncio
    async def test_parent_outside_batch_is_blocked(self, service, store, fake_qbo):
        company = await synced_company(service, store)
        location = LocationFactory(parent=company)
        await store.add(location)

        batch = await service.sync_all_to_qbo([], [location])

        assert batch.locations[0].error_code == SyncErrorCode.PARENT_NOT_SYNCED


    @pytest.mark.asyncio
    async def test_linked_locations_share_one_hierarchy_lookup(self, service, store, fake_qbo):
        company = await synced_company(service, store, name="Acme")
        shallow = await synced_location(service, store, company)
        deep_record = await fake_qbo.create_customer({
            "DisplayName": "Acme: Tower: Lobby",
            "Job": True,
            "ParentRef": {"value": shallow.qbo_customer_id},
        })
        deep = LocationFactory(parent=company, qbo_customer_id=deep_record["Id"], qbo_sync_token="0")
        await store.add(deep)
        fake_qbo.calls.clear()

        batch = await service.sync_all_to_qbo([company], [shallow, deep])

        assert batch.locations[0].success is True
        assert batch.locations[1].error_code == SyncErrorCode.HIERARCHY_TOO_DEEP
        assert len(fake_qbo.calls_for("fetch_all_customers")) == 1
        assert fake_qbo.customers[deep_record["Id"]]["ParentRef"] == {"value": shallow.qbo_customer_id}

    @pytest.mark.asyncio
    async def test_unlinked_batch_skips_hierarchy_lookup(self, service, store, fake_qbo):
        company = CustomerCompanyFactory()
        location = LocationFactory(parent=company)
        await store.add(company, location)

        await service.sync_all_to_qbo([company], [location])

        assert fake_qbo.calls_for("fetch_all_customers") == []
    @pytest.mark.asyncio
    async def test_mixed_batch(self, service, store, fake_qbo, published):
        company = CustomerCompanyFactory()
        child = LocationFactory(parent=company)
        standalone = LocationFactory()
        await store.add(company, child, standalone)

        batch = await service.sync_all_to_qbo([company], [child, standalone])

        assert batch.all_succeeded is True
        assert batch.summary() == "1 of 1 companies synced, 2 of 2 locations synced"
        assert "ParentRef" not in fake_qbo.customers[batch.locations[1].qbo_id]
        assert len(published) == 3

    @pytest.mark.asyncio
    async def test_cancel_finishes_current_entity_only(self, store, retry_policy):
        client = GatedQBOClient()
        service = QBOSyncService(client, store, retry_policy)
        first = CustomerCompanyFactory()
        second = CustomerCompanyFactory()
        await store.add(first, second)

        task = asyncio.create_task(service.sync_all_to_qbo([first, second], []))
        await client.entered.wait()
        task.cancel()
        client.release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        stored = await store.get_company(first.id)
        for _ in range(50):
            if stored.qbo_customer_id:
                break
            await asyncio.sleep(0.02)
            stored = await store.get_company(first.id)

        assert stored.qbo_customer_id == "1"
        assert len(client.calls_for("create_customer")) == 1
        assert (await store.get_company(second.id)).qbo_customer_id is None


class TestInvoiceSync:
    """Tests for invoice create/update/void."""

    async def _setup(self, service, store, **location_kwargs):
        company = await synced_company(service, store, name="Acme")
        location = await synced_location(service, store, company, **location_kwargs)
        invoice = InvoiceFactory(location=location)
        await store.add(invoice)
        return company, location, invoice

    @pytest.mark.asyncio
    async def test_create_bills_parent(self, service, store, fake_qbo):
        company, location, invoice = await self._setup(service, store)

        result = await service.create_invoice(invoice, location, company)

        record = fake_qbo.invoices[result.qbo_id]
        assert record["CustomerRef"] == {"value": company.qbo_customer_id}
        assert record["ShipAddr"]["Line1"] == location.address
        assert f"(Location ID: {location.id})" in record["CustomerMemo"]["value"]
        assert record["TotalAmt"] == 199.99

        stored = await store.get_invoice_with_lines(invoice.id)
        assert stored.qbo_invoice_id == result.qbo_id
        assert stored.qbo_doc_number == invoice.invoice_number

    @pytest.mark.asyncio
    async def test_create_bills_location(self, service, store, fake_qbo):
        company, location, invoice = await self._setup(service, store, bill_with_parent=False)

        result = await service.sync_invoice_by_id(invoice.id)

        assert fake_qbo.invoices[result.qbo_id]["CustomerRef"] == {"value": location.qbo_customer_id}

    @pytest.mark.asyncio
    async def test_no_billing_target(self, service, store, fake_qbo):
        company = CustomerCompanyFactory()
        location = LocationFactory(parent=company)
        invoice = InvoiceFactory(location=location)
        await store.add(company, location, invoice)

        result = await service.sync_invoice_by_id(invoice.id)

        assert result.error_code == SyncErrorCode.NO_BILLING_TARGET
        assert fake_qbo.calls_for("create_invoice") == []

    @pytest.mark.asyncio
    async def test_update_linked_invoice(self, service, store, fake_qbo):
        company, location, invoice = await self._setup(service, store)
        await service.sync_invoice(invoice, location, company)
        invoice = await store.replace_invoice_lines(invoice.id, [
            {"description": "Snow Removal", "quantity": "4", "unit_price": "50.00"},
        ])
        invoice = await store.get_invoice_with_lines(invoice.id)

        result = await service.sync_invoice(invoice, location, company)

        assert result.action == "update"
        payload = fake_qbo.calls_for("update_invoice")[0]
        assert payload["Id"] == invoice.qbo_invoice_id
        assert payload["SyncToken"] == "0"
        assert fake_qbo.invoices[result.qbo_id]["TotalAmt"] == 200.0
        assert (await store.get_invoice_with_lines(invoice.id)).qbo_sync_token == "1"

    @pytest.mark.asyncio
    async def test_void_unsynced_is_noop(self, service, store, fake_qbo):
        company, location, invoice = await self._setup(service, store)
        invoice.status = "cancelled"

        result = await service.sync_invoice(invoice, location, company)

        assert result.success is True
        assert result.action == "skip"
        assert fake_qbo.calls_for("void_invoice") == []

    @pytest.mark.asyncio
    async def test_void_synced_invoice(self, service, store, fake_qbo):
        company, location, invoice = await self._setup(service, store)
        await service.sync_invoice(invoice, location, company)
        invoice = await store.get_invoice_with_lines(invoice.id)
        invoice.status = "void"

        result = await service.sync_invoice(invoice, location, company)

        assert result.action == "void"
        assert fake_qbo.invoices[invoice.qbo_invoice_id]["TotalAmt"] == 0
        assert (await store.get_invoice_with_lines(invoice.id)).qbo_sync_token == "1"

    @pytest.mark.asyncio
    async def test_void_failure_is_reported(self, service, store, fake_qbo):
        company, location, invoice = await self._setup(service, store)
        await service.sync_invoice(invoice, location, company)
        invoice = await store.get_invoice_with_lines(invoice.id)
        fake_qbo.queue_failure("void_invoice", QBOApiError(400, "Invoice is in a closed period"))

        result = await service.void_invoice(invoice)

        assert result.error_code == SyncErrorCode.VOID_FAILED


class TestReconcileCustomers:
    """Tests for reconcile_customers."""

    @pytest.mark.asyncio
    async def test_refreshes_token_and_flags_deep_hierarchy(self, service, store, fake_qbo):
        company = await synced_company(service, store, name="Acme")
        location = await synced_location(service, store, company, location_name="Tower")
        await fake_qbo.update_customer({**fake_qbo.customers[company.qbo_customer_id], "Notes": "edited in QBO"})
        lobby = await fake_qbo.create_customer({
            "DisplayName": "Acme: Tower: Lobby", "Job": True, "ParentRef": {"value": location.qbo_customer_id},
        })

        results = {r.qbo_customer_id: r for r in await service.reconcile_customers()}

        refreshed = results[company.qbo_customer_id]
        assert refreshed.entity_type == COMPANY
        assert refreshed.link_refreshed is True
        assert (await store.get_company(company.id)).qbo_sync_token == "1"

        unchanged = results[location.qbo_customer_id]
        assert unchanged.entity_type == LOCATION
        assert unchanged.link_refreshed is False

        deep = results[lobby["Id"]]
        assert deep.valid is False
        assert deep.error.code == SyncErrorCode.HIERARCHY_TOO_DEEP
        assert deep.entity_id is None

    @pytest.mark.asyncio
    async def test_not_configured_raises(self, store):
        from app.exceptions import QBONotConfiguredError

        service = QBOSyncService(InMemoryQBOClient(configured=False), store)

        with pytest.raises(QBONotConfiguredError):
            await service.reconcile_customers()


class TestPullInvoices:
    """Tests for pull_invoices and process_qbo_invoice."""

    @pytest.mark.asyncio
    async def test_linked_invoice_is_not_reimported(self, service, store, fake_qbo):
        company = await synced_company(service, store)
        location = await synced_location(service, store, company)
        invoice = InvoiceFactory(location=location)
        await store.add(invoice)
        await service.sync_invoice(invoice, location, company)

        results = await service.pull_invoices()

        assert len(results) == 1
        assert results[0].action == "linked"
        assert results[0].invoice_id == invoice.id
        assert results[0].matched_by == "qbo_id"

    @pytest.mark.asyncio
    async def test_memo_routes_parent_billed_invoice(self, service, store, fake_qbo):
        company = await synced_company(service, store, name="Acme")
        location = await synced_location(service, store, company)
        await synced_location(service, store, company)
        record = await fake_qbo.create_invoice({
            "CustomerRef": {"value": company.qbo_customer_id},
            "DocNumber": "1042",
            "TxnDate": "2025-03-01",
            "CustomerMemo": {"value": f"Gate code 4411\n\nService Location: Acme (Location ID: {location.id})"},
            "Line": [{
                "LineNum": 1,
                "Description": "Snow Removal",
                "Amount": 150.0,
                "DetailType": "SalesItemLineDetail",
                "SalesItemLineDetail": {"Qty": 2, "UnitPrice": 75.0},
            }],
        })

        [result] = await service.pull_invoices()

        assert result.action == "imported"
        assert result.matched_by == "memo"
        assert result.location_id == location.id
        assert result.customer_company_id == company.id

        imported = await store.get_invoice_by_qbo_id(record["Id"])
        assert imported.location_id == location.id
        assert imported.notes_customer == "Gate code 4411"
        assert imported.invoice_number == "1042"
        assert imported.status == "sent"
        assert len(imported.lines) == 1
        assert Decimal(imported.lines[0].line_subtotal) == Decimal("150")

    @pytest.mark.asyncio
    async def test_single_location_fallback(self, service, store, fake_qbo):
        company = await synced_company(service, store)
        location = await synced_location(service, store, company)
        await fake_qbo.create_invoice({"CustomerRef": {"value": company.qbo_customer_id}, "Line": []})

        [result] = await service.pull_invoices()

        assert result.action == "imported"
        assert result.location_id == location.id
        assert result.matched_by == "customer_ref"

    @pytest.mark.asyncio
    async def test_unresolved_invoice(self, service, store, fake_qbo):
        await fake_qbo.create_invoice({"CustomerRef": {"value": "999"}, "Line": []})

        [result] = await service.pull_invoices()

        assert result.action == "unresolved"
        assert result.error is not None
        assert result.invoice_id is None

    @pytest.mark.asyncio
    async def test_since_filters_old_invoices(self, service, store, fake_qbo):
        await fake_qbo.create_invoice({"CustomerRef": {"value": "999"}, "Line": []})

        results = await service.pull_invoices(since=datetime.now(timezone.utc) + timedelta(minutes=5))

        assert results == []

    def test_memo_wins_over_customer_ref(self):
        parsed = from_qbo_invoice_payload({
            "Id": "130",
            "SyncToken": "0",
            "CustomerRef": {"value": "30"},
            "CustomerMemo": {"value": "Service Location: Acme (Location ID: loc-memo)"},
        })
        links = {"30": EntityRef(LOCATION, "loc-ref")}

        result = QBOSyncService.process_qbo_invoice(parsed, links)

        assert result.location_id == "loc-memo"
        assert result.matched_by == "memo"

    def test_customer_ref_to_location(self):
        parsed = from_qbo_invoice_payload({"Id": "130", "SyncToken": "0", "CustomerRef": {"value": "30"}})
        links = {"30": EntityRef(LOCATION, "loc-ref")}

        result = QBOSyncService.process_qbo_invoice(parsed, links)

        assert result.location_id == "loc-ref"
        assert result.matched_by == "customer_ref"
