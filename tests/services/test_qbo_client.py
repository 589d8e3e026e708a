"""
Tests for the QBO HTTP client and its in-memory stand-in.

The HTTP client is exercised against httpx.MockTransport, so requests are
inspected without touching the network.
"""

import json
from decimal import Decimal

import httpx
import pytest

from app.exceptions import QBONotConfiguredError
from app.services.qbo_client import (
    FAULT_DUPLICATE_NAME,
    FAULT_STALE_OBJECT,
    QUERY_PAGE_SIZE,
    InMemoryQBOClient,
    QBOApiError,
    QBOClient,
    QBOCredentials,
)

CREDENTIALS = QBOCredentials(realm_id="9130", access_token="secret-token", sandbox=True)


def make_client(handler, credentials=CREDENTIALS) -> QBOClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return QBOClient(credentials, http_client=http_client)


class TestQBOCredentials:
    """Tests for QBOCredentials."""

    def test_incomplete_without_token(self):
        assert QBOCredentials(realm_id="9130").is_complete is False
        assert QBOCredentials(access_token="t").is_complete is False
        assert CREDENTIALS.is_complete is True

    def test_repr_hides_token(self):
        assert "secret-token" not in repr(CREDENTIALS)
        assert "9130" in repr(CREDENTIALS)


class TestQBOClient:
    """Tests for QBOClient requests and error mapping."""

    @pytest.mark.asyncio
    async def test_unconfigured_client_never_sends(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={})

        client = make_client(handler, QBOCredentials())

        with pytest.raises(QBONotConfiguredError):
            await client.create_customer({"DisplayName": "Acme"})

        assert requests == []
        assert client.is_configured is False

    @pytest.mark.asyncio
    async def test_create_customer_request(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json={"Customer": {"Id": "58", "SyncToken": "0", "DisplayName": "Acme"}})

        client = make_client(handler)
        customer = await client.create_customer({"DisplayName": "Acme"})

        request = seen["request"]
        assert customer["Id"] == "58"
        assert request.method == "POST"
        assert request.url.host == "sandbox-quickbooks.api.intuit.com"
        assert request.url.path == "/v3/company/9130/customer"
        assert request.url.params["minorversion"] == "65"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert json.loads(request.content) == {"DisplayName": "Acme"}

    @pytest.mark.asyncio
    async def test_production_base_url(self):
        client = make_client(lambda r: httpx.Response(200), QBOCredentials("9130", "t", sandbox=False))
        assert client.base_url == "https://quickbooks.api.intuit.com/v3/company/9130"

    @pytest.mark.asyncio
    async def test_decimals_are_sent_as_numbers(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"Invoice": {"Id": "7", "SyncToken": "0"}})

        client = make_client(handler)
        await client.create_invoice({"Line": [{"Amount": Decimal("150.00")}]})

        assert seen["body"]["Line"][0]["Amount"] == 150.0

    @pytest.mark.asyncio
    async def test_fault_is_parsed(self):
        def handler(request):
            return httpx.Response(400, json={
                "Fault": {
                    "type": "ValidationFault",
                    "Error": [{"Message": "Duplicate Name Exists Error", "Detail": "The name supplied already exists.", "code": "6240"}],
                }
            })

        client = make_client(handler)

        with pytest.raises(QBOApiError) as exc_info:
            await client.create_customer({"DisplayName": "Acme"})

        error = exc_info.value
        assert error.status_code == 400
        assert error.fault_code == FAULT_DUPLICATE_NAME
        assert error.fault_type == "ValidationFault"
        assert "already exists" in error.message

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        client = make_client(lambda request: httpx.Response(502, text="Bad Gateway"))

        with pytest.raises(QBOApiError) as exc_info:
            await client.fetch_all_customers()

        assert exc_info.value.status_code == 502
        assert exc_info.value.fault_code is None

    @pytest.mark.asyncio
    async def test_void_uses_operation_param(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json={"Invoice": {"Id": "7", "SyncToken": "3"}})

        client = make_client(handler)
        result = await client.void_invoice("7", "2")

        assert result["SyncToken"] == "3"
        assert seen["request"].url.params["operation"] == "void"
        assert json.loads(seen["request"].content) == {"Id": "7", "SyncToken": "2"}

    @pytest.mark.asyncio
    async def test_customer_query_pages_through_results(self):
        statements = []

        def handler(request):
            statement = request.url.params["query"]
            statements.append(statement)
            if "STARTPOSITION 1 " in statement:
                rows = [{"Id": str(i)} for i in range(QUERY_PAGE_SIZE)]
            else:
                rows = [{"Id": "x1"}, {"Id": "x2"}, {"Id": "x3"}]
            return httpx.Response(200, json={"QueryResponse": {"Customer": rows}})

        client = make_client(handler)
        customers = await client.fetch_all_customers()

        assert len(customers) == QUERY_PAGE_SIZE + 3
        assert len(statements) == 2
        assert "Active IN (true, false)" in statements[0]
        assert f"STARTPOSITION {QUERY_PAGE_SIZE + 1} " in statements[1]

    @pytest.mark.asyncio
    async def test_empty_query_response(self):
        client = make_client(lambda request: httpx.Response(200, json={"QueryResponse": {}}))
        assert await client.fetch_invoices() == []


class TestInMemoryQBOClient:
    """Tests for the in-memory QBO stand-in."""

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_token(self):
        client = InMemoryQBOClient()
        customer = await client.create_customer({"DisplayName": "Acme"})

        assert customer["Id"] == "1"
        assert customer["SyncToken"] == "0"
        assert customer["Active"] is True

    @pytest.mark.asyncio
    async def test_duplicate_display_name_rejected(self):
        client = InMemoryQBOClient()
        await client.create_customer({"DisplayName": "Acme"})

        with pytest.raises(QBOApiError) as exc_info:
            await client.create_customer({"DisplayName": "Acme"})

        assert exc_info.value.fault_code == FAULT_DUPLICATE_NAME

    @pytest.mark.asyncio
    async def test_update_bumps_token_and_rejects_stale(self):
        client = InMemoryQBOClient()
        created = await client.create_customer({"DisplayName": "Acme"})

        updated = await client.update_customer({"Id": created["Id"], "SyncToken": "0", "DisplayName": "Acme Ltd"})
        assert updated["SyncToken"] == "1"

        with pytest.raises(QBOApiError) as exc_info:
            await client.update_customer({"Id": created["Id"], "SyncToken": "0", "DisplayName": "Acme"})
        assert exc_info.value.fault_code == FAULT_STALE_OBJECT

    @pytest.mark.asyncio
    async def test_void_zeroes_amounts(self):
        client = InMemoryQBOClient()
        invoice = await client.create_invoice({"CustomerRef": {"value": "1"}, "Line": [{"Amount": 150.0}]})
        assert invoice["TotalAmt"] == 150.0

        voided = await client.void_invoice(invoice["Id"], invoice["SyncToken"])

        assert voided["TotalAmt"] == 0
        assert voided["Balance"] == 0
        assert voided["SyncToken"] == "1"

    @pytest.mark.asyncio
    async def test_queued_failure_is_raised_once(self):
        client = InMemoryQBOClient()
        client.queue_failure("create_customer", QBOApiError(503, "down"))

        with pytest.raises(QBOApiError):
            await client.create_customer({"DisplayName": "Acme"})
        customer = await client.create_customer({"DisplayName": "Acme"})

        assert customer["Id"] == "1"
        assert len(client.calls_for("create_customer")) == 2
