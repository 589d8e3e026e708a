"""
QuickBooks Online API clients.

The sync engine only talks to ExternalAccountingClient. QBOClient is the
real httpx implementation; InMemoryQBOClient mimics QBO semantics
(Id/SyncToken, duplicate DisplayName, stale SyncToken) for tests and
local development.

Credentials are an explicit value handed to each client, never shared
mutable state, so concurrent batches for different realms stay apart.
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx

from app.config import Settings
from app.exceptions import QBONotConfiguredError

logger = logging.getLogger(__name__)

# QBO API base URLs
QBO_API_BASE = "https://quickbooks.api.intuit.com/v3"
QBO_SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com/v3"

QUERY_PAGE_SIZE = 1000

# QBO Fault codes the retry policy cares about
FAULT_DUPLICATE_NAME = "6240"
FAULT_STALE_OBJECT = "5010"


@dataclass(frozen=True)
class QBOCredentials:
    """Bearer token + realm for one QBO company."""

    realm_id: Optional[str] = None
    access_token: Optional[str] = None
    sandbox: bool = True

    @property
    def is_complete(self) -> bool:
        return bool(self.realm_id and self.access_token)

    @classmethod
    def from_settings(cls, settings: Settings) -> "QBOCredentials":
        return cls(
            realm_id=settings.QBO_REALM_ID,
            access_token=settings.QBO_ACCESS_TOKEN,
            sandbox=settings.QBO_SANDBOX,
        )

    def __repr__(self):
        # Never render the token
        return f"QBOCredentials(realm_id={self.realm_id!r}, sandbox={self.sandbox})"


class QBOApiError(Exception):
    """Non-2xx response from QBO."""

    def __init__(
        self,
        status_code: int,
        message: str,
        fault_code: Optional[str] = None,
        fault_type: Optional[str] = None,
    ):
        super().__init__(f"QBO API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.fault_code = fault_code
        self.fault_type = fault_type

    @classmethod
    def from_response(cls, response: httpx.Response) -> "QBOApiError":
        """Build from a QBO Fault body, falling back to raw text."""
        try:
            fault = response.json().get("Fault") or {}
        except ValueError:
            fault = {}
        errors = fault.get("Error") or []
        if errors:
            first = errors[0]
            message = first.get("Detail") or first.get("Message") or response.text[:200]
            return cls(response.status_code, message, fault_code=first.get("code"), fault_type=fault.get("type"))
        return cls(response.status_code, response.text[:200])


def _json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(payload: dict) -> str:
    return json.dumps(payload, default=_json_default)


class ExternalAccountingClient(ABC):
    """What the sync engine needs from the accounting system."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    async def create_customer(self, payload: dict) -> dict:
        ...

    @abstractmethod
    async def update_customer(self, payload: dict) -> dict:
        ...

    @abstractmethod
    async def fetch_all_customers(self) -> list[dict]:
        ...

    @abstractmethod
    async def create_invoice(self, payload: dict) -> dict:
        ...

    @abstractmethod
    async def update_invoice(self, payload: dict) -> dict:
        ...

    @abstractmethod
    async def void_invoice(self, qbo_invoice_id: str, sync_token: str) -> dict:
        ...

    @abstractmethod
    async def fetch_invoices(self, since: Optional[datetime] = None) -> list[dict]:
        ...

    async def aclose(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


class QBOClient(ExternalAccountingClient):
    """QuickBooks Online REST client for one realm."""

    def __init__(
        self,
        credentials: QBOCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        minor_version: int = 65,
        timeout: float = 30.0,
    ):
        self._credentials = credentials
        self._minor_version = minor_version
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def is_configured(self) -> bool:
        return self._credentials.is_complete

    @property
    def base_url(self) -> str:
        base = QBO_SANDBOX_API_BASE if self._credentials.sandbox else QBO_API_BASE
        return f"{base}/company/{self._credentials.realm_id}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _api_request(
        self, method: str, endpoint: str, json_data: Optional[dict] = None, params: Optional[dict] = None
    ) -> dict:
        """Make an authenticated QBO API request.

        Raises QBOApiError for non-2xx responses; httpx transport errors
        propagate unchanged for the retry policy to classify.
        """
        if not self.is_configured:
            raise QBONotConfiguredError()

        headers = {
            "Authorization": f"Bearer {self._credentials.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        query = {"minorversion": str(self._minor_version)}
        if params:
            query.update(params)

        content = encode_payload(json_data) if json_data is not None else None
        if json_data is not None:
            logger.debug("QBO %s %s payload: %s", method, endpoint, content)

        response = await self._client.request(
            method, f"{self.base_url}/{endpoint}", headers=headers, params=query, content=content
        )
        if response.status_code >= 400:
            error = QBOApiError.from_response(response)
            logger.error(f"QBO API error {error.status_code} on {endpoint}: {error.message}")
            raise error
        return response.json()

    async def _query(self, entity: str, where: str = "") -> list[dict]:
        """Run a paged QBO query and return every row."""
        rows: list[dict] = []
        start = 1
        while True:
            statement = f"SELECT * FROM {entity}{where} STARTPOSITION {start} MAXRESULTS {QUERY_PAGE_SIZE}"
            data = await self._api_request("GET", "query", params={"query": statement})
            page = (data.get("QueryResponse") or {}).get(entity) or []
            rows.extend(page)
            if len(page) < QUERY_PAGE_SIZE:
                return rows
            start += QUERY_PAGE_SIZE

    # ── Customers ───────────────────────────────────────────

    async def create_customer(self, payload: dict) -> dict:
        data = await self._api_request("POST", "customer", payload)
        return data["Customer"]

    async def update_customer(self, payload: dict) -> dict:
        # Same endpoint; Id + SyncToken in the body make it an update
        data = await self._api_request("POST", "customer", payload)
        return data["Customer"]

    async def fetch_all_customers(self) -> list[dict]:
        # Inactive customers still hold their DisplayName in QBO
        return await self._query("Customer", " WHERE Active IN (true, false)")

    # ── Invoices ────────────────────────────────────────────

    async def create_invoice(self, payload: dict) -> dict:
        data = await self._api_request("POST", "invoice", payload)
        return data["Invoice"]

    async def update_invoice(self, payload: dict) -> dict:
        data = await self._api_request("POST", "invoice", payload)
        return data["Invoice"]

    async def void_invoice(self, qbo_invoice_id: str, sync_token: str) -> dict:
        data = await self._api_request(
            "POST", "invoice", {"Id": qbo_invoice_id, "SyncToken": sync_token}, params={"operation": "void"}
        )
        return data["Invoice"]

    async def fetch_invoices(self, since: Optional[datetime] = None) -> list[dict]:
        where = ""
        if since is not None:
            where = f" WHERE MetaData.LastUpdatedTime > '{since.isoformat()}'"
        return await self._query("Invoice", where)


class InMemoryQBOClient(ExternalAccountingClient):
    """In-memory stand-in for QBO.

    Enforces unique DisplayNames and SyncToken checks the way QBO does,
    bumps SyncToken on every write, and can be told to fail upcoming calls:

        client.queue_failure("create_customer", QBOApiError(503, "down"))
    """

    def __init__(self, configured: bool = True):
        self._configured = configured
        self.customers: dict[str, dict] = {}
        self.invoices: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self._failures: dict[str, list[Exception]] = {}
        self._next_id = 1

    @property
    def is_configured(self) -> bool:
        return self._configured

    def queue_failure(self, operation: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([error] * times)

    def calls_for(self, operation: str) -> list[dict]:
        return [payload for op, payload in self.calls if op == operation]

    def _begin(self, operation: str, payload: Optional[dict] = None) -> None:
        if not self._configured:
            raise QBONotConfiguredError()
        self.calls.append((operation, copy.deepcopy(payload or {})))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _allocate_id(self) -> str:
        qbo_id = str(self._next_id)
        self._next_id += 1
        return qbo_id

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _normalize(payload: dict) -> dict:
        # Same shape a JSON round trip through QBO would give
        return json.loads(encode_payload(payload))

    def _check_display_name(self, display_name: str, own_id: Optional[str] = None) -> None:
        for qbo_id, customer in self.customers.items():
            if qbo_id != own_id and customer.get("DisplayName") == display_name:
                raise QBOApiError(
                    400, f"The name supplied already exists. : {display_name}", fault_code=FAULT_DUPLICATE_NAME,
                    fault_type="ValidationFault",
                )

    @staticmethod
    def _check_sync_token(record: Optional[dict], payload: dict) -> dict:
        if record is None:
            raise QBOApiError(400, f"Object Not Found: {payload.get('Id')}", fault_code="610")
        if str(payload.get("SyncToken")) != record["SyncToken"]:
            raise QBOApiError(
                400, "Stale Object Error : You and another user were working on the same thing.",
                fault_code=FAULT_STALE_OBJECT, fault_type="ValidationFault",
            )
        return record

    @staticmethod
    def _bump(record: dict) -> None:
        record["SyncToken"] = str(int(record["SyncToken"]) + 1)

    # ── Customers ───────────────────────────────────────────

    async def create_customer(self, payload: dict) -> dict:
        self._begin("create_customer", payload)
        self._check_display_name(payload["DisplayName"])
        record = self._normalize(payload)
        record["Id"] = self._allocate_id()
        record["SyncToken"] = "0"
        record.setdefault("Active", True)
        record["MetaData"] = {"CreateTime": self._now(), "LastUpdatedTime": self._now()}
        self.customers[record["Id"]] = record
        return copy.deepcopy(record)

    async def update_customer(self, payload: dict) -> dict:
        self._begin("update_customer", payload)
        record = self._check_sync_token(self.customers.get(payload.get("Id")), payload)
        self._check_display_name(payload["DisplayName"], own_id=record["Id"])
        updated = self._normalize(payload)
        updated["SyncToken"] = record["SyncToken"]
        updated["MetaData"] = {**record["MetaData"], "LastUpdatedTime": self._now()}
        self._bump(updated)
        self.customers[record["Id"]] = updated
        return copy.deepcopy(updated)

    async def fetch_all_customers(self) -> list[dict]:
        self._begin("fetch_all_customers")
        return [copy.deepcopy(c) for c in self.customers.values()]

    # ── Invoices ────────────────────────────────────────────

    @staticmethod
    def _total(record: dict) -> float:
        return round(sum(line.get("Amount", 0) for line in record.get("Line", [])), 2)

    async def create_invoice(self, payload: dict) -> dict:
        self._begin("create_invoice", payload)
        record = self._normalize(payload)
        record["Id"] = self._allocate_id()
        record["SyncToken"] = "0"
        record["TotalAmt"] = self._total(record)
        record["Balance"] = record["TotalAmt"]
        record["MetaData"] = {"CreateTime": self._now(), "LastUpdatedTime": self._now()}
        self.invoices[record["Id"]] = record
        return copy.deepcopy(record)

    async def update_invoice(self, payload: dict) -> dict:
        self._begin("update_invoice", payload)
        record = self._check_sync_token(self.invoices.get(payload.get("Id")), payload)
        paid = record["TotalAmt"] - record["Balance"]
        updated = self._normalize(payload)
        updated["SyncToken"] = record["SyncToken"]
        updated["TotalAmt"] = self._total(updated)
        updated["Balance"] = round(updated["TotalAmt"] - paid, 2)
        updated["MetaData"] = {**record["MetaData"], "LastUpdatedTime": self._now()}
        self._bump(updated)
        self.invoices[record["Id"]] = updated
        return copy.deepcopy(updated)

    async def void_invoice(self, qbo_invoice_id: str, sync_token: str) -> dict:
        self._begin("void_invoice", {"Id": qbo_invoice_id, "SyncToken": sync_token})
        record = self._check_sync_token(self.invoices.get(qbo_invoice_id), {"Id": qbo_invoice_id, "SyncToken": sync_token})
        for line in record.get("Line", []):
            line["Amount"] = 0
        record["TotalAmt"] = 0
        record["Balance"] = 0
        record["PrivateNote"] = "Voided"
        record["MetaData"]["LastUpdatedTime"] = self._now()
        self._bump(record)
        return copy.deepcopy(record)

    async def fetch_invoices(self, since: Optional[datetime] = None) -> list[dict]:
        self._begin("fetch_invoices")
        records = self.invoices.values()
        if since is not None:
            records = [
                r for r in records
                if datetime.fromisoformat(r["MetaData"]["LastUpdatedTime"]) > since
            ]
        return [copy.deepcopy(r) for r in records]
