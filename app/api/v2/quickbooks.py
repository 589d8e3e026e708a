"""
QuickBooks Online Sync API Endpoints

Provides:
- Connection status check
- Company / location sync and deactivation (CRM → QBO)
- Invoice sync, including void (CRM → QBO)
- Bulk sync of every company then every location
- Invoice pull and customer reconciliation (QBO → CRM)

Single-entity endpoints always return the SyncResult; a failed sync is
answered with the status matching its error code.
"""

from fastapi import APIRouter, Depends, Query, Response
from datetime import datetime
from pydantic import BaseModel
from typing import Annotated, Optional
import logging

from app.api.deps import Store, SyncService, get_qbo_credentials
from app.exceptions import status_for_sync_error
from app.schemas.qbo_sync import (
    CustomerReconciliation,
    InvoiceReconciliation,
    SyncResult,
)
from app.services.qbo_client import QBOCredentials

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Pydantic Schemas
# =============================================================================


class QBOConnectionStatus(BaseModel):
    configured: bool
    realm_id: Optional[str] = None
    sandbox: bool
    message: Optional[str] = None


class QBOBatchSyncResponse(BaseModel):
    summary: str
    all_succeeded: bool
    companies: list[SyncResult]
    locations: list[SyncResult]


def _respond(result: SyncResult, response: Response) -> SyncResult:
    if not result.success:
        response.status_code = status_for_sync_error(result.error_code, result.error.details)
    return result


# =============================================================================
# Connection Endpoints
# =============================================================================


@router.get("/status")
async def get_quickbooks_status(
    credentials: Annotated[QBOCredentials, Depends(get_qbo_credentials)],
) -> QBOConnectionStatus:
    """Report whether QBO credentials are available for this request."""
    return QBOConnectionStatus(
        configured=credentials.is_complete,
        realm_id=credentials.realm_id,
        sandbox=credentials.sandbox,
        message=None if credentials.is_complete else "QBO access token or realm ID missing",
    )


# =============================================================================
# Customer Sync Endpoints
# =============================================================================


@router.post("/companies/{company_id}/sync")
async def sync_company(company_id: str, service: SyncService, response: Response) -> SyncResult:
    """Create or update a company as a top-level QBO customer."""
    return _respond(await service.sync_company_by_id(company_id), response)


@router.post("/companies/{company_id}/deactivate")
async def deactivate_company(company_id: str, service: SyncService, response: Response) -> SyncResult:
    """Mark a company's QBO customer inactive."""
    return _respond(await service.deactivate_company_by_id(company_id), response)


@router.post("/locations/{location_id}/sync")
async def sync_location(location_id: str, service: SyncService, response: Response) -> SyncResult:
    """Create or update a location as a QBO sub-customer of its company."""
    return _respond(await service.sync_location_by_id(location_id), response)


@router.post("/locations/{location_id}/deactivate")
async def deactivate_location(location_id: str, service: SyncService, response: Response) -> SyncResult:
    return _respond(await service.deactivate_location_by_id(location_id), response)


@router.post("/sync-all")
async def sync_all(service: SyncService, store: Store) -> QBOBatchSyncResponse:
    """Sync every company, then every location.

    Linked locations nested deeper than two levels in QBO are refused.
    """
    batch = await service.sync_all_to_qbo(await store.list_companies(), await store.list_locations())
    return QBOBatchSyncResponse(
        summary=batch.summary(),
        all_succeeded=batch.all_succeeded,
        companies=batch.companies,
        locations=batch.locations,
    )


@router.post("/customers/reconcile")
async def reconcile_customers(service: SyncService) -> list[CustomerReconciliation]:
    """Pull QBO customers, flag bad hierarchies, refresh local SyncTokens."""
    return await service.reconcile_customers()


# =============================================================================
# Invoice Sync Endpoints
# =============================================================================


@router.post("/invoices/{invoice_id}/sync")
async def sync_invoice(invoice_id: str, service: SyncService, response: Response) -> SyncResult:
    """Push a single invoice to QuickBooks (create, update or void)."""
    return _respond(await service.sync_invoice_by_id(invoice_id), response)


@router.post("/invoices/pull")
async def pull_invoices(
    service: SyncService,
    since: Optional[datetime] = Query(None, description="Only invoices updated in QBO after this time"),
) -> list[InvoiceReconciliation]:
    """Pull QBO invoices and link or import them locally."""
    return await service.pull_invoices(since)
