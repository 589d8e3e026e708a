# Services module
from app.services.entity_store import EntityStore, EntityRef
from app.services.qbo_client import (
    ExternalAccountingClient,
    QBOClient,
    InMemoryQBOClient,
    QBOCredentials,
    QBOApiError,
)
from app.services.qbo_retry import RetryPolicy
from app.services.qbo_sync_service import QBOSyncService

__all__ = [
    "EntityStore",
    "EntityRef",
    # QuickBooks clients
    "ExternalAccountingClient",
    "QBOClient",
    "InMemoryQBOClient",
    "QBOCredentials",
    "QBOApiError",
    # Sync engine
    "RetryPolicy",
    "QBOSyncService",
]
