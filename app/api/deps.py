"""
FastAPI Dependencies

Provides dependency injection for the entity store, QBO credentials and
the sync service.

SECURITY NOTES:
- QBO access tokens are never logged
- Credentials are resolved per request (Bearer + X-QBO-Realm-Id headers,
  falling back to server configuration) and never stored globally
"""

from typing import Annotated, AsyncIterator
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import logging

from app.config import Settings, get_settings
from app.database import async_session_maker
from app.services.entity_store import EntityStore
from app.services.qbo_client import ExternalAccountingClient, QBOClient, QBOCredentials
from app.services.qbo_sync_service import QBOSyncService

logger = logging.getLogger(__name__)


# Bearer carries the QBO access token, not an app session
security = HTTPBearer(auto_error=False)


def get_entity_store() -> EntityStore:
    """Entity store bound to the application database."""
    return EntityStore(async_session_maker)


async def get_qbo_credentials(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
    realm_id: Annotated[str | None, Header(alias="X-QBO-Realm-Id")] = None,
) -> QBOCredentials:
    """
    Resolve QBO credentials for this request.

    Header values win; anything missing falls back to QBO_ACCESS_TOKEN /
    QBO_REALM_ID from settings.
    """
    resolved = QBOCredentials(
        realm_id=realm_id or settings.QBO_REALM_ID,
        access_token=credentials.credentials if credentials else settings.QBO_ACCESS_TOKEN,
        sandbox=settings.QBO_SANDBOX,
    )
    # SECURITY: only the realm and source are logged, never the token
    logger.debug(
        "QBO credentials resolved",
        extra={"realm_id": resolved.realm_id, "source": "header" if credentials else "settings"},
    )
    return resolved


async def get_accounting_client(
    credentials: Annotated[QBOCredentials, Depends(get_qbo_credentials)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AsyncIterator[ExternalAccountingClient]:
    """QBO client scoped to one request's credentials."""
    client = QBOClient(
        credentials,
        minor_version=settings.QBO_MINOR_VERSION,
        timeout=settings.QBO_TIMEOUT_SECONDS,
    )
    try:
        yield client
    finally:
        await client.aclose()


def get_sync_service(
    client: Annotated[ExternalAccountingClient, Depends(get_accounting_client)],
    store: Annotated[EntityStore, Depends(get_entity_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> QBOSyncService:
    return QBOSyncService.from_settings(client, store, settings)


# Type aliases for dependency injection
Store = Annotated[EntityStore, Depends(get_entity_store)]
SyncService = Annotated[QBOSyncService, Depends(get_sync_service)]
