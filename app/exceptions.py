"""
Billing sync error taxonomy and RFC 7807 Problem Details handling.

Every sync failure carries a stable machine-readable code next to its
human message. The same errors are rendered as problem+json when they
reach the HTTP surface.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import logging
import uuid
from datetime import datetime

logger = logging.getLogger(__name__)


class SyncErrorCode(str, Enum):
    """Stable codes attached to every sync failure."""

    # Configuration
    NOT_CONFIGURED = "NOT_CONFIGURED"

    # Caller contract
    MISSING_EXTERNAL_ID = "MISSING_EXTERNAL_ID"
    NO_BILLING_TARGET = "NO_BILLING_TARGET"
    NOT_FOUND = "NOT_FOUND"
    INVOICE_LOCKED = "INVOICE_LOCKED"

    # Validation / duplicate
    DUPLICATE_NAME = "DUPLICATE_NAME"
    HIERARCHY_TOO_DEEP = "HIERARCHY_TOO_DEEP"

    # Wrapped transport or validation failures
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    VOID_FAILED = "VOID_FAILED"
    FETCH_FAILED = "FETCH_FAILED"

    # Ordering
    PARENT_NOT_SYNCED = "PARENT_NOT_SYNCED"


class QBOSyncError(Exception):
    """Base error for the QuickBooks sync engine."""

    def __init__(
        self,
        message: str,
        code: SyncErrorCode,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.retryable = retryable

    def __repr__(self):
        return f"<{type(self).__name__} {self.code.value}: {self.message}>"


class QBONotConfiguredError(QBOSyncError):
    """No QuickBooks credential available. Fatal, never retried."""

    def __init__(self, message: str = "QBO credentials not configured"):
        super().__init__(message, SyncErrorCode.NOT_CONFIGURED)


class MissingExternalIdError(QBOSyncError):
    """Update requested for an entity that has no QBO Id/SyncToken pair."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"Cannot update {entity_type} {entity_id}: missing QBO Id or SyncToken",
            SyncErrorCode.MISSING_EXTERNAL_ID,
            details={"entity_type": entity_type, "entity_id": entity_id},
        )


class BillingTargetError(QBOSyncError):
    """Invoice has no customer reference it can be billed to."""

    def __init__(self, invoice_id: str, location_id: str):
        super().__init__(
            f"No QBO customer available to bill invoice {invoice_id} (location {location_id})",
            SyncErrorCode.NO_BILLING_TARGET,
            details={"invoice_id": invoice_id, "location_id": location_id},
        )


class DuplicateNameError(QBOSyncError):
    """QBO rejected a DisplayName that is already taken."""

    def __init__(self, display_name: str):
        super().__init__(
            f'A customer with the name "{display_name}" already exists in QuickBooks',
            SyncErrorCode.DUPLICATE_NAME,
            details={"display_name": display_name},
        )


class ParentNotSyncedError(QBOSyncError):
    """A location was synced before its parent company had a QBO Id."""

    def __init__(self, location_id: str, parent_company_id: str, parent_name: Optional[str] = None):
        label = f'"{parent_name}" ({parent_company_id})' if parent_name else parent_company_id
        super().__init__(
            f"Parent company {label} is not synced to QBO; sync it before location {location_id}",
            SyncErrorCode.PARENT_NOT_SYNCED,
            details={"location_id": location_id, "parent_company_id": parent_company_id},
        )


class HierarchyDepthError(QBOSyncError):
    """QBO customer sits below a sub-customer (depth > 2)."""

    def __init__(self, display_name: str, qbo_customer_id: Optional[str], parent_qbo_id: str):
        super().__init__(
            f'Customer "{display_name}" is a sub-customer of a sub-customer (depth > 2). '
            "QBO only supports 2 levels; resolve it manually in QuickBooks.",
            SyncErrorCode.HIERARCHY_TOO_DEEP,
            details={"qbo_customer_id": qbo_customer_id, "parent_qbo_id": parent_qbo_id},
        )


class InvoiceLockedError(QBOSyncError):
    """Line items cannot change on a paid or voided invoice."""

    def __init__(self, invoice_id: str, status: str):
        super().__init__(
            f"Invoice {invoice_id} is {status}; line items can no longer be edited",
            SyncErrorCode.INVOICE_LOCKED,
            details={"invoice_id": invoice_id, "status": status},
        )


class EntityNotFoundError(QBOSyncError):
    """Referenced local entity does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type} with ID {entity_id} was not found",
            SyncErrorCode.NOT_FOUND,
            details={"entity_type": entity_type, "entity_id": entity_id},
        )


# HTTP status used when a sync error reaches the API
STATUS_BY_CODE: Dict[SyncErrorCode, int] = {
    SyncErrorCode.NOT_CONFIGURED: 503,
    SyncErrorCode.MISSING_EXTERNAL_ID: 409,
    SyncErrorCode.NO_BILLING_TARGET: 409,
    SyncErrorCode.NOT_FOUND: 404,
    SyncErrorCode.INVOICE_LOCKED: 409,
    SyncErrorCode.DUPLICATE_NAME: 409,
    SyncErrorCode.HIERARCHY_TOO_DEEP: 422,
    SyncErrorCode.PARENT_NOT_SYNCED: 409,
}


def status_for_sync_error(code: SyncErrorCode, details: Optional[dict] = None) -> int:
    """HTTP status for a sync error; a stale-SyncToken conflict answers 409 whatever its code."""
    if details and details.get("kind") == "conflict":
        return 409
    return STATUS_BY_CODE.get(code, 502)


def _get_trace_id() -> str:
    return str(uuid.uuid4())[:12]


class ProblemDetail(BaseModel):
    """
    RFC 7807 Problem Details response schema.

    Attributes:
        type: URI reference identifying the problem type
        title: Short, human-readable summary
        status: HTTP status code
        detail: Human-readable explanation specific to this occurrence
        instance: URI reference identifying this specific occurrence
        code: Machine-readable error code for client handling
        timestamp: ISO 8601 timestamp of when the error occurred
        trace_id: Unique identifier for tracing in logs
        errors: Field-level validation errors (for 422)
    """

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    code: str
    timestamp: str
    trace_id: str
    errors: Optional[List[Dict[str, Any]]] = None


def _default_title(status_code: int) -> str:
    titles = {
        400: "Bad Request",
        404: "Not Found",
        409: "Conflict",
        422: "Validation Error",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, "Error")


def create_problem_response(
    status_code: int,
    code: str,
    detail: str,
    request: Request,
    errors: Optional[List[Dict[str, Any]]] = None,
    trace_id: Optional[str] = None,
) -> JSONResponse:
    """Create a RFC 7807 compliant JSON response."""
    problem = ProblemDetail(
        type=f"https://api.pmbilling.app/problems/{code.lower().replace('_', '-')}",
        title=_default_title(status_code),
        status=status_code,
        detail=detail,
        instance=str(request.url.path),
        code=code,
        timestamp=datetime.utcnow().isoformat() + "Z",
        trace_id=trace_id or _get_trace_id(),
        errors=errors,
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def qbo_sync_exception_handler(request: Request, exc: QBOSyncError) -> JSONResponse:
    """Render a sync error that escaped to the API as problem+json."""
    status_code = status_for_sync_error(exc.code, exc.details)
    logger.warning(f"QBOSyncError: {exc.code.value} - {exc.message}", extra={"path": request.url.path})
    return create_problem_response(status_code, exc.code.value, exc.message, request)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors with field-level details."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return create_problem_response(422, "VALIDATION_ERROR", "Request validation failed", request, errors=errors)
