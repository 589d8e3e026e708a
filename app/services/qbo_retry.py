"""
Failure classification and retry policy for QBO calls.

Only transient failures (network errors, timeouts, 429, 5xx) are retried,
with bounded exponential backoff. Everything else is surfaced on the first
attempt as a QBOSyncError carrying a stable code:

    configuration   NOT_CONFIGURED       fatal
    caller contract MISSING_EXTERNAL_ID  programmer error, never sent
    duplicate name  DUPLICATE_NAME       caller renames once, then surfaces
    conflict        *_FAILED             stale SyncToken, re-read required
    validation      *_FAILED             4xx from QBO
    transient       *_FAILED             after retries are exhausted
    ordering        PARENT_NOT_SYNCED    re-run once the parent is synced
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from app.config import Settings
from app.exceptions import (
    DuplicateNameError,
    ParentNotSyncedError,
    QBONotConfiguredError,
    QBOSyncError,
    SyncErrorCode,
)
from app.services.qbo_client import FAULT_DUPLICATE_NAME, FAULT_STALE_OBJECT, QBOApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureKind(str, enum.Enum):
    CONFIGURATION = "configuration"
    AUTH = "auth"
    CALLER_CONTRACT = "caller_contract"
    DUPLICATE_NAME = "duplicate_name"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    ORDERING = "ordering"
    UNEXPECTED = "unexpected"


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception raised around a QBO call to a failure kind."""
    if isinstance(exc, QBONotConfiguredError):
        return FailureKind.CONFIGURATION
    if isinstance(exc, ParentNotSyncedError):
        return FailureKind.ORDERING
    if isinstance(exc, DuplicateNameError):
        return FailureKind.DUPLICATE_NAME
    if isinstance(exc, QBOSyncError):
        return FailureKind.CALLER_CONTRACT

    if isinstance(exc, QBOApiError):
        if exc.status_code in (401, 403):
            return FailureKind.AUTH
        if exc.fault_code == FAULT_DUPLICATE_NAME:
            return FailureKind.DUPLICATE_NAME
        if exc.fault_code == FAULT_STALE_OBJECT or exc.status_code == 409:
            return FailureKind.CONFLICT
        if exc.status_code == 429 or exc.status_code >= 500:
            return FailureKind.TRANSIENT
        return FailureKind.VALIDATION

    # Timeouts, connection resets, DNS failures
    if isinstance(exc, httpx.TransportError):
        return FailureKind.TRANSIENT
    return FailureKind.UNEXPECTED


def to_sync_error(
    exc: BaseException,
    failure_code: SyncErrorCode,
    attempts: int,
    context: Optional[dict[str, Any]] = None,
) -> QBOSyncError:
    """Wrap a raw failure in the sync error taxonomy."""
    if isinstance(exc, QBOSyncError):
        return exc

    kind = classify_failure(exc)
    details: dict[str, Any] = {"kind": kind.value, "attempts": attempts, **(context or {})}
    if isinstance(exc, QBOApiError):
        details.update(status_code=exc.status_code, fault_code=exc.fault_code)

    if kind == FailureKind.DUPLICATE_NAME:
        error = DuplicateNameError(details.get("display_name", ""))
        error.details.update(details)
        return error

    message = str(exc) or type(exc).__name__
    return QBOSyncError(message, failure_code, details=details, retryable=kind == FailureKind.TRANSIENT)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient QBO failures."""

    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.QBO_SYNC_MAX_RETRIES,
            backoff_base=settings.QBO_SYNC_BACKOFF_BASE_SECONDS,
            backoff_max=settings.QBO_SYNC_BACKOFF_MAX_SECONDS,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def should_retry(self, kind: FailureKind, attempt: int) -> bool:
        return kind == FailureKind.TRANSIENT and attempt <= self.max_retries

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        failure_code: SyncErrorCode,
        description: str,
        context: Optional[dict[str, Any]] = None,
    ) -> tuple[T, int]:
        """Run operation, retrying transient failures.

        Returns (result, attempts). Raises QBOSyncError once the failure
        is non-transient or retries are exhausted.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation(), attempt
            except (QBOSyncError, QBOApiError, httpx.HTTPError) as exc:
                kind = classify_failure(exc)
                if not self.should_retry(kind, attempt):
                    if kind == FailureKind.TRANSIENT:
                        logger.warning(f"{description} failed after {attempt} attempts: {exc}")
                    raise to_sync_error(exc, failure_code, attempt, context) from exc
                delay = self.backoff_delay(attempt)
                logger.info(f"{description} attempt {attempt} failed ({exc}); retrying in {delay:.1f}s")
                await self.sleep(delay)
