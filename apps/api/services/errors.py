"""Ledger and handoff error taxonomy."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession


logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for terminal ledger/claim failures surfaced to callers."""

    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        detail.update(self.context)
        return detail


class InvalidAmount(LedgerError):
    code = "invalid_amount"
    status_code = 422


class InvalidIdempotencyKey(LedgerError):
    code = "invalid_idempotency_key"
    status_code = 422


class InvalidCreditKind(LedgerError):
    code = "invalid_credit_kind"
    status_code = 422


class AccountInactive(LedgerError):
    code = "account_inactive"
    status_code = 403


class InsufficientCredits(LedgerError):
    """Raised when a debit cannot be funded; upstream shows a purchase prompt."""

    code = "insufficient_credits"
    status_code = 402

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. "
            "Top up credits to continue.",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class InvalidClaimTtl(LedgerError):
    code = "invalid_claim_ttl"
    status_code = 422


class ClaimNotFound(LedgerError):
    code = "claim_not_found"
    status_code = 404


class ClaimAlreadyUsed(LedgerError):
    code = "claim_already_used"
    status_code = 409


class ClaimExpired(LedgerError):
    code = "claim_expired"
    status_code = 410


class InvalidClaimTransition(LedgerError):
    code = "invalid_claim_transition"
    status_code = 409


class StoreUnavailable(LedgerError):
    """Transient store failure; safe to retry with the same key or token."""

    code = "store_unavailable"
    status_code = 503


RESTART_CONNECTION_MESSAGE = "Please restart the connection flow."


@asynccontextmanager
async def store_guard(operation: str, db: Optional[AsyncSession] = None) -> AsyncIterator[None]:
    """Translate driver-level connectivity failures into StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.warning("store_unavailable operation=%s error=%s", operation, exc)
        if db is not None:
            try:
                await db.rollback()
            except (OperationalError, InterfaceError) as rollback_exc:
                logger.warning("store_rollback_failed operation=%s error=%s", operation, rollback_exc)
        raise StoreUnavailable(f"Credit store unavailable during {operation}; retry the request.") from exc
