"""Credit ledger: balances, grants, success-gated consumption and history.

Every balance mutation is a single conditional ``UPDATE accounts`` followed by
the matching ``credit_transactions`` insert inside the same database
transaction, so ``balance == sum(amount)`` holds after every commit and a
debit that cannot be funded never writes a ledger row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_transaction import CREDIT_KINDS, GRANT_KINDS, CreditTransaction
from services.errors import (
    AccountInactive,
    InsufficientCredits,
    InvalidAmount,
    InvalidCreditKind,
    InvalidIdempotencyKey,
    store_guard,
)


logger = logging.getLogger(__name__)

HISTORY_DEFAULT_LIMIT = 20
HISTORY_MAX_LIMIT = 100
SIGNUP_BONUS_KEY = "signup-bonus"


@dataclass(frozen=True)
class HistoryPage:
    items: List[CreditTransaction]
    next_cursor: Optional[int]


@dataclass(frozen=True)
class IntegrityReport:
    account_id: str
    balance: int
    ledger_sum: int
    min_running_balance: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum and self.min_running_balance >= 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("amount must be an integer number of credits", amount=repr(amount))
    if amount <= 0:
        raise InvalidAmount("amount must be greater than 0", amount=amount)
    return amount


def _validate_idempotency_key(idempotency_key: Optional[str], *, required: bool) -> Optional[str]:
    key = str(idempotency_key or "").strip()
    if not key:
        if required:
            raise InvalidIdempotencyKey("idempotency_key is required for credit consumption")
        return None
    return key


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "account_id": entry.account_id,
        "amount": entry.amount,
        "kind": entry.kind,
        "description": entry.description,
        "idempotency_key": entry.idempotency_key,
        "reference": entry.reference,
        "balance_after": entry.balance_after,
        "created_at": _isoformat(entry.created_at),
    }


async def ensure_account(account_id: str, db: AsyncSession, *, email: Optional[str] = None) -> Account:
    """Return the account row, creating it with a zero balance on first touch."""
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account:
        return account

    account = Account(id=account_id, email=email, balance=0, total_consumed=0, is_active=True)
    db.add(account)
    try:
        await db.commit()
    except IntegrityError:
        # Created concurrently by another request.
        await db.rollback()
        result = await db.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one()

    logger.info("account_created account=%s", account_id)
    return account


async def find_transaction_by_key(
    account_id: str,
    idempotency_key: Optional[str],
    db: AsyncSession,
) -> Optional[CreditTransaction]:
    if not idempotency_key:
        return None
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.account_id == account_id,
            CreditTransaction.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


def _log_replay(existing: CreditTransaction, expected_amount: int) -> None:
    if existing.amount != expected_amount:
        logger.warning(
            "idempotent_replay_mismatch account=%s key=%s stored_amount=%s requested_amount=%s",
            existing.account_id,
            existing.idempotency_key,
            existing.amount,
            expected_amount,
        )
    else:
        logger.info(
            "idempotent_replay account=%s key=%s transaction=%s",
            existing.account_id,
            existing.idempotency_key,
            existing.id,
        )


async def _apply_delta(
    account_id: str,
    db: AsyncSession,
    *,
    delta: int,
    kind: str,
    description: str,
    idempotency_key: Optional[str],
    reference: Optional[str],
    now: datetime,
) -> Optional[CreditTransaction]:
    """Conditionally move the balance by ``delta`` and append the ledger row.

    Returns ``None`` (after rolling back) when the conditional update matched
    no row. Raises ``IntegrityError`` when another request committed the same
    idempotency key first.
    """
    predicates = [Account.id == account_id, Account.is_active.is_(True)]
    values: Dict[str, Any] = {"balance": Account.balance + delta, "updated_at": now}
    if delta < 0:
        predicates.append(Account.balance >= -delta)
        values["total_consumed"] = Account.total_consumed - delta

    result = await db.execute(
        update(Account)
        .where(*predicates)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return None

    balance_after = (
        await db.execute(select(Account.balance).where(Account.id == account_id))
    ).scalar_one()
    entry = CreditTransaction(
        account_id=account_id,
        amount=delta,
        kind=kind,
        description=description,
        idempotency_key=idempotency_key,
        reference=reference,
        balance_after=balance_after,
        created_at=now,
    )
    db.add(entry)
    await db.commit()
    return entry


async def _resolve_duplicate(account_id: str, idempotency_key: Optional[str], db: AsyncSession) -> CreditTransaction:
    await db.rollback()
    winner = await find_transaction_by_key(account_id, idempotency_key, db)
    if winner is None:
        raise RuntimeError(f"Ledger write for account {account_id} violated an integrity constraint")
    return winner


async def add_credits(
    account_id: str,
    db: AsyncSession,
    *,
    amount: int,
    kind: str,
    description: str,
    idempotency_key: Optional[str] = None,
    reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CreditTransaction:
    """Credit an account (purchase, bonus, refund or positive adjustment)."""
    grant = _validate_amount(amount)
    if kind not in GRANT_KINDS:
        raise InvalidCreditKind(
            f"kind must be one of {', '.join(GRANT_KINDS)}",
            kind=kind,
        )
    key = _validate_idempotency_key(idempotency_key, required=False)
    current = as_utc(now) if now else _utcnow()

    async with store_guard("add_credits", db):
        existing = await find_transaction_by_key(account_id, key, db)
        if existing:
            _log_replay(existing, grant)
            return existing

        await ensure_account(account_id, db)
        try:
            entry = await _apply_delta(
                account_id,
                db,
                delta=grant,
                kind=kind,
                description=description,
                idempotency_key=key,
                reference=reference,
                now=current,
            )
        except IntegrityError:
            return await _resolve_duplicate(account_id, key, db)

        if entry is None:
            existing = await find_transaction_by_key(account_id, key, db)
            if existing:
                return existing
            raise AccountInactive("Account is deactivated; credits cannot be added.", account_id=account_id)

    logger.info(
        "credits_added account=%s kind=%s amount=%s balance_after=%s",
        account_id,
        kind,
        grant,
        entry.balance_after,
    )
    return entry


async def debit_credits(
    account_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str,
    idempotency_key: str,
    now: Optional[datetime] = None,
) -> Tuple[CreditTransaction, bool]:
    """Debit an account at most once per ``idempotency_key``.

    Returns the consumption row and whether it was recorded by an earlier
    call with the same key.
    """
    debit = _validate_amount(amount)
    key = _validate_idempotency_key(idempotency_key, required=True)
    current = as_utc(now) if now else _utcnow()

    async with store_guard("consume_credits", db):
        existing = await find_transaction_by_key(account_id, key, db)
        if existing:
            _log_replay(existing, -debit)
            return existing, True

        await ensure_account(account_id, db)
        try:
            entry = await _apply_delta(
                account_id,
                db,
                delta=-debit,
                kind="consumption",
                description=description,
                idempotency_key=key,
                reference=None,
                now=current,
            )
        except IntegrityError:
            return await _resolve_duplicate(account_id, key, db), True

        if entry is None:
            # A concurrent retry with the same key may have drained the balance.
            existing = await find_transaction_by_key(account_id, key, db)
            if existing:
                return existing, True
            row = (
                await db.execute(
                    select(Account.is_active, Account.balance).where(Account.id == account_id)
                )
            ).one()
            if not row.is_active:
                raise AccountInactive("Account is deactivated; credits cannot be consumed.", account_id=account_id)
            logger.info(
                "credits_rejected account=%s required=%s available=%s key=%s",
                account_id,
                debit,
                row.balance,
                key,
            )
            raise InsufficientCredits(required=debit, available=int(row.balance))

    logger.info(
        "credits_consumed account=%s amount=%s balance_after=%s key=%s",
        account_id,
        debit,
        entry.balance_after,
        key,
    )
    return entry, False


async def consume_credits(
    account_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str,
    idempotency_key: str,
    now: Optional[datetime] = None,
) -> CreditTransaction:
    entry, _ = await debit_credits(
        account_id,
        db,
        amount=amount,
        description=description,
        idempotency_key=idempotency_key,
        now=now,
    )
    return entry


async def get_balance(account_id: str, db: AsyncSession) -> int:
    async with store_guard("get_balance", db):
        await ensure_account(account_id, db)
        result = await db.execute(select(Account.balance).where(Account.id == account_id))
        return int(result.scalar_one())


async def get_history(
    account_id: str,
    db: AsyncSession,
    *,
    limit: int = HISTORY_DEFAULT_LIMIT,
    cursor: Optional[int] = None,
    kind: Optional[str] = None,
) -> HistoryPage:
    """Newest-first page of ledger entries; pass ``next_cursor`` back to resume."""
    if kind is not None and kind not in CREDIT_KINDS:
        raise InvalidCreditKind(f"kind must be one of {', '.join(CREDIT_KINDS)}", kind=kind)
    page_size = max(1, min(int(limit), HISTORY_MAX_LIMIT))

    query = select(CreditTransaction).where(CreditTransaction.account_id == account_id)
    if cursor is not None:
        query = query.where(CreditTransaction.id < int(cursor))
    if kind is not None:
        query = query.where(CreditTransaction.kind == kind)
    query = query.order_by(CreditTransaction.id.desc()).limit(page_size + 1)

    async with store_guard("get_history", db):
        rows = list((await db.execute(query)).scalars().all())

    items = rows[:page_size]
    next_cursor = items[-1].id if len(rows) > page_size else None
    return HistoryPage(items=items, next_cursor=next_cursor)


async def set_account_active(account_id: str, db: AsyncSession, *, active: bool) -> Account:
    """Deactivate or reactivate an account; accounts are never deleted."""
    async with store_guard("set_account_active", db):
        await ensure_account(account_id, db)
        await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(is_active=active, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        result = await db.execute(
            select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        )
        account = result.scalar_one()

    logger.info("account_active_changed account=%s active=%s", account_id, active)
    return account


async def verify_ledger_integrity(account_id: str, db: AsyncSession) -> IntegrityReport:
    """Recompute the balance from the ledger and the lowest running balance."""
    async with store_guard("verify_ledger_integrity", db):
        balance = (
            await db.execute(select(Account.balance).where(Account.id == account_id))
        ).scalar_one_or_none()
        amounts = (
            await db.execute(
                select(CreditTransaction.amount)
                .where(CreditTransaction.account_id == account_id)
                .order_by(CreditTransaction.id.asc())
            )
        ).scalars().all()

    running = 0
    lowest = 0
    for amount in amounts:
        running += int(amount)
        lowest = min(lowest, running)

    report = IntegrityReport(
        account_id=account_id,
        balance=int(balance or 0),
        ledger_sum=running,
        min_running_balance=lowest,
        transaction_count=len(amounts),
    )
    if not report.consistent:
        logger.error(
            "ledger_integrity_violation account=%s balance=%s ledger_sum=%s min_running=%s",
            account_id,
            report.balance,
            report.ledger_sum,
            report.min_running_balance,
        )
    return report


async def ensure_signup_bonus(account_id: str, db: AsyncSession) -> None:
    """Grant the one-time signup bonus; replays are absorbed by its idempotency key."""
    bonus = max(int(settings.SIGNUP_BONUS_CREDITS), 0)
    if bonus == 0:
        return
    account = await ensure_account(account_id, db)
    if not account.is_active:
        return
    await add_credits(
        account_id,
        db,
        amount=bonus,
        kind="bonus",
        description="Signup bonus credits",
        idempotency_key=SIGNUP_BONUS_KEY,
    )


async def get_credit_summary(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    await ensure_signup_bonus(account_id, db)
    async with store_guard("get_credit_summary", db):
        account = (
            await db.execute(
                select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
            )
        ).scalar_one()
    page = await get_history(account_id, db, limit=30)
    return {
        "account_id": account.id,
        "balance": account.balance,
        "total_consumed": account.total_consumed,
        "is_active": account.is_active,
        "signup_bonus_credits": max(int(settings.SIGNUP_BONUS_CREDITS), 0),
        "costs": {
            "schema_generation": max(int(settings.CREDIT_COST_SCHEMA_GENERATION), 0),
        },
        "recent_entries": [serialize_transaction(entry) for entry in page.items],
    }
