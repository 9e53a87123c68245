"""Success-gated unit of work: charge credits only after the work succeeds."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction
from services.credits import debit_credits, ensure_account, find_transaction_by_key
from services.errors import AccountInactive, InsufficientCredits, InvalidAmount, store_guard


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BillableOutcome(Generic[T]):
    value: T
    transaction: Optional[CreditTransaction]
    replayed: bool = False


class CreditGate:
    """Runs billable work and records the consumption only when it returns.

    The gate never debits before the work runs. If the work raises, the
    exception propagates unchanged and no ledger row is written. If the debit
    is rejected after the work already succeeded (the balance was drained in
    the meantime), the work's result is discarded and ``InsufficientCredits``
    is raised, which keeps the balance non-negative.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _precheck(self, account_id: str, cost: int, idempotency_key: str) -> None:
        async with store_guard("credit_gate_precheck", self.db):
            if await find_transaction_by_key(account_id, idempotency_key, self.db):
                return
            await ensure_account(account_id, self.db)
            row = (
                await self.db.execute(
                    select(Account.is_active, Account.balance).where(Account.id == account_id)
                )
            ).one()
        if not row.is_active:
            raise AccountInactive("Account is deactivated; billable work is disabled.", account_id=account_id)
        if int(row.balance) < cost:
            raise InsufficientCredits(required=cost, available=int(row.balance))

    async def execute(
        self,
        account_id: str,
        cost: int,
        idempotency_key: str,
        work: Callable[[], Awaitable[T]],
        *,
        description: str = "Billable operation",
        precheck: bool = False,
    ) -> BillableOutcome[T]:
        if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
            raise InvalidAmount("cost must be a non-negative integer", cost=repr(cost))

        if cost == 0:
            return BillableOutcome(value=await work(), transaction=None)

        if precheck:
            await self._precheck(account_id, cost, idempotency_key)

        value = await work()
        try:
            transaction, replayed = await debit_credits(
                account_id,
                self.db,
                amount=cost,
                description=description,
                idempotency_key=idempotency_key,
            )
        except InsufficientCredits:
            logger.warning(
                "billable_result_discarded account=%s cost=%s key=%s",
                account_id,
                cost,
                idempotency_key,
            )
            raise

        return BillableOutcome(value=value, transaction=transaction, replayed=replayed)


async def run_billable(
    db: AsyncSession,
    account_id: str,
    cost: int,
    idempotency_key: str,
    work: Callable[[], Awaitable[Any]],
    **kwargs: Any,
) -> BillableOutcome[Any]:
    return await CreditGate(db).execute(account_id, cost, idempotency_key, work, **kwargs)
