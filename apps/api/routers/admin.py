"""Operator endpoints: manual credit grants, account state and claim upkeep."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_admin
from services.credits import add_credits, serialize_transaction, set_account_active, verify_ledger_integrity
from services.pending_claims import expire_stale_claims, get_claim_analytics

router = APIRouter(dependencies=[Depends(require_admin)])


class AdminCreditRequest(BaseModel):
    amount: int = Field(ge=1, le=100000)
    kind: str = Field(default="adjustment", pattern="^(purchase|bonus|refund|adjustment)$")
    description: str = Field(default="Manual credit adjustment", min_length=1, max_length=200)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)
    reference: Optional[str] = Field(default=None, max_length=200)


def _account_payload(account) -> dict:
    return {
        "account_id": account.id,
        "balance": account.balance,
        "total_consumed": account.total_consumed,
        "is_active": account.is_active,
    }


@router.post("/accounts/{account_id}/credits")
async def grant_credits(
    account_id: str,
    request: AdminCreditRequest,
    db: AsyncSession = Depends(get_db),
):
    entry = await add_credits(
        account_id,
        db,
        amount=request.amount,
        kind=request.kind,
        description=request.description,
        idempotency_key=request.idempotency_key,
        reference=request.reference,
    )
    return {"ok": True, "transaction": serialize_transaction(entry)}


@router.post("/accounts/{account_id}/deactivate")
async def deactivate_account(account_id: str, db: AsyncSession = Depends(get_db)):
    account = await set_account_active(account_id, db, active=False)
    return _account_payload(account)


@router.post("/accounts/{account_id}/reactivate")
async def reactivate_account(account_id: str, db: AsyncSession = Depends(get_db)):
    account = await set_account_active(account_id, db, active=True)
    return _account_payload(account)


@router.get("/accounts/{account_id}/integrity")
async def account_integrity(account_id: str, db: AsyncSession = Depends(get_db)):
    report = await verify_ledger_integrity(account_id, db)
    return {
        "account_id": report.account_id,
        "balance": report.balance,
        "ledger_sum": report.ledger_sum,
        "min_running_balance": report.min_running_balance,
        "transaction_count": report.transaction_count,
        "consistent": report.consistent,
    }


@router.post("/claims/sweep")
async def sweep_claims(
    retention_hours: Optional[int] = Query(default=None, ge=0),
    db: AsyncSession = Depends(get_db),
):
    result = await expire_stale_claims(db, retention_hours=retention_hours)
    return {
        "expired_count": result.expired_count,
        "deleted_count": result.deleted_count,
        "expired_by_provider": result.expired_by_provider,
    }


@router.get("/claims/analytics")
async def claims_analytics(db: AsyncSession = Depends(get_db)):
    return {"providers": await get_claim_analytics(db)}
