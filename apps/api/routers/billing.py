"""Billing and credits router."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_account_scope, get_auth_context
from routers.rate_limit import account_rate_limit, rate_limit
from services.credits import (
    add_credits,
    debit_credits,
    get_credit_summary,
    get_history,
    serialize_transaction,
)
from services.errors import InvalidIdempotencyKey

router = APIRouter()
logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENT = "payment.succeeded"


class ConsumeRequest(BaseModel):
    account_id: Optional[str] = None
    amount: int = Field(ge=1, le=10000)
    description: str = Field(default="Billable operation", min_length=1, max_length=200)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class PaymentEventData(BaseModel):
    account_id: str = Field(min_length=1)
    credits: int = Field(ge=1, le=100000)
    reference: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None


class PaymentEvent(BaseModel):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


def _verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    supplied = (signature_header or "").strip()
    if supplied.startswith("sha256="):
        supplied = supplied[len("sha256="):]
    if not supplied:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, supplied.lower())


@router.get("/credits")
async def credits_summary(
    account_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth.account_id, account_id)
    return await get_credit_summary(scoped_account_id, db)


@router.get("/credits/history")
async def credits_history(
    limit: int = Query(default=20, ge=1, le=100),
    cursor: Optional[int] = Query(default=None, ge=1),
    kind: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    page = await get_history(auth.account_id, db, limit=limit, cursor=cursor, kind=kind)
    return {
        "items": [serialize_transaction(entry) for entry in page.items],
        "next_cursor": page.next_cursor,
    }


@router.post("/consume")
async def consume(
    request: ConsumeRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    _rate_limit: None = Depends(account_rate_limit(
        "billing_consume", "RATE_LIMIT_CONSUME", "RATE_LIMIT_CONSUME_WINDOW_SECONDS"
    )),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth.account_id, request.account_id)
    key = (request.idempotency_key or idempotency_key or "").strip()
    if not key:
        raise InvalidIdempotencyKey("idempotency_key (body) or Idempotency-Key header is required.")

    entry, replayed = await debit_credits(
        scoped_account_id,
        db,
        amount=request.amount,
        description=request.description,
        idempotency_key=key,
    )
    return {
        "ok": True,
        "replayed": replayed,
        "balance_after": entry.balance_after,
        "transaction": serialize_transaction(entry),
    }


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
    _rate_limit: None = Depends(rate_limit(
        "billing_webhook", "RATE_LIMIT_WEBHOOK", "RATE_LIMIT_WEBHOOK_WINDOW_SECONDS"
    )),
    db: AsyncSession = Depends(get_db),
):
    secret = (settings.PAYMENT_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise HTTPException(status_code=503, detail="Payment webhook is not configured.")

    body = await request.body()
    if not _verify_signature(secret, body, x_signature):
        logger.warning("payment_webhook_rejected reason=bad_signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature.")

    try:
        event = PaymentEvent.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail="Malformed webhook payload.") from exc

    if event.type != PAYMENT_SUCCEEDED_EVENT:
        logger.info("payment_webhook_ignored type=%s", event.type)
        return {"ok": True, "ignored": True, "type": event.type}

    try:
        data = PaymentEventData.model_validate(event.data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Malformed payment event data.") from exc

    entry = await add_credits(
        data.account_id,
        db,
        amount=data.credits,
        kind="purchase",
        description=data.description or f"Purchased {data.credits} credits",
        idempotency_key=f"payment:{data.reference}",
        reference=data.reference,
    )
    return {
        "ok": True,
        "account_id": data.account_id,
        "credits_added": data.credits,
        "balance_after": entry.balance_after,
        "transaction_id": entry.id,
    }
