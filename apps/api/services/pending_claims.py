"""Single-use handoff claims for OAuth-style flows.

A claim row is written before the browser leaves for the provider and is
redeemed exactly once when the callback returns. Every state change is one
conditional UPDATE whose WHERE clause is derived from ``CLAIM_TRANSITIONS``,
so duplicate callbacks, retries and the periodic sweep race safely.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy import case, delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.pending_claim import FLOW_TYPES, PendingClaim
from services.credits import as_utc, ensure_account
from services.crypto import decrypt_flow_data, encrypt_flow_data
from services.errors import (
    AccountInactive,
    ClaimAlreadyUsed,
    ClaimExpired,
    ClaimNotFound,
    InvalidClaimTransition,
    InvalidClaimTtl,
    RESTART_CONNECTION_MESSAGE,
    store_guard,
)


logger = logging.getLogger(__name__)

CLAIM_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"claimed", "expired"}),
    "claimed": frozenset(),
    "expired": frozenset(),
}

TERMINAL_STATES = tuple(sorted(state for state, targets in CLAIM_TRANSITIONS.items() if not targets))

TOKEN_BYTES = 32
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{32,64}$")
_MAX_TOKEN_ATTEMPTS = 3


@dataclass(frozen=True)
class CreatedClaim:
    token: str
    account_id: str
    provider: str
    flow_type: str
    expires_at: datetime


@dataclass(frozen=True)
class ClaimResult:
    account_id: str
    provider: str
    flow_type: str
    flow_data: Dict[str, Any]
    claimed_at: datetime


@dataclass(frozen=True)
class SweepResult:
    expired_count: int
    deleted_count: int
    expired_by_provider: Dict[str, int] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_token_format(token: Any) -> bool:
    return isinstance(token, str) and bool(_TOKEN_PATTERN.match(token))


def ensure_transition(current: str, target: str) -> None:
    if target not in CLAIM_TRANSITIONS.get(current, frozenset()):
        raise InvalidClaimTransition(
            f"Claim cannot move from {current} to {target}.",
            current=current,
            target=target,
        )


def transition_sources(target: str) -> Tuple[str, ...]:
    """States a claim may leave to reach ``target``."""
    sources = tuple(sorted(state for state, targets in CLAIM_TRANSITIONS.items() if target in targets))
    if not sources:
        raise InvalidClaimTransition(f"No state may transition to {target}.", target=target)
    return sources


def _resolve_ttl(ttl_seconds: Optional[int]) -> int:
    ttl = settings.PENDING_CLAIM_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    ceiling = max(int(settings.PENDING_CLAIM_MAX_TTL_SECONDS), 1)
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl < 1 or ttl > ceiling:
        raise InvalidClaimTtl(
            f"ttl_seconds must be between 1 and {ceiling}",
            ttl_seconds=repr(ttl),
        )
    return ttl


async def create_claim(
    account_id: str,
    db: AsyncSession,
    *,
    provider: str,
    flow_data: Optional[Dict[str, Any]] = None,
    ttl_seconds: Optional[int] = None,
    flow_type: str = "app_first",
    now: Optional[datetime] = None,
) -> CreatedClaim:
    """Persist a pending claim and return its token before the redirect."""
    ttl = _resolve_ttl(ttl_seconds)
    if flow_type not in FLOW_TYPES:
        raise ValueError(f"flow_type must be one of {', '.join(FLOW_TYPES)}")
    normalized_provider = str(provider or "").strip().lower()
    if not normalized_provider:
        raise ValueError("provider is required")

    current = as_utc(now) if now else _utcnow()
    expires_at = current + timedelta(seconds=ttl)
    encrypted = encrypt_flow_data(flow_data or {})

    async with store_guard("create_claim", db):
        account = await ensure_account(account_id, db)
        if not account.is_active:
            raise AccountInactive("Account is deactivated; connections cannot be started.", account_id=account_id)

        for attempt in range(1, _MAX_TOKEN_ATTEMPTS + 1):
            token = secrets.token_urlsafe(TOKEN_BYTES)
            db.add(
                PendingClaim(
                    token=token,
                    account_id=account_id,
                    provider=normalized_provider,
                    flow_type=flow_type,
                    flow_data_encrypted=encrypted,
                    status="pending",
                    created_at=current,
                    expires_at=expires_at,
                )
            )
            try:
                await db.commit()
                break
            except IntegrityError:
                await db.rollback()
                logger.warning("claim_token_collision account=%s attempt=%s", account_id, attempt)
        else:
            raise RuntimeError("Could not allocate a unique claim token")

    logger.info(
        "claim_created account=%s provider=%s flow_type=%s ttl=%s",
        account_id,
        normalized_provider,
        flow_type,
        ttl,
    )
    return CreatedClaim(
        token=token,
        account_id=account_id,
        provider=normalized_provider,
        flow_type=flow_type,
        expires_at=expires_at,
    )


async def _expire_one(token: str, db: AsyncSession, now: datetime) -> None:
    await db.execute(
        update(PendingClaim)
        .where(
            PendingClaim.token == token,
            PendingClaim.status.in_(transition_sources("expired")),
            PendingClaim.expires_at <= now,
        )
        .values(status="expired")
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def claim(
    token: str,
    db: AsyncSession,
    *,
    provider: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ClaimResult:
    """Redeem a claim token; exactly one caller succeeds per token.

    When ``provider`` is given the token only matches a claim started for that
    provider, and a mismatch leaves the claim pending.
    """
    if not is_valid_token_format(token):
        raise ClaimNotFound("Unknown connection request. " + RESTART_CONNECTION_MESSAGE)

    expected_provider = str(provider or "").strip().lower() or None
    conditions = [
        PendingClaim.token == token,
        PendingClaim.status.in_(transition_sources("claimed")),
    ]
    if expected_provider:
        conditions.append(PendingClaim.provider == expected_provider)

    current = as_utc(now) if now else _utcnow()
    async with store_guard("claim", db):
        result = await db.execute(
            update(PendingClaim)
            .where(*conditions, PendingClaim.expires_at > current)
            .values(status="claimed", claimed_at=current)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            row = (
                await db.execute(
                    select(PendingClaim)
                    .where(PendingClaim.token == token)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            try:
                flow_data = decrypt_flow_data(row.flow_data_encrypted) if row.flow_data_encrypted else {}
            except ValueError:
                await db.rollback()
                logger.error("claim_flow_data_unreadable provider=%s", row.provider)
                raise
            await db.commit()
            logger.info("claim_redeemed account=%s provider=%s", row.account_id, row.provider)
            return ClaimResult(
                account_id=row.account_id,
                provider=row.provider,
                flow_type=row.flow_type,
                flow_data=flow_data,
                claimed_at=current,
            )

        await db.rollback()
        row = (
            await db.execute(
                select(PendingClaim.status, PendingClaim.provider, PendingClaim.expires_at).where(
                    PendingClaim.token == token
                )
            )
        ).one_or_none()
        if row is None:
            raise ClaimNotFound("Unknown connection request. " + RESTART_CONNECTION_MESSAGE)
        if expected_provider and row.provider != expected_provider:
            logger.warning("claim_provider_mismatch expected=%s got=%s", row.provider, expected_provider)
            raise ClaimNotFound("Unknown connection request for this provider. " + RESTART_CONNECTION_MESSAGE)
        if row.status == "claimed":
            logger.info("claim_replay_rejected status=claimed")
            raise ClaimAlreadyUsed("This connection request was already used. " + RESTART_CONNECTION_MESSAGE)

        if row.status == "pending":
            await _expire_one(token, db, current)
        logger.info("claim_expired_at_redeem status=%s", row.status)
        raise ClaimExpired("This connection request has expired. " + RESTART_CONNECTION_MESSAGE)


async def expire_stale_claims(
    db: AsyncSession,
    *,
    retention_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Mark overdue pending claims expired and purge old terminal rows."""
    current = as_utc(now) if now else _utcnow()
    hours = settings.CLAIM_RETENTION_HOURS if retention_hours is None else retention_hours
    purge_before = current - timedelta(hours=max(int(hours), 0))

    async with store_guard("expire_stale_claims", db):
        expired = await db.execute(
            update(PendingClaim)
            .where(
                PendingClaim.status.in_(transition_sources("expired")),
                PendingClaim.expires_at <= current,
            )
            .values(status="expired")
            .returning(PendingClaim.provider)
            .execution_options(synchronize_session=False)
        )
        expired_providers = list(expired.scalars().all())

        deleted = await db.execute(
            delete(PendingClaim)
            .where(
                PendingClaim.status.in_(TERMINAL_STATES),
                PendingClaim.expires_at < purge_before,
            )
            .execution_options(synchronize_session=False)
        )
        deleted_count = int(deleted.rowcount or 0)
        await db.commit()

    sweep = SweepResult(
        expired_count=len(expired_providers),
        deleted_count=deleted_count,
        expired_by_provider=dict(Counter(expired_providers)),
    )
    if sweep.expired_count or sweep.deleted_count:
        logger.info(
            "claims_swept expired=%s deleted=%s by_provider=%s",
            sweep.expired_count,
            sweep.deleted_count,
            sweep.expired_by_provider,
        )
    return sweep


async def get_claim_analytics(db: AsyncSession) -> List[Dict[str, Any]]:
    """Per provider and flow type counts plus mean seconds from creation to claim."""
    async with store_guard("get_claim_analytics", db):
        grouped = (
            await db.execute(
                select(
                    PendingClaim.provider,
                    PendingClaim.flow_type,
                    func.count().label("total"),
                    func.sum(case((PendingClaim.status == "claimed", 1), else_=0)).label("claimed"),
                    func.sum(case((PendingClaim.status == "pending", 1), else_=0)).label("pending"),
                    func.sum(case((PendingClaim.status == "expired", 1), else_=0)).label("expired"),
                )
                .group_by(PendingClaim.provider, PendingClaim.flow_type)
                .order_by(PendingClaim.provider, PendingClaim.flow_type)
            )
        ).all()
        claimed_rows = (
            await db.execute(
                select(
                    PendingClaim.provider,
                    PendingClaim.flow_type,
                    PendingClaim.created_at,
                    PendingClaim.claimed_at,
                ).where(PendingClaim.status == "claimed")
            )
        ).all()

    durations: Dict[Tuple[str, str], List[float]] = {}
    for row in claimed_rows:
        created_at, claimed_at = as_utc(row.created_at), as_utc(row.claimed_at)
        if created_at is None or claimed_at is None:
            continue
        durations.setdefault((row.provider, row.flow_type), []).append((claimed_at - created_at).total_seconds())

    analytics = []
    for row in grouped:
        samples = durations.get((row.provider, row.flow_type), [])
        analytics.append(
            {
                "provider": row.provider,
                "flow_type": row.flow_type,
                "total": int(row.total or 0),
                "claimed": int(row.claimed or 0),
                "pending": int(row.pending or 0),
                "expired": int(row.expired or 0),
                "avg_seconds_to_claim": round(sum(samples) / len(samples), 2) if samples else None,
            }
        )
    return analytics
