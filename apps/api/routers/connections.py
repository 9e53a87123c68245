"""OAuth connection handoff router backed by single-use pending claims."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import account_rate_limit, rate_limit
from services.connectors import SUPPORTED_PROVIDERS, ConnectorUnavailableError, get_connector_provider
from services.pending_claims import claim, create_claim

router = APIRouter()
logger = logging.getLogger(__name__)


class ConnectionStartRequest(BaseModel):
    flow_type: str = Field(default="app_first", pattern="^(app_first|marketplace_first)$")
    redirect_after: Optional[str] = Field(default=None, max_length=500)
    ttl_seconds: Optional[int] = Field(default=None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _require_supported(provider: str) -> str:
    normalized = (provider or "").strip().lower()
    if normalized not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{provider}'.")
    return normalized


@router.post("/{provider}/start")
async def start_connection(
    provider: str,
    request: Optional[ConnectionStartRequest] = None,
    _rate_limit: None = Depends(account_rate_limit(
        "connections_start", "RATE_LIMIT_CONNECTION_START", "RATE_LIMIT_CONNECTION_WINDOW_SECONDS"
    )),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    normalized = _require_supported(provider)
    body = request or ConnectionStartRequest()
    connector = get_connector_provider(normalized)
    try:
        connector.require_enabled()
    except ConnectorUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    flow_data: Dict[str, Any] = dict(body.metadata)
    if body.redirect_after:
        flow_data["redirect_after"] = body.redirect_after

    created = await create_claim(
        auth.account_id,
        db,
        provider=normalized,
        flow_data=flow_data,
        ttl_seconds=body.ttl_seconds,
        flow_type=body.flow_type,
    )
    started = connector.start(state=created.token, expires_at=created.expires_at)
    return {
        "provider": started.provider,
        "authorize_url": started.authorize_url,
        "state": started.state,
        "flow_type": created.flow_type,
        "expires_at": started.expires_at.isoformat(),
    }


@router.get("/{provider}/callback")
async def connection_callback(
    provider: str,
    state: str = Query(..., min_length=1),
    code: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    _rate_limit: None = Depends(rate_limit(
        "connections_callback", "RATE_LIMIT_CONNECTION_CALLBACK", "RATE_LIMIT_CONNECTION_WINDOW_SECONDS"
    )),
    db: AsyncSession = Depends(get_db),
):
    normalized = _require_supported(provider)
    result = await claim(state, db, provider=normalized)

    if error or not code:
        logger.info("connection_callback_denied provider=%s error=%s", normalized, error or "missing_code")
        raise HTTPException(
            status_code=400,
            detail=f"Authorization was not completed ({error or 'missing code'}). Please restart the connection flow.",
        )

    return {
        "ok": True,
        "account_id": result.account_id,
        "provider": result.provider,
        "flow_type": result.flow_type,
        "flow_data": result.flow_data,
        "claimed_at": result.claimed_at.isoformat(),
    }
