"""Request quotas for ledger and connection endpoints.

Counters live in Redis (``INCR`` + ``EXPIRE``) so every API process shares
them. When Redis is unreachable each process falls back to a bounded
in-memory table. Limits are read from ``Settings`` on every request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import AuthContext, get_auth_context


logger = logging.getLogger(__name__)

KEY_PREFIX = "ledger:rate"

# key -> (count, window reset timestamp)
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def _prune_local_counters(now: float, max_keys: int) -> None:
    """Drop finished windows, then the soonest-to-reset keys, until one slot is free."""
    for key in [key for key, (_, reset_at) in _local_counters.items() if reset_at <= now]:
        del _local_counters[key]
    overflow = len(_local_counters) - max(max_keys - 1, 0)
    if overflow > 0:
        oldest = sorted(_local_counters.items(), key=lambda item: item[1][1])[:overflow]
        for key, _ in oldest:
            del _local_counters[key]


async def _consume_local_quota(key: str, limit: int, window_seconds: int, now: Optional[float] = None) -> bool:
    now = time.time() if now is None else now
    async with _local_lock:
        if key not in _local_counters and len(_local_counters) >= settings.RATE_LIMIT_LOCAL_MAX_KEYS:
            _prune_local_counters(now, settings.RATE_LIMIT_LOCAL_MAX_KEYS)
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds)
    finally:
        await redis_client.aclose()
    return current <= limit


async def _enforce(prefix: str, subject: str, limit: int, window_seconds: int) -> None:
    key = f"{KEY_PREFIX}:{prefix}:{subject}"
    try:
        allowed = await _consume_redis_quota(key, limit, window_seconds)
    except (RedisError, OSError) as exc:
        logger.debug("rate_limit_local_fallback prefix=%s error=%s", prefix, exc)
        allowed = await _consume_local_quota(key, limit, window_seconds)

    if not allowed:
        logger.info("rate_limited prefix=%s subject=%s limit=%s window=%s", prefix, subject, limit, window_seconds)
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded for {prefix}. Try again later.",
            headers={"Retry-After": str(window_seconds)},
        )


def _resolve(limit_setting: str, window_setting: str) -> Tuple[int, int]:
    return int(getattr(settings, limit_setting)), max(int(getattr(settings, window_setting)), 1)


def rate_limit(prefix: str, limit_setting: str, window_setting: str) -> Callable[..., Awaitable[None]]:
    """Per-client quota for unauthenticated endpoints (webhooks, OAuth callbacks)."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        limit, window_seconds = _resolve(limit_setting, window_setting)
        await _enforce(prefix, f"client:{_client_identifier(request)}", limit, window_seconds)

    return _dependency


def account_rate_limit(prefix: str, limit_setting: str, window_setting: str) -> Callable[..., Awaitable[None]]:
    """Per-account quota keyed on the bearer session's account."""

    async def _dependency(request: Request, auth: AuthContext = Depends(get_auth_context)) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        limit, window_seconds = _resolve(limit_setting, window_setting)
        await _enforce(prefix, f"account:{auth.account_id}", limit, window_seconds)

    return _dependency
