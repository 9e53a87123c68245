"""Verification of account session tokens.

Tokens are issued by the upstream identity service and signed with the shared
``JWT_SECRET``; this service only checks them and reads the account they
scope. ``sub`` is the account id, ``type`` must be ``ledger_session``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ledger_session"
MAX_ACCOUNT_ID_LENGTH = 128


class SessionTokenError(ValueError):
    """The bearer token cannot scope a request to an account."""


@dataclass(frozen=True)
class SessionClaims:
    account_id: str
    expires_at: datetime
    email: Optional[str] = None


def verify_session_token(token: str) -> SessionClaims:
    """Validate signature, expiry and token type, and return the scoped account."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require_exp": True, "require_sub": True},
        )
    except ExpiredSignatureError as exc:
        raise SessionTokenError("Session token has expired.") from exc
    except JWTError as exc:
        raise SessionTokenError("Invalid session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise SessionTokenError("Invalid session token type.")

    account_id = str(payload.get("sub") or "").strip()
    if not account_id or len(account_id) > MAX_ACCOUNT_ID_LENGTH:
        raise SessionTokenError("Session token does not name an account.")

    email = str(payload.get("email") or "").strip() or None
    return SessionClaims(
        account_id=account_id,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        email=email,
    )
