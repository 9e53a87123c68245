"""Authentication dependencies for account scoping and operator access."""

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import SessionTokenError, verify_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None


def ensure_account_scope(auth_account_id: str, supplied_account_id: Optional[str]) -> str:
    """Return the authenticated account id and reject cross-account attempts."""
    if supplied_account_id and supplied_account_id != auth_account_id:
        raise HTTPException(status_code=403, detail="account_id does not match authenticated session.")
    return auth_account_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the scoped account from the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        session = verify_session_token(credentials.credentials)
    except SessionTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(account_id=session.account_id, email=session.email)


async def require_admin(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")) -> None:
    """Guard operator endpoints with the shared ADMIN_API_KEY."""
    expected = (settings.ADMIN_API_KEY or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API is disabled. Configure ADMIN_API_KEY.")
    supplied = (x_admin_key or "").strip()
    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin key.")
