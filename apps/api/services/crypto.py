"""
Fernet encryption for handoff payloads stored in pending_claims.flow_data_encrypted.
"""

import base64
import json
from functools import lru_cache
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    # Non 32-byte secrets are stretched with PBKDF2.
    if len(secret) != 32:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"credit_ledger_flow_data_salt",
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))
    else:
        key = base64.urlsafe_b64encode(secret.encode())
    return Fernet(key)


def _get_fernet() -> Fernet:
    return _fernet_for(settings.ENCRYPTION_KEY)


def encrypt_text(value: str) -> str:
    """Encrypt a string for storage; returns the Fernet token as text."""
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt_text(encrypted_value: str) -> str:
    return _get_fernet().decrypt(encrypted_value.encode()).decode()


def encrypt_flow_data(flow_data: Dict[str, Any]) -> str:
    """
    Serialize and encrypt an opaque flow payload.

    Args:
        flow_data: JSON-serializable mapping (redirect target, scopes, PKCE verifier...)

    Returns:
        Encrypted payload safe to store in a text column
    """
    return encrypt_text(json.dumps(flow_data or {}, sort_keys=True, separators=(",", ":")))


def decrypt_flow_data(encrypted_value: str) -> Dict[str, Any]:
    """Reverse of encrypt_flow_data. Raises ValueError on a tampered or foreign payload."""
    try:
        payload = json.loads(decrypt_text(encrypted_value))
    except InvalidToken as exc:
        raise ValueError("flow data could not be decrypted with the configured key") from exc
    if not isinstance(payload, dict):
        raise ValueError("flow data payload is not an object")
    return payload
