"""Connector provider contracts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


ProviderKey = Literal["hubspot", "ga4"]
SUPPORTED_PROVIDERS = ("hubspot", "ga4")


class ConnectorUnavailableError(RuntimeError):
    """Raised when an OAuth provider is not configured."""


@dataclass(frozen=True)
class ConnectorStartResult:
    provider: ProviderKey
    authorize_url: str
    state: str
    expires_at: datetime
