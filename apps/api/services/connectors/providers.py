"""OAuth authorize-URL builders for the providers a handoff claim can front."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Tuple
from urllib.parse import urlencode

from config import settings
from services.connectors.types import (
    SUPPORTED_PROVIDERS,
    ConnectorStartResult,
    ConnectorUnavailableError,
    ProviderKey,
)


@dataclass(frozen=True)
class OAuthConnectorProvider:
    provider: ProviderKey
    authorize_endpoint: str
    client_id: str
    redirect_uri: str
    scopes: Tuple[str, ...]
    setup_url: str
    extra_params: Tuple[Tuple[str, str], ...] = ()

    @property
    def enabled(self) -> bool:
        return bool(self.client_id.strip() and self.redirect_uri.strip())

    def _setup_error(self) -> ConnectorUnavailableError:
        return ConnectorUnavailableError(
            f"{self.provider} OAuth connector is not configured. "
            f"Set its client id and redirect URI, then retry. Setup guide: {self.setup_url}"
        )

    def require_enabled(self) -> None:
        if not self.enabled:
            raise self._setup_error()

    def authorize_url(self, *, state: str) -> str:
        """Provider consent URL; ``state`` carries the pending claim token."""
        self.require_enabled()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "response_type": "code",
        }
        params.update(dict(self.extra_params))
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    def start(self, *, state: str, expires_at: datetime) -> ConnectorStartResult:
        return ConnectorStartResult(
            provider=self.provider,
            authorize_url=self.authorize_url(state=state),
            state=state,
            expires_at=expires_at,
        )


def _split_scopes(raw: str) -> Tuple[str, ...]:
    return tuple(scope for scope in str(raw or "").replace(",", " ").split() if scope)


def get_connector_provider(provider: str) -> OAuthConnectorProvider:
    if provider == "hubspot":
        return OAuthConnectorProvider(
            provider="hubspot",
            authorize_endpoint="https://app.hubspot.com/oauth/authorize",
            client_id=settings.HUBSPOT_CLIENT_ID,
            redirect_uri=settings.HUBSPOT_REDIRECT_URI,
            scopes=_split_scopes(settings.HUBSPOT_SCOPES),
            setup_url="https://developers.hubspot.com/docs/api/oauth-quickstart-guide",
        )
    if provider == "ga4":
        return OAuthConnectorProvider(
            provider="ga4",
            authorize_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
            client_id=settings.GOOGLE_CLIENT_ID,
            redirect_uri=settings.GA4_REDIRECT_URI,
            scopes=_split_scopes(settings.GA4_SCOPES),
            setup_url="https://developers.google.com/analytics/devguides/reporting/data/v1/quickstart",
            extra_params=(("access_type", "offline"), ("prompt", "consent")),
        )
    raise ConnectorUnavailableError(
        f"Unsupported provider '{provider}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}"
    )


def connector_capabilities() -> Dict[str, bool]:
    return {f"{key}_oauth_available": get_connector_provider(key).enabled for key in SUPPORTED_PROVIDERS}
