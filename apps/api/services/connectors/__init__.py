"""Public connector provider utilities."""

from services.connectors.providers import OAuthConnectorProvider, connector_capabilities, get_connector_provider
from services.connectors.types import (
    SUPPORTED_PROVIDERS,
    ConnectorStartResult,
    ConnectorUnavailableError,
    ProviderKey,
)

__all__ = [
    "SUPPORTED_PROVIDERS",
    "ConnectorStartResult",
    "ConnectorUnavailableError",
    "OAuthConnectorProvider",
    "ProviderKey",
    "connector_capabilities",
    "get_connector_provider",
]
