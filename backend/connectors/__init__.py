"""Provider connectors package."""
from connectors.base import AccessToken, BaseConnector, TokenProvider
from connectors.hubspot import HubSpotConnector
from connectors.registry import build_connector, discover_connectors

__all__ = [
    "AccessToken",
    "BaseConnector",
    "HubSpotConnector",
    "TokenProvider",
    "build_connector",
    "discover_connectors",
]
