"""
Connector registry: auto-discovery and metadata types.

ConnectorMeta is the single source of truth for what a connector is, which
object types it can list, and how its OAuth handshake works. The
discover_connectors() function scans backend/connectors/ for BaseConnector
subclasses and falls back to entry_points for externally-installed packages.

Provider dispatch happens exactly once, in build_connector(): callers get a
connector instance bound to one Integration and never branch on the
provider string again.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import httpx

from connectors.errors import UnsupportedProviderError

if TYPE_CHECKING:
    from connectors.base import BaseConnector, TokenProvider
    from connectors.retry import RetryPolicy
    from models.integration import Integration

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AuthType(Enum):
    """How a connector authenticates with its source system."""

    OAUTH2 = "oauth2"
    API_KEY = "api_key"


# ---------------------------------------------------------------------------
# Metadata dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthEndpoints:
    """Provider side of the three-legged OAuth handshake."""

    authorization_url: str
    token_url: str
    required_scopes: list[str] = field(default_factory=list)
    optional_scopes: list[str] = field(default_factory=list)
    supports_refresh: bool = True


@dataclass(frozen=True)
class ConnectorMeta:
    """Self-describing metadata for a connector."""

    name: str
    slug: str
    auth_type: AuthType
    # Logical entity types a data source may be created for
    entity_types: list[str] = field(default_factory=list)
    # Provider object types list_objects() understands
    object_types: list[str] = field(default_factory=list)
    oauth: Optional[OAuthEndpoints] = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "slug": self.slug,
            "auth_type": self.auth_type.value,
            "entity_types": list(self.entity_types),
            "object_types": list(self.object_types),
            "description": self.description,
        }


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

_SKIP_MODULES = frozenset(
    {"base", "errors", "oauth", "persistence", "registry", "resolution", "retry", "models"}
)


def discover_connectors() -> dict[str, type[BaseConnector]]:
    """Build connector registry from in-tree modules + installed packages."""
    from connectors.base import BaseConnector  # deferred to avoid circular import

    registry: dict[str, type[BaseConnector]] = {}

    connectors_dir = Path(__file__).parent
    for module_info in pkgutil.iter_modules([str(connectors_dir)]):
        if module_info.name.startswith("_") or module_info.name in _SKIP_MODULES:
            continue
        try:
            module = importlib.import_module(f"connectors.{module_info.name}")
        except ImportError:
            logger.warning("Failed to import connector module %s", module_info.name, exc_info=True)
            continue

        for attr_name in dir(module):
            obj = getattr(module, attr_name)
            if (
                isinstance(obj, type)
                and issubclass(obj, BaseConnector)
                and obj is not BaseConnector
                and hasattr(obj, "meta")
            ):
                meta: ConnectorMeta = obj.meta  # type: ignore[attr-defined]
                registry[meta.slug] = obj

    # Entry-points fallback for externally-installed connector packages
    from importlib.metadata import entry_points

    for ep in entry_points(group="integration_sync.connectors"):
        if ep.name not in registry:
            try:
                registry[ep.name] = ep.load()
            except ImportError:
                logger.warning("Failed to load entry-point connector %s", ep.name, exc_info=True)

    return registry


@lru_cache(maxsize=1)
def _registry() -> dict[str, type[BaseConnector]]:
    return discover_connectors()


def get_connector_class(provider: str) -> type[BaseConnector]:
    connector_cls = _registry().get(provider)
    if connector_cls is None:
        raise UnsupportedProviderError(f"Unsupported provider: {provider}")
    return connector_cls


def get_connector_meta(provider: str) -> Optional[ConnectorMeta]:
    connector_cls = _registry().get(provider)
    return connector_cls.meta if connector_cls is not None else None


def supported_providers() -> list[str]:
    return sorted(_registry())


def build_connector(
    integration: Integration,
    token_provider: TokenProvider,
    http_client: Optional[httpx.AsyncClient] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> BaseConnector:
    """Instantiate the connector for an integration's provider."""
    connector_cls = get_connector_class(integration.provider)
    return connector_cls(
        integration_id=integration.id,
        token_provider=token_provider,
        http_client=http_client,
        retry_policy=retry_policy,
    )
