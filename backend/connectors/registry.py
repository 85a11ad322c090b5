"""
Connector registry: auto-discovery, capability model, and metadata types.

ConnectorMeta is the single source of truth for what a source plugin is, what
it can do, and how it authenticates. The discover_connectors() function scans
backend/connectors/ and falls back to entry_points for externally-installed
packages.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from connectors.base import BaseConnector

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Capability(Enum):
    """What a source plugin can do."""

    SYNC = "sync"
    LOG_ACTIVITY = "log_activity"
    UPDATE_ACTIVITY = "update_activity"
    LISTEN = "listen"


class AuthType(Enum):
    """How a connector authenticates with its source system."""

    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    BEARER_TOKEN = "bearer_token"


# ---------------------------------------------------------------------------
# Metadata dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventType:
    """An inbound event this connector can receive."""

    name: str
    description: str


@dataclass(frozen=True)
class ConnectorMeta:
    """Self-describing metadata for a source plugin."""

    name: str
    slug: str
    auth_type: AuthType
    object_types: list[str] = field(default_factory=lambda: ["people"])
    capabilities: list[Capability] = field(default_factory=lambda: [Capability.SYNC])
    event_types: list[EventType] = field(default_factory=list)
    # Header the source system signs its webhooks with (hex HMAC-SHA256)
    signature_header: str | None = None
    # Source completes webhook setup with an X-Hook-Secret handshake
    handshake: bool = False
    nango_integration_id: str | None = None
    description: str = ""

    @property
    def supports_update_in_place(self) -> bool:
        return Capability.UPDATE_ACTIVITY in self.capabilities


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

_SKIP_MODULES = frozenset({"base", "registry", "models"})


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
        except Exception:
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

    for ep in entry_points(group="directory_sync.connectors"):
        if ep.name not in registry:
            try:
                registry[ep.name] = ep.load()
            except Exception:
                logger.warning("Failed to load entry-point connector %s", ep.name, exc_info=True)

    return registry


_registry_cache: dict[str, type[BaseConnector]] | None = None


def get_connector_class(provider: str) -> type[BaseConnector]:
    """Look up a connector class by slug, discovering on first use."""
    global _registry_cache
    if _registry_cache is None:
        _registry_cache = discover_connectors()
    connector_cls = _registry_cache.get(provider)
    if connector_cls is None:
        raise ValueError(f"Unknown provider: {provider}")
    return connector_cls
