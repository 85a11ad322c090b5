"""
Base connector class that all source plugins inherit from.

A source plugin supplies four things to the sync engine: one page of person
records, a transform into a directory contact, and the ability to write
(and, where the source system allows it, rewrite or delete) a call/message
log entry. Everything else (bulk upsert, mapping, cursor persistence,
enrichment ordering) lives in services/.

Uses Nango for credential management - tokens are fetched from Nango
on demand and automatically refreshed.
"""

from abc import ABC, abstractmethod
from datetime import datetime
import logging
from typing import Any, Optional, Protocol, runtime_checkable
from urllib.parse import parse_qs, urlparse
from uuid import UUID

import httpx

from config import get_nango_integration_id
from connectors.models import ActivityLog, DirectoryContact, SourceEvent, SyncPage
from connectors.registry import ConnectorMeta
from models.database import get_session
from models.integration import Integration
from services.nango import get_nango_client


logger = logging.getLogger(__name__)


class SyncCancelledError(RuntimeError):
    """Raised when a sync should stop because the integration was disconnected."""


class SourceAPIError(Exception):
    """A source-system API call returned an error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SourceRateLimitError(SourceAPIError):
    """The source system answered 429. Retried by the queue, never in-process."""


def extract_query_param(url: str | None, name: str) -> str | None:
    """Pull one query parameter out of a next-page URL."""
    if not url:
        return None
    try:
        values = parse_qs(urlparse(url).query).get(name)
    except ValueError:
        logger.warning("[connector] Failed to parse next-page URL %s", url)
        return None
    return values[0] if values else None


@runtime_checkable
class PersonSource(Protocol):
    """What the sync engine and enrichment pipeline need from a plugin."""

    meta: ConnectorMeta

    async def ensure_sync_active(self, stage: str) -> None: ...

    async def fetch_person_page(
        self,
        object_type: str,
        cursor: Optional[str],
        limit: int,
        modified_since: Optional[datetime] = None,
        sort_desc: bool = True,
    ) -> SyncPage: ...

    async def transform_person(self, record: dict[str, Any]) -> DirectoryContact: ...

    async def log_activity(self, log: ActivityLog) -> Optional[str]: ...

    async def update_activity(self, log_id: str, log: ActivityLog) -> None: ...

    async def delete_activity(self, log_id: str) -> None: ...

    async def find_contact_by_phone(self, phone: str) -> Optional[str]: ...


class BaseConnector(ABC):
    """Abstract base class for source-system plugins.

    Subclasses set a class-level ``meta`` attribute (:class:`ConnectorMeta`)
    describing identity, capabilities and the object types they sync, and
    an ``api_base`` for ``_make_request``.
    """

    # Override in subclasses - must match our provider names
    source_system: str = "unknown"
    api_base: str = ""

    meta: ConnectorMeta

    def __init__(self, integration_id: str, token: Optional[str] = None) -> None:
        """
        Initialize the connector.

        Args:
            integration_id: UUID of the Integration row this plugin serves
            token: Optional pre-resolved credential (skips the Nango lookup)
        """
        self.integration_id = integration_id
        self._token: Optional[str] = token
        self._integration: Optional[Integration] = None

    @property
    def supports_update_in_place(self) -> bool:
        return self.meta.supports_update_in_place

    async def _load_integration(self) -> Optional[Integration]:
        async with get_session() as session:
            integration = await session.get(Integration, UUID(self.integration_id))
        return integration

    async def ensure_sync_active(self, stage: str) -> None:
        """Stop in-flight syncs when integration has been disconnected."""
        integration = await self._load_integration()

        if not integration:
            logger.info(
                "Sync cancelled because integration row is missing",
                extra={
                    "integration_id": self.integration_id,
                    "provider": self.source_system,
                    "stage": stage,
                },
            )
            raise SyncCancelledError(
                f"{self.source_system} integration disconnected during sync ({stage})"
            )

        if not integration.is_active:
            logger.info(
                "Sync cancelled because integration was deactivated",
                extra={
                    "integration_id": self.integration_id,
                    "provider": self.source_system,
                    "stage": stage,
                },
            )
            raise SyncCancelledError(
                f"{self.source_system} integration deactivated during sync ({stage})"
            )

        self._integration = integration

    # ------------------------------------------------------------------
    # Plugin contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_person_page(
        self,
        object_type: str,
        cursor: Optional[str],
        limit: int,
        modified_since: Optional[datetime] = None,
        sort_desc: bool = True,
    ) -> SyncPage:
        """Fetch one page of person records."""
        pass

    @abstractmethod
    async def transform_person(self, record: dict[str, Any]) -> DirectoryContact:
        """Map a raw source record onto a directory contact."""
        pass

    @abstractmethod
    async def log_activity(self, log: ActivityLog) -> Optional[str]:
        """Write a call/message log entry, return its id in the source system."""
        pass

    async def update_activity(self, log_id: str, log: ActivityLog) -> None:
        """Rewrite an existing log entry. Only for UPDATE_ACTIVITY plugins."""
        raise NotImplementedError(f"{self.source_system} cannot update log entries")

    async def delete_activity(self, log_id: str) -> None:
        raise NotImplementedError(f"{self.source_system} cannot delete log entries")

    async def find_contact_by_phone(self, phone: str) -> Optional[str]:
        """Search the source system for a person by phone.

        Default: no search support; the enrichment pipeline falls back to the
        phone numbers recorded on entity mappings.
        """
        return None

    # ------------------------------------------------------------------
    # Webhook lifecycle
    # ------------------------------------------------------------------

    async def fetch_person(self, record_id: str, object_type: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Fetch one raw person record, or None if the source no longer has it."""
        raise NotImplementedError(f"{self.source_system} cannot fetch single records")

    def parse_webhook_events(self, payload: dict[str, Any]) -> list[SourceEvent]:
        """Turn a source webhook body into record changes. Only for LISTEN plugins."""
        raise NotImplementedError(f"{self.source_system} does not push record changes")

    async def handle_handshake(self, secret: str, body: dict[str, Any]) -> None:
        """Complete a source-system webhook handshake. Only for ``meta.handshake`` plugins.

        Implementations must confirm the secret with the source system before
        storing it; an unconfirmed header value is never trusted.
        """
        raise NotImplementedError(f"{self.source_system} does not use webhook handshakes")

    async def update_config(self, changes: dict[str, Any]) -> None:
        async with get_session() as session:
            integration = await session.get(Integration, UUID(self.integration_id))
            if not integration:
                raise ValueError(f"Integration {self.integration_id} not found")
            integration.config = {**(integration.config or {}), **changes}
            await session.commit()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def get_token(self) -> str:
        """
        Retrieve the source-system credential from Nango.

        Nango handles token refresh automatically.
        """
        if self._token:
            return self._token

        integration = self._integration or await self._load_integration()
        if not integration or not integration.is_active:
            raise ValueError(f"No active {self.source_system} integration: {self.integration_id}")
        self._integration = integration

        connection_id = integration.nango_connection_id
        if not connection_id:
            raise ValueError(
                f"No Nango connection ID stored for {self.source_system} integration"
            )

        nango = get_nango_client()
        self._token = await nango.get_token(
            get_nango_integration_id(self.source_system), connection_id
        )
        return self._token

    async def _get_headers(self) -> dict[str, str]:
        token = await self.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Make an authenticated request to the source API.

        429 raises :class:`SourceRateLimitError`; retry policy lives in the
        Celery task that called us.
        """
        headers = await self._get_headers()
        url = endpoint if endpoint.startswith("http") else f"{self.api_base}{endpoint}"

        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_data,
                timeout=30.0,
            )

        if response.status_code == 429:
            raise SourceRateLimitError(
                f"{self.source_system} rate limited on {endpoint}", status_code=429
            )
        if response.status_code >= 400:
            detail = response.text[:500]
            logger.warning(
                "[%s] %s %s failed: %s %s",
                self.source_system, method, endpoint, response.status_code, detail,
            )
            raise SourceAPIError(
                f"{self.source_system} API error {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()
