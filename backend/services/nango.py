"""
Nango client for source-system credential management.

Nango owns the OAuth flows, token storage and refresh for every source
system. We only ever ask it for a usable credential for a connection.
"""

import logging
from typing import Any, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


class NangoClient:
    """Client for interacting with Nango API."""

    def __init__(self, secret_key: Optional[str] = None, host: Optional[str] = None) -> None:
        self.secret_key = secret_key or settings.NANGO_SECRET_KEY
        self.host = (host or settings.NANGO_HOST).rstrip("/")
        if not self.secret_key:
            raise ValueError("NANGO_SECRET_KEY is required")

    def _get_headers(self) -> dict[str, str]:
        """Get authorization headers for Nango API."""
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def get_connection(
        self,
        integration_id: str,
        connection_id: str,
    ) -> dict[str, Any]:
        """
        Get a connection's details from Nango.

        Args:
            integration_id: The Nango integration ID (e.g., 'pipedrive', 'attio')
            connection_id: The unique connection identifier

        Returns:
            Connection details including credentials
        """
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{self.host}/connection/{connection_id}",
                headers=self._get_headers(),
                params={"provider_config_key": integration_id},
                timeout=30.0,
            )
            response.raise_for_status()
            return response.json()

    async def get_token(
        self,
        integration_id: str,
        connection_id: str,
    ) -> str:
        """
        Get an access token or API key for a connection.

        OAuth sources return ``access_token``; API-key sources (AxisCare,
        Attio workspaces on key auth) return ``api_key``/``apiKey``.
        """
        connection = await self.get_connection(integration_id, connection_id)
        credentials: dict[str, Any] = connection.get("credentials", {})

        for key in ("access_token", "api_key", "apiKey", "token"):
            if credentials.get(key):
                return credentials[key]

        logger.error(
            "[nango] No usable credential for %s:%s (keys: %s)",
            integration_id, connection_id, list(credentials.keys()),
        )
        raise ValueError(f"No token found for {integration_id}:{connection_id}")


_nango_client: Optional[NangoClient] = None


def get_nango_client() -> NangoClient:
    """Get the Nango client instance."""
    global _nango_client
    if _nango_client is None:
        if not settings.NANGO_SECRET_KEY:
            raise ValueError("Nango is not configured. Set NANGO_SECRET_KEY.")
        _nango_client = NangoClient()
    return _nango_client
