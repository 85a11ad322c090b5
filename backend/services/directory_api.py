"""
Contact directory API client.

Thin httpx wrapper around the directory's REST API (``/v1``). Every method is
a single request/response; sequencing (settle delays, create-before-delete)
is the caller's job. Nothing here retries: a 429 surfaces as
``DirectoryRateLimitError`` so the Celery task that owns the call can back off.
"""

import logging
from typing import Any, Literal, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

WebhookKind = Literal["call", "call_summary", "message"]

_WEBHOOK_PATHS: dict[str, str] = {
    "call": "/v1/webhooks/calls",
    "call_summary": "/v1/webhooks/call-summaries",
    "message": "/v1/webhooks/messages",
}

WEBHOOK_EVENTS: dict[str, list[str]] = {
    "call": ["call.completed", "call.recording.completed"],
    "call_summary": ["call.summary.completed"],
    "message": ["message.received", "message.delivered"],
}


class DirectoryAPIError(Exception):
    """The directory answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class DirectoryRateLimitError(DirectoryAPIError):
    """429 from the directory."""


class DirectoryClient:
    """Client for the contact directory API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key or settings.DIRECTORY_API_KEY
        self.base_url = (base_url or settings.DIRECTORY_API_BASE).rstrip("/")
        self.timeout = timeout
        if not self.api_key:
            raise ValueError("DIRECTORY_API_KEY is required")

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": self.api_key,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[Any] = None,
    ) -> httpx.Response:
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=method,
                url=f"{self.base_url}{path}",
                headers=self._get_headers(),
                params=params,
                json=json_data,
                timeout=self.timeout,
            )

        if response.status_code == 429:
            raise DirectoryRateLimitError(
                f"Directory rate limited on {method} {path}", status_code=429
            )
        if response.status_code >= 400:
            detail = response.text[:500]
            logger.warning(
                "[directory] %s %s failed: %s %s", method, path, response.status_code, detail
            )
            raise DirectoryAPIError(
                f"Directory API error {response.status_code} on {method} {path}: {detail}",
                status_code=response.status_code,
            )
        return response

    async def _json(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[Any] = None,
    ) -> dict[str, Any]:
        response = await self._request(method, path, params=params, json_data=json_data)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def list_contacts(
        self,
        external_ids: Optional[list[str]] = None,
        max_results: int = 50,
        page_token: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"maxResults": max_results}
        if external_ids:
            params["externalIds"] = external_ids
        if page_token:
            params["pageToken"] = page_token
        data = await self._json("GET", "/v1/contacts", params=params)
        return data.get("data", [])

    async def bulk_create_contacts(self, contacts: list[dict[str, Any]]) -> int:
        """Submit contacts for asynchronous creation.

        Returns the HTTP status (202 when accepted). Acceptance says nothing
        about completion.
        """
        response = await self._request("POST", "/v1/contacts/bulk", json_data={"contacts": contacts})
        return response.status_code

    async def create_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        data = await self._json("POST", "/v1/contacts", json_data=contact)
        return data.get("data", {})

    async def update_contact(self, contact_id: str, contact: dict[str, Any]) -> dict[str, Any]:
        data = await self._json("PATCH", f"/v1/contacts/{contact_id}", json_data=contact)
        return data.get("data", {})

    async def delete_contact(self, contact_id: str) -> None:
        await self._request("DELETE", f"/v1/contacts/{contact_id}")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def create_webhook(
        self,
        kind: WebhookKind,
        url: str,
        resource_ids: list[str],
        label: Optional[str] = None,
    ) -> dict[str, Any]:
        """Register a webhook; the response carries its ``id`` and signing ``key``."""
        body: dict[str, Any] = {
            "url": url,
            "events": WEBHOOK_EVENTS[kind],
            "resourceIds": resource_ids,
        }
        if label:
            body["label"] = label
        data = await self._json("POST", _WEBHOOK_PATHS[kind], json_data=body)
        return data.get("data", {})

    async def update_webhook(self, webhook_id: str, resource_ids: list[str]) -> dict[str, Any]:
        data = await self._json(
            "PATCH", f"/v1/webhooks/{webhook_id}", json_data={"resourceIds": resource_ids}
        )
        return data.get("data", {})

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._request("DELETE", f"/v1/webhooks/{webhook_id}")

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def get_call(self, call_id: str) -> dict[str, Any]:
        data = await self._json("GET", f"/v1/calls/{call_id}")
        return data.get("data", {})

    async def get_call_recordings(self, call_id: str) -> list[dict[str, Any]]:
        data = await self._json("GET", f"/v1/call-recordings/{call_id}")
        return data.get("data") or []

    async def get_call_voicemails(self, call_id: str) -> Optional[dict[str, Any]]:
        data = await self._json("GET", f"/v1/call-voicemails/{call_id}")
        return data.get("data") or None

    async def get_call_summary(self, call_id: str) -> dict[str, Any]:
        data = await self._json("GET", f"/v1/call-summaries/{call_id}")
        return data.get("data", {})

    # ------------------------------------------------------------------
    # Workspace metadata
    # ------------------------------------------------------------------

    async def get_phone_number(self, phone_number_id: str) -> dict[str, Any]:
        data = await self._json("GET", f"/v1/phone-numbers/{phone_number_id}")
        return data.get("data", {})

    async def list_phone_numbers(self) -> list[dict[str, Any]]:
        data = await self._json("GET", "/v1/phone-numbers")
        return data.get("data", [])

    async def get_user(self, user_id: str) -> dict[str, Any]:
        data = await self._json("GET", f"/v1/users/{user_id}")
        return data.get("data", {})


_directory_client: Optional[DirectoryClient] = None


def get_directory_client() -> DirectoryClient:
    """Get the shared directory client."""
    global _directory_client
    if _directory_client is None:
        _directory_client = DirectoryClient()
    return _directory_client
