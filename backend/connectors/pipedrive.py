"""
Pipedrive connector implementation.

Responsibilities:
- Page through persons with Pipedrive's server cursor (``next_cursor``)
- Map persons onto directory contacts, resolving the organization name
- Log calls and messages as Pipedrive activities, and rewrite them in place
  once the call summary arrives
"""

import logging
from datetime import datetime
from typing import Any, Optional

from connectors.base import BaseConnector, SourceAPIError
from connectors.models import (
    ActivityLog,
    ContactFields,
    ContactPoint,
    DirectoryContact,
    SourceEvent,
    SyncPage,
)
from connectors.registry import AuthType, Capability, ConnectorMeta, EventType
from services.participants import normalize_phone_number

logger = logging.getLogger(__name__)

PIPEDRIVE_API_BASE = "https://api.pipedrive.com"


class PipedriveConnector(BaseConnector):
    """Connector for Pipedrive CRM."""

    source_system = "pipedrive"
    api_base = PIPEDRIVE_API_BASE
    meta = ConnectorMeta(
        name="Pipedrive",
        slug="pipedrive",
        auth_type=AuthType.OAUTH2,
        object_types=["Person"],
        capabilities=[
            Capability.SYNC,
            Capability.LOG_ACTIVITY,
            Capability.UPDATE_ACTIVITY,
            Capability.LISTEN,
        ],
        event_types=[
            EventType(name="added.person", description="A person was created"),
            EventType(name="updated.person", description="A person was changed"),
            EventType(name="deleted.person", description="A person was removed"),
        ],
        nango_integration_id="pipedrive",
        description="Pipedrive persons, with calls and texts logged as activities",
    )

    def __init__(self, integration_id: str, token: Optional[str] = None) -> None:
        super().__init__(integration_id, token=token)
        # Organization id -> name, filled lazily during transforms
        self._org_names: dict[int, Optional[str]] = {}

    async def fetch_person_page(
        self,
        object_type: str,
        cursor: Optional[str],
        limit: int,
        modified_since: Optional[datetime] = None,
        sort_desc: bool = True,
    ) -> SyncPage:
        params: dict[str, Any] = {
            "limit": limit,
            "sort_by": "update_time",
            "sort_direction": "desc" if sort_desc else "asc",
        }
        if cursor:
            params["cursor"] = cursor
        if modified_since:
            params["updated_since"] = modified_since.strftime("%Y-%m-%dT%H:%M:%SZ")

        response = await self._make_request("GET", "/api/v2/persons", params=params)
        persons: list[dict[str, Any]] = response.get("data") or []
        next_cursor: Optional[str] = (response.get("additional_data") or {}).get("next_cursor")

        logger.info(
            "[pipedrive] Fetched %d %s at cursor %s, has_more=%s",
            len(persons), object_type, cursor or "start", bool(next_cursor),
        )
        return SyncPage(records=persons, cursor=next_cursor, has_more=bool(next_cursor))

    async def _organization_name(self, org_id: Optional[int]) -> Optional[str]:
        if not org_id:
            return None
        if org_id not in self._org_names:
            try:
                response = await self._make_request("GET", f"/api/v2/organizations/{org_id}")
                self._org_names[org_id] = (response.get("data") or {}).get("name")
            except SourceAPIError as exc:
                if exc.status_code == 429:
                    raise
                logger.warning("[pipedrive] Failed to fetch organization %s: %s", org_id, exc)
                self._org_names[org_id] = None
        return self._org_names[org_id]

    async def transform_person(self, record: dict[str, Any]) -> DirectoryContact:
        phones = [
            ContactPoint(name=p.get("label") or "work", value=p["value"], primary=bool(p.get("primary")))
            for p in record.get("phones") or []
            if p.get("value")
        ]
        emails = [
            ContactPoint(name=e.get("label") or "work", value=e["value"], primary=bool(e.get("primary")))
            for e in record.get("emails") or []
            if e.get("value")
        ]

        return DirectoryContact(
            external_id=str(record["id"]),
            source="pipedrive",
            default_fields=ContactFields(
                first_name=record.get("first_name") or "Unknown",
                last_name=record.get("last_name"),
                company=await self._organization_name(record.get("org_id")),
                phone_numbers=phones,
                emails=emails,
            ),
        )

    def _activity_body(self, log: ActivityLog) -> dict[str, Any]:
        body: dict[str, Any] = {
            "subject": log.title,
            "type": "call" if log.activity_type == "call" else "sms",
            "done": 1,
            "note": log.content,
            "person_id": int(log.contact_id),
        }
        if log.timestamp:
            body["due_date"] = log.timestamp.strftime("%Y-%m-%d")
            body["due_time"] = log.timestamp.strftime("%H:%M")
        if log.activity_type == "call" and log.duration is not None:
            # Pipedrive wants HH:MM
            minutes = int(log.duration) // 60
            body["duration"] = f"{minutes // 60:02d}:{minutes % 60:02d}"
        return body

    async def log_activity(self, log: ActivityLog) -> Optional[str]:
        response = await self._make_request("POST", "/v1/activities", json_data=self._activity_body(log))
        activity_id = (response.get("data") or {}).get("id")
        return str(activity_id) if activity_id is not None else None

    async def update_activity(self, log_id: str, log: ActivityLog) -> None:
        await self._make_request("PUT", f"/v1/activities/{log_id}", json_data=self._activity_body(log))

    async def delete_activity(self, log_id: str) -> None:
        await self._make_request("DELETE", f"/v1/activities/{log_id}")

    async def find_contact_by_phone(self, phone: str) -> Optional[str]:
        normalized = normalize_phone_number(phone)
        if not normalized:
            return None
        response = await self._make_request(
            "GET",
            "/api/v2/persons/search",
            params={"term": normalized.lstrip("+"), "fields": "phone", "limit": 10},
        )
        items = (response.get("data") or {}).get("items") or []
        for entry in items:
            person = entry.get("item") or {}
            if person.get("id") is not None:
                return str(person["id"])
        return None

    async def fetch_person(self, record_id: str, object_type: Optional[str] = None) -> Optional[dict[str, Any]]:
        try:
            response = await self._make_request("GET", f"/api/v2/persons/{record_id}")
        except SourceAPIError as exc:
            if exc.status_code in (404, 410):
                return None
            raise
        return response.get("data")

    def parse_webhook_events(self, payload: dict[str, Any]) -> list[SourceEvent]:
        """Pipedrive v2 webhooks carry one change per delivery in ``meta``."""
        meta = payload.get("meta") or {}
        if meta.get("entity") != "person" or not meta.get("entity_id"):
            return []
        action = "delete" if meta.get("action") == "delete" else "upsert"
        return [SourceEvent(action=action, record_id=str(meta["entity_id"]), object_type="Person")]
