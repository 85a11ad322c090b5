"""
Attio connector implementation.

Attio pages with plain offsets, so the cursor handed back to the sync engine
is the next offset as a string. A short page means there are no more records.

Attio notes cannot be edited, so enriched call logs are written as a new
note and the earlier note is deleted afterwards.
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

ATTIO_API_BASE = "https://api.attio.com/v2"


def get_active_value(values: Optional[list[dict[str, Any]]]) -> Optional[dict[str, Any]]:
    """First currently-active entry of an Attio attribute, else the first entry."""
    if not values:
        return None
    for value in values:
        if value.get("active_until") is None:
            return value
    return values[0]


class AttioConnector(BaseConnector):
    """Connector for Attio CRM."""

    source_system = "attio"
    api_base = ATTIO_API_BASE
    meta = ConnectorMeta(
        name="Attio",
        slug="attio",
        auth_type=AuthType.OAUTH2,
        object_types=["people"],
        capabilities=[Capability.SYNC, Capability.LOG_ACTIVITY, Capability.LISTEN],
        event_types=[
            EventType(name="record.created", description="A record was created"),
            EventType(name="record.updated", description="A record was changed"),
            EventType(name="record.deleted", description="A record was removed"),
        ],
        signature_header="Attio-Signature",
        nango_integration_id="attio",
        description="Attio people, with calls and texts logged as notes",
    )

    def __init__(self, integration_id: str, token: Optional[str] = None) -> None:
        super().__init__(integration_id, token=token)
        self._company_names: dict[str, Optional[str]] = {}

    async def fetch_person_page(
        self,
        object_type: str,
        cursor: Optional[str],
        limit: int,
        modified_since: Optional[datetime] = None,
        sort_desc: bool = True,
    ) -> SyncPage:
        offset = int(cursor) if cursor else 0
        if modified_since:
            logger.warning("[attio] modified_since is not supported, fetching all %s", object_type)

        response = await self._make_request(
            "POST",
            f"/objects/{object_type}/records/query",
            json_data={"limit": limit, "offset": offset},
        )
        persons: list[dict[str, Any]] = response.get("data") or []
        has_more = len(persons) == limit

        logger.info(
            "[attio] Fetched %d %s at offset %d, has_more=%s",
            len(persons), object_type, offset, has_more,
        )
        return SyncPage(
            records=persons,
            cursor=str(offset + limit) if has_more else None,
            has_more=has_more,
        )

    async def _company_name(self, company_id: Optional[str]) -> Optional[str]:
        if not company_id:
            return None
        if company_id not in self._company_names:
            try:
                response = await self._make_request("GET", f"/objects/companies/records/{company_id}")
                name = get_active_value(((response.get("data") or {}).get("values") or {}).get("name"))
                self._company_names[company_id] = name.get("value") if name else None
            except SourceAPIError as exc:
                if exc.status_code == 429:
                    raise
                logger.warning("[attio] Failed to fetch company %s: %s", company_id, exc)
                self._company_names[company_id] = None
        return self._company_names[company_id]

    async def transform_person(self, record: dict[str, Any]) -> DirectoryContact:
        values = record.get("values") or {}

        name = get_active_value(values.get("name")) or {}
        role = get_active_value(values.get("job_title")) or get_active_value(values.get("role")) or {}
        company = get_active_value(values.get("company")) or {}

        phones = [
            ContactPoint(name="Phone", value=entry["phone_number"])
            for entry in values.get("phone_numbers") or []
            if entry.get("active_until") is None and entry.get("phone_number")
        ]
        emails = [
            ContactPoint(name="Email", value=entry["email_address"])
            for entry in values.get("email_addresses") or []
            if entry.get("active_until") is None and entry.get("email_address")
        ]

        return DirectoryContact(
            external_id=record["id"]["record_id"],
            source="openphone-attio",
            default_fields=ContactFields(
                first_name=(name.get("first_name") or "").strip() or "Unknown",
                last_name=name.get("last_name") or "",
                company=await self._company_name(company.get("target_record_id")),
                role=role.get("value"),
                phone_numbers=phones,
                emails=emails,
            ),
        )

    async def log_activity(self, log: ActivityLog) -> Optional[str]:
        note: dict[str, Any] = {
            "parent_object": "people",
            "parent_record_id": log.contact_id,
            "title": log.title,
            "format": "markdown",
            "content": log.content,
        }
        if log.timestamp:
            note["created_at"] = log.timestamp.isoformat()

        response = await self._make_request("POST", "/notes", json_data={"data": note})
        return ((response.get("data") or {}).get("id") or {}).get("note_id")

    async def delete_activity(self, log_id: str) -> None:
        await self._make_request("DELETE", f"/notes/{log_id}")

    async def find_contact_by_phone(self, phone: str) -> Optional[str]:
        normalized = normalize_phone_number(phone)
        if not normalized:
            return None
        response = await self._make_request(
            "POST",
            "/objects/people/records/query",
            json_data={"filter": {"phone_numbers": normalized}, "limit": 10},
        )
        for person in response.get("data") or []:
            record_id = (person.get("id") or {}).get("record_id")
            if record_id:
                return record_id
        return None

    async def fetch_person(self, record_id: str, object_type: Optional[str] = None) -> Optional[dict[str, Any]]:
        try:
            response = await self._make_request("GET", f"/objects/{object_type or 'people'}/records/{record_id}")
        except SourceAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        return response.get("data")

    def parse_webhook_events(self, payload: dict[str, Any]) -> list[SourceEvent]:
        """Attio batches changes as ``events[]`` with ``record.*`` event types."""
        events: list[SourceEvent] = []
        for event in payload.get("events") or []:
            event_type = event.get("event_type") or ""
            record_id = (event.get("id") or {}).get("record_id")
            if not event_type.startswith("record.") or not record_id:
                continue
            action = "delete" if event_type == "record.deleted" else "upsert"
            events.append(SourceEvent(action=action, record_id=record_id, object_type="people"))
        return events
