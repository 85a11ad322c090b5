"""
Clio connector implementation.

Clio pages with an opaque ``page_token`` carried in ``meta.paging.next``.
Calls are logged as PhoneCommunications and messages as contact Notes; both
can be patched, so enriched call logs are rewritten in place.

Clio webhooks use a delayed handshake: the first delivery carries an
``X-Hook-Secret`` header, which we echo back to activate the webhook and then
keep for verifying ``X-Hook-Signature`` on later deliveries.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from connectors.base import BaseConnector, SourceAPIError, extract_query_param
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

CLIO_REGION_BASES: dict[str, str] = {
    "us": "https://app.clio.com/api/v4",
    "eu": "https://eu.app.clio.com/api/v4",
    "ca": "https://ca.app.clio.com/api/v4",
    "au": "https://au.app.clio.com/api/v4",
}

CONTACT_FIELDS = (
    "id,etag,name,first_name,middle_name,last_name,title,type,"
    "primary_phone_number,phone_numbers{name,number,default_number},"
    "email_addresses{name,address,default_email},company{id,name}"
)


class ClioConnector(BaseConnector):
    """Connector for Clio legal practice management."""

    source_system = "clio"
    api_base = CLIO_REGION_BASES["us"]
    meta = ConnectorMeta(
        name="Clio",
        slug="clio",
        auth_type=AuthType.OAUTH2,
        object_types=["Person", "Company"],
        capabilities=[
            Capability.SYNC,
            Capability.LOG_ACTIVITY,
            Capability.UPDATE_ACTIVITY,
            Capability.LISTEN,
        ],
        event_types=[
            EventType(name="contact.created", description="A contact was created"),
            EventType(name="contact.updated", description="A contact was changed"),
            EventType(name="contact.deleted", description="A contact was removed"),
        ],
        signature_header="X-Hook-Signature",
        handshake=True,
        nango_integration_id="clio",
        description="Clio contacts, with calls logged as communications",
    )

    async def _base(self) -> str:
        integration = self._integration or await self._load_integration()
        region = ((integration.config if integration else None) or {}).get("region", "us")
        return CLIO_REGION_BASES.get(region, self.api_base)

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
            "type": object_type,
            "fields": CONTACT_FIELDS,
            "order": "id(desc)" if sort_desc else "id(asc)",
        }
        if cursor:
            # Older runs persisted the whole next-page URL
            params["page_token"] = extract_query_param(cursor, "page_token") if cursor.startswith("http") else cursor
        if modified_since:
            params["updated_since"] = modified_since.strftime("%Y-%m-%dT%H:%M:%SZ")

        response = await self._make_request("GET", f"{await self._base()}/contacts.json", params=params)
        contacts: list[dict[str, Any]] = response.get("data") or []
        next_url = ((response.get("meta") or {}).get("paging") or {}).get("next")
        next_cursor = extract_query_param(next_url, "page_token")

        logger.info(
            "[clio] Fetched %d %s(s) at cursor %s, has_more=%s",
            len(contacts), object_type, cursor or "start", bool(next_cursor),
        )
        return SyncPage(records=contacts, cursor=next_cursor, has_more=bool(next_cursor))

    async def transform_person(self, record: dict[str, Any]) -> DirectoryContact:
        is_person = record.get("type") == "Person"

        if is_person:
            first_name = " ".join(
                part for part in (record.get("first_name"), record.get("middle_name")) if part
            )
            last_name = record.get("last_name") or ""
            if not first_name and not last_name:
                first_name = "Unknown"
        else:
            first_name = record.get("name") or "Unknown"
            last_name = ""

        phones = [
            ContactPoint(
                name=(p.get("name") or "Work").capitalize(),
                value=p["number"],
                primary=bool(p.get("default_number")),
            )
            for p in record.get("phone_numbers") or []
            if p.get("number")
        ]
        emails = [
            ContactPoint(
                name=(e.get("name") or "Work").capitalize(),
                value=e["address"],
                primary=bool(e.get("default_email")),
            )
            for e in record.get("email_addresses") or []
            if e.get("address")
        ]
        company = (record.get("company") or {}).get("name") if is_person else None

        return DirectoryContact(
            external_id=str(record["id"]),
            source="openphone-clio",
            entity_type="person" if is_person else "company",
            default_fields=ContactFields(
                first_name=first_name or "Unknown",
                last_name=last_name,
                company=company,
                role=record.get("title"),
                phone_numbers=phones,
                emails=emails,
            ),
        )

    def _communication_body(self, log: ActivityLog) -> dict[str, Any]:
        contact = {"type": "Contact", "id": int(log.contact_id)}
        body: dict[str, Any] = {
            "type": "PhoneCommunication",
            "subject": log.title,
            "body": log.content,
        }
        if log.timestamp:
            body["date"] = log.timestamp.isoformat()
            body["received_at"] = log.timestamp.isoformat()
        if log.direction == "incoming":
            body["senders"] = [contact]
        else:
            body["receivers"] = [contact]

        properties = []
        if log.activity_id:
            properties.append({"name": "quo_call_id", "value": log.activity_id})
        if log.duration is not None:
            properties.append({"name": "duration", "value": str(log.duration)})
        if properties:
            body["external_properties"] = properties
        return body

    async def log_activity(self, log: ActivityLog) -> Optional[str]:
        base = await self._base()
        if log.activity_type == "message":
            note: dict[str, Any] = {
                "type": "Contact",
                "contact": {"id": int(log.contact_id)},
                "subject": log.title,
                "detail": log.content,
                "detail_text_type": "rich_text",
            }
            if log.timestamp:
                note["date"] = log.timestamp.date().isoformat()
            response = await self._make_request("POST", f"{base}/notes.json", json_data={"data": note})
        else:
            response = await self._make_request(
                "POST", f"{base}/communications.json", json_data={"data": self._communication_body(log)}
            )

        log_id = (response.get("data") or {}).get("id")
        return str(log_id) if log_id is not None else None

    async def update_activity(self, log_id: str, log: ActivityLog) -> None:
        await self._make_request(
            "PATCH",
            f"{await self._base()}/communications/{log_id}.json",
            json_data={"data": {"subject": log.title, "body": log.content}},
        )

    async def delete_activity(self, log_id: str) -> None:
        await self._make_request("DELETE", f"{await self._base()}/communications/{log_id}.json")

    async def find_contact_by_phone(self, phone: str) -> Optional[str]:
        normalized = normalize_phone_number(phone)
        if not normalized:
            return None
        response = await self._make_request(
            "GET",
            f"{await self._base()}/contacts.json",
            params={"query": normalized, "limit": 50, "fields": CONTACT_FIELDS},
        )
        for contact in response.get("data") or []:
            numbers = [contact.get("primary_phone_number")]
            numbers.extend(p.get("number") for p in contact.get("phone_numbers") or [])
            if any(normalize_phone_number(n) == normalized for n in numbers if n):
                return str(contact["id"])
        return None

    async def handle_handshake(self, secret: str, body: dict[str, Any]) -> None:
        webhook_id = (body.get("data") or {}).get("webhook_id")
        if not webhook_id:
            raise ValueError("Cannot complete Clio webhook handshake: no webhook_id in body")

        await self._make_request(
            "PUT",
            f"{await self._base()}/webhooks/{webhook_id}.json",
            json_data={"data": {"status": "enabled", "secret": secret}},
        )
        logger.info("[clio] Webhook %s activated via handshake", webhook_id)
        await self.update_config({"webhook_secret": secret, "webhook_status": "enabled"})

    async def fetch_person(self, record_id: str, object_type: Optional[str] = None) -> Optional[dict[str, Any]]:
        try:
            response = await self._make_request(
                "GET", f"{await self._base()}/contacts/{record_id}.json", params={"fields": CONTACT_FIELDS}
            )
        except SourceAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        return response.get("data")

    def parse_webhook_events(self, payload: dict[str, Any]) -> list[SourceEvent]:
        """Clio sends one contact per delivery: ``data`` is the model, ``meta.event`` the change."""
        data = payload.get("data") or {}
        event = (payload.get("meta") or {}).get("event")
        if not data.get("id") or not event:
            return []
        action = "delete" if event == "deleted" else "upsert"
        return [SourceEvent(action=action, record_id=str(data["id"]), object_type=data.get("type"))]
