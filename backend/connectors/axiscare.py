"""
AxisCare connector implementation.

AxisCare keeps four kinds of people in separate collections (clients, leads,
caregivers, applicants). Each is synced as its own object type. Pages link
to the next one with a ``nextPage`` URL whose ``startAfterId`` parameter is
the cursor we persist.

Credentials are an API key plus a site number that selects the tenant host;
the site number lives in the integration config.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from connectors.base import BaseConnector, extract_query_param
from connectors.models import (
    ActivityLog,
    ContactFields,
    ContactPoint,
    CustomField,
    DirectoryContact,
    SyncPage,
)
from connectors.registry import AuthType, Capability, ConnectorMeta

logger = logging.getLogger(__name__)

# object type -> (path, key the records are listed under)
_COLLECTIONS: dict[str, tuple[str, str]] = {
    "Client": ("/api/clients", "clients"),
    "Lead": ("/api/leads", "leads"),
    "Caregiver": ("/api/caregivers", "caregivers"),
    "Applicant": ("/api/applicants", "applicants"),
}


class AxisCareConnector(BaseConnector):
    """Connector for AxisCare home-care management."""

    source_system = "axiscare"
    meta = ConnectorMeta(
        name="AxisCare",
        slug="axiscare",
        auth_type=AuthType.API_KEY,
        object_types=list(_COLLECTIONS),
        capabilities=[Capability.SYNC],
        nango_integration_id="axiscare",
        description="AxisCare clients, leads, caregivers and applicants",
    )

    async def _site_base(self) -> str:
        integration = self._integration or await self._load_integration()
        site_number = ((integration.config if integration else None) or {}).get("site_number")
        if not site_number:
            raise ValueError(f"No AxisCare site number configured for integration {self.integration_id}")
        return f"https://{site_number}.axiscare.com"

    async def fetch_person_page(
        self,
        object_type: str,
        cursor: Optional[str],
        limit: int,
        modified_since: Optional[datetime] = None,
        sort_desc: bool = True,
    ) -> SyncPage:
        if object_type not in _COLLECTIONS:
            raise ValueError(f"Unknown AxisCare object type: {object_type}")
        path, key = _COLLECTIONS[object_type]

        params: dict[str, Any] = {"limit": limit or 50}
        if cursor:
            params["startAfterId"] = cursor
        if modified_since:
            params["updated_since"] = modified_since.strftime("%Y-%m-%dT%H:%M:%SZ")

        response = await self._make_request("GET", f"{await self._site_base()}{path}", params=params)

        # Clients and leads are wrapped in "results", caregivers and applicants are not
        results = response.get("results") or {}
        persons: list[dict[str, Any]] = results.get(key) or response.get(key) or []
        next_page = results.get("nextPage") or response.get("nextPage")
        next_cursor = extract_query_param(next_page, "startAfterId")

        logger.info(
            "[axiscare] Fetched %d %s(s) after %s, has_more=%s",
            len(persons), object_type, cursor or "start", bool(next_page),
        )
        return SyncPage(
            records=[{**person, "_object_type": object_type} for person in persons],
            cursor=next_cursor,
            has_more=bool(next_page),
        )

    async def transform_person(self, record: dict[str, Any]) -> DirectoryContact:
        object_type = record.get("_object_type") or "Client"

        if object_type in ("Lead", "Applicant"):
            first_name = record.get("firstName")
        else:
            first_name = record.get("goesBy") or record.get("firstName")

        return DirectoryContact(
            external_id=str(record["id"]),
            source="axiscare",
            default_fields=ContactFields(
                first_name=first_name or "Unknown",
                last_name=record.get("lastName"),
                role=object_type,
                phone_numbers=self._phone_numbers(record, object_type),
                emails=self._emails(record),
            ),
            custom_fields=self._custom_fields(record, object_type),
        )

    @staticmethod
    def _phone_numbers(record: dict[str, Any], object_type: str) -> list[ContactPoint]:
        if object_type == "Lead":
            fields = [("phone", "phone"), ("mobilePhone", "mobile")]
        else:
            fields = [("homePhone", "home"), ("mobilePhone", "mobile"), ("otherPhone", "other")]

        phones: list[ContactPoint] = []
        for attr, label in fields:
            if record.get(attr):
                phones.append(ContactPoint(name=label, value=record[attr], primary=not phones))
        return phones

    @staticmethod
    def _emails(record: dict[str, Any]) -> list[ContactPoint]:
        emails: list[ContactPoint] = []
        personal = record.get("personalEmail")
        billing = record.get("billingEmail")
        if personal:
            emails.append(ContactPoint(name="primary", value=personal, primary=True))
        if billing and billing != personal:
            emails.append(ContactPoint(name="billing", value=billing))
        return emails

    @staticmethod
    def _custom_fields(record: dict[str, Any], object_type: str) -> list[CustomField]:
        fields: list[CustomField] = []

        def add(key: str, value: Any) -> None:
            if value is None or value == "" or value == []:
                return
            text = json.dumps(value) if isinstance(value, (dict, list)) else str(value)
            fields.append(CustomField(key=key, value=text))

        status = record.get("status")
        add("crmId", record.get("id"))
        add("crmType", "axiscare")
        add("objectType", object_type)
        add("status", status.get("label") if isinstance(status, dict) else status)
        for key in ("dateOfBirth", "gender", "goesBy", "priorityNote", "residentialAddress", "billingAddress"):
            add(key, record.get(key))
        if object_type in ("Client", "Caregiver"):
            add("classes", record.get("classes"))
        if object_type not in ("Lead", "Applicant"):
            for key in ("medicaidNumber", "region", "administrators", "preferredCaregiver", "referredBy"):
                add(key, record.get(key))
        for key in ("createdDate", "assessmentDate", "conversionDate", "startDate", "effectiveEndDate"):
            add(key, record.get(key))
        return fields

    async def log_activity(self, log: ActivityLog) -> Optional[str]:
        """AxisCare has no activity log endpoint; calls stay in the directory only."""
        logger.info("[axiscare] Skipping %s log for %s", log.activity_type, log.contact_id)
        return None

    async def _get_headers(self) -> dict[str, str]:
        token = await self.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "X-AxisCare-Api-Version": "2023-10-01",
            "Content-Type": "application/json",
        }
