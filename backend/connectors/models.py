"""
Canonical Pydantic record models for the connector interface.

Source plugins return a ``SyncPage`` from ``fetch_person_page`` and a
``DirectoryContact`` from ``transform_person``. The sync engine owns
everything after that (bulk upsert, mapping writes, cursor persistence).

Models are framework-agnostic and fully typed; ``to_payload`` produces the
camelCase body the directory API expects.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------


class SyncPage(BaseModel):
    """One page of raw person records from a source system.

    ``cursor`` is opaque: a server token for cursor-paged APIs, a stringified
    offset for offset-paged ones. The orchestrator only stores and replays it.
    """

    records: list[dict[str, Any]] = Field(default_factory=list)
    cursor: str | None = None
    has_more: bool = False


# ---------------------------------------------------------------------------
# Directory contact
# ---------------------------------------------------------------------------


class ContactPoint(BaseModel):
    """A labelled phone number or email address."""

    name: str = "work"
    value: str
    primary: bool = False


class CustomField(BaseModel):
    key: str
    value: Any


class ContactFields(BaseModel):
    first_name: str = "Unknown"
    last_name: str | None = None
    company: str | None = None
    role: str | None = None
    phone_numbers: list[ContactPoint] = Field(default_factory=list)
    emails: list[ContactPoint] = Field(default_factory=list)


class DirectoryContact(BaseModel):
    """A person record shaped for the contact directory."""

    external_id: str
    source: str
    default_fields: ContactFields = Field(default_factory=ContactFields)
    custom_fields: list[CustomField] = Field(default_factory=list)
    entity_type: str = "person"

    @property
    def primary_phone(self) -> str | None:
        phones = self.default_fields.phone_numbers
        if not phones:
            return None
        for phone in phones:
            if phone.primary:
                return phone.value
        return phones[0].value

    def to_payload(self) -> dict[str, Any]:
        fields = self.default_fields
        default_fields: dict[str, Any] = {
            "firstName": fields.first_name,
            "lastName": fields.last_name,
            "company": fields.company,
            "phoneNumbers": [{"name": p.name, "value": p.value} for p in fields.phone_numbers],
            "emails": [{"name": e.name, "value": e.value} for e in fields.emails],
        }
        if fields.role:
            default_fields["role"] = fields.role
        return {
            "externalId": self.external_id,
            "source": self.source,
            "defaultFields": default_fields,
            "customFields": [{"key": c.key, "value": c.value} for c in self.custom_fields],
        }


# ---------------------------------------------------------------------------
# Activity logs written back to the source system
# ---------------------------------------------------------------------------


class ActivityLog(BaseModel):
    """A call or message log entry to write into a source system."""

    contact_id: str
    activity_type: Literal["call", "message"] = "call"
    title: str
    content: str
    direction: str | None = None
    duration: int | None = None
    timestamp: datetime | None = None
    activity_id: str | None = None


# ---------------------------------------------------------------------------
# Source webhook events
# ---------------------------------------------------------------------------


class SourceEvent(BaseModel):
    """One record change pushed by a source system's webhook."""

    action: Literal["upsert", "delete"]
    record_id: str
    object_type: str | None = None
