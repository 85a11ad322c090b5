"""
Call and message logging into source systems, with delayed enrichment.

Phase 1 (``log_call`` / ``log_message``): as soon as a call or message
completes, write a minimal log entry against the matching source contact and
remember its id in an ``EnrichmentRecord``.

Phase 2 (``enrich_call``): when the directory later publishes the call
summary, fetch the call, its recordings and any voicemail.

Phase 3 (``enrich_call``): replace the Phase 1 entry with the enriched one.
Plugins that can edit log entries update in place. For note-only plugins the
enriched entry is created first, the record is moved to it, and only then is
the previous entry deleted:

- create fails        -> the previous entry and the record stay untouched, error propagates
- record write fails  -> the previous entry is kept, error propagates
- delete fails        -> logged only; the record already points at the new entry

Each summary event re-reads the stored record, so a redelivered event
replaces the previous enriched entry rather than the original.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Optional, TypeVar

from config import settings
from connectors.base import PersonSource
from connectors.models import ActivityLog
from services import call_content
from services.directory_api import DirectoryAPIError, DirectoryClient, DirectoryRateLimitError
from services.mapping_store import EnrichmentStore, MappingStore
from services.participants import contact_phone_for_call, external_participants

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EnrichmentError(RuntimeError):
    """The source system accepted a log write but returned no id for it."""


@dataclass
class EnrichmentResult:
    log_id: str
    old_log_id: Optional[str]
    content: str
    title: str
    recordings_count: int = 0
    has_voicemail: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_id": self.log_id,
            "old_log_id": self.old_log_id,
            "recordings_count": self.recordings_count,
            "has_voicemail": self.has_voicemail,
        }


@dataclass
class ActivityLogResult:
    activity_id: str
    activity_type: str
    status: str = "logged"
    reason: Optional[str] = None
    logged: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "activity_type": self.activity_type,
            "status": self.status,
            "reason": self.reason,
            "logged": self.logged,
        }


class ActivityEnrichmentPipeline:
    """Writes directory calls/messages into one integration's source system."""

    def __init__(
        self,
        integration_id: str,
        source: PersonSource,
        directory: DirectoryClient,
        enrichments: Optional[EnrichmentStore] = None,
        mappings: Optional[MappingStore] = None,
        format_method: str = "markdown",
        use_emoji: bool = True,
    ) -> None:
        self.integration_id = integration_id
        self.source = source
        self.directory = directory
        self.enrichments = enrichments or EnrichmentStore(integration_id)
        self.mappings = mappings or MappingStore(integration_id)
        self.options = call_content.get_format_options(format_method)
        self.use_emoji = use_emoji

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def resolve_contact(self, phone: str) -> Optional[str]:
        """Source-system record id for a phone number, or None."""
        mapping = await self.mappings.find_by_phone(phone)
        if mapping is not None:
            return mapping.external_id
        return await self.source.find_contact_by_phone(phone)

    async def _optional(self, awaitable: Awaitable[T], default: T, what: str) -> T:
        """Directory reads that may fail without failing the event."""
        try:
            return await awaitable
        except DirectoryRateLimitError:
            raise
        except DirectoryAPIError as exc:
            logger.warning("[enrichment] Could not fetch %s: %s", what, exc)
            return default

    async def _inbox_and_user(self, item: dict[str, Any]) -> tuple[str, str, str]:
        phone_number: dict[str, Any] = {}
        user: dict[str, Any] = {}
        if item.get("phoneNumberId"):
            phone_number = await self._optional(
                self.directory.get_phone_number(item["phoneNumberId"]), {}, "phone number"
            )
        if item.get("userId"):
            user = await self._optional(self.directory.get_user(item["userId"]), {}, "user")
        return (
            call_content.build_inbox_name(phone_number),
            phone_number.get("number") or "",
            call_content.build_user_name(user),
        )

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def log_call(self, event_call: dict[str, Any], deep_link: str = "#") -> ActivityLogResult:
        """Write the first log entry for a completed call."""
        call_id: str = event_call["id"]
        result = ActivityLogResult(activity_id=call_id, activity_type="call")

        existing = await self.enrichments.get(call_id)
        if existing is not None:
            logger.info("[enrichment] Call %s already logged as %s", call_id, existing.log_id)
            result.status, result.reason = "skipped", "duplicate"
            return result

        call = await self.directory.get_call(call_id) or dict(event_call)

        if call.get("status") == "no-answer":
            # Voicemails finish processing a few seconds after the call ends
            await asyncio.sleep(settings.NO_ANSWER_VOICEMAIL_WAIT_SECONDS)
            voicemail = await self._optional(
                self.directory.get_call_voicemails(call_id), None, "voicemail"
            )
            if voicemail and voicemail.get("status") == "completed":
                call["voicemail"] = voicemail

        phone_numbers = await self._optional(self.directory.list_phone_numbers(), [], "phone numbers")
        participants = external_participants(
            event_call.get("participants") or call.get("participants"), phone_numbers
        )
        if not participants:
            result.status, result.reason = "skipped", "no_external_participant"
            return result

        inbox_name, inbox_number, user_name = await self._inbox_and_user(call)

        for phone in participants:
            contact_id = await self.resolve_contact(phone)
            if not contact_id:
                logger.info("[enrichment] No contact for %s on call %s", phone, call_id)
                result.logged.append({"phone": phone, "status": "skipped", "reason": "contact_not_found"})
                continue

            log = ActivityLog(
                contact_id=contact_id,
                activity_type="call",
                activity_id=call_id,
                title=call_content.build_call_title(
                    call, inbox_name, inbox_number, phone, self.options, self.use_emoji
                ),
                content=call_content.build_call_content(call, user_name, deep_link, self.options),
                direction=call.get("direction"),
                duration=call.get("duration"),
                timestamp=call.get("createdAt"),
            )
            log_id = await self.source.log_activity(log)
            if not log_id:
                result.logged.append({"phone": phone, "contact_id": contact_id, "status": "failed"})
                continue

            await self.enrichments.upsert(
                call_id, log_id, contact_id, activity_type="call"
            )
            result.logged.append(
                {"phone": phone, "contact_id": contact_id, "log_id": log_id, "status": "logged"}
            )

        if not any(entry["status"] == "logged" for entry in result.logged):
            result.status, result.reason = "skipped", "contact_not_found"
        return result

    async def log_message(self, message: dict[str, Any], deep_link: str = "#") -> ActivityLogResult:
        """Write a log entry for a sent or received message."""
        message_id: str = message["id"]
        result = ActivityLogResult(activity_id=message_id, activity_type="message")

        existing = await self.enrichments.get(message_id)
        if existing is not None:
            result.status, result.reason = "skipped", "duplicate"
            return result

        contact_phone = message.get("to") if message.get("direction") == "outgoing" else message.get("from")
        if isinstance(contact_phone, list):
            contact_phone = contact_phone[0] if contact_phone else None
        if not contact_phone:
            result.status, result.reason = "skipped", "no_external_participant"
            return result

        contact_id = await self.resolve_contact(contact_phone)
        if not contact_id:
            result.status, result.reason = "skipped", "contact_not_found"
            return result

        inbox_name, inbox_number, user_name = await self._inbox_and_user(message)
        log = ActivityLog(
            contact_id=contact_id,
            activity_type="message",
            activity_id=message_id,
            title=call_content.build_message_title(
                message, inbox_name, inbox_number, contact_phone, self.options, self.use_emoji
            ),
            content=call_content.build_message_content(message, user_name, deep_link, self.options),
            direction=message.get("direction"),
            timestamp=message.get("createdAt"),
        )
        log_id = await self.source.log_activity(log)
        if not log_id:
            raise EnrichmentError(f"Message {message_id} was logged without an id")

        await self.enrichments.upsert(message_id, log_id, contact_id, activity_type="message")
        result.logged.append({"phone": contact_phone, "contact_id": contact_id, "log_id": log_id, "status": "logged"})
        return result

    # ------------------------------------------------------------------
    # Phases 2 and 3
    # ------------------------------------------------------------------

    async def enrich_call(
        self,
        call_id: str,
        summary: dict[str, Any],
        deep_link: str = "#",
    ) -> Optional[EnrichmentResult]:
        """Replace a call's log entry with one carrying summary, recordings and voicemail.

        Returns None when no source contact can be resolved for the call.
        """
        record = await self.enrichments.get(call_id)

        call = await self.directory.get_call(call_id)
        if not call:
            raise DirectoryAPIError(f"Call {call_id} not found in directory", status_code=404)

        recordings, voicemail = await asyncio.gather(
            self._optional(self.directory.get_call_recordings(call_id), [], "recordings"),
            self._optional(self.directory.get_call_voicemails(call_id), None, "voicemail"),
        )
        if not summary:
            # Recording event: the summary may already exist
            summary = await self._optional(self.directory.get_call_summary(call_id), {}, "summary")

        phone_numbers: list[dict[str, Any]] = []
        contact_phone: Optional[str] = None
        if record is not None:
            contact_id: Optional[str] = record.contact_id
            contact_type = record.contact_type
            old_log_id: Optional[str] = record.log_id
        else:
            phone_numbers = await self._optional(self.directory.list_phone_numbers(), [], "phone numbers")
            contact_phone = contact_phone_for_call({"id": call_id}, call, phone_numbers)
            contact_id = await self.resolve_contact(contact_phone) if contact_phone else None
            contact_type = "person"
            old_log_id = None

        if not contact_id:
            logger.info("[enrichment] No contact for call %s, nothing to enrich", call_id)
            return None

        if contact_phone is None:
            if not phone_numbers:
                phone_numbers = await self._optional(self.directory.list_phone_numbers(), [], "phone numbers")
            contact_phone = contact_phone_for_call({"id": call_id}, call, phone_numbers) or ""

        inbox_name, inbox_number, user_name = await self._inbox_and_user(call)
        content = call_content.build_enriched_call_content(
            call,
            user_name,
            deep_link,
            summary.get("summary") or [],
            summary.get("nextSteps") or [],
            recordings,
            voicemail,
            self.options,
        )
        title = call_content.build_call_title(
            call, inbox_name, inbox_number, contact_phone, self.options, self.use_emoji
        )
        log = ActivityLog(
            contact_id=contact_id,
            activity_type="call",
            activity_id=call_id,
            title=title,
            content=content,
            direction=call.get("direction"),
            duration=call.get("duration"),
            timestamp=call.get("createdAt"),
        )

        new_log_id = await self._write_log(call_id, old_log_id, log)

        await self.enrichments.upsert(
            call_id,
            new_log_id,
            contact_id,
            contact_type=contact_type,
            activity_type="call",
            enriched_at=datetime.utcnow(),
        )
        # The record points at the new entry before the old one goes away
        if old_log_id and old_log_id != new_log_id:
            await self._delete_stale_log(call_id, old_log_id)
        logger.info("[enrichment] Call %s enriched, log entry %s", call_id, new_log_id)

        return EnrichmentResult(
            log_id=new_log_id,
            old_log_id=old_log_id,
            content=content,
            title=title,
            recordings_count=len(recordings),
            has_voicemail=bool(voicemail),
        )

    async def _write_log(self, call_id: str, old_log_id: Optional[str], log: ActivityLog) -> str:
        if self.source.meta.supports_update_in_place and old_log_id:
            await self.source.update_activity(old_log_id, log)
            return old_log_id

        # Create first; a failure here leaves the previous entry in place
        new_log_id = await self.source.log_activity(log)
        if not new_log_id:
            raise EnrichmentError(f"Enriched log for call {call_id} was created without an id")
        return new_log_id

    async def _delete_stale_log(self, call_id: str, old_log_id: str) -> None:
        try:
            await self.source.delete_activity(old_log_id)
        except Exception as exc:
            logger.warning(
                "[enrichment] Could not delete previous log %s for call %s: %s",
                old_log_id, call_id, exc,
            )
