"""
Sync orchestrator: source system pages → directory contacts → entity mappings.

A run pulls one page at a time from a source plugin, transforms the records,
bulk-upserts them into the directory and only then persists the page's
continuation cursor. Pages are strictly sequential; cancellation is checked
between pages, never mid-page.

The directory's bulk endpoint only acknowledges receipt (202). Contacts land
out of band, so after a settle delay we look them up by external id and map
whatever came back. Anything missing is reported per record, not retried.

Transient upstream failures (429s, network errors) propagate to the caller;
the Celery task that owns the run decides whether to retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from config import settings
from connectors.base import PersonSource, SourceRateLimitError, SyncCancelledError
from connectors.models import DirectoryContact
from models.sync_process import SyncProcess
from services.directory_api import DirectoryAPIError, DirectoryClient, DirectoryRateLimitError
from services.mapping_store import MappingStore
from services.sync_processes import SyncProcessRepository

logger = logging.getLogger(__name__)

CONTACT_NOT_FOUND_AFTER_BULK = "Contact not found after bulk create"
# The directory caps maxResults on contact lookups
MAX_CONTACT_LOOKUP = 50

# Upstream failures the queue layer retries; never collapsed into result errors
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    DirectoryRateLimitError,
    SourceRateLimitError,
)


class ContactNotFoundError(LookupError):
    """A mapped directory contact no longer exists, so it cannot be updated."""


@dataclass
class BulkUpsertResult:
    success_count: int = 0
    error_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def add_error(self, error: str, external_id: Optional[str] = None, **extra: Any) -> None:
        entry: dict[str, Any] = {"error": error}
        if external_id is not None:
            entry["external_id"] = external_id
        entry.update(extra)
        self.errors.append(entry)
        self.error_count += 1

    def merge(self, other: BulkUpsertResult) -> None:
        self.success_count += other.success_count
        self.error_count += other.error_count
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class UpsertOutcome:
    external_id: str
    internal_id: str
    action: str


class SyncOrchestrator:
    """Drives full, incremental and webhook-pushed syncs for one integration."""

    def __init__(
        self,
        integration_id: str,
        source: PersonSource,
        directory: DirectoryClient,
        mappings: Optional[MappingStore] = None,
        processes: Optional[SyncProcessRepository] = None,
        settle_seconds: Optional[float] = None,
    ) -> None:
        self.integration_id = integration_id
        self.source = source
        self.directory = directory
        self.mappings = mappings or MappingStore(integration_id)
        self.processes = processes or SyncProcessRepository(integration_id)
        self.settle_seconds = (
            settings.BULK_UPSERT_SETTLE_SECONDS if settle_seconds is None else settle_seconds
        )

    # ------------------------------------------------------------------
    # Paged sync
    # ------------------------------------------------------------------

    async def run_sync(
        self,
        object_type: str,
        sync_type: str = "INITIAL",
        modified_since: Optional[datetime] = None,
        resume_from: Optional[SyncProcess] = None,
    ) -> SyncProcess:
        """Run one paged sync to completion and return its process row.

        INITIAL syncs fetch newest-first with no filter so an interrupted run
        has already captured the freshest records. ONGOING syncs pass
        ``modified_since`` through untouched and read oldest-first.
        """
        limit = settings.INITIAL_BATCH_SIZE if sync_type == "INITIAL" else settings.ONGOING_BATCH_SIZE
        sort_desc = sync_type == "INITIAL"

        if resume_from is not None:
            process = resume_from
            modified_since = process.modified_since
            logger.info(
                "[sync] Resuming %s %s sync for integration %s from cursor %s",
                sync_type, object_type, self.integration_id, process.cursor,
            )
        else:
            process = await self.processes.create(sync_type, object_type, modified_since)

        cursor: Optional[str] = process.cursor
        seen_cursors: set[str] = set()
        pages = 0
        totals = BulkUpsertResult()

        try:
            while True:
                await self.source.ensure_sync_active(f"{object_type}:page_{pages + 1}")
                await self.processes.set_state(process.id, "FETCHING_PAGE")

                page = await self.source.fetch_person_page(
                    object_type, cursor, limit, modified_since, sort_desc
                )
                pages += 1

                if not page.records and pages == 1 and not page.has_more:
                    logger.info("[sync] No %s records to sync for integration %s", object_type, self.integration_id)
                    break

                await self.processes.set_state(process.id, "PROCESSING_BATCHES")
                page_result = await self._process_records(page.records)
                totals.merge(page_result)

                # Cursor is persisted only after the page is fully processed
                await self.processes.record_page(
                    process.id,
                    cursor=page.cursor,
                    fetched=len(page.records),
                    success_count=page_result.success_count,
                    error_count=page_result.error_count,
                    errors=page_result.errors,
                )
                logger.info(
                    "[sync] %s page %d for integration %s: fetched=%d ok=%d failed=%d has_more=%s",
                    object_type, pages, self.integration_id, len(page.records),
                    page_result.success_count, page_result.error_count, page.has_more,
                )

                if not page.has_more:
                    break
                if not page.cursor:
                    logger.warning("[sync] %s page %d claims more but returned no cursor; stopping", object_type, pages)
                    break
                if page.cursor in seen_cursors:
                    logger.warning("[sync] %s cursor %s repeated; stopping", object_type, page.cursor)
                    break
                seen_cursors.add(page.cursor)
                cursor = page.cursor

        except SyncCancelledError as exc:
            await self.processes.set_state(process.id, "CANCELLED", last_error=str(exc))
            raise
        except Exception as exc:
            logger.error(
                "[sync] %s sync failed for integration %s after %d page(s): %s",
                object_type, self.integration_id, pages, exc,
            )
            await self.processes.set_state(process.id, "ERROR", last_error=str(exc)[:2000])
            raise

        await self.processes.set_state(process.id, "COMPLETED")
        logger.info(
            "[sync] Completed %s %s sync for integration %s: pages=%d ok=%d failed=%d",
            sync_type, object_type, self.integration_id, pages, totals.success_count, totals.error_count,
        )
        finished = await self.processes.get(process.id)
        return finished if finished is not None else process

    async def _process_records(self, records: list[dict[str, Any]]) -> BulkUpsertResult:
        result = BulkUpsertResult()
        contacts: list[DirectoryContact] = []

        transformed = await asyncio.gather(
            *(self.source.transform_person(record) for record in records),
            return_exceptions=True,
        )
        for record, outcome in zip(records, transformed):
            if isinstance(outcome, TRANSIENT_ERRORS):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("[sync] Transform failed for record %s: %s", record.get("id"), outcome)
                result.add_error(f"Transform failed: {outcome}", external_id=str(record.get("id")))
                continue
            contacts.append(outcome)

        result.merge(await self.bulk_upsert(contacts))
        return result

    # ------------------------------------------------------------------
    # Bulk upsert
    # ------------------------------------------------------------------

    async def bulk_upsert(self, contacts: list[DirectoryContact]) -> BulkUpsertResult:
        """Submit contacts to the asynchronous bulk endpoint and map what landed."""
        result = BulkUpsertResult()
        if not contacts:
            return result

        by_external_id: dict[str, DirectoryContact] = {}
        for contact in contacts:
            # Later records for the same id replace earlier ones
            by_external_id[contact.external_id] = contact
        external_ids = list(by_external_id)

        try:
            status = await self.directory.bulk_create_contacts(
                [c.to_payload() for c in by_external_id.values()]
            )
            logger.info("[sync] Bulk create accepted (%s) for %d contact(s)", status, len(external_ids))

            await asyncio.sleep(self.settle_seconds)

            found: list[dict[str, Any]] = []
            for start in range(0, len(external_ids), MAX_CONTACT_LOOKUP):
                chunk = external_ids[start:start + MAX_CONTACT_LOOKUP]
                found.extend(
                    await self.directory.list_contacts(external_ids=chunk, max_results=len(chunk))
                )
        except TRANSIENT_ERRORS:
            raise
        except DirectoryAPIError as exc:
            logger.error("[sync] Bulk upsert of %d contact(s) failed: %s", len(external_ids), exc)
            result.error_count = len(external_ids)
            result.errors.append({
                "error": str(exc),
                "timestamp": datetime.utcnow().isoformat(),
                "contact_count": len(external_ids),
            })
            return result

        found_by_external_id: dict[str, dict[str, Any]] = {
            item["externalId"]: item for item in found if item.get("externalId")
        }

        for external_id in external_ids:
            directory_contact = found_by_external_id.get(external_id)
            if directory_contact is None:
                result.add_error(CONTACT_NOT_FOUND_AFTER_BULK, external_id=external_id)
                continue

            contact = by_external_id[external_id]
            try:
                existing = await self.mappings.get(external_id)
                await self.mappings.upsert(
                    external_id,
                    directory_contact["id"],
                    sync_method="bulk",
                    action="updated" if existing else "created",
                    entity_type=contact.entity_type,
                    phone_number=contact.primary_phone,
                )
            except Exception as exc:
                logger.warning("[sync] Mapping write failed for %s: %s", external_id, exc, exc_info=True)
                result.add_error(str(exc), external_id=external_id)
                continue
            result.success_count += 1

        if result.error_count:
            logger.warning(
                "[sync] Bulk upsert finished with %d error(s) out of %d contact(s)",
                result.error_count, len(external_ids),
            )
        return result

    # ------------------------------------------------------------------
    # Single-record paths (incremental sync, source webhooks)
    # ------------------------------------------------------------------

    async def upsert_record(self, record: dict[str, Any], sync_method: str = "incremental") -> UpsertOutcome:
        """Create or update one source record in the directory.

        A mapped contact that has disappeared from the directory raises
        :class:`ContactNotFoundError`; there is nothing to update.
        """
        contact = await self.source.transform_person(record)
        payload = contact.to_payload()
        mapping = await self.mappings.get(contact.external_id)

        if mapping is not None:
            try:
                await self.directory.update_contact(mapping.internal_id, payload)
            except DirectoryAPIError as exc:
                if exc.is_not_found:
                    raise ContactNotFoundError(
                        f"Directory contact {mapping.internal_id} for {contact.external_id} no longer exists"
                    ) from exc
                raise
            internal_id, action = mapping.internal_id, "updated"
        else:
            # A bulk create may have landed without its mapping being written
            existing = await self.directory.list_contacts(
                external_ids=[contact.external_id], max_results=1
            )
            if existing:
                internal_id = existing[0]["id"]
                await self.directory.update_contact(internal_id, payload)
                action = "updated"
            else:
                created = await self.directory.create_contact(payload)
                internal_id = created.get("id")
                if not internal_id:
                    raise DirectoryAPIError(f"Create for {contact.external_id} returned no contact id")
                action = "created"

        await self.mappings.upsert(
            contact.external_id,
            internal_id,
            sync_method=sync_method,
            action=action,
            entity_type=contact.entity_type,
            phone_number=contact.primary_phone,
        )
        logger.info(
            "[sync] %s %s -> %s (%s)", action.capitalize(), contact.external_id, internal_id, sync_method
        )
        return UpsertOutcome(contact.external_id, internal_id, action)

    async def delete_record(self, external_id: str) -> bool:
        """Remove a deleted source record from the directory and drop its mapping.

        Returns False when the record was never mapped.
        """
        mapping = await self.mappings.get(external_id)
        if mapping is None:
            logger.info("[sync] No mapping for deleted record %s", external_id)
            return False

        try:
            await self.directory.delete_contact(mapping.internal_id)
        except DirectoryAPIError as exc:
            if not exc.is_not_found:
                raise
            logger.info("[sync] Directory contact %s already gone", mapping.internal_id)

        await self.mappings.delete(external_id)
        return True

    async def process_webhook_records(
        self,
        records: list[dict[str, Any]],
        object_type: str = "people",
    ) -> SyncProcess:
        """Upsert records pushed by a source webhook as a WEBHOOK-type run."""
        process = await self.processes.create("WEBHOOK", object_type)
        await self.processes.set_state(process.id, "PROCESSING_BATCHES")
        result = BulkUpsertResult()

        try:
            for record in records:
                try:
                    await self.upsert_record(record, sync_method="webhook")
                    result.success_count += 1
                except TRANSIENT_ERRORS:
                    raise
                except (ContactNotFoundError, DirectoryAPIError) as exc:
                    logger.warning("[sync] Webhook upsert failed for %s: %s", record.get("id"), exc)
                    result.add_error(str(exc), external_id=str(record.get("id")))
        except Exception as exc:
            await self.processes.set_state(process.id, "ERROR", last_error=str(exc)[:2000])
            raise

        await self.processes.record_page(
            process.id,
            cursor=None,
            fetched=len(records),
            success_count=result.success_count,
            error_count=result.error_count,
            errors=result.errors,
        )
        await self.processes.set_state(process.id, "COMPLETED")
        finished = await self.processes.get(process.id)
        return finished if finished is not None else process
