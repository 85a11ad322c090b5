import asyncio
from typing import Any, Optional

import httpx
import pytest

from connectors.base import SyncCancelledError
from connectors.models import ContactFields, ContactPoint, DirectoryContact, SyncPage
from connectors.registry import AuthType, ConnectorMeta
from models.entity_mapping import EntityMapping
from services import sync_engine
from services.directory_api import DirectoryAPIError, DirectoryRateLimitError
from services.mapping_store import MappingStore
from services.sync_engine import (
    CONTACT_NOT_FOUND_AFTER_BULK,
    ContactNotFoundError,
    SyncOrchestrator,
)
from services.sync_processes import SyncProcessRepository

INTEGRATION_ID = "11111111-1111-1111-1111-111111111111"


class FakeSource:
    meta = ConnectorMeta(name="Fake", slug="fake", auth_type=AuthType.API_KEY, object_types=["people"])

    def __init__(self, pages: dict[Optional[str], Any], cancel_after: Optional[int] = None) -> None:
        self.pages = pages
        self.cancel_after = cancel_after
        self.active_checks = 0
        self.fetches: list[dict[str, Any]] = []

    async def ensure_sync_active(self, stage: str) -> None:
        self.active_checks += 1
        if self.cancel_after is not None and self.active_checks > self.cancel_after:
            raise SyncCancelledError(f"fake integration disconnected during sync ({stage})")

    async def fetch_person_page(
        self,
        object_type: str,
        cursor: Optional[str],
        limit: int,
        modified_since: Any = None,
        sort_desc: bool = True,
    ) -> SyncPage:
        self.fetches.append({"cursor": cursor, "limit": limit, "sort_desc": sort_desc})
        page = self.pages[cursor]
        if isinstance(page, BaseException):
            raise page
        return page

    async def transform_person(self, record: dict[str, Any]) -> DirectoryContact:
        if record.get("broken"):
            raise ValueError("missing name")
        phones = [ContactPoint(value=record["phone"])] if record.get("phone") else []
        return DirectoryContact(
            external_id=str(record["id"]),
            source="fake",
            default_fields=ContactFields(first_name=record.get("name", "Ada"), phone_numbers=phones),
        )


class FakeDirectory:
    def __init__(self, missing: tuple[str, ...] = (), bulk_error: Optional[Exception] = None) -> None:
        self.missing = set(missing)
        self.bulk_error = bulk_error
        self.contacts: dict[str, str] = {}
        self.bulk_calls: list[list[dict[str, Any]]] = []
        self.lookups: list[int] = []
        self.events: list[str] = []
        self.updated: list[tuple[str, dict[str, Any]]] = []
        self.created: list[dict[str, Any]] = []
        self.deleted: list[str] = []
        self.update_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None

    async def bulk_create_contacts(self, contacts: list[dict[str, Any]]) -> int:
        self.events.append("bulk")
        self.bulk_calls.append(contacts)
        if self.bulk_error is not None:
            raise self.bulk_error
        for contact in contacts:
            if contact["externalId"] not in self.missing:
                self.contacts.setdefault(contact["externalId"], f"dir-{contact['externalId']}")
        return 202

    async def list_contacts(self, external_ids: Optional[list[str]] = None, max_results: int = 50) -> list[dict[str, Any]]:
        self.events.append("lookup")
        self.lookups.append(max_results)
        found = [
            {"id": self.contacts[external_id], "externalId": external_id}
            for external_id in external_ids or []
            if external_id in self.contacts
        ]
        # Same cap as the real directory
        return found[:min(max_results, 50)]

    async def update_contact(self, contact_id: str, contact: dict[str, Any]) -> dict[str, Any]:
        if self.update_error is not None:
            raise self.update_error
        self.updated.append((contact_id, contact))
        return {"id": contact_id}

    async def create_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        self.created.append(contact)
        return {"id": f"dir-{contact['externalId']}"}

    async def delete_contact(self, contact_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(contact_id)


class FakeMappings:
    def __init__(self, fail_for: tuple[str, ...] = ()) -> None:
        self.fail_for = set(fail_for)
        self.rows: dict[str, EntityMapping] = {}

    async def get(self, external_id: str) -> Optional[EntityMapping]:
        return self.rows.get(external_id)

    async def upsert(self, external_id: str, internal_id: str, sync_method: str, action: str, **kwargs: Any) -> None:
        if external_id in self.fail_for:
            raise RuntimeError(f"could not write mapping for {external_id}")
        self.rows[external_id] = EntityMapping(
            external_id=external_id, internal_id=internal_id, sync_method=sync_method, action=action
        )

    async def delete(self, external_id: str) -> bool:
        return self.rows.pop(external_id, None) is not None


def _contacts(*external_ids: str) -> list[DirectoryContact]:
    return [DirectoryContact(external_id=external_id, source="fake") for external_id in external_ids]


def _three_pages() -> dict[Optional[str], SyncPage]:
    return {
        None: SyncPage(records=[{"id": 1, "phone": "+1 (555) 000-0001"}], cursor="c1", has_more=True),
        "c1": SyncPage(records=[{"id": 2}], cursor="c2", has_more=True),
        "c2": SyncPage(records=[{"id": 3}], cursor=None, has_more=False),
    }


# ---------------------------------------------------------------------------
# Paged sync
# ---------------------------------------------------------------------------


def test_run_sync_walks_pages_until_source_reports_no_more(db_run) -> None:
    source = FakeSource(_three_pages())
    directory = FakeDirectory()

    async def scenario() -> Any:
        orchestrator = SyncOrchestrator(INTEGRATION_ID, source, directory, settle_seconds=0)
        process = await orchestrator.run_sync("people", sync_type="INITIAL")
        mapping = await MappingStore(INTEGRATION_ID).get("1")
        return process, mapping

    process, mapping = db_run(scenario)

    assert [fetch["cursor"] for fetch in source.fetches] == [None, "c1", "c2"]
    assert all(fetch["sort_desc"] for fetch in source.fetches)
    assert process.state == "COMPLETED"
    assert process.page_count == 3
    assert process.total_fetched == 3
    assert process.success_count == 3
    assert process.error_count == 0
    assert mapping.internal_id == "dir-1"
    assert mapping.phone_number == "+15550000001"
    assert mapping.sync_method == "bulk"


def test_ongoing_sync_reads_oldest_first_with_smaller_pages(db_run) -> None:
    source = FakeSource({None: SyncPage(records=[{"id": 1}], cursor=None, has_more=False)})

    async def scenario() -> Any:
        orchestrator = SyncOrchestrator(INTEGRATION_ID, source, FakeDirectory(), settle_seconds=0)
        return await orchestrator.run_sync("people", sync_type="ONGOING")

    db_run(scenario)

    assert source.fetches == [{"cursor": None, "limit": 50, "sort_desc": False}]


def test_run_sync_stops_between_pages_when_integration_is_disconnected(db_run) -> None:
    source = FakeSource(_three_pages(), cancel_after=1)

    async def scenario() -> Any:
        orchestrator = SyncOrchestrator(INTEGRATION_ID, source, FakeDirectory(), settle_seconds=0)
        with pytest.raises(SyncCancelledError):
            await orchestrator.run_sync("people")
        return await SyncProcessRepository(INTEGRATION_ID).latest("people")

    process = db_run(scenario)

    assert len(source.fetches) == 1
    assert process.state == "CANCELLED"
    assert process.cursor == "c1"
    assert process.page_count == 1
    assert "disconnected during sync" in process.last_error


def test_transient_error_propagates_and_keeps_last_completed_cursor(db_run) -> None:
    pages = _three_pages()
    pages["c1"] = httpx.ConnectError("connection reset")
    source = FakeSource(pages)

    async def scenario() -> Any:
        orchestrator = SyncOrchestrator(INTEGRATION_ID, source, FakeDirectory(), settle_seconds=0)
        with pytest.raises(httpx.ConnectError):
            await orchestrator.run_sync("people")
        return await SyncProcessRepository(INTEGRATION_ID).latest("people")

    process = db_run(scenario)

    assert process.state == "ERROR"
    assert process.cursor == "c1"
    assert process.success_count == 1


def test_run_sync_resumes_from_failed_process_cursor(db_run) -> None:
    source = FakeSource(_three_pages())

    async def scenario() -> Any:
        processes = SyncProcessRepository(INTEGRATION_ID)
        failed = await processes.create("INITIAL", "people")
        await processes.record_page(failed.id, cursor="c2", fetched=2, success_count=2, error_count=0, errors=[])
        await processes.set_state(failed.id, "ERROR", last_error="rate limited")
        resume = await processes.get(failed.id)

        orchestrator = SyncOrchestrator(INTEGRATION_ID, source, FakeDirectory(), settle_seconds=0)
        return await orchestrator.run_sync("people", resume_from=resume)

    process = db_run(scenario)

    assert [fetch["cursor"] for fetch in source.fetches] == ["c2"]
    assert process.state == "COMPLETED"
    assert process.page_count == 2
    assert process.total_fetched == 3


def test_run_sync_stops_on_repeated_cursor(db_run) -> None:
    source = FakeSource({
        None: SyncPage(records=[{"id": 1}], cursor="c1", has_more=True),
        "c1": SyncPage(records=[{"id": 2}], cursor="c1", has_more=True),
    })

    async def scenario() -> Any:
        orchestrator = SyncOrchestrator(INTEGRATION_ID, source, FakeDirectory(), settle_seconds=0)
        return await orchestrator.run_sync("people")

    process = db_run(scenario)

    assert len(source.fetches) == 2
    assert process.state == "COMPLETED"


def test_transform_failure_is_reported_per_record(db_run) -> None:
    source = FakeSource({
        None: SyncPage(records=[{"id": 1}, {"id": 2, "broken": True}], cursor=None, has_more=False),
    })

    async def scenario() -> Any:
        orchestrator = SyncOrchestrator(INTEGRATION_ID, source, FakeDirectory(), settle_seconds=0)
        return await orchestrator.run_sync("people")

    process = db_run(scenario)

    assert process.success_count == 1
    assert process.error_count == 1
    assert process.errors[0]["external_id"] == "2"
    assert "missing name" in process.errors[0]["error"]


# ---------------------------------------------------------------------------
# Bulk upsert
# ---------------------------------------------------------------------------


def test_bulk_upsert_waits_for_settle_delay_before_lookup(monkeypatch) -> None:
    directory = FakeDirectory()
    sleeps: list[float] = []

    async def _fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        directory.events.append("sleep")

    monkeypatch.setattr(sync_engine.asyncio, "sleep", _fake_sleep)

    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=FakeMappings(), processes=object()
    )
    result = asyncio.run(orchestrator.bulk_upsert(_contacts("1")))

    assert directory.events == ["bulk", "sleep", "lookup"]
    assert sleeps and sleeps[0] >= 0.9
    assert result.success_count == 1


def test_bulk_upsert_reports_records_missing_after_settle() -> None:
    directory = FakeDirectory(missing=("2",))
    mappings = FakeMappings()
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=mappings, processes=object(), settle_seconds=0
    )

    result = asyncio.run(orchestrator.bulk_upsert(_contacts("1", "2", "3")))

    assert result.success_count == 2
    assert result.error_count == 1
    assert result.errors == [{"error": CONTACT_NOT_FOUND_AFTER_BULK, "external_id": "2"}]
    assert set(mappings.rows) == {"1", "3"}


def test_bulk_upsert_failure_is_one_batch_error() -> None:
    directory = FakeDirectory(bulk_error=DirectoryAPIError("bulk rejected", status_code=500))
    mappings = FakeMappings()
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=mappings, processes=object(), settle_seconds=0
    )

    result = asyncio.run(orchestrator.bulk_upsert(_contacts("1", "2", "3")))

    assert result.success_count == 0
    assert result.error_count == 3
    assert len(result.errors) == 1
    assert result.errors[0]["contact_count"] == 3
    assert "bulk rejected" in result.errors[0]["error"]
    assert mappings.rows == {}


def test_bulk_upsert_rate_limit_propagates() -> None:
    directory = FakeDirectory(bulk_error=DirectoryRateLimitError("slow down", status_code=429))
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=FakeMappings(), processes=object(), settle_seconds=0
    )

    with pytest.raises(DirectoryRateLimitError):
        asyncio.run(orchestrator.bulk_upsert(_contacts("1")))


def test_mapping_write_failure_does_not_block_other_records() -> None:
    mappings = FakeMappings(fail_for=("2",))
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), FakeDirectory(), mappings=mappings, processes=object(), settle_seconds=0
    )

    result = asyncio.run(orchestrator.bulk_upsert(_contacts("1", "2", "3")))

    assert result.success_count == 2
    assert result.error_count == 1
    assert result.errors[0]["external_id"] == "2"
    assert set(mappings.rows) == {"1", "3"}


def test_bulk_upsert_sends_each_external_id_once() -> None:
    directory = FakeDirectory()
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=FakeMappings(), processes=object(), settle_seconds=0
    )

    result = asyncio.run(orchestrator.bulk_upsert(_contacts("1", "1", "2")))

    assert [c["externalId"] for c in directory.bulk_calls[0]] == ["1", "2"]
    assert result.success_count == 2


def test_bulk_upsert_keeps_the_latest_record_for_a_repeated_id() -> None:
    directory = FakeDirectory()
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=FakeMappings(), processes=object(), settle_seconds=0
    )
    contacts = [
        DirectoryContact(external_id="1", source="fake", default_fields=ContactFields(first_name="Old")),
        DirectoryContact(external_id="1", source="fake", default_fields=ContactFields(first_name="New")),
    ]

    asyncio.run(orchestrator.bulk_upsert(contacts))

    assert [c["defaultFields"]["firstName"] for c in directory.bulk_calls[0]] == ["New"]


@pytest.mark.parametrize(
    ("count", "lookups"),
    [(100, [50, 50]), (125, [50, 50, 25]), (50, [50])],
)
def test_bulk_upsert_looks_up_created_contacts_in_capped_slices(count: int, lookups: list[int]) -> None:
    directory = FakeDirectory()
    mappings = FakeMappings()
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=mappings, processes=object(), settle_seconds=0
    )

    result = asyncio.run(orchestrator.bulk_upsert(_contacts(*(str(i) for i in range(count)))))

    assert directory.lookups == lookups
    assert result.success_count == count
    assert result.error_count == 0
    assert len(mappings.rows) == count


# ---------------------------------------------------------------------------
# Single records
# ---------------------------------------------------------------------------


def test_upsert_record_updates_mapped_contact() -> None:
    directory = FakeDirectory()
    mappings = FakeMappings()
    asyncio.run(mappings.upsert("7", "dir-7", sync_method="bulk", action="created"))
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=mappings, processes=object()
    )

    outcome = asyncio.run(orchestrator.upsert_record({"id": 7, "name": "Grace"}))

    assert outcome.action == "updated"
    assert directory.updated[0][0] == "dir-7"
    assert directory.updated[0][1]["defaultFields"]["firstName"] == "Grace"
    assert directory.created == []


def test_upsert_record_creates_unmapped_contact() -> None:
    directory = FakeDirectory()
    mappings = FakeMappings()
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=mappings, processes=object()
    )

    outcome = asyncio.run(orchestrator.upsert_record({"id": 8}, sync_method="webhook"))

    assert outcome.action == "created"
    assert outcome.internal_id == "dir-8"
    assert mappings.rows["8"].sync_method == "webhook"


def test_upsert_record_raises_when_mapped_contact_is_gone() -> None:
    directory = FakeDirectory()
    directory.update_error = DirectoryAPIError("not found", status_code=404)
    mappings = FakeMappings()
    asyncio.run(mappings.upsert("7", "dir-7", sync_method="bulk", action="created"))
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=mappings, processes=object()
    )

    with pytest.raises(ContactNotFoundError):
        asyncio.run(orchestrator.upsert_record({"id": 7}))


def test_delete_record_tolerates_contact_already_gone() -> None:
    directory = FakeDirectory()
    directory.delete_error = DirectoryAPIError("not found", status_code=404)
    mappings = FakeMappings()
    asyncio.run(mappings.upsert("7", "dir-7", sync_method="bulk", action="created"))
    orchestrator = SyncOrchestrator(
        INTEGRATION_ID, FakeSource({}), directory, mappings=mappings, processes=object()
    )

    assert asyncio.run(orchestrator.delete_record("7")) is True
    assert mappings.rows == {}
    assert asyncio.run(orchestrator.delete_record("7")) is False


def test_process_webhook_records_records_a_webhook_run(db_run) -> None:
    directory = FakeDirectory()

    async def scenario() -> Any:
        orchestrator = SyncOrchestrator(INTEGRATION_ID, FakeSource({}), directory)
        return await orchestrator.process_webhook_records([{"id": 1}, {"id": 2}], object_type="people")

    process = db_run(scenario)

    assert process.sync_type == "WEBHOOK"
    assert process.state == "COMPLETED"
    assert process.success_count == 2
    assert len(directory.created) == 2
