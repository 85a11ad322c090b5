from datetime import datetime
from typing import Any

from sqlalchemy import select

from models.database import get_session
from models.entity_mapping import EntityMapping
from services.mapping_store import EnrichmentStore, MappingStore, SubscriptionStore

INTEGRATION_ID = "22222222-2222-2222-2222-222222222222"
OTHER_INTEGRATION_ID = "33333333-3333-3333-3333-333333333333"


def test_mapping_upsert_is_idempotent(db_run) -> None:
    async def scenario() -> Any:
        store = MappingStore(INTEGRATION_ID)
        await store.upsert("p-1", "dir-1", sync_method="bulk", action="created", phone_number="+1 555 000 0001")
        await store.upsert("p-1", "dir-1", sync_method="bulk", action="created", phone_number="+1 555 000 0001")
        return await store.get("p-1")

    mapping = db_run(scenario)

    assert mapping.internal_id == "dir-1"
    assert mapping.action == "created"
    assert mapping.phone_number == "+15550000001"


def test_mapping_upsert_overwrites_and_keeps_known_phone(db_run) -> None:
    async def scenario() -> Any:
        store = MappingStore(INTEGRATION_ID)
        await store.upsert("p-1", "dir-1", sync_method="bulk", action="created", phone_number="+15550000001")
        await store.upsert("p-1", "dir-9", sync_method="webhook", action="updated")
        return await store.get("p-1")

    mapping = db_run(scenario)

    assert mapping.internal_id == "dir-9"
    assert mapping.sync_method == "webhook"
    assert mapping.action == "updated"
    assert mapping.phone_number == "+15550000001"


def test_incremental_resync_updates_the_bulk_mapping_in_place(db_run) -> None:
    first_seen = datetime(2026, 3, 1, 8, 0)
    seen_again = datetime(2026, 3, 2, 8, 0)

    async def scenario() -> Any:
        store = MappingStore(INTEGRATION_ID)
        await store.upsert("p-1", "dir-1", sync_method="bulk", action="created", synced_at=first_seen)
        await store.upsert("p-1", "dir-1", sync_method="incremental", action="updated", synced_at=seen_again)
        async with get_session() as session:
            result = await session.execute(
                select(EntityMapping).where(EntityMapping.external_id == "p-1")
            )
            return result.scalars().all()

    rows = db_run(scenario)

    assert len(rows) == 1
    assert rows[0].action == "updated"
    assert rows[0].sync_method == "incremental"
    assert rows[0].last_synced_at == seen_again


def test_mappings_are_scoped_per_integration(db_run) -> None:
    async def scenario() -> Any:
        await MappingStore(INTEGRATION_ID).upsert("p-1", "dir-1", sync_method="bulk", action="created")
        await MappingStore(OTHER_INTEGRATION_ID).upsert("p-1", "dir-2", sync_method="bulk", action="created")
        return (
            await MappingStore(INTEGRATION_ID).get("p-1"),
            await MappingStore(OTHER_INTEGRATION_ID).get("p-1"),
        )

    first, second = db_run(scenario)

    assert first.internal_id == "dir-1"
    assert second.internal_id == "dir-2"


def test_find_by_phone_ignores_formatting(db_run) -> None:
    async def scenario() -> Any:
        store = MappingStore(INTEGRATION_ID)
        await store.upsert("p-1", "dir-1", sync_method="bulk", action="created", phone_number="+1 (555) 000-0001")
        return await store.find_by_phone("+15550000001"), await store.find_by_phone("+15559999999")

    found, missing = db_run(scenario)

    assert found.external_id == "p-1"
    assert missing is None


def test_delete_removes_only_the_named_mapping(db_run) -> None:
    async def scenario() -> Any:
        store = MappingStore(INTEGRATION_ID)
        await store.upsert("p-1", "dir-1", sync_method="bulk", action="created")
        await store.upsert("p-2", "dir-2", sync_method="bulk", action="created")
        removed = await store.delete("p-1")
        removed_again = await store.delete("p-1")
        return removed, removed_again, await store.get("p-1"), await store.get("p-2")

    removed, removed_again, gone, kept = db_run(scenario)

    assert removed is True
    assert removed_again is False
    assert gone is None
    assert kept.internal_id == "dir-2"


def test_enrichment_record_moves_to_new_log_entry(db_run) -> None:
    async def scenario() -> Any:
        store = EnrichmentStore(INTEGRATION_ID)
        await store.upsert("call-1", "note-1", "p-1")
        await store.upsert("call-1", "note-2", "p-1")
        return await store.get("call-1")

    record = db_run(scenario)

    assert record.log_id == "note-2"
    assert record.contact_id == "p-1"
    assert record.activity_type == "call"


def test_subscription_keys_are_per_event_kind(db_run) -> None:
    async def scenario() -> Any:
        store = SubscriptionStore(INTEGRATION_ID)
        await store.save("call", 0, "wh-1", "key-a", ["PN1"])
        await store.save("call", 1, "wh-2", "key-b", ["PN2"])
        await store.save("message", 0, "wh-3", "key-c", ["PN1"])
        await store.save("call_summary", 0, "wh-4", None, ["PN1"])
        return (
            await store.keys_for("call"),
            await store.keys_for("message"),
            await store.keys_for("call_summary"),
        )

    call_keys, message_keys, summary_keys = db_run(scenario)

    assert sorted(call_keys) == ["key-a", "key-b"]
    assert message_keys == ["key-c"]
    assert summary_keys == []


def test_subscription_save_overwrites_slot(db_run) -> None:
    async def scenario() -> Any:
        store = SubscriptionStore(INTEGRATION_ID)
        await store.save("call", 0, "wh-1", "key-a", ["PN1"])
        await store.save("call", 0, "wh-1", "key-a", ["PN1", "PN2"])
        return await store.get_all("call")

    rows = db_run(scenario)

    assert len(rows) == 1
    assert rows[0].phone_ids == ["PN1", "PN2"]
