import asyncio
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from connectors.attio import AttioConnector
from connectors.axiscare import AxisCareConnector
from connectors.base import SourceAPIError, SourceRateLimitError, extract_query_param
from connectors.clio import ClioConnector
from connectors.models import ActivityLog
from connectors.pipedrive import PipedriveConnector
from connectors.registry import discover_connectors

INTEGRATION_ID = "66666666-6666-6666-6666-666666666666"


class RecordingTransport:
    """Stands in for ``_make_request``: replays canned responses per endpoint."""

    def __init__(self, responses: dict[str, Any]) -> None:
        self.responses = responses
        self.requests: list[dict[str, Any]] = []

    async def __call__(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        self.requests.append({"method": method, "endpoint": endpoint, "params": params, "json": json_data})
        for suffix, response in self.responses.items():
            if endpoint.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                return response
        return {}


def _connector(cls: type, responses: dict[str, Any], config: Optional[dict[str, Any]] = None) -> tuple[Any, RecordingTransport]:
    connector = cls(INTEGRATION_ID, token="test-token")
    connector._integration = SimpleNamespace(config=config or {}, is_active=True)
    transport = RecordingTransport(responses)
    connector._make_request = transport
    return connector, transport


def test_registry_discovers_source_plugins() -> None:
    registry = discover_connectors()

    assert {"pipedrive", "axiscare", "attio", "clio"} <= set(registry)
    assert registry["pipedrive"].meta.supports_update_in_place is True
    assert registry["attio"].meta.supports_update_in_place is False


def test_extract_query_param() -> None:
    url = "https://12345.axiscare.com/api/clients?limit=50&startAfterId=987"

    assert extract_query_param(url, "startAfterId") == "987"
    assert extract_query_param(url, "missing") is None
    assert extract_query_param(None, "startAfterId") is None


# ---------------------------------------------------------------------------
# Pipedrive
# ---------------------------------------------------------------------------


def test_pipedrive_page_uses_server_cursor() -> None:
    connector, transport = _connector(PipedriveConnector, {
        "/api/v2/persons": {"data": [{"id": 1}], "additional_data": {"next_cursor": "eyJpZCI6MX0"}},
    })

    page = asyncio.run(connector.fetch_person_page(
        "Person", "prev", 50, modified_since=datetime(2026, 1, 5, 9, 30), sort_desc=False
    ))

    assert page.cursor == "eyJpZCI6MX0"
    assert page.has_more is True
    params = transport.requests[0]["params"]
    assert params["cursor"] == "prev"
    assert params["sort_direction"] == "asc"
    assert params["updated_since"] == "2026-01-05T09:30:00Z"


def test_pipedrive_last_page_has_no_cursor() -> None:
    connector, _ = _connector(PipedriveConnector, {"/api/v2/persons": {"data": [], "additional_data": {}}})

    page = asyncio.run(connector.fetch_person_page("Person", None, 50))

    assert page.cursor is None
    assert page.has_more is False


def test_pipedrive_transform_resolves_organization_once() -> None:
    connector, transport = _connector(PipedriveConnector, {
        "/api/v2/organizations/9": {"data": {"id": 9, "name": "Acme"}},
    })
    record = {
        "id": 1,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "org_id": 9,
        "phones": [{"value": "+15550000001", "label": "mobile", "primary": True}],
        "emails": [{"value": "ada@acme.test", "label": "work", "primary": True}],
    }

    contact = asyncio.run(connector.transform_person(record))
    asyncio.run(connector.transform_person({**record, "id": 2}))

    assert contact.external_id == "1"
    assert contact.default_fields.company == "Acme"
    assert contact.primary_phone == "+15550000001"
    assert len(transport.requests) == 1


def test_pipedrive_organization_rate_limit_propagates() -> None:
    connector, _ = _connector(PipedriveConnector, {
        "/api/v2/organizations/9": SourceRateLimitError("pipedrive rate limited", status_code=429),
    })

    with pytest.raises(SourceRateLimitError):
        asyncio.run(connector.transform_person({"id": 1, "org_id": 9}))


def test_pipedrive_activity_duration_is_hours_and_minutes() -> None:
    connector, transport = _connector(PipedriveConnector, {"/v1/activities": {"data": {"id": 77}}})
    log = ActivityLog(
        contact_id="1",
        title="Call",
        content="Incoming answered by Ada",
        duration=3725,
        timestamp=datetime(2026, 1, 5, 10, 0),
    )

    log_id = asyncio.run(connector.log_activity(log))

    assert log_id == "77"
    body = transport.requests[0]["json"]
    assert body["duration"] == "01:02"
    assert body["type"] == "call"
    assert body["person_id"] == 1
    assert body["due_date"] == "2026-01-05"


def test_pipedrive_fetch_person_returns_none_when_deleted() -> None:
    connector, _ = _connector(PipedriveConnector, {
        "/api/v2/persons/5": SourceAPIError("pipedrive API error 410: gone", status_code=410),
    })

    assert asyncio.run(connector.fetch_person("5")) is None


def test_pipedrive_webhook_events() -> None:
    connector, _ = _connector(PipedriveConnector, {})

    updated = connector.parse_webhook_events({"meta": {"entity": "person", "entity_id": 5, "action": "change"}})
    deleted = connector.parse_webhook_events({"meta": {"entity": "person", "entity_id": 5, "action": "delete"}})
    ignored = connector.parse_webhook_events({"meta": {"entity": "deal", "entity_id": 8, "action": "change"}})

    assert [(e.action, e.record_id) for e in updated] == [("upsert", "5")]
    assert [(e.action, e.record_id) for e in deleted] == [("delete", "5")]
    assert ignored == []


# ---------------------------------------------------------------------------
# AxisCare
# ---------------------------------------------------------------------------


def test_axiscare_cursor_comes_from_next_page_url() -> None:
    connector, transport = _connector(AxisCareConnector, {
        "/api/clients": {
            "results": {
                "clients": [{"id": 101, "firstName": "Grace", "goesBy": "Gracie"}],
                "nextPage": "https://12345.axiscare.com/api/clients?startAfterId=101&limit=50",
            }
        },
    }, config={"site_number": "12345"})

    page = asyncio.run(connector.fetch_person_page("Client", None, 50))

    assert transport.requests[0]["endpoint"] == "https://12345.axiscare.com/api/clients"
    assert page.cursor == "101"
    assert page.has_more is True
    assert page.records[0]["_object_type"] == "Client"


def test_axiscare_unwrapped_collection_and_last_page() -> None:
    connector, _ = _connector(AxisCareConnector, {
        "/api/caregivers": {"caregivers": [{"id": 7, "firstName": "Alan"}]},
    }, config={"site_number": "12345"})

    page = asyncio.run(connector.fetch_person_page("Caregiver", "6", 50))

    assert len(page.records) == 1
    assert page.cursor is None
    assert page.has_more is False


def test_axiscare_requires_site_number() -> None:
    connector, _ = _connector(AxisCareConnector, {})

    with pytest.raises(ValueError):
        asyncio.run(connector.fetch_person_page("Client", None, 50))


def test_axiscare_transform_prefers_goes_by_for_clients() -> None:
    connector, _ = _connector(AxisCareConnector, {})
    record = {
        "id": 101,
        "_object_type": "Client",
        "firstName": "Grace",
        "goesBy": "Gracie",
        "lastName": "Hopper",
        "homePhone": "+15550000001",
        "mobilePhone": "+15550000002",
        "personalEmail": "grace@example.test",
        "status": {"label": "Active"},
    }

    contact = asyncio.run(connector.transform_person(record))

    assert contact.external_id == "101"
    assert contact.default_fields.first_name == "Gracie"
    assert contact.default_fields.role == "Client"
    assert [p.name for p in contact.default_fields.phone_numbers] == ["home", "mobile"]
    assert contact.primary_phone == "+15550000001"
    custom = {field.key: field.value for field in contact.custom_fields}
    assert custom["status"] == "Active"
    assert custom["crmType"] == "axiscare"


def test_axiscare_does_not_log_activities() -> None:
    connector, transport = _connector(AxisCareConnector, {})

    assert asyncio.run(connector.log_activity(ActivityLog(contact_id="1", title="t", content="c"))) is None
    assert transport.requests == []


# ---------------------------------------------------------------------------
# Attio
# ---------------------------------------------------------------------------


def test_attio_offset_cursor_advances_on_full_page() -> None:
    connector, transport = _connector(AttioConnector, {
        "/records/query": {"data": [{"id": {"record_id": "r1"}}, {"id": {"record_id": "r2"}}]},
    })

    page = asyncio.run(connector.fetch_person_page("people", "4", 2))

    assert transport.requests[0]["json"] == {"limit": 2, "offset": 4}
    assert page.cursor == "6"
    assert page.has_more is True


def test_attio_short_page_ends_sync() -> None:
    connector, _ = _connector(AttioConnector, {"/records/query": {"data": [{"id": {"record_id": "r1"}}]}})

    page = asyncio.run(connector.fetch_person_page("people", None, 2))

    assert page.cursor is None
    assert page.has_more is False


def test_attio_transform_uses_active_values() -> None:
    connector, _ = _connector(AttioConnector, {})
    record = {
        "id": {"record_id": "r1"},
        "values": {
            "name": [{"first_name": "Ada", "last_name": "Lovelace", "active_until": None}],
            "phone_numbers": [
                {"phone_number": "+15550000009", "active_until": "2025-01-01T00:00:00Z"},
                {"phone_number": "+15550000001", "active_until": None},
            ],
            "email_addresses": [{"email_address": "ada@example.test", "active_until": None}],
        },
    }

    contact = asyncio.run(connector.transform_person(record))

    assert contact.external_id == "r1"
    assert contact.source == "openphone-attio"
    assert [p.value for p in contact.default_fields.phone_numbers] == ["+15550000001"]
    assert contact.default_fields.company is None


def test_attio_note_id_is_read_from_nested_id() -> None:
    connector, transport = _connector(AttioConnector, {"/notes": {"data": {"id": {"note_id": "n-1"}}}})

    log_id = asyncio.run(connector.log_activity(ActivityLog(contact_id="r1", title="Call", content="body")))

    assert log_id == "n-1"
    assert transport.requests[0]["json"]["data"]["parent_record_id"] == "r1"


def test_attio_webhook_events() -> None:
    connector, _ = _connector(AttioConnector, {})

    events = connector.parse_webhook_events({
        "events": [
            {"event_type": "record.updated", "id": {"record_id": "r1"}},
            {"event_type": "record.deleted", "id": {"record_id": "r2"}},
            {"event_type": "note.created", "id": {"note_id": "n1"}},
        ]
    })

    assert [(e.action, e.record_id) for e in events] == [("upsert", "r1"), ("delete", "r2")]


# ---------------------------------------------------------------------------
# Clio
# ---------------------------------------------------------------------------


def test_clio_page_token_from_paging_url_and_region_host() -> None:
    connector, transport = _connector(ClioConnector, {
        "/contacts.json": {
            "data": [{"id": 1, "type": "Person"}],
            "meta": {"paging": {"next": "https://eu.app.clio.com/api/v4/contacts.json?page_token=tok2&limit=50"}},
        },
    }, config={"region": "eu"})

    page = asyncio.run(connector.fetch_person_page("Person", None, 50))

    assert transport.requests[0]["endpoint"] == "https://eu.app.clio.com/api/v4/contacts.json"
    assert page.cursor == "tok2"
    assert page.has_more is True


def test_clio_accepts_legacy_full_url_cursor() -> None:
    connector, transport = _connector(ClioConnector, {"/contacts.json": {"data": [], "meta": {"paging": {}}}})

    page = asyncio.run(connector.fetch_person_page(
        "Person", "https://app.clio.com/api/v4/contacts.json?page_token=tok9", 50
    ))

    assert transport.requests[0]["params"]["page_token"] == "tok9"
    assert page.has_more is False


def test_clio_company_contact_maps_to_company_entity() -> None:
    connector, _ = _connector(ClioConnector, {})

    contact = asyncio.run(connector.transform_person({
        "id": 3,
        "type": "Company",
        "name": "Hopper & Co",
        "phone_numbers": [{"name": "work", "number": "+15550000003", "default_number": True}],
    }))

    assert contact.entity_type == "company"
    assert contact.default_fields.first_name == "Hopper & Co"
    assert contact.default_fields.phone_numbers[0].name == "Work"


def test_clio_handshake_activates_webhook_and_stores_secret(monkeypatch) -> None:
    connector, transport = _connector(ClioConnector, {"/webhooks/88.json": {"data": {"id": 88}}})
    stored: dict[str, Any] = {}

    async def _fake_update_config(changes: dict[str, Any]) -> None:
        stored.update(changes)

    monkeypatch.setattr(connector, "update_config", _fake_update_config)

    asyncio.run(connector.handle_handshake("hook-secret", {"data": {"webhook_id": 88}}))

    assert transport.requests[0]["method"] == "PUT"
    assert transport.requests[0]["json"] == {"data": {"status": "enabled", "secret": "hook-secret"}}
    assert stored == {"webhook_secret": "hook-secret", "webhook_status": "enabled"}


def test_only_clio_accepts_webhook_handshakes() -> None:
    connector, transport = _connector(AttioConnector, {})

    with pytest.raises(NotImplementedError):
        asyncio.run(connector.handle_handshake("forged-secret", {}))

    assert transport.requests == []
    assert ClioConnector.meta.handshake
    assert not any(cls.meta.handshake for cls in (AttioConnector, AxisCareConnector, PipedriveConnector))


def test_clio_webhook_events() -> None:
    connector, _ = _connector(ClioConnector, {})

    events = connector.parse_webhook_events({"data": {"id": 3, "type": "Person"}, "meta": {"event": "deleted"}})

    assert [(e.action, e.record_id, e.object_type) for e in events] == [("delete", "3", "Person")]
    assert connector.parse_webhook_events({"data": {}, "meta": {"event": "updated"}}) == []
