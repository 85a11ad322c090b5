from services.participants import (
    contact_phone_for_call,
    external_participants,
    filter_external_participant,
    normalize_phone_number,
)

OUR_NUMBERS = [{"number": "+15559990000", "formattedNumber": "(555) 999-0000"}]


def test_normalize_strips_formatting_only() -> None:
    assert normalize_phone_number("+1 (555) 000-0001") == "+15550000001"
    assert normalize_phone_number(None) is None
    assert normalize_phone_number("") == ""


def test_filter_skips_our_own_numbers_in_any_format() -> None:
    participants = ["+1 555 999 0000", "+15550000001"]

    assert filter_external_participant(participants, OUR_NUMBERS) == "+15550000001"


def test_filter_without_metadata_uses_first_participant() -> None:
    assert filter_external_participant(["+15550000001", "+15550000002"], []) == "+15550000001"


def test_filter_returns_none_when_every_participant_is_ours() -> None:
    assert filter_external_participant(["+15559990000"], OUR_NUMBERS) is None
    assert filter_external_participant([], OUR_NUMBERS) is None


def test_external_participants_are_deduplicated_in_order() -> None:
    participants = ["+15550000002", "+15559990000", "+1 555 000 0002", "+15550000001"]

    assert external_participants(participants, OUR_NUMBERS) == ["+15550000002", "+15550000001"]


def test_contact_phone_falls_back_to_fetched_call() -> None:
    event_call = {"id": "AC1", "participants": []}
    full_call = {"id": "AC1", "participants": ["+15559990000", "+15550000001"]}

    assert contact_phone_for_call(event_call, full_call, OUR_NUMBERS) == "+15550000001"
    assert contact_phone_for_call(event_call, None, OUR_NUMBERS) is None
