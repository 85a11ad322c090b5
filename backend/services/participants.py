"""
Phone-number helpers for picking the counterparty of a call or message.

Directory call events list every participant, including our own inbox lines.
The counterparty is the first participant that is not one of our numbers.
"""

import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

_PHONE_NOISE = re.compile(r"[\s()\-]")


def normalize_phone_number(phone: Optional[str]) -> Optional[str]:
    """Strip spaces, parentheses and dashes so formatting differences compare equal."""
    if not phone or not isinstance(phone, str):
        return phone
    return _PHONE_NOISE.sub("", phone)


def extract_own_phone_numbers(phone_numbers_metadata: Optional[list[dict[str, Any]]]) -> set[str]:
    """Collect our inbox numbers (raw and formatted) from phone-number metadata."""
    own: set[str] = set()
    for metadata in phone_numbers_metadata or []:
        for key in ("number", "formattedNumber"):
            value = metadata.get(key)
            if value:
                own.add(normalize_phone_number(value))
    return own


def filter_external_participant(
    participants: Optional[list[str]],
    phone_numbers_metadata: Optional[list[dict[str, Any]]],
) -> Optional[str]:
    """Return the first participant that is not one of our own numbers.

    Without metadata there is nothing to exclude, so the first participant wins.
    """
    if not participants:
        return None

    own = extract_own_phone_numbers(phone_numbers_metadata)
    if not own:
        logger.warning("[participants] No phone number metadata, using first participant")
        return participants[0]

    for participant in participants:
        if normalize_phone_number(participant) not in own:
            return participant

    logger.warning("[participants] Every participant is one of our own numbers")
    return None


def external_participants(
    participants: Optional[list[str]],
    phone_numbers_metadata: Optional[list[dict[str, Any]]],
) -> list[str]:
    """All counterparties of a call, in event order, without duplicates."""
    if not participants:
        return []
    own = extract_own_phone_numbers(phone_numbers_metadata)
    if not own:
        return [participants[0]]

    seen: set[str] = set()
    result: list[str] = []
    for participant in participants:
        normalized = normalize_phone_number(participant)
        if normalized in own or normalized in seen:
            continue
        seen.add(normalized)
        result.append(participant)
    return result


def contact_phone_for_call(
    event_call: dict[str, Any],
    full_call: Optional[dict[str, Any]],
    phone_numbers_metadata: Optional[list[dict[str, Any]]],
) -> Optional[str]:
    """Counterparty phone for a call, falling back to the fetched call when
    the webhook payload arrives with an empty participants list."""
    participants = event_call.get("participants") or []
    if participants:
        return filter_external_participant(participants, phone_numbers_metadata)
    if full_call and full_call.get("participants"):
        return filter_external_participant(full_call["participants"], phone_numbers_metadata)
    logger.warning("[participants] No participants on call %s", event_call.get("id"))
    return None
