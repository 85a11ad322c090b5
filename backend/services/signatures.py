"""
Webhook signature verification.

Two schemes:

- Source systems sign the raw request body with HMAC-SHA256 and send the hex
  digest in a header (``verify_hmac_hex``).
- The contact directory sends ``hmac;<version>;<timestamp>;<base64 digest>``
  where the digest covers ``timestamp + body`` (``verify_structured_signature``).

Both return False instead of raising, and both refuse to call
``hmac.compare_digest`` when the candidate and expected digests differ in
length.
"""

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Union

logger = logging.getLogger(__name__)

Body = Union[bytes, str]


class SignatureError(ValueError):
    """Signature header is present but malformed."""


@dataclass(frozen=True)
class StructuredSignature:
    algorithm: str
    version: str
    timestamp: str
    signature: str


def _as_bytes(value: Body) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _constant_time_equal(candidate: str, expected: str) -> bool:
    if len(candidate) != len(expected):
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def verify_hmac_hex(body: Body, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check a hex HMAC-SHA256 of the raw body."""
    if not signature or not secret:
        return False

    expected = hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()
    return _constant_time_equal(signature, expected)


def parse_structured_signature(header: str) -> StructuredSignature:
    parts = header.split(";")
    if len(parts) != 4 or parts[0] != "hmac":
        raise SignatureError("Invalid signature header format")
    algorithm, version, timestamp, signature = parts
    if not timestamp or not signature:
        raise SignatureError("Signature header is missing timestamp or digest")
    return StructuredSignature(algorithm, version, timestamp, signature)


def _candidate_keys(key: str) -> list[bytes]:
    keys = [key.encode("utf-8")]
    try:
        decoded = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError):
        return keys
    if decoded and decoded not in keys:
        keys.append(decoded)
    return keys


def verify_structured_signature(header: Optional[str], body: Body, key: Optional[str]) -> bool:
    """Check a ``hmac;version;timestamp;digest`` header against ``timestamp + body``.

    Keys are tried as-is and base64-decoded; the payload is tried with and
    without a ``.`` between timestamp and body.
    """
    if not header or not key:
        return False

    try:
        parsed = parse_structured_signature(header)
    except SignatureError as exc:
        logger.warning("[signatures] %s", exc)
        return False

    raw_body = _as_bytes(body)
    timestamp = parsed.timestamp.encode("utf-8")
    payloads = (timestamp + raw_body, timestamp + b"." + raw_body)

    for secret in _candidate_keys(key):
        for payload in payloads:
            digest = hmac.new(secret, payload, hashlib.sha256).digest()
            expected = base64.b64encode(digest).decode("ascii")
            if _constant_time_equal(parsed.signature, expected):
                return True

    return False


def webhook_kind_for_event(event_type: str) -> str:
    """Which stored webhook key signs a given directory event type."""
    if event_type.startswith("call.summary"):
        return "call_summary"
    if event_type.startswith("call."):
        return "call"
    if event_type.startswith("message."):
        return "message"
    raise ValueError(f"Unknown event type for key selection: {event_type}")
