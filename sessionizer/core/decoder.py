# ==============================================================================
# Event Decoder - Pure Domain Logic
# ==============================================================================
"""
Turns raw Kafka message bodies into validated ClickEvents.

decode_event() never raises for bad input. It returns either Decoded or
Rejected, and the caller decides what to do with a rejection (log it, count
it, dead-letter it) without interrupting the stream.

Idempotency keys: when a payload has no event_id, a deterministic key is
derived from (session_id, ts, event_name) so a redelivered message maps to
the same stored row. Synthesis can be disabled, in which case events
without a key are stored by plain append.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from sessionizer.core.models import ClickEvent

REQUIRED_EVENT_FIELDS = ("ts", "user_id", "session_id", "event_name")

# Longest body excerpt kept on a rejection
PREVIEW_CHARS = 200


@dataclass(frozen=True)
class Decoded:
    """A message that decoded into a valid event."""

    event: ClickEvent
    synthesized_key: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    """A message that could not be decoded."""

    reason: str
    preview: str = ""

    @property
    def ok(self) -> bool:
        return False


DecodeResult = Decoded | Rejected


def synthesize_event_id(event: ClickEvent) -> str:
    """
    Derive a deterministic idempotency key for an event without event_id.

    The timestamp is the normalized UTC form, so "Z" and "+00:00" spellings
    of the same instant produce the same key.
    """
    material = f"{event.session_id}|{event.ts.isoformat()}|{event.event_name}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def body_preview(body: bytes | str | None) -> str:
    """Printable excerpt of a message body for logs and rejections."""
    if body is None:
        return ""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return body[:PREVIEW_CHARS]


def _describe(error: ValidationError) -> str:
    problems = []
    for err in error.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "payload"
        problems.append(f"{field}: {err.get('msg')}")
    return "; ".join(problems)


def decode_payload(payload: Any, synthesize_key: bool = True) -> DecodeResult:
    """
    Validate an already-parsed payload.

    Args:
        payload: Parsed JSON value
        synthesize_key: Derive event_id when the payload has none

    Returns:
        Decoded or Rejected
    """
    if not isinstance(payload, dict):
        return Rejected(f"payload must be a JSON object, got {type(payload).__name__}")

    missing = [name for name in REQUIRED_EVENT_FIELDS if payload.get(name) is None]
    if missing:
        return Rejected(f"missing required fields: {', '.join(missing)}")

    try:
        event = ClickEvent(**{**payload, "raw_payload": payload})
    except ValidationError as e:
        return Rejected(f"invalid fields: {_describe(e)}")

    if event.event_id is None and synthesize_key:
        event = event.model_copy(update={"event_id": synthesize_event_id(event)})
        return Decoded(event, synthesized_key=True)
    return Decoded(event)


def decode_event(body: bytes | str | None, synthesize_key: bool = True) -> DecodeResult:
    """
    Decode a raw message body.

    Args:
        body: Message value as delivered by the broker
        synthesize_key: Derive event_id when the payload has none

    Returns:
        Decoded with a validated event, or Rejected with the reason
    """
    if body is None or len(body) == 0:
        return Rejected("empty message body")

    try:
        text = body.decode("utf-8") if isinstance(body, bytes) else body
        payload = json.loads(text)
    except UnicodeDecodeError:
        return Rejected("message body is not valid UTF-8", body_preview(body))
    except json.JSONDecodeError as e:
        return Rejected(f"malformed JSON: {e.msg} at position {e.pos}", body_preview(body))

    result = decode_payload(payload, synthesize_key=synthesize_key)
    if isinstance(result, Rejected):
        return Rejected(result.reason, body_preview(body))
    return result
