"""Wire envelope for integration events.

Every broker message value is one JSON object::

    {
      "eventId":    "<uuid>",
      "tenantId":   "<uuid>",
      "occurredAt": "<ISO-8601 UTC>",
      "type":       "TenantCreatedIntegrationEvent",
      "payload":    { ...type-specific camelCase fields... }
    }

``type`` is resolved through :mod:`emis.integration.schemas`; decoding a
type without a binding is a deserialization failure.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from emis.core.errors import DeserializationError, UnregisteredEventType

from .events import IntegrationEvent
from .schemas import get_event_class, get_topic_for_event

_ENVELOPE_FIELDS = ("eventId", "tenantId", "occurredAt")


@dataclass(frozen=True)
class EnvelopeInfo:
    """Whatever could be read from a message's envelope, for dead letters."""

    event_type: str | None = None
    event_id: str | None = None
    tenant_id: str | None = None


def encode(event: IntegrationEvent) -> str:
    """Serialize *event* to its envelope JSON string.

    Raises:
        UnregisteredEventType: The event's type has no topic binding.
    """
    # Refuse to serialize anything that could never be routed.
    get_topic_for_event(event)

    body = event.model_dump(mode="json", by_alias=True)
    envelope: dict[str, Any] = {name: body.pop(name) for name in _ENVELOPE_FIELDS}
    envelope["type"] = type(event).__name__
    envelope["payload"] = body
    return json.dumps(envelope, separators=(",", ":"))


def decode(raw: str | bytes) -> IntegrationEvent:
    """Parse an envelope back into its typed integration event.

    Raises:
        DeserializationError: Malformed JSON, missing envelope fields,
            unregistered type, or a payload that fails validation.
    """
    envelope = _load(raw)

    missing = [name for name in (*_ENVELOPE_FIELDS, "type", "payload") if name not in envelope]
    if missing:
        raise DeserializationError(f"Envelope missing fields: {', '.join(missing)}")

    payload = envelope["payload"]
    if not isinstance(payload, dict):
        raise DeserializationError("Envelope payload is not an object")

    try:
        event_cls = get_event_class(str(envelope["type"]))
    except UnregisteredEventType as exc:
        raise DeserializationError(str(exc)) from exc

    data = {**payload, **{name: envelope[name] for name in _ENVELOPE_FIELDS}}
    try:
        return event_cls.model_validate(data)
    except ValidationError as exc:
        raise DeserializationError(
            f"Invalid {event_cls.__name__} payload: {exc.error_count()} error(s)"
        ) from exc


def describe(raw: str | bytes) -> EnvelopeInfo:
    """Best-effort read of the envelope header fields; never raises."""
    try:
        envelope = _load(raw)
    except DeserializationError:
        return EnvelopeInfo()

    def _str(name: str) -> str | None:
        value = envelope.get(name)
        return str(value) if value is not None else None

    return EnvelopeInfo(
        event_type=_str("type"),
        event_id=_str("eventId"),
        tenant_id=_str("tenantId"),
    )


def _load(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DeserializationError("Message value is not UTF-8") from exc
    try:
        envelope = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise DeserializationError(f"Message value is not JSON: {exc}") from exc
    if not isinstance(envelope, dict):
        raise DeserializationError("Envelope is not a JSON object")
    return envelope
