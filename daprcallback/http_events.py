"""Decoding of CloudEvents envelopes delivered to HTTP topic routes."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Optional, Union

from .common import (
    ServiceError,
    Subscription,
    SubscriptionResponse,
    SubscriptionStatus,
    TopicEvent,
)

_STRING_FIELDS = (
    "id",
    "specversion",
    "type",
    "source",
    "datacontenttype",
    "data_base64",
    "subject",
    "topic",
    "pubsubname",
)
_JSON_WHITESPACE = " \t\r\n"


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON literal: {name}")


def _try_json(data: Union[bytes, str]) -> tuple[bool, Any]:
    try:
        return True, json.loads(data, parse_constant=_reject_constant)
    except ValueError:
        return False, None


def _try_base64(text: str) -> Optional[bytes]:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None


def decode_event_data(
    data: Optional[bytes], data_base64: str, content_type: str
) -> tuple[Any, Optional[bytes]]:
    """Work out an event's payload from its ``data`` and ``data_base64`` fields.

    Returns the decoded value and the raw payload bytes. ``data`` is the raw
    JSON text of the envelope's ``data`` field; a JSON string in it is parsed
    again as JSON, or as base64-encoded JSON, when that succeeds.
    """
    if data:
        raw = bytes(data)
        result: Any = raw
        ok, value = _try_json(raw)
        if ok:
            result = value
            if isinstance(value, str):
                nested_ok, nested = _try_json(value)
                if nested_ok:
                    result = nested
                else:
                    decoded = _try_base64(value)
                    if decoded is not None:
                        decoded_ok, decoded_value = _try_json(decoded)
                        if decoded_ok:
                            result = decoded_value
        return result, raw

    if data_base64:
        decoded = _try_base64(data_base64)
        if decoded is None:
            return None, None
        result = decoded
        if content_type == "application/json":
            ok, value = _try_json(decoded)
            if ok:
                result = value
        return result, decoded

    return None, None


def parse_topic_event(body: Union[bytes, str], subscription: Subscription) -> TopicEvent:
    """Build a TopicEvent from an HTTP request body.

    Raises ServiceError (not retryable) when the body is empty or is not a
    valid CloudEvents JSON envelope; Dapr should drop such messages.
    """
    if not body:
        raise ServiceError("nil content")
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body

    decoder = json.JSONDecoder(parse_constant=_reject_constant)
    try:
        envelope, _ = decoder.raw_decode(text.lstrip(_JSON_WHITESPACE))
    except ValueError as err:
        raise ServiceError(f"invalid event: {err}") from err

    if envelope is None:
        envelope = {}
    if not isinstance(envelope, dict):
        raise ServiceError("invalid event: cloud event must be a JSON object")

    fields = dict.fromkeys(_STRING_FIELDS, "")
    raw_data: Optional[bytes] = None
    for key, value in envelope.items():
        name = key.lower()
        if name == "data":
            raw_data = json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode(
                "utf-8"
            )
        elif name in fields:
            if value is None:
                continue
            if not isinstance(value, str):
                raise ServiceError(f"invalid event: field {key} must be a string")
            fields[name] = value

    pubsub_name = fields["pubsubname"]
    topic = fields["topic"]
    # An envelope without a pub/sub name takes the subscription's pub/sub name as its topic.
    if not pubsub_name:
        topic = subscription.pubsub_name
    if not topic:
        topic = subscription.topic

    data, raw = decode_event_data(raw_data, fields["data_base64"], fields["datacontenttype"])

    return TopicEvent(
        id=fields["id"],
        spec_version=fields["specversion"],
        type=fields["type"],
        source=fields["source"],
        data_content_type=fields["datacontenttype"],
        data=data,
        raw_data=raw,
        data_base64=fields["data_base64"],
        subject=fields["subject"],
        pubsub_name=pubsub_name,
        topic=topic,
    )


def status_body(status: Union[SubscriptionStatus, str]) -> bytes:
    """Encode the subscription response body for ``status`` as JSON followed by a newline."""
    response = SubscriptionResponse(SubscriptionStatus(status))
    return (json.dumps(response.to_dict(), separators=(",", ":")) + "\n").encode("utf-8")