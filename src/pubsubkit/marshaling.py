"""Payload encoding for outbound messages."""

import json
from typing import Any

from pubsubkit.errors import SerializationError

RAW_TYPES = (bytes, bytearray, memoryview)


def encode_payload(payload: Any) -> bytes:
    """Encode a payload for publishing.

    Raw bytes pass through unchanged; everything else is JSON-encoded.
    Raises SerializationError when the value is not JSON-serializable.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, RAW_TYPES):
        return bytes(payload)
    try:
        return json.dumps(payload).encode("utf-8")
    except (TypeError, ValueError) as e:
        msg = f"cannot encode payload of type {type(payload).__name__}: {e}"
        raise SerializationError(msg) from e


def decode_payload(data: bytes) -> Any:
    """Decode a JSON payload. Raises SerializationError on invalid JSON."""
    try:
        return json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        msg = f"payload is not valid JSON: {e}"
        raise SerializationError(msg) from e
