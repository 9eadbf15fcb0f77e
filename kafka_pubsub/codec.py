"""Channel codec: maps (channel, payload) onto Kafka records and back.

Two encodings exist and producer and consumer must agree on one:

* header mode: ``value`` is the JSON payload, the channel travels in a
  ``channel`` header. The channel is read without touching ``value``, and
  listeners receive the raw bytes.
* envelope mode (default): ``value`` is ``{"channel": ..., "payload": ...}``.
  Records without a channel field are routed to the channel named like the
  topic, which lets plain Kafka producers feed subscribers directly.
"""

import json
import time
from typing import Any, Optional, Tuple

from kafka_pubsub.errors import DecodeError
from kafka_pubsub.message import WireMessage

CHANNEL_HEADER = "channel"
CHANNEL_FIELD = "channel"
PAYLOAD_FIELD = "payload"


def serialise(obj: Any) -> bytes:
    return json.dumps(obj).encode("utf-8")


def decode_payload(raw: bytes) -> Any:
    """Deserialize a JSON body. Header-mode listeners call this themselves."""
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"malformed message body: {e}") from e


def envelope(channel: str, payload: Any, use_headers: bool) -> Any:
    """Return the object that is serialised into ``value``."""
    if use_headers:
        return payload
    return {CHANNEL_FIELD: channel, PAYLOAD_FIELD: payload}


def encode(
    channel: str,
    payload: Any,
    use_headers: bool,
    key: Optional[bytes] = None,
    timestamp: Optional[int] = None,
) -> WireMessage:
    """Build the WireMessage for a publish. Raises TypeError for non-JSON payloads."""
    headers = None
    if use_headers:
        headers = {CHANNEL_HEADER: channel.encode("utf-8")}
    return WireMessage(
        value=serialise(envelope(channel, payload, use_headers)),
        key=key,
        headers=headers,
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
    )


def decode_channel(
    message: WireMessage, use_headers: bool, default_channel: str
) -> Tuple[str, Any]:
    """Return (channel, body).

    In header mode the body is the untouched ``value`` bytes. In envelope
    mode the value has to be parsed to find the channel, so the body is the
    parsed payload.
    """
    if use_headers:
        raw_channel = message.header(CHANNEL_HEADER)
        if raw_channel is None:
            raise DecodeError("missing 'channel' header")
        try:
            channel = raw_channel.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"'channel' header is not UTF-8: {e}") from e
        return channel, message.value

    parsed = decode_payload(message.value)
    if isinstance(parsed, dict) and parsed.get(CHANNEL_FIELD):
        channel = parsed[CHANNEL_FIELD]
        if not isinstance(channel, str):
            raise DecodeError(f"channel must be a string, got {type(channel).__name__}")
        return channel, parsed.get(PAYLOAD_FIELD)

    # No channel abstraction; the whole record belongs to the topic.
    return default_channel, parsed


def decode(message: WireMessage, use_headers: bool, default_channel: str) -> Tuple[str, Any]:
    """Fully decode a message into (channel, payload)."""
    channel, body = decode_channel(message, use_headers, default_channel)
    if use_headers:
        body = decode_payload(body)
    return channel, body
