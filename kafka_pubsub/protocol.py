"""Message shapes for the HTTP and WebSocket gateway."""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ---- Health ----

@dataclass
class HealthResponse:
    """Response for GET /health."""
    uptime_sec: float
    channels: int
    subscriptions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_sec": int(self.uptime_sec),
            "channels": self.channels,
            "subscriptions": self.subscriptions,
        }


@dataclass
class PublishedResponse:
    """Response for POST /publish (202 Accepted)."""
    status: str = "published"
    channel: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def stats_response(channels: Dict[str, int], metrics: Dict[str, Dict[str, int]]) -> Dict[str, Any]:
    """Response for GET /stats."""
    return {"channels": channels, "metrics": metrics}


# ---- WebSocket: Server → Client ----

ERROR_BAD_REQUEST = "BAD_REQUEST"
ERROR_TOPIC_NOT_FOUND = "TOPIC_NOT_FOUND"
ERROR_UNKNOWN_SUBSCRIPTION = "UNKNOWN_SUBSCRIPTION"
ERROR_BROKER_UNAVAILABLE = "BROKER_UNAVAILABLE"
ERROR_INTERNAL = "INTERNAL"


def ws_ts() -> str:
    """Current UTC timestamp in ISO 8601 (e.g. 2025-08-25T10:00:00Z)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ws_ack(
    request_id: Optional[str],
    channel: Optional[str],
    ts: str,
    subscription_id: Optional[int] = None,
) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": "ack", "status": "ok", "ts": ts}
    if request_id is not None:
        out["request_id"] = request_id
    if channel is not None:
        out["channel"] = channel
    if subscription_id is not None:
        out["subscription_id"] = subscription_id
    return out


def ws_event(channel: str, subscription_id: int, payload: Any, ts: str) -> Dict[str, Any]:
    return {
        "type": "event",
        "channel": channel,
        "subscription_id": subscription_id,
        "payload": payload,
        "ts": ts,
    }


def ws_error(request_id: Optional[str], code: str, message: str, ts: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "type": "error",
        "error": {"code": code, "message": message},
        "ts": ts,
    }
    if request_id is not None:
        out["request_id"] = request_id
    return out


def ws_pong(request_id: str, ts: str) -> Dict[str, Any]:
    return {"type": "pong", "request_id": request_id, "ts": ts}
