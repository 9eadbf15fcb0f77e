"""WireMessage: the physical unit exchanged with the broker."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class WireMessage:
    """A Kafka record as seen by the codec."""

    value: bytes
    key: Optional[bytes] = None
    headers: Optional[Dict[str, bytes]] = None
    timestamp: Optional[int] = None
    topic: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None

    def header(self, name: str) -> Optional[bytes]:
        """Return a header value or None."""
        if not self.headers:
            return None
        return self.headers.get(name)

    def kafka_headers(self) -> Optional[List[Tuple[str, bytes]]]:
        """Headers in the list-of-pairs shape the Kafka client expects."""
        if not self.headers:
            return None
        return list(self.headers.items())

    @classmethod
    def from_record(cls, record: Any) -> "WireMessage":
        """Build from a consumed record. The first occurrence of a header key wins."""
        headers: Dict[str, bytes] = {}
        for name, value in getattr(record, "headers", None) or ():
            headers.setdefault(name, value)
        return cls(
            value=record.value,
            key=record.key,
            headers=headers or None,
            timestamp=record.timestamp,
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
        )

    def to_dict(self) -> dict:
        """Summary for logging."""
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp": self.timestamp,
            "headers": sorted(self.headers) if self.headers else [],
            "size": len(self.value) if self.value is not None else 0,
        }
