"""Engine configuration (immutable for the engine's lifetime)."""

import json
import os
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_TRUE_VALUES = ("true", "1", "yes", "on")


class KafkaOptions(BaseModel):
    """Options recognised by KafkaPubSub. camelCase keys are accepted as aliases."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    topic: str
    host: str = "localhost"
    port: Optional[Union[int, str]] = None
    group_id: Optional[str] = None
    global_config: Dict[str, Any] = Field(default_factory=dict)
    topic_config: Dict[str, Any] = Field(default_factory=dict)
    use_headers: bool = False
    key_fun: Optional[Callable[[Any], Union[bytes, str, None]]] = None

    @field_validator("topic", "host")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    def broker_list(self) -> str:
        """Bootstrap address: "host:port", or the host alone when no port is set."""
        if self.port not in (None, ""):
            return f"{self.host}:{self.port}"
        return self.host

    @classmethod
    def from_env(
        cls, prefix: str = "KAFKA_", environ: Optional[Mapping[str, str]] = None, **overrides: Any
    ) -> "KafkaOptions":
        """Build options from environment variables (KAFKA_TOPIC, KAFKA_HOST, ...)."""
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = (env.get(prefix + name) or "").strip()
            return value or None

        data: Dict[str, Any] = {}
        for name, field in (
            ("TOPIC", "topic"),
            ("HOST", "host"),
            ("PORT", "port"),
            ("GROUP_ID", "group_id"),
        ):
            value = get(name)
            if value is not None:
                data[field] = value
        use_headers = get("USE_HEADERS")
        if use_headers is not None:
            data["use_headers"] = use_headers.lower() in _TRUE_VALUES
        for name, field in (("GLOBAL_CONFIG", "global_config"), ("TOPIC_CONFIG", "topic_config")):
            value = get(name)
            if value is not None:
                try:
                    data[field] = json.loads(value)
                except json.JSONDecodeError as e:
                    raise ValueError(f"{prefix}{name} is not valid JSON: {e}") from e
        data.update(overrides)
        return cls(**data)
