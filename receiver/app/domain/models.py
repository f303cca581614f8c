"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

DEFAULT_AUTO_RENEW_TIMEOUT = timedelta(minutes=1)
DEFAULT_POLL_TIMEOUT = timedelta(milliseconds=1)


class ReceiveMode(str, Enum):
    """How the broker treats a message once it is handed to the receiver."""

    PEEK_LOCK = "peek_lock"
    RECEIVE_AND_DELETE = "receive_and_delete"

    @classmethod
    def parse(cls, value: "str | ReceiveMode") -> "ReceiveMode":
        if isinstance(value, ReceiveMode):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValueError(f"Unsupported receive mode: {value}")


@dataclass(frozen=True)
class QueueMessage:
    """Broker-agnostic message handed to callers (value object)."""

    id: str
    content: bytes
    properties: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise TypeError("message.id must be a non-empty str")
        if not isinstance(self.content, (bytes, bytearray)):
            raise TypeError("message.content must be bytes")
        if not isinstance(self.properties, dict):
            raise TypeError("message.properties must be a dict")

    @property
    def text(self) -> str:
        return bytes(self.content).decode("utf-8")

    @staticmethod
    def from_text(
        message_id: str,
        text: str,
        properties: dict[str, str] | None = None,
    ) -> "QueueMessage":
        return QueueMessage(
            id=message_id,
            content=text.encode("utf-8"),
            properties=dict(properties) if properties else {},
        )


@dataclass(frozen=True)
class PumpOptions:
    """Delivery options handed to the broker client when a pump is started."""

    auto_complete: bool = False
    auto_renew_timeout: timedelta = DEFAULT_AUTO_RENEW_TIMEOUT
    max_concurrent_calls: int = 1

    def __post_init__(self) -> None:
        if self.max_concurrent_calls < 1:
            raise ValueError("max_concurrent_calls must be >= 1")
        if self.auto_renew_timeout <= timedelta(0):
            raise ValueError("auto_renew_timeout must be positive")
