"""Port: broker client wrapped by the receiver. Implementations live in infrastructure."""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Awaitable, Callable, Protocol, Sequence

from receiver.app.domain.models import PumpOptions, QueueMessage, ReceiveMode

NativeHandler = Callable[[Any], Awaitable[None]]


class BrokerClient(Protocol):
    """Broker-specific operations. Native messages are opaque to the receiver."""

    async def connect(self, mode: ReceiveMode) -> None:
        """Open the connection to the configured queue; raise on unreachable broker or bad credentials."""
        ...

    async def receive_batch(self, count: int, timeout: timedelta) -> Sequence[Any] | None:
        """Return up to `count` native messages, waiting at most `timeout`. None or empty when idle."""
        ...

    async def complete(self, native: Any) -> None: ...

    async def dead_letter(self, native: Any, reason: str, description: str) -> None: ...

    async def subscribe(self, options: PumpOptions, handler: NativeHandler) -> None:
        """Start push delivery; at most options.max_concurrent_calls handler calls run at once."""
        ...

    def to_queue_message(self, native: Any) -> QueueMessage:
        """Convert a native message; raise ConversionError when it is malformed."""
        ...

    async def close(self) -> None:
        """Close the connection. Terminates any active subscription."""
        ...
