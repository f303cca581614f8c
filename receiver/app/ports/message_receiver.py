"""Port: storage-agnostic message receiver used by application code."""
from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from receiver.app.domain.models import QueueMessage

MessageCallback = Callable[[QueueMessage], Awaitable[None]]


class MessageReceiver(Protocol):
    """Pull messages in batches or have them pushed; settle each by id."""

    async def receive_batch(self, count: int) -> list[QueueMessage]: ...

    async def confirm(self, message: QueueMessage) -> None: ...

    async def dead_letter(self, message: QueueMessage, reason: str, description: str) -> None: ...

    async def start_pump(self, callback: MessageCallback) -> None: ...

    async def dispose(self) -> None: ...
