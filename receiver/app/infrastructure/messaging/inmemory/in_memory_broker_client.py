"""In-memory broker client for testing and local mode.

Behaves like a peek-lock queue: received messages stay locked (invisible) until they
are completed or dead-lettered. A lock is lost when the pump's lease window lapses or
the client closes; the message then goes back to the head of the queue, and settling
it with the stale handle raises LockLostError.
"""
from __future__ import annotations

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable

from loguru import logger

from receiver.app.core import SERVICE_NAME
from receiver.app.domain.errors import ConversionError
from receiver.app.domain.models import PumpOptions, QueueMessage, ReceiveMode


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class LockLostError(RuntimeError):
    """The delivery's lock is no longer held (lease lapsed or client closed)."""


@dataclass
class InMemoryMessage:
    message_id: str
    body: bytes
    properties: dict[str, Any] = field(default_factory=dict)
    delivery_count: int = 0


@dataclass(frozen=True)
class InMemoryDelivery:
    """Native handle: the message plus the lock token it was delivered under."""

    message: InMemoryMessage
    lock_token: int | None


@dataclass(frozen=True)
class DeadLetteredMessage:
    message: InMemoryMessage
    reason: str
    description: str


class InMemoryBrokerClient:
    def __init__(self, messages: Iterable[InMemoryMessage] = ()) -> None:
        self._pending: deque[InMemoryMessage] = deque(messages)
        self._locked: dict[int, InMemoryMessage] = {}
        self._tokens = itertools.count(1)
        self._available = asyncio.Event()
        self._mode: ReceiveMode | None = None
        self._connected = False
        self._pump_task: asyncio.Task[None] | None = None
        self._dispatch_tasks: set[asyncio.Task[None]] = set()
        self.completed: list[InMemoryMessage] = []
        self.dead_letters: list[DeadLetteredMessage] = []
        self.subscribed_options: PumpOptions | None = None
        # Operation name -> exception raised the next time it is called.
        self.fail_on: dict[str, Exception] = {}
        self.close_calls = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def locked_count(self) -> int:
        return len(self._locked)

    def _maybe_fail(self, operation: str) -> None:
        exc = self.fail_on.pop(operation, None)
        if exc is not None:
            raise exc

    def _require_connected(self) -> None:
        if not self._connected:
            raise RuntimeError("broker client not connected")

    def send(
        self,
        body: bytes | str,
        *,
        message_id: str,
        properties: dict[str, Any] | None = None,
    ) -> InMemoryMessage:
        payload = body.encode("utf-8") if isinstance(body, str) else body
        message = InMemoryMessage(message_id=message_id, body=payload, properties=dict(properties or {}))
        self._pending.append(message)
        self._available.set()
        return message

    async def connect(self, mode: ReceiveMode) -> None:
        self._maybe_fail("connect")
        self._mode = mode
        self._connected = True
        _log("inmemory_connected", mode=mode.value, pending=len(self._pending))

    def _take(self) -> InMemoryDelivery:
        message = self._pending.popleft()
        message.delivery_count += 1
        if self._mode == ReceiveMode.RECEIVE_AND_DELETE:
            return InMemoryDelivery(message=message, lock_token=None)
        token = next(self._tokens)
        self._locked[token] = message
        return InMemoryDelivery(message=message, lock_token=token)

    async def receive_batch(self, count: int, timeout: timedelta) -> list[InMemoryDelivery]:
        self._require_connected()
        self._maybe_fail("receive")
        if not self._pending:
            self._available.clear()
            try:
                await asyncio.wait_for(self._available.wait(), timeout.total_seconds())
            except asyncio.TimeoutError:
                return []
        deliveries: list[InMemoryDelivery] = []
        while self._pending and len(deliveries) < count:
            deliveries.append(self._take())
        return deliveries

    def _unlock(self, delivery: InMemoryDelivery) -> InMemoryMessage:
        if delivery.lock_token is None or delivery.lock_token not in self._locked:
            raise LockLostError(f"lock lost for message {delivery.message.message_id}")
        return self._locked.pop(delivery.lock_token)

    def _release(self, delivery: InMemoryDelivery) -> None:
        if delivery.lock_token is not None and delivery.lock_token in self._locked:
            self._pending.appendleft(self._locked.pop(delivery.lock_token))
            self._available.set()

    async def complete(self, native: InMemoryDelivery) -> None:
        self._require_connected()
        self._maybe_fail("complete")
        self.completed.append(self._unlock(native))

    async def dead_letter(self, native: InMemoryDelivery, reason: str, description: str) -> None:
        self._require_connected()
        self._maybe_fail("dead_letter")
        message = self._unlock(native)
        self.dead_letters.append(DeadLetteredMessage(message=message, reason=reason, description=description))

    def to_queue_message(self, native: InMemoryDelivery) -> QueueMessage:
        message = native.message
        if not message.message_id:
            raise ConversionError("message has no message_id")
        if not isinstance(message.body, (bytes, bytearray)):
            raise ConversionError(f"message {message.message_id} body is not bytes")
        properties = {str(k): "" if v is None else str(v) for k, v in message.properties.items()}
        return QueueMessage(id=message.message_id, content=bytes(message.body), properties=properties)

    async def subscribe(
        self,
        options: PumpOptions,
        handler: Callable[[Any], Awaitable[None]],
    ) -> None:
        self._require_connected()
        self._maybe_fail("subscribe")
        self.subscribed_options = options
        self._pump_task = asyncio.create_task(self._pump(options, handler))

    async def _next_delivery(self) -> InMemoryDelivery:
        while not self._pending:
            self._available.clear()
            await self._available.wait()
        return self._take()

    async def _pump(self, options: PumpOptions, handler: Callable[[Any], Awaitable[None]]) -> None:
        semaphore = asyncio.Semaphore(options.max_concurrent_calls)
        lease_seconds = options.auto_renew_timeout.total_seconds()
        while self._connected:
            await semaphore.acquire()
            try:
                delivery = await self._next_delivery()
            except BaseException:
                semaphore.release()
                raise
            task = asyncio.create_task(
                self._dispatch(delivery, handler, semaphore, lease_seconds, options.auto_complete)
            )
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(
        self,
        delivery: InMemoryDelivery,
        handler: Callable[[Any], Awaitable[None]],
        semaphore: asyncio.Semaphore,
        lease_seconds: float,
        auto_complete: bool,
    ) -> None:
        try:
            task = asyncio.ensure_future(handler(delivery))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)
            done, _ = await asyncio.wait({task}, timeout=lease_seconds)
            if task not in done:
                _log("pump_lease_expired", message_id=delivery.message.message_id)
                self._release(delivery)
                return
            exc = task.exception()
            if exc is not None:
                logger.warning("pump handler failed: {}", exc)
                return
            if auto_complete and delivery.lock_token in self._locked:
                self.completed.append(self._unlock(delivery))
        finally:
            semaphore.release()

    async def wait_idle(self) -> None:
        """Wait until every dispatched handler has returned (tests and local mode)."""
        while self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

    async def close(self) -> None:
        self.close_calls += 1
        self._connected = False
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        self._pump_task = None
        for token in sorted(self._locked, reverse=True):
            self._pending.appendleft(self._locked.pop(token))
        _log("inmemory_closed", pending=len(self._pending))
