"""
RabbitMQ broker client: connection lifecycle, batch get, settlement and push consume.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff) -> CONNECTED -> CHANNEL_OPEN ->
  (qos, declare queue and dead-letter queue) -> READY -> (subscribe) -> CONSUMING.
  A failed declare leaves the client in CHANNEL_OPEN.
  On broker disconnect the robust connection restores channel and consumer; we only
  track RECONNECTING for observability.
  On close: CLOSING -> cancel consumer, close channel/connection -> CLOSED.

Peek-lock maps to manual ack (no_ack=False); receive-and-delete to no_ack=True.
Dead-lettering publishes a persistent copy to `<queue><dead_letter_suffix>` with the
reason headers, then acks the original.

Concurrency:
  - RabbitMQ has no "max concurrent calls" option, so push dispatch is guarded by an
    asyncio.Semaphore(options.max_concurrent_calls).
  - A handler holds its slot for at most options.auto_renew_timeout. Past that the slot
    is released and the message is requeued for redelivery, as when a lock lease lapses.
  - close() and subscribe() both acquire _lock, so we never close the channel while
    consume() is in progress.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractIncomingMessage
from loguru import logger

from receiver.app.config.settings import Settings
from receiver.app.core import SERVICE_NAME
from receiver.app.core.backoff import exponential_backoff
from receiver.app.domain.models import PumpOptions, QueueMessage, ReceiveMode
from receiver.app.infrastructure.messaging.rabbitmq.aio_pika_message_converter import to_queue_message
from receiver.app.infrastructure.messaging.rabbitmq.constants import (
    DEAD_LETTER_DESCRIPTION_HEADER,
    DEAD_LETTER_REASON_HEADER,
    ConsumerState,
)


EMPTY_QUEUE_POLL_INTERVAL_SECONDS = 0.05


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class RabbitMQBrokerClient:
    """BrokerClient implementation"""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._state = ConsumerState.DISCONNECTED
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.Channel | None = None
        self._queue: aio_pika.Queue | None = None
        self._lock = asyncio.Lock()
        self._closing = False
        self._no_ack = False
        self._consumer_tag: str | None = None
        self._overrun_tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def dead_letter_queue_name(self) -> str:
        return f"{self._settings.queue_name}{self._settings.dead_letter_suffix}"

    def _set_state(self, state: ConsumerState) -> None:
        self._state = state

    def _build_amqp_url(self) -> str:
        return (
            f"amqp://{self._settings.broker_user}:{self._settings.broker_password}"
            f"@{self._settings.broker_host}:{self._settings.broker_port}/"
        )

    def _register_close_callback(self, connection: aio_pika.RobustConnection) -> None:
        conn = getattr(connection, "connection", connection)
        if callable(getattr(conn, "add_close_callback", None)):
            conn.add_close_callback(self._on_connection_closed)

    def _on_connection_closed(self, *args: Any, **kwargs: Any) -> None:
        if self._closing:
            return
        self._set_state(ConsumerState.RECONNECTING)
        _log("broker_disconnect_detected")

    async def _open_channel_and_declare(self) -> None:
        if not self._connection:
            return
        self._channel = await self._connection.channel()
        self._set_state(ConsumerState.CHANNEL_OPEN)
        await self._channel.set_qos(prefetch_count=self._settings.prefetch_count)
        self._queue = await self._channel.declare_queue(self._settings.queue_name, durable=True)
        await self._channel.declare_queue(self.dead_letter_queue_name, durable=True)
        self._set_state(ConsumerState.READY)

    async def _close_channel_and_connection(self) -> None:
        self._queue = None
        self._consumer_tag = None
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed (continuing to close connection): {}", e)
            self._channel = None
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None

    def _require_queue(self) -> aio_pika.Queue:
        if self._queue is None:
            raise RuntimeError("broker client not connected")
        return self._queue

    async def connect(self, mode: ReceiveMode) -> None:
        self._no_ack = mode == ReceiveMode.RECEIVE_AND_DELETE
        self._set_state(ConsumerState.CONNECTING)
        _log("rmq_connecting", queue=self._settings.queue_name, mode=mode.value)
        attempt = 0
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            attempt += 1
            _log("rmq_connect_attempt", attempt=attempt, delay=delay)
            try:
                self._connection = await aio_pika.connect_robust(self._build_amqp_url())
                self._register_close_callback(self._connection)
                break
            except Exception as e:
                logger.warning("rmq connect failed: {}", e)
                if attempt >= self._settings.max_connection_attempts:
                    _log("rmq_connect_failed", attempt=attempt)
                    self._set_state(ConsumerState.DISCONNECTED)
                    raise
        self._set_state(ConsumerState.CONNECTED)
        _log("rmq_connected")
        await self._open_channel_and_declare()

    async def receive_batch(self, count: int, timeout: timedelta) -> list[AbstractIncomingMessage]:
        # basic.get answers immediately when the queue is empty, so an empty queue is
        # re-polled until `timeout` elapses; once a message arrives we drain and return.
        queue = self._require_queue()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout.total_seconds()
        messages: list[AbstractIncomingMessage] = []
        while len(messages) < count:
            message = await queue.get(
                no_ack=self._no_ack,
                fail=False,
                timeout=self._settings.rpc_timeout_seconds,
            )
            if message is not None:
                messages.append(message)
                continue
            remaining = deadline - loop.time()
            if messages or remaining <= 0:
                break
            await asyncio.sleep(min(remaining, EMPTY_QUEUE_POLL_INTERVAL_SECONDS))
        return messages

    async def complete(self, native: AbstractIncomingMessage) -> None:
        await native.ack()

    async def dead_letter(self, native: AbstractIncomingMessage, reason: str, description: str) -> None:
        headers = dict(native.headers or {})
        headers[DEAD_LETTER_REASON_HEADER] = reason
        headers[DEAD_LETTER_DESCRIPTION_HEADER] = description
        copy = Message(
            native.body,
            headers=headers,
            message_id=native.message_id,
            correlation_id=native.correlation_id,
            content_type=native.content_type,
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        async with self._lock:
            if self._channel is None:
                raise RuntimeError("broker client not connected")
            await self._channel.default_exchange.publish(copy, routing_key=self.dead_letter_queue_name)
        await native.ack()

    def to_queue_message(self, native: AbstractIncomingMessage) -> QueueMessage:
        return to_queue_message(native)

    async def subscribe(
        self,
        options: PumpOptions,
        handler: Callable[[Any], Awaitable[None]],
    ) -> None:
        semaphore = asyncio.Semaphore(options.max_concurrent_calls)
        lease_seconds = options.auto_renew_timeout.total_seconds()

        async def on_message(raw_message: AbstractIncomingMessage) -> None:
            await self._dispatch(raw_message, handler, semaphore, lease_seconds, options.auto_complete)

        async with self._lock:
            queue = self._require_queue()
            self._consumer_tag = await queue.consume(on_message, no_ack=self._no_ack)
        self._set_state(ConsumerState.CONSUMING)
        _log("rmq_consuming", consumer_tag=self._consumer_tag)

    async def _dispatch(
        self,
        raw_message: AbstractIncomingMessage,
        handler: Callable[[Any], Awaitable[None]],
        semaphore: asyncio.Semaphore,
        lease_seconds: float,
        auto_complete: bool,
    ) -> None:
        async with semaphore:
            task = asyncio.ensure_future(handler(raw_message))
            done, _ = await asyncio.wait({task}, timeout=lease_seconds)
            if task not in done:
                _log("pump_lease_expired", delivery_tag=raw_message.delivery_tag)
                self._overrun_tasks.add(task)
                task.add_done_callback(self._overrun_tasks.discard)
                if not self._no_ack and not raw_message.processed:
                    try:
                        await raw_message.nack(requeue=True)
                    except Exception as e:
                        logger.warning("requeue after lease expiry failed: {}", e)
                return

        try:
            task.result()
        except Exception as e:
            logger.exception("pump handler failed: {}", e)
            return
        if auto_complete and not self._no_ack and not raw_message.processed:
            await raw_message.ack()

    async def close(self) -> None:
        self._closing = True
        self._set_state(ConsumerState.CLOSING)
        _log("broker_client_shutdown")
        async with self._lock:
            if self._queue is not None and self._consumer_tag is not None:
                try:
                    await self._queue.cancel(self._consumer_tag)
                except Exception as e:
                    logger.warning("consumer cancel failed: {}", e)
            await self._close_channel_and_connection()
        self._set_state(ConsumerState.CLOSED)
