"""Peek-lock message receiver: the storage-agnostic façade over a BrokerClient.

Lifecycle:
  CREATED -> (connect) -> ACTIVE -> (dispose) -> DISPOSED.
  Pull mode (receive_batch/confirm/dead_letter) or a single start_pump call may be
  used while ACTIVE; pulling while a pump runs is rejected. DISPOSED is terminal.

In peek-lock mode every delivered message is tracked in an InFlightRegistry keyed by
its id so confirm/dead_letter can settle it without the caller holding the broker's
lock handle. Removal happens before the broker call and is never rolled back.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

from loguru import logger

from receiver.app.constants import CONVERSION_ERROR_REASON, ReceiverState
from receiver.app.core import SERVICE_NAME
from receiver.app.domain.errors import (
    BrokerConnectionError,
    BrokerError,
    ConversionError,
    InvalidStateError,
)
from receiver.app.domain.inflight_registry import InFlightRegistry
from receiver.app.domain.models import (
    DEFAULT_AUTO_RENEW_TIMEOUT,
    DEFAULT_POLL_TIMEOUT,
    PumpOptions,
    QueueMessage,
    ReceiveMode,
)
from receiver.app.ports.broker_client import BrokerClient
from receiver.app.ports.message_receiver import MessageCallback


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class PeekLockMessageReceiver:
    """MessageReceiver implementation"""

    def __init__(
        self,
        client: BrokerClient,
        *,
        mode: ReceiveMode | str = ReceiveMode.PEEK_LOCK,
        poll_timeout: timedelta = DEFAULT_POLL_TIMEOUT,
    ) -> None:
        self._client = client
        self._mode = ReceiveMode.parse(mode)
        self._poll_timeout = poll_timeout
        self._registry: InFlightRegistry[Any] = InFlightRegistry()
        self._callback: MessageCallback | None = None
        self._state = ReceiverState.CREATED

    @classmethod
    async def open(cls, client: BrokerClient, **kwargs: Any) -> "PeekLockMessageReceiver":
        """Build a receiver and connect it, so the caller only ever sees an ACTIVE one."""
        receiver = cls(client, **kwargs)
        await receiver.connect()
        return receiver

    @property
    def mode(self) -> ReceiveMode:
        return self._mode

    @property
    def state(self) -> ReceiverState:
        return self._state

    @property
    def pump_running(self) -> bool:
        return self._callback is not None

    @property
    def in_flight_count(self) -> int:
        return len(self._registry)

    def is_in_flight(self, message_id: str) -> bool:
        return message_id in self._registry

    def _ensure_active(self, operation: str) -> None:
        if self._state != ReceiverState.ACTIVE:
            raise InvalidStateError(f"cannot {operation}: receiver is {self._state.value}")

    async def connect(self) -> None:
        if self._state != ReceiverState.CREATED:
            raise InvalidStateError(f"cannot connect: receiver is {self._state.value}")
        try:
            await self._client.connect(self._mode)
        except BrokerConnectionError:
            raise
        except Exception as exc:
            raise BrokerConnectionError(f"broker connection failed: {exc}") from exc
        self._state = ReceiverState.ACTIVE
        _log("receiver_active", mode=self._mode.value)

    def _process_and_convert(self, native: Any) -> QueueMessage:
        try:
            message = self._client.to_queue_message(native)
        except ConversionError:
            raise
        except Exception as exc:
            raise ConversionError(f"malformed broker message: {exc}") from exc
        if self._mode == ReceiveMode.PEEK_LOCK:
            self._registry.add(message.id, native)
        return message

    async def _dead_letter_unconvertible(self, native: Any, exc: ConversionError) -> None:
        # Never registered, so nothing else could settle it.
        logger.warning("unconvertible message received: {}", exc)
        if self._mode != ReceiveMode.PEEK_LOCK:
            return
        try:
            await self._client.dead_letter(native, CONVERSION_ERROR_REASON, str(exc))
        except Exception as dl_exc:
            logger.warning("dead-letter of unconvertible message failed: {}", dl_exc)

    async def receive_batch(self, count: int) -> list[QueueMessage]:
        """Pull up to `count` messages without blocking beyond the poll timeout.

        Every native message is converted. Unconvertible ones are dead-lettered (peek-lock)
        and ConversionError is raised after the rest are tracked, with the good ones in
        `converted`.
        """
        self._ensure_active("receive_batch")
        if self._callback is not None:
            raise InvalidStateError("cannot receive_batch while a message pump is running")
        if count <= 0:
            return []

        try:
            batch = await self._client.receive_batch(count, self._poll_timeout)
        except Exception as exc:
            raise BrokerError(f"receive failed: {exc}") from exc
        if not batch:
            return []

        messages: list[QueueMessage] = []
        failures: list[Exception] = []
        for native in batch:
            try:
                messages.append(self._process_and_convert(native))
            except ConversionError as exc:
                failures.append(exc)
                await self._dead_letter_unconvertible(native, exc)

        _log("batch_received", requested=count, received=len(messages), failed=len(failures))
        if failures:
            raise ConversionError(
                f"{len(failures)} of {len(batch)} messages could not be converted",
                converted=messages,
                failures=failures,
            )
        return messages

    async def dead_letter(self, message: QueueMessage, reason: str, description: str) -> None:
        self._ensure_active("dead_letter")
        if self._mode != ReceiveMode.PEEK_LOCK:
            return

        native = self._registry.pop(message.id)
        if native is None:
            return

        try:
            await self._client.dead_letter(native, reason, description)
        except Exception as exc:
            raise BrokerError(f"dead-letter failed for message {message.id}: {exc}") from exc
        _log("message_dead_lettered", message_id=message.id, reason=reason)

    async def confirm(self, message: QueueMessage) -> None:
        """Call at the end when done with the message."""
        self._ensure_active("confirm")
        if self._mode != ReceiveMode.PEEK_LOCK:
            return

        native = self._registry.pop(message.id)
        if native is None:
            return

        try:
            await self._client.complete(native)
        except Exception as exc:
            raise BrokerError(f"complete failed for message {message.id}: {exc}") from exc
        _log("message_confirmed", message_id=message.id)

    async def start_pump(self, callback: MessageCallback | None) -> None:
        """Start push delivery: no auto-complete, 1 minute lease renewal, 1 concurrent call."""
        if callback is None:
            raise InvalidStateError("message pump callback is required")
        self._ensure_active("start_pump")
        if self._callback is not None:
            raise InvalidStateError("message pump already started")

        self._callback = callback
        options = PumpOptions(
            auto_complete=False,
            auto_renew_timeout=DEFAULT_AUTO_RENEW_TIMEOUT,
            max_concurrent_calls=1,
        )
        try:
            await self._client.subscribe(options, self._on_message)
        except Exception as exc:
            self._callback = None
            raise BrokerError(f"subscribe failed: {exc}") from exc
        _log("pump_started", mode=self._mode.value)

    async def _on_message(self, native: Any) -> None:
        callback = self._callback
        if callback is None or self._state != ReceiverState.ACTIVE:
            return

        try:
            message = self._process_and_convert(native)
        except ConversionError as exc:
            await self._dead_letter_unconvertible(native, exc)
            return

        try:
            await callback(message)
        except Exception as exc:
            # The pump has no caller to raise into; the message stays in flight.
            logger.exception("message pump callback failed: {}", exc)
            _log("pump_callback_failed", message_id=message.id)

    async def dispose(self) -> None:
        """Close the broker connection (which stops the pump). Safe to call repeatedly."""
        if self._state == ReceiverState.DISPOSED:
            return
        self._state = ReceiverState.DISPOSED
        self._callback = None
        try:
            await self._client.close()
        except Exception as exc:
            logger.warning("broker client close failed: {}", exc)
        released = self._registry.clear()
        _log("receiver_disposed", released=len(released))

    async def __aenter__(self) -> "PeekLockMessageReceiver":
        if self._state == ReceiverState.CREATED:
            await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()
