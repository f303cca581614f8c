"""Receiver composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

from loguru import logger

from receiver.app.application.peek_lock_receiver import PeekLockMessageReceiver
from receiver.app.config.settings import Settings
from receiver.app.core import SERVICE_NAME
from receiver.app.domain.models import ReceiveMode
from receiver.app.infrastructure.messaging.factory import create_broker_client
from receiver.app.ports.broker_client import BrokerClient


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ReceiverDependencies:
    """Holds the wired broker client and receiver and their lifecycle."""

    def __init__(self, *, settings: Settings, broker_client: BrokerClient | None = None) -> None:
        self._settings = settings
        self._broker_client = broker_client
        self._receiver: PeekLockMessageReceiver | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def receiver(self) -> PeekLockMessageReceiver:
        if self._receiver is None:
            raise RuntimeError("receiver is not initialized")
        return self._receiver

    async def connect(self) -> None:
        client = self._broker_client or create_broker_client(self._settings)
        self._receiver = await PeekLockMessageReceiver.open(
            client,
            mode=ReceiveMode.parse(self._settings.receive_mode),
            poll_timeout=timedelta(milliseconds=self._settings.poll_timeout_ms),
        )
        _log("dependencies_connected", backend=self._settings.broker_backend)

    async def close(self) -> None:
        if self._receiver is not None:
            try:
                await self._receiver.dispose()
            except Exception as exc:
                logger.warning("receiver dispose failed: {}", exc)
            self._receiver = None


def create_receiver_dependencies(settings: Settings | None = None) -> ReceiverDependencies:
    return ReceiverDependencies(settings=settings or Settings())


async def create_message_receiver(
    settings: Settings,
    broker_client: BrokerClient | None = None,
) -> PeekLockMessageReceiver:
    """Build a receiver for `settings` and connect it eagerly."""
    deps = ReceiverDependencies(settings=settings, broker_client=broker_client)
    await deps.connect()
    return deps.receiver
