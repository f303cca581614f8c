from __future__ import annotations

from datetime import timedelta

import pytest

from receiver.app.composition import ReceiverDependencies, create_message_receiver
from receiver.app.config.settings import Settings
from receiver.app.constants import ReceiverState
from receiver.app.domain.models import ReceiveMode
from receiver.app.infrastructure.messaging.factory import create_broker_client
from receiver.app.infrastructure.messaging.inmemory.in_memory_broker_client import InMemoryBrokerClient
from receiver.app.infrastructure.messaging.rabbitmq.rabbitmq_broker_client import RabbitMQBrokerClient

_ENV = {
    "BROKER_HOST": "rabbitmq",
    "BROKER_PORT": "5672",
    "BROKER_USER": "guest",
    "BROKER_PASSWORD": "guest",
    "QUEUE_NAME": "orders",
}


@pytest.fixture()
def env_settings(monkeypatch) -> Settings:
    for key, value in _ENV.items():
        monkeypatch.setenv(key, value)
    return Settings(_env_file=None)


def test_settings_defaults_from_env(env_settings):
    assert env_settings.broker_port == 5672
    assert env_settings.receive_mode == "peek_lock"
    assert env_settings.broker_backend == "rabbitmq"
    assert env_settings.poll_timeout_ms == 1
    assert env_settings.dead_letter_suffix == ".deadletter"
    assert "batch_size" not in Settings.model_fields


def test_factory_selects_backend(settings):
    assert isinstance(create_broker_client(settings), RabbitMQBrokerClient)

    settings.broker_backend = " InMemory "
    assert isinstance(create_broker_client(settings), InMemoryBrokerClient)


def test_factory_rejects_unknown_backend(settings):
    settings.broker_backend = "kafka"

    with pytest.raises(ValueError, match="Unsupported broker backend"):
        create_broker_client(settings)


@pytest.mark.asyncio
async def test_create_message_receiver_connects_eagerly(settings, inmemory_client):
    settings.receive_mode = "receive_and_delete"
    settings.poll_timeout_ms = 20

    receiver = await create_message_receiver(settings, broker_client=inmemory_client)

    assert receiver.state == ReceiverState.ACTIVE
    assert receiver.mode == ReceiveMode.RECEIVE_AND_DELETE
    assert inmemory_client.connected is True
    assert len(await receiver.receive_batch(10)) == 3
    await receiver.dispose()


@pytest.mark.asyncio
async def test_dependencies_close_disposes_receiver(settings, inmemory_client):
    deps = ReceiverDependencies(settings=settings, broker_client=inmemory_client)
    await deps.connect()
    receiver = deps.receiver

    await deps.close()

    assert receiver.state == ReceiverState.DISPOSED
    assert inmemory_client.close_calls == 1
    with pytest.raises(RuntimeError, match="not initialized"):
        deps.receiver


@pytest.mark.asyncio
async def test_poll_timeout_bounds_empty_receive(settings):
    client = InMemoryBrokerClient()
    settings.poll_timeout_ms = 5
    receiver = await create_message_receiver(settings, broker_client=client)

    assert await receiver.receive_batch(3) == []
    assert receiver._poll_timeout == timedelta(milliseconds=5)
    await receiver.dispose()
