from __future__ import annotations

import pytest

from receiver.app.infrastructure.messaging.inmemory.in_memory_broker_client import InMemoryBrokerClient
from tests.fakes import FakeBrokerClient, FakeNative


class _Settings:
    broker_user = "guest"
    broker_password = "guest"
    broker_host = "localhost"
    broker_port = 5672
    queue_name = "orders"
    dead_letter_suffix = ".deadletter"
    receive_mode = "peek_lock"
    broker_backend = "rabbitmq"
    prefetch_count = 10
    poll_timeout_ms = 1
    rpc_timeout_seconds = 5.0
    initial_backoff_seconds = 0.0
    max_backoff_seconds = 0.0
    max_connection_attempts = 1
    backoff_multiplier = 2.0


@pytest.fixture()
def settings() -> _Settings:
    return _Settings()


@pytest.fixture()
def fake_client() -> FakeBrokerClient:
    return FakeBrokerClient([FakeNative("m-1"), FakeNative("m-2"), FakeNative("m-3")])


@pytest.fixture()
def inmemory_client() -> InMemoryBrokerClient:
    client = InMemoryBrokerClient()
    client.send(b'{"order": 1}', message_id="order-1", properties={"kind": "created"})
    client.send(b'{"order": 2}', message_id="order-2")
    client.send(b'{"order": 3}', message_id="order-3")
    return client
