"""Broker client factory: selects implementation from config. Only place that imports concrete clients."""
from __future__ import annotations

from receiver.app.config.settings import Settings
from receiver.app.ports.broker_client import BrokerClient
from receiver.app.infrastructure.messaging.inmemory.in_memory_broker_client import InMemoryBrokerClient
from receiver.app.infrastructure.messaging.rabbitmq.rabbitmq_broker_client import RabbitMQBrokerClient


def create_broker_client(settings: Settings) -> BrokerClient:
    backend = settings.broker_backend.strip().lower()

    if backend == "rabbitmq":
        return RabbitMQBrokerClient(settings)

    if backend == "inmemory":
        return InMemoryBrokerClient()

    raise ValueError(f"Unsupported broker backend: {backend}")
