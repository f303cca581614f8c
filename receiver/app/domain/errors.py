"""Receiver error taxonomy."""
from __future__ import annotations

from typing import Sequence

from receiver.app.domain.models import QueueMessage


class ReceiverError(Exception):
    """Base for all receiver failures."""


class BrokerConnectionError(ReceiverError, ConnectionError):
    """Raised when the broker is unreachable or rejects the credentials."""


class ConversionError(ReceiverError):
    """Raised when a native broker message cannot be converted to a QueueMessage.

    When raised from a batch receive, `converted` holds the messages of that
    batch that did convert (and are tracked as in flight).
    """

    def __init__(
        self,
        message: str,
        *,
        converted: Sequence[QueueMessage] = (),
        failures: Sequence[Exception] = (),
    ) -> None:
        super().__init__(message)
        self.converted: list[QueueMessage] = list(converted)
        self.failures: list[Exception] = list(failures)


class BrokerError(ReceiverError):
    """Raised when the broker rejects a complete or dead-letter call."""


class InvalidStateError(ReceiverError):
    """Raised when an operation is not allowed in the receiver's current state."""
