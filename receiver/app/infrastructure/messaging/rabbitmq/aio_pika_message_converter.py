"""Converter: aio_pika incoming message -> domain QueueMessage."""
from __future__ import annotations

from typing import Any

from aio_pika.abc import AbstractIncomingMessage

from receiver.app.domain.errors import ConversionError
from receiver.app.domain.models import QueueMessage


def _stringify_header(key: str, value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ConversionError(f"header {key!r} is not valid utf-8") from exc
    return str(value)


def to_queue_message(message: AbstractIncomingMessage) -> QueueMessage:
    """Use message_id as the id; fall back to the channel-unique delivery tag."""
    message_id = message.message_id
    if not message_id and message.delivery_tag is not None:
        message_id = str(message.delivery_tag)
    if not message_id:
        raise ConversionError("message has neither message_id nor delivery_tag")

    body = message.body
    if not isinstance(body, (bytes, bytearray)):
        raise ConversionError(f"message {message_id} body is not bytes")

    properties = {
        str(key): _stringify_header(str(key), value)
        for key, value in (message.headers or {}).items()
    }
    if message.content_type:
        properties.setdefault("content_type", str(message.content_type))
    if message.correlation_id:
        properties.setdefault("correlation_id", str(message.correlation_id))

    return QueueMessage(id=message_id, content=bytes(body), properties=properties)
