"""RabbitMQ broker client lifecycle states and dead-letter header names."""
from enum import Enum


class ConsumerState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CHANNEL_OPEN = "CHANNEL_OPEN"
    READY = "READY"
    CONSUMING = "CONSUMING"
    RECONNECTING = "RECONNECTING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


DEAD_LETTER_REASON_HEADER = "DeadLetterReason"
DEAD_LETTER_DESCRIPTION_HEADER = "DeadLetterErrorDescription"
