"""Receiver-level constants shared across modules."""
from __future__ import annotations

from enum import Enum


class ReceiverState(str, Enum):
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    DISPOSED = "DISPOSED"


CONVERSION_ERROR_REASON = "ConversionError"
