"""Categorized guidance for reader errors shown to operators instead of raw text."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field

from eightball.core.errors import (
    ConnectionFailed,
    ConnectionTimeout,
    HardwareError,
    HardwareUnavailable,
    InitializationError,
    NotConnected,
    ReaderCommandError,
)


class ErrorCategory(str, enum.Enum):
    CONNECTION = "connection"
    HARDWARE = "hardware"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Guidance:
    category: ErrorCategory
    title: str
    description: str
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        return data


GUIDANCE = {
    ErrorCategory.CONNECTION: Guidance(
        ErrorCategory.CONNECTION,
        "RFID Connection Error",
        "Unable to connect to the RFID reader.",
        [
            "Make sure the RFID reader is powered on",
            "Check the USB or Bluetooth connection",
            "Try disconnecting and reconnecting the device",
            "Restart the RFID reader",
        ],
    ),
    ErrorCategory.HARDWARE: Guidance(
        ErrorCategory.HARDWARE,
        "RFID Hardware Error",
        "There was a problem with the RFID hardware.",
        [
            "Check that the RFID reader is properly connected",
            "Make sure the reader drivers are installed",
            "Try using a different USB port",
            "Contact support if the problem persists",
        ],
    ),
    ErrorCategory.PERMISSION: Guidance(
        ErrorCategory.PERMISSION,
        "Permission Error",
        "Access to the RFID reader was denied.",
        [
            "Allow access to the RFID reader when prompted",
            "Check the device permissions on the scan station",
            "Make sure no other application is using the reader",
        ],
    ),
    ErrorCategory.UNKNOWN: Guidance(
        ErrorCategory.UNKNOWN,
        "Unexpected Error",
        "An unexpected error occurred with the RFID scanner.",
        [
            "Reset the scanner and try again",
            "Reconnect the RFID reader",
            "Contact support if the problem persists",
        ],
    ),
}

_KEYWORDS = (
    (ErrorCategory.CONNECTION, ("connection", "connect")),
    (ErrorCategory.HARDWARE, ("hardware", "device", "rfid")),
    (ErrorCategory.PERMISSION, ("permission", "access")),
)

_BY_TYPE = (
    (ConnectionTimeout, ErrorCategory.CONNECTION),
    (ConnectionFailed, ErrorCategory.CONNECTION),
    (NotConnected, ErrorCategory.CONNECTION),
    (HardwareUnavailable, ErrorCategory.HARDWARE),
    (InitializationError, ErrorCategory.HARDWARE),
    (ReaderCommandError, ErrorCategory.HARDWARE),
)


def classify_message(message: str | None) -> ErrorCategory:
    text = (message or "").lower()
    for category, words in _KEYWORDS:
        if any(w in text for w in words):
            return category
    return ErrorCategory.UNKNOWN


def classify_error(error: BaseException | str | None) -> Guidance:
    """Pick guidance by exception type, falling back to keywords in the message."""
    if isinstance(error, HardwareError):
        for exc_type, category in _BY_TYPE:
            if isinstance(error, exc_type):
                return GUIDANCE[category]
        return GUIDANCE[classify_message(error.message)]
    if isinstance(error, BaseException):
        return GUIDANCE[classify_message(str(error))]
    return GUIDANCE[classify_message(error)]
