"""Exception taxonomy shared by the RFID subsystem and the data services."""

from __future__ import annotations

from typing import Any


class EightBallError(Exception):
    """Base class for every error raised by this package."""

    status_code = 500

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "detail": self.message, **self.context}


class ConfigurationError(EightBallError):
    pass


# ---- Hardware ----

class HardwareError(EightBallError):
    status_code = 503


class HardwareUnavailable(HardwareError):
    """The host did not inject a usable RFID binding."""


class InitializationError(HardwareError):
    pass


class ConnectionFailed(HardwareError):
    pass


class ConnectionTimeout(HardwareError):
    status_code = 504


class NotConnected(HardwareError):
    status_code = 409


class ReaderCommandError(HardwareError):
    """A vendor command (start/stop inventory, battery query) reported failure."""

    status_code = 502


# ---- Data ----

class ValidationError(EightBallError):
    """Input rejected before any backend call.

    ``errors`` is a list of ``{"field": ..., "message": ...}`` entries.
    """

    status_code = 422

    def __init__(self, message: str = "Validation failed", errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "detail": self.message, "errors": self.errors}

    @classmethod
    def from_pydantic(cls, exc, prefix: str = "") -> "ValidationError":
        errors = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            errors.append({"field": f"{prefix}{loc}" if prefix else loc, "message": err.get("msg", "invalid")})
        message = ", ".join(f"{e['field']}: {e['message']}" for e in errors) or "Validation failed"
        return cls(message, errors)


class DuplicateRfidTag(ValidationError):
    status_code = 409

    def __init__(self, rfid_tags: list[str]):
        tags = ", ".join(rfid_tags)
        super().__init__(
            f"RFID tag already exists in this organization: {tags}",
            [{"field": "rfid_tag", "message": f"{t} already exists"} for t in rfid_tags],
        )
        self.rfid_tags = rfid_tags


class ReconciliationError(EightBallError):
    """Session confirmation failed; the in-memory session is preserved for retry."""

    status_code = 502


class SessionStateError(EightBallError):
    """Session action attempted in a state that does not allow it."""

    status_code = 409
