from __future__ import annotations

import logging
import os

from eightball.core.errors import ConfigurationError

# Environment configuration. Values are read once at import time.

APP_ENV = os.getenv("APP_ENV", "development")
APP_NAME = os.getenv("APP_NAME", "8Ball RFID")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

IS_PRODUCTION = APP_ENV == "production"

# Feature flags
DEBUG_MODE = not IS_PRODUCTION
RFID_SIMULATION = os.getenv("ENABLE_RFID_SIMULATION", "").lower() == "true" or not IS_PRODUCTION

# RFID reader defaults
RFID_BINDING = os.getenv("RFID_BINDING", "simulator" if RFID_SIMULATION else "none")  # simulator|none
RFID_TRANSPORT = os.getenv("RFID_TRANSPORT", "usb")  # usb|bluetooth|serial
RFID_CONNECTION_TIMEOUT = float(os.getenv("RFID_CONNECTION_TIMEOUT", "10"))  # seconds
RFID_TAG_REPORT_MODE = os.getenv("RFID_TAG_REPORT_MODE", "immediate")  # immediate|batch
RFID_TRIGGER_MODE = os.getenv("RFID_TRIGGER_MODE", "manual")  # manual|auto
RFID_DUPLICATE_FILTER_MS = int(os.getenv("RFID_DUPLICATE_FILTER_MS", "2000"))
RFID_MAX_TAG_HISTORY = int(os.getenv("RFID_MAX_TAG_HISTORY", "500"))

# Reports
LOW_STOCK_THRESHOLD = float(os.getenv("LOW_STOCK_THRESHOLD", "0.25"))

# Outbox dispatcher
EVENT_POLL_SECONDS = float(os.getenv("EVENT_POLL_SECONDS", "1.0"))

DEV_JWT_SECRET = "dev-secret-change-me"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    # httpx logs every webhook POST at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def validate_environment() -> None:
    """Fail fast on configuration that must never reach production."""
    from eightball.core.security import JWT_SECRET

    if IS_PRODUCTION and JWT_SECRET == DEV_JWT_SECRET:
        raise ConfigurationError("JWT_SECRET must be set in production")
    if IS_PRODUCTION and RFID_BINDING == "simulator":
        raise ConfigurationError("RFID_BINDING=simulator is not allowed in production")

    logging.getLogger(__name__).info(
        "Environment: %s (%s %s), debug=%s, rfid_simulation=%s",
        APP_ENV,
        APP_NAME,
        APP_VERSION,
        DEBUG_MODE,
        RFID_SIMULATION,
    )
