"""Startup-time helpers for safe config logging."""

from creatorpay.common.config import Settings
from creatorpay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_config(source: Settings, fields: list[str]) -> dict[str, str]:
    """Return selected settings as strings, masking secret-like fields."""

    config: dict[str, str] = {"service": source.service_name}
    for field in fields:
        value = getattr(source, field, None)
        if value is None or value == "":
            config[field] = "<unset>"
        elif any(marker in field for marker in SECRET_MARKERS):
            config[field] = "<redacted>"
        else:
            config[field] = str(value)
    return config


def log_startup_config(source: Settings, fields: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    logger.info("startup_config=%s", redacted_config(source, fields))
