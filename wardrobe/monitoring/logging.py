"""Logging setup for the upload client."""

from __future__ import annotations

import logging

from wardrobe.config.settings import get_settings

# httpx logs every request at INFO; only show that traffic when debugging.
_TRANSPORT_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str | None = None) -> int:
    """Configure the root logger and return the effective level."""

    name = (level or get_settings().log_level).upper()
    resolved = getattr(logging, name, logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    transport_level = resolved if resolved <= logging.DEBUG else logging.WARNING
    for logger_name in _TRANSPORT_LOGGERS:
        logging.getLogger(logger_name).setLevel(transport_level)
    return resolved
