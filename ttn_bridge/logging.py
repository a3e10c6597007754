"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty loggers silenced unless network logging is requested.
NETWORK_LOGGERS = ("aiohttp.access", "paho", "ttn_bridge.adapters.mqtt.paho")

LOG_FILE_MAX_BYTES = 1_048_576
LOG_FILE_BACKUPS = 3


def _level(name: Optional[str], default: int = logging.INFO) -> int:
    if not name:
        return default
    return getattr(logging, name.upper(), default)


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_network: bool = False,
    console_level: Optional[str] = None,
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional path for a rotating file handler that receives every record
        at ``level``.
    log_network:
        Keep the MQTT and HTTP library loggers at ``level`` instead of WARNING.
    console_level:
        Raise the console threshold above ``level``; the terminal control
        surface uses this to keep the status block readable while the file
        handler still gets the full log.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    root_level = _level(level)
    logging.basicConfig(level=root_level, format=LOG_FORMAT)
    if console_level is not None:
        for handler in root.handlers:
            handler.setLevel(max(root_level, _level(console_level, root_level)))

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    network_level = root_level if log_network else logging.WARNING
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
