"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | {side} | %(name)s | %(message)s"

# Transport libraries that log every frame or request at DEBUG/INFO.
NOISY_LOGGERS = (
    "aiohttp.access",
    "aiohttp.client",
    "aiohttp.web",
    "paho",
    "PIL",
)


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_network: bool = False,
    side: str = "-",
) -> None:
    """Configure root logging handlers for one side of the link.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional file to append to in addition to the console.
    log_network:
        Keep relay, websocket and HTTP library logging at the root level.
    side:
        Tag written into every record, usually the role ("operator" or
        "machine"), so logs collected from both ends can be interleaved.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT.format(side=side))
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if not log_network:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
