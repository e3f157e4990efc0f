from __future__ import annotations

import logging
import sys
from typing import TextIO

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
HANDLER_NAME = "autocoder-tracker-stderr"

# FastMCP logs every request at INFO
NOISY_LOGGERS = ("aiosqlite", "httpx", "httpcore", "mcp.server.lowlevel.server")


def setup_logging(level: str = "INFO", stream: TextIO | None = None) -> logging.Logger:
    """Configure the ``autocoder_tracker`` logger.

    Safe to call more than once: the CLI calls it for every command, and a
    repeat call replaces the handler installed by the previous one.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("autocoder_tracker")
    logger.setLevel(numeric_level)

    for old in [h for h in logger.handlers if h.get_name() == HANDLER_NAME]:
        logger.removeHandler(old)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger
