"""Logging setup for the gigsettle backend."""

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

_configured = False


def configure_logging(debug: bool = False) -> None:
    """Configure root logging once. Later calls only adjust the level."""
    global _configured
    level = logging.DEBUG if debug else logging.INFO
    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        _configured = True
    root.setLevel(level)
    # The audit stream is always kept at INFO
    logging.getLogger("gigsettle.audit").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)
