"""
Logging setup for the service.

Usage:
    from cl4pdf_backend.logging_config import setup_logging
    setup_logging("INFO")

Modules log through ``logging.getLogger(__name__)``; this only attaches a
single stderr handler to the ``cl4pdf_backend`` namespace.
"""

from __future__ import annotations

import logging
import sys
from typing import Union

LOGGER_NAMESPACE = "cl4pdf_backend"

_configured = False


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure the package logger once; later calls only adjust the level."""
    global _configured
    root = logging.getLogger(LOGGER_NAMESPACE)
    root.setLevel(level)
    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
    _configured = True
