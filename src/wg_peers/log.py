# src/wg_peers/log.py
from __future__ import annotations
import logging
import sys
from typing import Optional, TextIO


MARKERS = {
    logging.DEBUG: "[.]",
    logging.INFO: "[*]",
    logging.WARNING: "[!]",
    logging.ERROR: "[ERROR]",
    logging.CRITICAL: "[ERROR]",
}


class MarkerFormatter(logging.Formatter):
    """Préfixe chaque message avec le marqueur de sévérité du CLI."""

    def format(self, record: logging.LogRecord) -> str:
        marker = MARKERS.get(record.levelno, "[*]")
        return f"{marker} {super().format(record)}"


def setup_logging(verbose: bool = False, stream: Optional[TextIO] = None) -> None:
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(MarkerFormatter("%(message)s"))

    logger = logging.getLogger("wg_peers")
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
