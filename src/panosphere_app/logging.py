"""Logging configuration helpers.

All modules log through loguru's shared ``logger``. Entry points call
:func:`configure_logging` once; the CLI passes ``"DEBUG"`` for ``--verbose``
so capture-gate transitions and per-frame stitch decisions become visible.
"""
from __future__ import annotations

from loguru import logger

_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}"


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's sinks with one stdout sink filtered at ``level`` (case-insensitive)."""
    logger.remove()
    logger.add(sink=lambda msg: print(msg, end=""), level=level.upper(), format=_FORMAT)
