"""Logging helpers: secret masking and CLI logging setup."""

from __future__ import annotations

import logging
import sys
from typing import TextIO


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Return *value* with everything but the first *keep_chars* masked.

    ``None`` and empty values are rendered as ``"<none>"`` so log lines stay
    unambiguous.
    """
    if not value:
        return "<none>"
    if len(value) <= keep_chars:
        return "*" * len(value)
    return value[:keep_chars] + "*" * (len(value) - keep_chars)


def setup_logging(
    level: int = logging.WARNING, stream: TextIO | None = None
) -> logging.Logger:
    """Configure the ``sapo-connect`` logger hierarchy.

    Args:
        level: Logging level applied to the package logger.
        stream: Output stream, stderr by default.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger("sapo-connect")
    logger.setLevel(level)

    # Replace handlers installed by a previous call instead of stacking them.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    logger.addHandler(handler)
    logger.propagate = False
    return logger
