"""Utility functions related to environment variables."""

import logging
import os
from typing import Final

logger = logging.getLogger("sapo-connect.utils.environment")

ENV_PREFIX: Final[str] = "SAPO_CONNECT_"


def env_get(key: str, *, prefix: str = ENV_PREFIX) -> str | None:
    """
    Return ``${prefix}${key}`` stripped of surrounding whitespace.

    Empty strings are reported as ``None`` so callers can treat "set but blank"
    exactly like "unset".
    """
    value = os.getenv(f"{prefix}{key}")
    if value is None:
        return None
    value = value.strip()
    return value or None


def env_float(key: str, *, prefix: str = ENV_PREFIX, default: float) -> float:
    raw = env_get(key, prefix=prefix)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s%s=%r", prefix, key, raw)
        return default


def env_int_set(key: str, *, prefix: str = ENV_PREFIX) -> frozenset[int] | None:
    """
    Parse a comma separated list of integers (e.g. ``"500,503"``).

    Returns ``None`` when the variable is unset so the caller's default applies.
    Tokens that are not integers are skipped with a warning.
    """
    raw = env_get(key, prefix=prefix)
    if raw is None:
        return None
    values: set[int] = set()
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        if token.isdigit():
            values.add(int(token))
        else:
            logger.warning("Ignoring non-integer status %r in %s%s", token, prefix, key)
    return frozenset(values)
