"""Structured logging helpers for connect components.

This module purposefully restricts **which** contextual attributes are attached
to log records in order to avoid accidentally leaking secrets.  All helpers
ONLY inject the following *non-sensitive* fields:

- ``flow_id``  – Identifier of the controller instance (first 6 chars kept)
- ``attempt``  – Login attempt counter of that controller
- ``host``     – Identity server host name

Usage
-----
>>> from sapo_connect.core.log_utils import get_flow_logger
>>> log = get_flow_logger(
...     base_logger_name="sapo-connect.core.flow",
...     flow_id="0f5e2b9a6c1d4e7f",
...     attempt=2,
...     host="id.sapo.pt",
... )
>>> log.info("Requesting token")
INFO sapo-connect.core.flow flow_id=0f5e2b attempt=2 ...

The adapter is a thin wrapper around :class:`logging.LoggerAdapter`.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping


class _FlowLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted flow context into log records."""

    extra_keys = ("flow_id", "attempt", "host")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if k == "flow_id" and extra and extra.get("flow_id"):
                extra_clean[k] = str(extra["flow_id"])[:6]
            elif extra and k in extra and extra[k] is not None:
                extra_clean[k] = extra[k]
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        # merge but do not overwrite call-site provided extras
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        prefix = " ".join(f"{k}={v}" for k, v in self.extra.items())
        return (f"[{prefix}] {msg}" if prefix else msg), kwargs


def get_flow_logger(
    *,
    base_logger_name: str = "sapo-connect.core",
    flow_id: str | None = None,
    attempt: int | None = None,
    host: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with flow context."""
    logger = logging.getLogger(base_logger_name)
    return _FlowLoggerAdapter(
        logger,
        {"flow_id": flow_id, "attempt": attempt, "host": host},
    )
