"""Clock abstraction for testable time handling.

This module defines a `Clock` protocol representing callables that return the
current UNIX timestamp as ``float``.  Time-based logic in the core package
(NTP timestamps, OAuth ``oauth_timestamp`` values) MUST depend on an injected
``Clock`` instance rather than calling ``time.time()`` directly.

Example
-------
>>> from sapo_connect.core.clock import default_clock
>>> isinstance(default_clock(), float)
True
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable protocol returning *seconds* since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Default implementation that delegates to ``time.time()``."""
    return time.time()
