"""Typed, immutable records used by the connect core."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Final

from sapo_connect.core.errors import ConnectError

# Server-side signature validation tolerates five minutes of skew.
MAX_CLOCK_OFFSET_MILLIS: Final[int] = 5 * 60 * 1000


@dataclass(frozen=True, slots=True)
class TokenPair:
    """OAuth token and its secret (request pair or access pair)."""

    token: str
    secret: str = field(repr=False)

    @property
    def is_complete(self) -> bool:
        """True when neither half is missing or empty."""
        return bool(self.token) and bool(self.secret)


@dataclass(frozen=True, slots=True)
class ClockOffset:
    """Result of one NTP exchange."""

    # local clock offset: positive means the local clock is behind the server
    delta_millis: int
    # server receive timestamp, UNIX epoch milliseconds
    server_time_millis: int
    round_trip_millis: int = 0

    def is_within(self, tolerance_millis: int = MAX_CLOCK_OFFSET_MILLIS) -> bool:
        return abs(self.delta_millis) <= tolerance_millis


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    DENIED = "denied"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class FlowOutcome:
    """Terminal result of one login attempt, the only thing a host receives."""

    kind: OutcomeKind
    reason: str | None = None
    error: ConnectError | None = None

    @classmethod
    def success(cls) -> "FlowOutcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def denied(cls) -> "FlowOutcome":
        return cls(OutcomeKind.DENIED, reason="authorization denied by user")

    @classmethod
    def cancelled(cls, reason: str | None = None) -> "FlowOutcome":
        return cls(OutcomeKind.CANCELLED, reason=reason)

    @classmethod
    def failed(cls, error: ConnectError) -> "FlowOutcome":
        return cls(OutcomeKind.ERROR, reason=str(error), error=error)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS
