"""Exception types raised by the connect core.

Only lightweight, **data-carrying** exceptions live here so that CLI/web
layers can transform them into user-facing messages.  None of them stores a
token secret.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:  # pragma: no cover
    from sapo_connect.core.models import ClockOffset


class NetworkErrorKind(str, enum.Enum):
    """Connectivity classification attached to :class:`NetworkError`."""

    NO_NETWORK = "no_network"
    SERVER_UNREACHABLE = "server_unreachable"
    OTHER_IO = "other_io"


class ConnectError(Exception):
    """Base class for every error raised by sapo-connect."""

    code: str = "connect_error"

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload **without secrets**."""
        return {"error": self.code, "message": str(self)}


class ConfigurationError(ConnectError):
    """Mandatory consumer or endpoint configuration is missing."""

    code = "configuration_error"

    def __init__(self, *, missing: Iterable[str], message: str | None = None) -> None:
        self.missing: list[str] = list(missing)
        super().__init__(
            message or f"Missing mandatory configuration: {', '.join(self.missing)}"
        )

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["missing"] = list(self.missing)
        return payload


class ClockSkewError(ConnectError):
    """The local clock is outside the tolerance accepted by the server."""

    code = "clock_skew"

    def __init__(self, offset: "ClockOffset", message: str | None = None) -> None:
        super().__init__(message or "clock skew")
        self.offset = offset

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["delta_millis"] = self.offset.delta_millis
        return payload


class NetworkError(ConnectError):
    """Connectivity failure during an HTTP or UDP step."""

    code = "network_error"

    def __init__(
        self,
        message: str,
        *,
        kind: NetworkErrorKind = NetworkErrorKind.OTHER_IO,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.url = url

    def with_kind(self, kind: NetworkErrorKind) -> "NetworkError":
        """Return a copy of this error reclassified as *kind*."""
        clone = NetworkError(str(self), kind=kind, url=self.url)
        clone.__cause__ = self.__cause__
        return clone

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["kind"] = self.kind.value
        return payload


class ProtocolError(ConnectError):
    """OAuth signature/parameter problem, error status or token mismatch."""

    code = "protocol_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        problem: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        # value of ``oauth_problem`` when the server reports one
        self.problem = problem

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        if self.problem:
            payload["oauth_problem"] = self.problem
        return payload


class MalformedResponseError(ConnectError):
    """A token endpoint answered 2xx with a body we cannot use."""

    code = "malformed_response"


class AuthInvalidError(ConnectError):
    """Stored access credentials are missing or incomplete; log in again."""

    code = "auth_invalid"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "No stored credentials; a new login is required.")


class FlowInProgressError(ConnectError):
    """``start()`` was called while a flow attempt is still running."""

    code = "flow_in_progress"

    def __init__(self, attempt: int) -> None:
        super().__init__(f"Flow attempt {attempt} is still in progress.")
        self.attempt = attempt
