"""Connect core package.

This namespace hosts the **HTTP-framework-agnostic** building blocks of the
SAPO Connect OAuth 1.0a login:

Sub-modules
-----------
clock
    Test-friendly time abstraction.
errors
    Exception types shared by every component.
models
    Immutable dataclasses (token pairs, clock offsets, flow outcomes).
ntp
    SNTP packet codec and :class:`ClockSyncChecker`.
signing
    OAuth 1.0a HMAC-SHA1 signature primitives.
client
    :class:`OAuthClient` for the request-token, access-token and signed calls.
store
    Credential persistence.
connectivity
    Network failure classification.
session
    Logged-in check and logout.
flow
    :class:`AuthFlowController`, the login state machine.
invoker
    :class:`ProtectedResourceInvoker` for signed service calls.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

Only the configuration-free leaves are re-exported here; import ``client``,
``flow`` and ``invoker`` from their modules.
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .errors import (  # noqa: F401
    AuthInvalidError,
    ClockSkewError,
    ConfigurationError,
    ConnectError,
    FlowInProgressError,
    MalformedResponseError,
    NetworkError,
    NetworkErrorKind,
    ProtocolError,
)
from .models import ClockOffset, FlowOutcome, OutcomeKind, TokenPair  # noqa: F401
from .ntp import ClockSyncChecker  # noqa: F401
from .store import (  # noqa: F401
    CredentialRepository,
    DiskTokenStore,
    MemoryTokenStore,
    TokenStore,
)
from .session import get_sso_token, is_user_logged_in, logout  # noqa: F401
from .log_utils import get_flow_logger  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # errors
    "AuthInvalidError",
    "ClockSkewError",
    "ConfigurationError",
    "ConnectError",
    "FlowInProgressError",
    "MalformedResponseError",
    "NetworkError",
    "NetworkErrorKind",
    "ProtocolError",
    # models
    "ClockOffset",
    "FlowOutcome",
    "OutcomeKind",
    "TokenPair",
    # ntp
    "ClockSyncChecker",
    # store
    "CredentialRepository",
    "DiskTokenStore",
    "MemoryTokenStore",
    "TokenStore",
    # session
    "get_sso_token",
    "is_user_logged_in",
    "logout",
    # logging helpers
    "get_flow_logger",
]
