"""Process-wide connect configuration.

:class:`ConnectConfig` is an immutable record built once at startup (usually
through :meth:`ConnectConfig.from_env`) and handed to every component that
needs consumer credentials or server endpoints.

Environment variables
---------------------
Mandatory:

``SAPO_CONNECT_CONSUMER_KEY`` / ``SAPO_CONNECT_CONSUMER_SECRET``
    OAuth consumer credentials.
``SAPO_CONNECT_CALLBACK_URL``
    URL the identity server redirects to after the user approves access.
``SAPO_CONNECT_HOST``
    Host name of the identity server (no scheme), e.g. ``id.sapo.pt``.
``SAPO_CONNECT_REQUEST_TOKEN_PATH`` / ``SAPO_CONNECT_ACCESS_TOKEN_PATH`` /
``SAPO_CONNECT_AUTHORIZE_PATH`` / ``SAPO_CONNECT_DENIED_PATH``
    Endpoint paths on that host.

Optional:

``SAPO_CONNECT_TIMEOUT``
    HTTP timeout in seconds (default 10).
``SAPO_CONNECT_SERVICES_HOST``
    Host probed when classifying network failures (default
    ``services.sapo.pt``).
``SAPO_CONNECT_CLIENT_ID``
    Client id appended to service calls that require one.
``SAPO_CONNECT_REACHABLE_STATUSES``
    Comma separated HEAD status codes that count as "server reachable".
    Unset means any HTTP answer counts.
``SAPO_CONNECT_STORAGE_DIR``
    Directory used by :class:`~sapo_connect.core.store.DiskTokenStore`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from sapo_connect.core.errors import ConfigurationError
from sapo_connect.utils.environment import (
    ENV_PREFIX,
    env_float,
    env_get,
    env_int_set,
)

DEFAULT_TIMEOUT_SECONDS: Final[float] = 10.0
DEFAULT_SERVICES_HOST: Final[str] = "services.sapo.pt"

# field name -> environment key (without prefix)
_MANDATORY: Final[dict[str, str]] = {
    "consumer_key": "CONSUMER_KEY",
    "consumer_secret": "CONSUMER_SECRET",
    "callback_url": "CALLBACK_URL",
    "host": "HOST",
    "request_token_path": "REQUEST_TOKEN_PATH",
    "access_token_path": "ACCESS_TOKEN_PATH",
    "authorize_path": "AUTHORIZE_PATH",
    "denied_path": "DENIED_PATH",
}


@dataclass(frozen=True, slots=True)
class ConnectConfig:
    """Consumer credentials and identity-server endpoints."""

    consumer_key: str
    consumer_secret: str
    callback_url: str
    host: str
    request_token_path: str
    access_token_path: str
    authorize_path: str
    denied_path: str
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    services_host: str = DEFAULT_SERVICES_HOST
    client_id: str | None = None
    # None: any HTTP status returned by a HEAD probe means "reachable"
    reachable_statuses: frozenset[int] | None = None
    storage_dir: str | None = None

    def __post_init__(self) -> None:
        missing = [name for name in _MANDATORY if not getattr(self, name)]
        if missing:
            raise ConfigurationError(missing=missing)

    # ------------------------------------------------------------------ #
    # Derived URLs                                                       #
    # ------------------------------------------------------------------ #
    def _absolute(self, path: str) -> str:
        return f"https://{self.host}{path}"

    @property
    def request_token_url(self) -> str:
        return self._absolute(self.request_token_path)

    @property
    def access_token_url(self) -> str:
        return self._absolute(self.access_token_path)

    @property
    def authorize_url(self) -> str:
        return self._absolute(self.authorize_path)

    @property
    def denied_url(self) -> str:
        return self._absolute(self.denied_path)

    # ------------------------------------------------------------------ #
    # Loading                                                            #
    # ------------------------------------------------------------------ #
    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "ConnectConfig":
        """Build the configuration from ``${prefix}*`` environment variables.

        Raises
        ------
        ConfigurationError
            If any mandatory variable is unset or blank. All missing names
            are reported at once.
        """
        values = {field: env_get(key, prefix=prefix) for field, key in _MANDATORY.items()}
        missing = [f"{prefix}{_MANDATORY[f]}" for f, v in values.items() if not v]
        if missing:
            raise ConfigurationError(missing=missing)

        return cls(
            **values,  # type: ignore[arg-type]
            timeout=env_float("TIMEOUT", prefix=prefix, default=DEFAULT_TIMEOUT_SECONDS),
            services_host=env_get("SERVICES_HOST", prefix=prefix) or DEFAULT_SERVICES_HOST,
            client_id=env_get("CLIENT_ID", prefix=prefix),
            reachable_statuses=env_int_set("REACHABLE_STATUSES", prefix=prefix),
            storage_dir=env_get("STORAGE_DIR", prefix=prefix),
        )
