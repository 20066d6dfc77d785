"""Classification of network failures.

When a request fails with an I/O error the caller wants to tell the user
*why*: is the machine offline, is the service down, or did something else
break?  :class:`ConnectivityProbe` answers that with two cheap checks:

1. resolve a well-known probe host – failure means there is no network;
2. resolve the services host and send ``HEAD`` to the endpoint – no answer,
   or an answer outside the "reachable" status set, means the server is
   unreachable.

Anything else is reported as :attr:`NetworkErrorKind.OTHER_IO`.

The legacy services backend does not implement ``HEAD`` and answers 500,
which the legacy Android client treated as "reachable".  Pass
``reachable_statuses=frozenset({500})`` to keep that behaviour; by default
any HTTP answer counts as reachable.
"""

from __future__ import annotations

import logging
import socket
from typing import Callable, Final
from urllib.parse import urlsplit

import requests

from sapo_connect.core.errors import NetworkErrorKind
from sapo_connect.core.ntp import NTP_SERVER

_LOG = logging.getLogger("sapo-connect.core.connectivity")

DEFAULT_PROBE_HOST: Final[str] = NTP_SERVER
PROBE_TIMEOUT_SECONDS: Final[float] = 6.0


class ConnectivityProbe:
    """Tell "no network" from "server unreachable" from "other I/O"."""

    def __init__(
        self,
        *,
        services_host: str | None = None,
        probe_host: str = DEFAULT_PROBE_HOST,
        session: requests.Session | None = None,
        reachable_statuses: frozenset[int] | None = None,
        timeout: float = PROBE_TIMEOUT_SECONDS,
        resolver: Callable[[str], str] = socket.gethostbyname,
    ) -> None:
        self.services_host = services_host
        self.probe_host = probe_host
        self.session = session or requests.Session()
        self.reachable_statuses = reachable_statuses
        self.timeout = timeout
        self._resolve = resolver

    def _lookup(self, host: str) -> bool:
        try:
            address = self._resolve(host)
        except OSError:
            _LOG.info("Unable to resolve host %s", host)
            return False
        _LOG.debug("Resolved %s to %s", host, address)
        return True

    def network_available(self) -> bool:
        return self._lookup(self.probe_host)

    def server_reachable(self, url: str) -> bool:
        parts = urlsplit(url)
        host = self.services_host or parts.hostname
        if not host or not self._lookup(host):
            return False
        if not parts.scheme or not parts.netloc:
            return False

        endpoint = f"{parts.scheme}://{parts.netloc}{parts.path}"
        try:
            resp = self.session.head(endpoint, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as exc:
            _LOG.debug("HEAD %s failed: %s", endpoint, exc)
            return False

        _LOG.debug("HEAD %s answered %s", endpoint, resp.status_code)
        if self.reachable_statuses is None:
            return True
        return resp.status_code in self.reachable_statuses

    def classify(self, url: str) -> NetworkErrorKind:
        """Return the most specific failure kind for a request to *url*."""
        if not self.network_available():
            _LOG.info("No network connection available.")
            return NetworkErrorKind.NO_NETWORK
        if not self.server_reachable(url):
            _LOG.info("Network is available but the server is not reachable.")
            return NetworkErrorKind.SERVER_UNREACHABLE
        _LOG.info("Network and server are reachable; other I/O error occurred.")
        return NetworkErrorKind.OTHER_IO
