"""Signed calls to protected resources.

:class:`ProtectedResourceInvoker` loads the stored access pair, signs the
request through :class:`~sapo_connect.core.client.OAuthClient` and, when the
transport fails, asks a :class:`~sapo_connect.core.connectivity.ConnectivityProbe`
what went wrong so the caller gets a precise :class:`NetworkError` kind.

Two layers are offered:

* ``call`` / ``get`` / ``post`` / ``patch`` raise typed exceptions;
* ``execute`` / ``submit`` take a :class:`ServiceRequest` describing a SAPO
  web service call and return a :class:`ServiceResult` that never raises,
  carrying a message suitable for display instead.
"""

from __future__ import annotations

import enum
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Final, Mapping
from urllib.parse import urlencode

from sapo_connect.config import ConnectConfig
from sapo_connect.core.client import OAuthClient
from sapo_connect.core.connectivity import ConnectivityProbe
from sapo_connect.core.errors import (
    AuthInvalidError,
    ConnectError,
    NetworkError,
    NetworkErrorKind,
    ProtocolError,
)
from sapo_connect.core.session import as_repository
from sapo_connect.core.store import CredentialRepository, TokenStore

_LOG = logging.getLogger("sapo-connect.core.invoker")

PARAM_CLIENT_ID: Final[str] = "client_id"
PARAM_JSON_ARG: Final[str] = "jsonArg"

MESSAGE_NO_NETWORK: Final[str] = "No network connection available."
MESSAGE_SERVER_UNREACHABLE: Final[str] = "Unable to reach the server. Please try again later."
MESSAGE_AUTH_INVALID: Final[str] = "Your session is no longer valid. Please log in again."
MESSAGE_AUTH_ERROR: Final[str] = "Authentication error."
MESSAGE_GENERIC: Final[str] = "The request could not be completed."

Dispatcher = Callable[[Callable[[], None]], None]
ResultCallback = Callable[["ServiceResult"], None]


class HttpMethod(str, enum.Enum):
    GET = "GET"
    POST = "POST"
    PATCH = "PATCH"


@dataclass(frozen=True, slots=True)
class ServiceRequest:
    """Description of one web service call."""

    base_url: str
    name: str
    params: Mapping[str, str] = field(default_factory=dict)
    requires_oauth: bool = True
    explicit_json: bool = False
    requires_client_id: bool = False
    method: HttpMethod = HttpMethod.GET
    body: str | None = None
    content_type: str | None = None
    request_code: int = 0

    def url(self, client_id: str | None = None) -> str:
        """``<base><name>?client_id=..&jsonArg=false&<params>``; empty parts omitted."""
        query: list[tuple[str, str]] = []
        if self.requires_client_id and client_id:
            query.append((PARAM_CLIENT_ID, client_id))
        if self.explicit_json:
            query.append((PARAM_JSON_ARG, "false"))
        query.extend(self.params.items())
        url = f"{self.base_url}{self.name}"
        return f"{url}?{urlencode(query)}" if query else url


@dataclass(frozen=True, slots=True)
class ServiceResult:
    request_code: int
    ok: bool
    body: str | None = None
    fail_reason: str | None = None
    error: ConnectError | None = None


def _fail_reason(error: ConnectError) -> str:
    if isinstance(error, AuthInvalidError):
        return MESSAGE_AUTH_INVALID
    if isinstance(error, NetworkError):
        if error.kind is NetworkErrorKind.NO_NETWORK:
            return MESSAGE_NO_NETWORK
        if error.kind is NetworkErrorKind.SERVER_UNREACHABLE:
            return MESSAGE_SERVER_UNREACHABLE
        return MESSAGE_GENERIC
    if isinstance(error, ProtocolError) and error.status_code in (401, 403):
        return MESSAGE_AUTH_ERROR
    return MESSAGE_GENERIC


def _call_inline(fn: Callable[[], None]) -> None:
    fn()


class ProtectedResourceInvoker:
    """Sends requests signed with the stored access pair."""

    def __init__(
        self,
        config: ConnectConfig,
        *,
        store: TokenStore | CredentialRepository,
        client: OAuthClient | None = None,
        probe: ConnectivityProbe | None = None,
        executor: Executor | None = None,
        dispatcher: Dispatcher = _call_inline,
    ) -> None:
        self.config = config
        self.repo = as_repository(store)
        self.client = client or OAuthClient(config)
        self.probe = probe or ConnectivityProbe(
            services_host=config.services_host,
            reachable_statuses=config.reachable_statuses,
        )
        self._executor = executor
        self._dispatch = dispatcher

    # ------------------------------------------------------------------ #
    # Raising API                                                        #
    # ------------------------------------------------------------------ #
    def call(self, method: str, url: str, body: str | None = None, **kwargs) -> str:
        """Send a signed request and return the response body.

        Raises
        ------
        AuthInvalidError
            No complete access pair is stored; nothing is sent.
        NetworkError
            Transport failure, classified as ``NO_NETWORK``,
            ``SERVER_UNREACHABLE`` or ``OTHER_IO``.
        ProtocolError
            The server answered with an error status.
        """
        pair = self.repo.load_access_pair()
        if pair is None:
            _LOG.info("Refusing %s %s: no stored access pair.", method.upper(), url.split("?", 1)[0])
            raise AuthInvalidError()
        try:
            return self.client.invoke(pair.token, pair.secret, method, url, body, **kwargs)
        except NetworkError as exc:
            raise self._classified(exc, url) from exc

    def get(self, url: str) -> str:
        return self.call("GET", url)

    def post(self, url: str, body: str | None = None, **kwargs) -> str:
        return self.call("POST", url, body, **kwargs)

    def patch(self, url: str, body: str | None = None, **kwargs) -> str:
        return self.call("PATCH", url, body, **kwargs)

    # ------------------------------------------------------------------ #
    # Result API                                                         #
    # ------------------------------------------------------------------ #
    def execute(self, request: ServiceRequest) -> ServiceResult:
        """Run *request* and wrap the outcome; connect errors never escape."""
        url = request.url(self.config.client_id)
        headers = {"Content-Type": request.content_type} if request.content_type else None
        _LOG.debug("Executing service request %s %s", request.method.value, url.split("?", 1)[0])
        try:
            if request.requires_oauth:
                body = self.call(request.method.value, url, request.body, headers=headers)
            else:
                try:
                    body = self.client.send_unsigned(
                        request.method.value, url, request.body, headers=headers
                    )
                except NetworkError as exc:
                    raise self._classified(exc, url) from exc
        except ConnectError as exc:
            _LOG.info("Service request %s failed: %s", request.request_code, exc)
            return ServiceResult(
                request_code=request.request_code,
                ok=False,
                fail_reason=_fail_reason(exc),
                error=exc,
            )
        return ServiceResult(request_code=request.request_code, ok=True, body=body)

    def submit(self, request: ServiceRequest, callback: ResultCallback) -> Future:
        """Run :meth:`execute` on the worker and hand the result to *callback*."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="sapo-connect-invoker"
            )

        def task() -> ServiceResult:
            result = self.execute(request)
            self._dispatch(lambda: callback(result))
            return result

        return self._executor.submit(task)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        self.client.close()

    def _classified(self, error: NetworkError, url: str) -> NetworkError:
        kind = self.probe.classify(url)
        _LOG.info("Request to %s failed; connectivity: %s", url.split("?", 1)[0], kind.value)
        return error.with_kind(kind)
