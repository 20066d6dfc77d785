"""Loopback callback endpoint and system-browser collaborator.

Desktop and CLI hosts have no embedded web view that could intercept the
identity server's redirect.  Instead the callback URL points at a tiny
Starlette application bound to the loopback interface:

1. :class:`LoopbackBrowser` starts the application (served by ``uvicorn`` on a
   daemon thread) and opens the authorization page in the system browser.
2. The identity server redirects the browser to the callback route.
3. The handler forwards the callback URL to
   :meth:`~sapo_connect.core.flow.AuthFlowController.on_navigation`, waits a
   bounded time for the outcome and renders a small HTML page.

SECURITY NOTE
-------------
• The verifier and tokens carried by the callback are never logged.
• The server binds to the host named in the callback URL; configure a
  loopback address (``http://127.0.0.1:<port>/<path>``).
"""

from __future__ import annotations

import logging
import threading
import webbrowser
from typing import TYPE_CHECKING, Callable
from urllib.parse import urlsplit

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from sapo_connect.core.models import OutcomeKind

if TYPE_CHECKING:  # pragma: no cover
    from sapo_connect.core.flow import AuthFlowController

_LOG = logging.getLogger("sapo-connect.servers.callback")

OUTCOME_WAIT_SECONDS = 30.0


def _html_page(title: str, body: str, status: int = 200) -> HTMLResponse:
    """Return a tiny success / error HTML page."""
    content = (
        "<!doctype html><html lang='en'>"
        "<head><meta charset='utf-8'><title>"
        f"{title}</title></head><body><h1>{title}</h1><p>{body}</p></body></html>"
    )
    return HTMLResponse(content, status_code=status)


def build_callback_app(
    controller: "AuthFlowController",
    *,
    outcome_wait: float = OUTCOME_WAIT_SECONDS,
) -> Starlette:
    """Return an application serving the callback path of ``controller.config``."""
    callback_url = controller.config.callback_url
    path = urlsplit(callback_url).path or "/"

    async def _callback(request: Request) -> Response:  # noqa: D401
        if "oauth_token" not in request.query_params:
            return _html_page("Missing parameters", "oauth_token missing", 400)

        # Rebuilt from the configured URL so that host aliases still match.
        url = f"{callback_url}?{request.url.query}"
        if not controller.on_navigation(url):
            return _html_page("Unexpected request", "This is not a login callback.", 404)

        outcome = await run_in_threadpool(controller.wait, outcome_wait)
        if outcome is None:
            _LOG.info("Callback received; login still in progress.")
            return _html_page(
                "Authorization received",
                "The login is still being completed. You may close this window.",
            )
        if outcome.kind is OutcomeKind.SUCCESS:
            _LOG.info("Login completed through the loopback callback.")
            return _html_page("Authorization successful", "You may close this window.")
        _LOG.warning("Login via callback ended with %s", outcome.kind.value)
        return _html_page("Authorization failed", outcome.reason or outcome.kind.value, 400)

    return Starlette(routes=[Route(path, _callback, methods=["GET"])])


class LoopbackBrowser:
    """:class:`~sapo_connect.core.flow.Browser` backed by the system browser.

    The controller must be attached before the flow starts, since the
    controller itself needs the browser at construction time::

        browser = LoopbackBrowser()
        controller = AuthFlowController(config, store=store, browser=browser)
        browser.attach(controller)
    """

    def __init__(
        self,
        *,
        opener: Callable[[str], object] = webbrowser.open,
        outcome_wait: float = OUTCOME_WAIT_SECONDS,
    ) -> None:
        self._opener = opener
        self._outcome_wait = outcome_wait
        self._controller: "AuthFlowController | None" = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    def attach(self, controller: "AuthFlowController") -> None:
        self._controller = controller

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def open(self, url: str) -> None:
        if self._controller is None:
            raise RuntimeError("LoopbackBrowser.attach() must be called before open()")
        self._start_server(self._controller)
        _LOG.info("Opening the authorization page in the system browser.")
        if not self._opener(url):
            # Headless hosts: the user can still copy the link by hand.
            _LOG.warning("No browser available; open this URL manually: %s", url)

    def _start_server(self, controller: "AuthFlowController") -> None:
        if self.running:
            return
        parts = urlsplit(controller.config.callback_url)
        host = parts.hostname or "127.0.0.1"
        port = parts.port or 80
        app = build_callback_app(controller, outcome_wait=self._outcome_wait)
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level="warning")
        )
        self._thread = threading.Thread(
            target=self._server.run, name="sapo-connect-callback", daemon=True
        )
        self._thread.start()
        _LOG.debug("Callback server listening on %s:%s", host, port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
