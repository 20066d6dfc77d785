"""AuthFlowController – the three-legged OAuth 1.0a login state machine.

One controller drives one login at a time::

    IDLE → CHECKING_CLOCK → OBTAINING_REQUEST_TOKEN → AWAITING_USER_AUTHORIZATION
         → CAPTURING_CALLBACK → EXCHANGING_TOKEN → REGISTERING → COMPLETED

Network steps (NTP query, request-token call, access-token call) run on a
single-worker executor so that at most one of them is in flight per
controller.  Their results are handed back through a *dispatcher* – any
callable that schedules a zero-argument function on the coordinating thread
(for instance ``loop.call_soon_threadsafe``).  The default dispatcher runs
the continuation immediately under the controller lock.

Every continuation is tagged with the attempt that scheduled it; results of
an older attempt, and every result after :meth:`AuthFlowController.detach`,
are dropped.

The browser is an external collaborator: the controller calls
``browser.open(authorize_url)`` and expects the host to report navigations
back through :meth:`AuthFlowController.on_navigation`.

No step is retried.  Any failure ends the attempt with an ``ERROR`` outcome
carrying the typed exception; the host decides whether to call
:meth:`AuthFlowController.start` again.
"""

from __future__ import annotations

import enum
import threading
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Protocol, TypeVar
from urllib.parse import parse_qs, quote, urlsplit

from sapo_connect.config import ConnectConfig
from sapo_connect.core.client import OAuthClient
from sapo_connect.core.errors import (
    ClockSkewError,
    ConnectError,
    FlowInProgressError,
    ProtocolError,
)
from sapo_connect.core.log_utils import get_flow_logger
from sapo_connect.core.models import ClockOffset, FlowOutcome, TokenPair
from sapo_connect.core.ntp import ClockSyncChecker, TimeSyncChecker
from sapo_connect.core.session import (
    PostLogoutHook,
    as_repository,
    is_user_logged_in,
    logout,
)
from sapo_connect.core.store import CredentialRepository, TokenStore
from sapo_connect.utils.logging import mask_sensitive

_LOG_NAME = "sapo-connect.core.flow"

T = TypeVar("T")

Dispatcher = Callable[[Callable[[], None]], None]
OutcomeListener = Callable[[FlowOutcome], None]
PostLoginStep = Callable[["Registration"], None]
ClientFactory = Callable[[ConnectConfig], OAuthClient]


class FlowState(str, enum.Enum):
    IDLE = "idle"
    CHECKING_CLOCK = "checking_clock"
    OBTAINING_REQUEST_TOKEN = "obtaining_request_token"
    AWAITING_USER_AUTHORIZATION = "awaiting_user_authorization"
    CAPTURING_CALLBACK = "capturing_callback"
    EXCHANGING_TOKEN = "exchanging_token"
    REGISTERING = "registering"
    COMPLETED = "completed"


class Browser(Protocol):
    """Anything able to show the authorization page to the user."""

    def open(self, url: str) -> None: ...


def _call_inline(fn: Callable[[], None]) -> None:
    fn()


def _wrap_unexpected(exc: Exception) -> ConnectError:
    error = ConnectError(f"unexpected error: {exc}")
    error.__cause__ = exc
    return error


def build_authorize_url(authorize_url: str, request_token: str, callback_url: str) -> str:
    """Return the page the user must visit to approve *request_token*."""
    return (
        f"{authorize_url}?oauth_token={quote(request_token, safe='')}"
        f"&oauth_callback={quote(callback_url, safe='')}"
    )


class Registration:
    """Handle given to the post-login step.

    The login only counts as successful once :meth:`confirm` is called.
    Either method may be called from any thread, at most once.
    """

    def __init__(self, controller: "AuthFlowController", attempt: int) -> None:
        self._controller = controller
        self.attempt = attempt

    def confirm(self) -> None:
        self._controller._post(
            self.attempt, lambda: self._controller._finish_registration(True)
        )

    def decline(self) -> None:
        self._controller._post(
            self.attempt, lambda: self._controller._finish_registration(False)
        )


class AuthFlowController:
    """Orchestrates clock check, token exchange, persistence and outcome."""

    def __init__(
        self,
        config: ConnectConfig,
        *,
        store: TokenStore | CredentialRepository,
        browser: Browser,
        clock_checker: TimeSyncChecker | None = None,
        client_factory: ClientFactory = OAuthClient,
        post_login: PostLoginStep | None = None,
        post_logout: PostLogoutHook | None = None,
        on_complete: OutcomeListener | None = None,
        executor: Executor | None = None,
        dispatcher: Dispatcher = _call_inline,
    ) -> None:
        self.config = config
        self.repo = as_repository(store)
        self.browser = browser
        self.clock_checker = clock_checker or ClockSyncChecker()
        self._client_factory = client_factory
        self._post_login = post_login
        self._post_logout = post_logout
        self._on_complete = on_complete
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="sapo-connect-flow"
        )
        self._dispatch = dispatcher

        self.flow_id = uuid.uuid4().hex
        self._lock = threading.RLock()
        self._done = threading.Event()
        self._state = FlowState.IDLE
        self._attempt = 0
        self._detached = False
        self._outcome: FlowOutcome | None = None
        self._client: OAuthClient | None = None
        self._request_pair: TokenPair | None = None
        self.authorization_url: str | None = None
        self._log = get_flow_logger(base_logger_name=_LOG_NAME, flow_id=self.flow_id)

    # ------------------------------------------------------------------ #
    # Read-only views                                                    #
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def outcome(self) -> FlowOutcome | None:
        return self._outcome

    # ------------------------------------------------------------------ #
    # Public API                                                         #
    # ------------------------------------------------------------------ #
    def start(self) -> int:
        """Begin a new attempt and return its number.

        Raises
        ------
        FlowInProgressError
            If the previous attempt has not reached ``COMPLETED`` yet.
        """
        with self._lock:
            if self._state not in (FlowState.IDLE, FlowState.COMPLETED):
                raise FlowInProgressError(self._attempt)
            self._attempt += 1
            attempt = self._attempt
            self._detached = False
            self._outcome = None
            self._client = None
            self._request_pair = None
            self.authorization_url = None
            self._done = threading.Event()
            self._log = get_flow_logger(
                base_logger_name=_LOG_NAME,
                flow_id=self.flow_id,
                attempt=attempt,
                host=self.config.host,
            )
            self._set_state(FlowState.CHECKING_CLOCK)

        self._submit(attempt, self.clock_checker.check_time_sync, self._after_clock_check)
        return attempt

    def on_navigation(self, url: str) -> bool:
        """Report a URL the browser is about to load.

        Returns True when the URL is the callback or the denial page, in
        which case the browser should not load it.
        """
        attempt = self._attempt
        if url.startswith(self.config.denied_url):
            self._log.debug("Navigation to the denial page detected.")
            self._post(attempt, self._on_denied)
            return True
        if url.startswith(self.config.callback_url):
            self._log.debug("Navigation to the callback URL detected.")
            self._post(attempt, lambda: self._capture_callback(url))
            return True
        return False

    def cancel(self) -> None:
        """The user abandoned the login."""
        self._post(self._attempt, self._on_cancel)

    def detach(self) -> None:
        """The hosting UI went away: drop every pending result delivery."""
        with self._lock:
            self._detached = True
        self._log.debug("Controller detached; pending results will be dropped.")

    def close(self) -> None:
        self.detach()
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def wait(self, timeout: float | None = None) -> FlowOutcome | None:
        """Block until the current attempt completes; ``None`` on timeout."""
        self._done.wait(timeout)
        return self._outcome

    def is_user_logged_in(self) -> bool:
        return is_user_logged_in(self.repo)

    def logout(self) -> None:
        logout(self.repo, self._post_logout)

    # ------------------------------------------------------------------ #
    # Scheduling                                                         #
    # ------------------------------------------------------------------ #
    def _post(self, attempt: int, fn: Callable[[], None]) -> None:
        def guarded() -> None:
            with self._lock:
                if self._detached:
                    self._log.debug("Dropping result: controller detached.")
                    return
                if attempt != self._attempt or self._state is FlowState.COMPLETED:
                    self._log.debug("Dropping stale result for attempt %s.", attempt)
                    return
                try:
                    fn()
                except ConnectError as exc:
                    self._fail(exc)
                except Exception as exc:  # noqa: BLE001 store or collaborator failure
                    self._log.exception("Unexpected failure in %s", self._state.value)
                    self._fail(_wrap_unexpected(exc))

        self._dispatch(guarded)

    def _submit(
        self, attempt: int, work: Callable[[], T], then: Callable[[T], None]
    ) -> None:
        def task() -> None:
            try:
                result = work()
            except ConnectError as exc:
                self._post(attempt, lambda error=exc: self._fail(error))
            except Exception as exc:  # noqa: BLE001 mapped to an ERROR outcome
                self._log.exception("Unexpected failure in %s", self._state.value)
                error = _wrap_unexpected(exc)
                self._post(attempt, lambda: self._fail(error))
            else:
                self._post(attempt, lambda: then(result))

        self._executor.submit(task)

    # ------------------------------------------------------------------ #
    # Transitions (always called with the lock held)                     #
    # ------------------------------------------------------------------ #
    def _set_state(self, state: FlowState) -> None:
        self._log.debug("%s -> %s", self._state.value, state.value)
        self._state = state

    def _after_clock_check(self, offset: ClockOffset | None) -> None:
        if offset is None:
            self._log.warning("Clock check unavailable; proceeding anyway.")
        elif not self.clock_checker.is_within_acceptable_offset(offset):
            self._log.warning("Local clock is off by %sms; aborting login.", offset.delta_millis)
            self._fail(ClockSkewError(offset))
            return

        self._set_state(FlowState.OBTAINING_REQUEST_TOKEN)
        client = self._client = self._client_factory(self.config)
        callback_url = self.config.callback_url
        self._submit(
            self._attempt,
            lambda: client.get_request_token(callback_url),
            self._after_request_token,
        )

    def _after_request_token(self, pair: TokenPair) -> None:
        self._request_pair = pair
        self.repo.save_request_pair(pair)
        url = build_authorize_url(self.config.authorize_url, pair.token, self.config.callback_url)
        self.authorization_url = url
        self._set_state(FlowState.AWAITING_USER_AUTHORIZATION)
        self._log.info(
            "Awaiting user authorization for request token=%s", mask_sensitive(pair.token, 6)
        )
        try:
            self.browser.open(url)
        except Exception as exc:  # noqa: BLE001 external collaborator
            self._log.exception("Browser failed to open the authorization page")
            error = ConnectError(f"unable to open the authorization page: {exc}")
            error.__cause__ = exc
            self._fail(error)

    def _on_denied(self) -> None:
        if self._state is not FlowState.AWAITING_USER_AUTHORIZATION:
            self._log.debug("Ignoring denial while %s", self._state.value)
            return
        self._log.info("User denied the authorization request.")
        self._complete(FlowOutcome.denied())

    def _capture_callback(self, url: str) -> None:
        if self._state is not FlowState.AWAITING_USER_AUTHORIZATION:
            self._log.debug("Ignoring callback while %s", self._state.value)
            return
        self._set_state(FlowState.CAPTURING_CALLBACK)

        query = parse_qs(urlsplit(url).query)
        token = (query.get("oauth_token") or [""])[0]
        verifier = (query.get("oauth_verifier") or [""])[0]
        pair = self._request_pair or self.repo.load_request_pair()

        if pair is None:
            self._fail(ProtocolError("callback received without a pending request token"))
            return
        if token != pair.token:
            self._log.warning(
                "Callback token=%s does not match request token=%s",
                mask_sensitive(token, 6),
                mask_sensitive(pair.token, 6),
            )
            self._fail(ProtocolError("callback oauth_token does not match the request token"))
            return
        if not verifier:
            self._fail(ProtocolError("callback carries no oauth_verifier"))
            return

        self._set_state(FlowState.EXCHANGING_TOKEN)
        client = self._client or self._client_factory(self.config)
        self._client = client
        self._submit(
            self._attempt,
            lambda: client.get_access_token(pair.token, pair.secret, verifier),
            self._after_access_token,
        )

    def _after_access_token(self, pair: TokenPair) -> None:
        # flag off before the two-key write so a half-written pair never counts
        self.repo.set_registered(False)
        self.repo.save_access_pair(pair)
        self.repo.clear_request_pair()
        self._request_pair = None
        self._set_state(FlowState.REGISTERING)

        if self._post_login is None:
            self.repo.set_registered(True)
            self._complete(FlowOutcome.success())
            return

        try:
            self._post_login(Registration(self, self._attempt))
        except Exception as exc:  # noqa: BLE001 host supplied hook
            self._log.exception("Post-login step failed")
            logout(self.repo, self._post_logout)
            error = ConnectError(f"post-login step failed: {exc}")
            error.__cause__ = exc
            self._fail(error)

    def _finish_registration(self, confirmed: bool) -> None:
        if self._state is not FlowState.REGISTERING:
            self._log.debug("Ignoring registration answer while %s", self._state.value)
            return
        if confirmed:
            self.repo.set_registered(True)
            self._complete(FlowOutcome.success())
        else:
            logout(self.repo, self._post_logout)
            self._complete(FlowOutcome.cancelled("registration incomplete"))

    def _on_cancel(self) -> None:
        if self._state is FlowState.IDLE:
            return
        if self._state is FlowState.REGISTERING:
            logout(self.repo, self._post_logout)
        self._complete(FlowOutcome.cancelled("cancelled by user"))

    def _fail(self, error: ConnectError) -> None:
        self._log.warning("Login failed while %s: %s", self._state.value, error)
        self._complete(FlowOutcome.failed(error))

    def _complete(self, outcome: FlowOutcome) -> None:
        if self._state is FlowState.COMPLETED:
            return
        try:
            self.repo.clear_request_pair()
        except Exception:  # noqa: BLE001 the outcome must still be delivered
            self._log.exception("Unable to clear the request token")
        self._request_pair = None
        if self._client is not None:
            self._client.close()
            self._client = None
        self._outcome = outcome
        self._set_state(FlowState.COMPLETED)
        self._log.info("Login finished: %s", outcome.kind.value)
        self._done.set()
        if self._on_complete is not None:
            self._on_complete(outcome)
