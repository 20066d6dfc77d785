"""
Unit tests for AuthFlowController.

Coverage:
* happy path scenario (ck/cs, app://cb, rt1/rs1, v1, at1/as1)
* clock skew aborts before any HTTP call; unavailable clock check fails open
* authorization URL embeds the request token and the encoded callback
* callback token mismatch, missing verifier, denial and cancellation
* post-login registration step (confirm / decline / failure)
* credential store write failures end the attempt and allow a restart
* attempt counter drops stale results; detach drops every delivery
"""

from __future__ import annotations

import pytest
import requests

from connect_fakes import (
    DeferredExecutor,
    FailingTokenStore,
    FakeClockChecker,
    FakeOAuthClient,
    InlineExecutor,
    RecordingBrowser,
    make_config,
)
from sapo_connect.core.errors import (
    ClockSkewError,
    ConnectError,
    FlowInProgressError,
    MalformedResponseError,
    NetworkError,
    ProtocolError,
)
from sapo_connect.core.flow import AuthFlowController, FlowState, Registration, build_authorize_url
from sapo_connect.core.models import ClockOffset, OutcomeKind, TokenPair
from sapo_connect.core.session import is_user_logged_in
from sapo_connect.core.store import (
    REQUEST_SECRET,
    REQUEST_TOKEN,
    USER_REGISTERED,
    USER_SECRET,
    USER_TOKEN,
    CredentialRepository,
    MemoryTokenStore,
)

CALLBACK = "app://cb?oauth_token=rt1&oauth_verifier=v1"
IN_SYNC = ClockOffset(delta_millis=120, server_time_millis=1_700_000_000_000)
SKEWED = ClockOffset(delta_millis=400_000, server_time_millis=1_700_000_000_000)


# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #
class Harness:
    """Controller wired to recording fakes."""

    def __init__(
        self,
        *,
        offset: ClockOffset | None = IN_SYNC,
        client: FakeOAuthClient | None = None,
        browser: RecordingBrowser | None = None,
        executor=None,
        config=None,
        store: MemoryTokenStore | None = None,
        **kwargs,
    ) -> None:
        self.store = store if store is not None else MemoryTokenStore()
        self.checker = FakeClockChecker(offset)
        self.client = client or FakeOAuthClient()
        self.browser = browser or RecordingBrowser()
        self.outcomes: list = []
        self.factory_calls = 0

        def factory(cfg):
            self.factory_calls += 1
            return self.client

        self.controller = AuthFlowController(
            config or make_config(),
            store=self.store,
            browser=self.browser,
            clock_checker=self.checker,
            client_factory=factory,
            on_complete=self.outcomes.append,
            executor=executor or InlineExecutor(),
            **kwargs,
        )

    @property
    def repo(self) -> CredentialRepository:
        return CredentialRepository(self.store)


# --------------------------------------------------------------------------- #
# Scenarios                                                                   #
# --------------------------------------------------------------------------- #
def test_happy_path_scenario() -> None:
    h = Harness(config=make_config(host="host"))

    assert h.controller.start() == 1
    assert h.controller.state is FlowState.AWAITING_USER_AUTHORIZATION
    assert h.browser.opened == ["https://host/authorize?oauth_token=rt1&oauth_callback=app%3A%2F%2Fcb"]
    assert h.controller.authorization_url == h.browser.opened[0]
    assert h.repo.load_request_pair() == TokenPair("rt1", "rs1")

    assert h.controller.on_navigation(CALLBACK) is True

    assert h.client.calls == [
        ("request_token", "app://cb"),
        ("access_token", "rt1", "rs1", "v1"),
    ]
    assert h.store.get(USER_TOKEN) == "at1"
    assert h.store.get(USER_SECRET) == "as1"
    assert h.store.get(USER_REGISTERED) is True
    assert h.store.get(REQUEST_TOKEN) is None
    assert h.store.get(REQUEST_SECRET) is None
    assert h.controller.is_user_logged_in() is True

    assert h.controller.state is FlowState.COMPLETED
    assert h.outcomes == [h.controller.outcome]
    assert h.controller.outcome.kind is OutcomeKind.SUCCESS
    assert h.controller.wait(0) is h.controller.outcome
    assert h.client.closed is True


def test_clock_skew_aborts_without_http_calls() -> None:
    h = Harness(offset=SKEWED)
    h.controller.start()

    outcome = h.controller.outcome
    assert outcome.kind is OutcomeKind.ERROR
    assert isinstance(outcome.error, ClockSkewError)
    assert outcome.reason == "clock skew"
    assert outcome.error.offset.delta_millis == 400_000
    assert h.client.http_calls == 0
    assert h.factory_calls == 0
    assert h.browser.opened == []
    assert h.checker.calls == 1


def test_unavailable_clock_check_fails_open() -> None:
    h = Harness(offset=None)
    h.controller.start()

    assert h.controller.state is FlowState.AWAITING_USER_AUTHORIZATION
    assert h.client.calls == [("request_token", "app://cb")]


# --------------------------------------------------------------------------- #
# Authorization URL                                                           #
# --------------------------------------------------------------------------- #
def test_build_authorize_url_encodes_token_and_callback() -> None:
    url = build_authorize_url("https://id.example.pt/authorize", "a/b+c", "http://127.0.0.1:8765/cb?x=1")
    assert url == (
        "https://id.example.pt/authorize?oauth_token=a%2Fb%2Bc"
        "&oauth_callback=http%3A%2F%2F127.0.0.1%3A8765%2Fcb%3Fx%3D1"
    )


# --------------------------------------------------------------------------- #
# Callback handling                                                           #
# --------------------------------------------------------------------------- #
def test_token_mismatch_ends_in_error() -> None:
    h = Harness()
    h.controller.start()
    h.controller.on_navigation("app://cb?oauth_token=other&oauth_verifier=v1")

    outcome = h.controller.outcome
    assert outcome.kind is OutcomeKind.ERROR
    assert isinstance(outcome.error, ProtocolError)
    assert [c[0] for c in h.client.calls] == ["request_token"]
    assert h.repo.load_request_pair() is None
    assert is_user_logged_in(h.store) is False


def test_missing_verifier_ends_in_error() -> None:
    h = Harness()
    h.controller.start()
    h.controller.on_navigation("app://cb?oauth_token=rt1")

    assert h.controller.outcome.kind is OutcomeKind.ERROR
    assert isinstance(h.controller.outcome.error, ProtocolError)


def test_denial_page_yields_denied() -> None:
    h = Harness()
    h.controller.start()

    assert h.controller.on_navigation("https://id.example.pt/denied?reason=x") is True
    assert h.controller.outcome.kind is OutcomeKind.DENIED
    assert h.controller.outcome.reason == "authorization denied by user"
    assert h.repo.load_request_pair() is None
    assert len(h.client.calls) == 1


def test_other_navigation_is_not_consumed() -> None:
    h = Harness()
    h.controller.start()

    assert h.controller.on_navigation("https://id.example.pt/login?step=2") is False
    assert h.controller.state is FlowState.AWAITING_USER_AUTHORIZATION


def test_second_callback_after_completion_is_ignored() -> None:
    h = Harness()
    h.controller.start()
    h.controller.on_navigation(CALLBACK)
    h.controller.on_navigation(CALLBACK)

    assert len(h.outcomes) == 1
    assert len(h.client.calls) == 2


# --------------------------------------------------------------------------- #
# Failures                                                                    #
# --------------------------------------------------------------------------- #
def test_request_token_network_error() -> None:
    h = Harness(client=FakeOAuthClient(request_pair=NetworkError("down")))
    h.controller.start()

    assert h.controller.outcome.kind is OutcomeKind.ERROR
    assert isinstance(h.controller.outcome.error, NetworkError)
    assert h.browser.opened == []


def test_malformed_access_token_response() -> None:
    h = Harness(client=FakeOAuthClient(access_pair=MalformedResponseError("no pair")))
    h.controller.start()
    h.controller.on_navigation(CALLBACK)

    assert isinstance(h.controller.outcome.error, MalformedResponseError)
    assert h.store.get(USER_TOKEN) is None
    assert h.repo.load_request_pair() is None


def test_unexpected_worker_exception_is_wrapped() -> None:
    h = Harness(client=FakeOAuthClient(request_pair=RuntimeError("bug")))
    h.controller.start()

    error = h.controller.outcome.error
    assert type(error) is ConnectError
    assert isinstance(error.__cause__, RuntimeError)


def test_browser_failure_ends_in_error() -> None:
    h = Harness(browser=RecordingBrowser(error=OSError("no display")))
    h.controller.start()

    assert h.controller.outcome.kind is OutcomeKind.ERROR
    assert isinstance(h.controller.outcome.error.__cause__, OSError)


# --------------------------------------------------------------------------- #
# Registration step                                                           #
# --------------------------------------------------------------------------- #
def test_registration_confirm_sets_flag_last() -> None:
    pending: list[Registration] = []
    h = Harness(post_login=pending.append)
    h.controller.start()
    h.controller.on_navigation(CALLBACK)

    assert h.controller.state is FlowState.REGISTERING
    assert h.repo.load_access_pair() == TokenPair("at1", "as1")
    assert is_user_logged_in(h.store) is False
    assert h.outcomes == []

    pending[0].confirm()

    assert h.controller.outcome.kind is OutcomeKind.SUCCESS
    assert is_user_logged_in(h.store) is True


def test_registration_decline_logs_out() -> None:
    pending: list[Registration] = []
    logged_out: list[bool] = []
    h = Harness(post_login=pending.append, post_logout=lambda: logged_out.append(True))
    h.controller.start()
    h.controller.on_navigation(CALLBACK)
    pending[0].decline()

    assert h.controller.outcome.kind is OutcomeKind.CANCELLED
    assert h.controller.outcome.reason == "registration incomplete"
    assert h.repo.load_access_pair() is None
    assert logged_out == [True]


def test_failing_post_login_step_logs_out() -> None:
    def explode(registration: Registration) -> None:
        raise ValueError("profile service down")

    h = Harness(post_login=explode)
    h.controller.start()
    h.controller.on_navigation(CALLBACK)

    assert h.controller.outcome.kind is OutcomeKind.ERROR
    assert h.repo.load_access_pair() is None
    assert is_user_logged_in(h.store) is False


def test_cancel_while_registering_logs_out() -> None:
    h = Harness(post_login=lambda registration: None)
    h.controller.start()
    h.controller.on_navigation(CALLBACK)
    h.controller.cancel()

    assert h.controller.outcome.kind is OutcomeKind.CANCELLED
    assert h.repo.load_access_pair() is None


# --------------------------------------------------------------------------- #
# Attempts, cancellation, detach                                              #
# --------------------------------------------------------------------------- #
def test_cancel_while_awaiting_user() -> None:
    h = Harness()
    h.controller.start()
    h.controller.cancel()

    assert h.controller.outcome.kind is OutcomeKind.CANCELLED
    assert h.repo.load_request_pair() is None


def test_start_while_running_is_rejected() -> None:
    h = Harness()
    h.controller.start()

    with pytest.raises(FlowInProgressError) as excinfo:
        h.controller.start()
    assert excinfo.value.attempt == 1


def test_stale_results_of_previous_attempt_are_dropped() -> None:
    executor = DeferredExecutor()
    h = Harness(executor=executor)

    h.controller.start()
    h.controller.cancel()
    assert h.controller.start() == 2
    executor.run_all()

    assert h.checker.calls == 2
    assert h.client.calls == [("request_token", "app://cb")]
    assert h.controller.state is FlowState.AWAITING_USER_AUTHORIZATION
    assert [o.kind for o in h.outcomes] == [OutcomeKind.CANCELLED]


def test_detach_drops_pending_deliveries() -> None:
    executor = DeferredExecutor()
    h = Harness(executor=executor)

    h.controller.start()
    h.controller.detach()
    executor.run_all()

    assert h.controller.state is FlowState.CHECKING_CLOCK
    assert h.client.calls == []
    assert h.outcomes == []


def test_results_are_delivered_through_the_dispatcher() -> None:
    queue: list = []
    h = Harness(
        client=FakeOAuthClient(request_pair=NetworkError("down")),
        dispatcher=queue.append,
    )
    h.controller.start()
    assert h.controller.state is FlowState.CHECKING_CLOCK

    while queue:
        queue.pop(0)()

    assert h.controller.outcome.kind is OutcomeKind.ERROR
    assert isinstance(h.controller.outcome.error, NetworkError)


def test_restart_after_failure_uses_fresh_request_token() -> None:
    h = Harness()
    h.controller.start()
    h.controller.on_navigation("app://cb?oauth_token=other&oauth_verifier=v1")

    h.client.request_pair = TokenPair("rt2", "rs2")
    h.controller.start()
    h.controller.on_navigation("app://cb?oauth_token=rt2&oauth_verifier=v2")

    assert h.controller.outcome.kind is OutcomeKind.SUCCESS
    assert h.client.calls[-1] == ("access_token", "rt2", "rs2", "v2")


def test_controller_logout_clears_all_keys() -> None:
    h = Harness()
    h.controller.start()
    h.controller.on_navigation(CALLBACK)
    h.controller.logout()

    snapshot = h.store.snapshot()
    for key in (REQUEST_TOKEN, REQUEST_SECRET, USER_TOKEN, USER_SECRET):
        assert key not in snapshot
    assert h.controller.is_user_logged_in() is False


def test_requests_errors_never_leak_from_worker() -> None:
    h = Harness(client=FakeOAuthClient(request_pair=requests.ConnectionError("raw")))
    h.controller.start()

    assert h.controller.outcome.kind is OutcomeKind.ERROR
    assert isinstance(h.controller.outcome.error, ConnectError)


# --------------------------------------------------------------------------- #
# Credential store failures                                                   #
# --------------------------------------------------------------------------- #
@pytest.mark.parametrize(
    "key", [REQUEST_TOKEN, REQUEST_SECRET, USER_TOKEN, USER_SECRET, USER_REGISTERED]
)
def test_store_write_failure_ends_in_error_and_allows_restart(key: str) -> None:
    h = Harness(store=FailingTokenStore(fail_set={key}))
    h.controller.start()
    h.controller.on_navigation(CALLBACK)

    assert h.controller.state is FlowState.COMPLETED
    assert h.controller.wait(0) is h.controller.outcome
    assert h.controller.outcome.kind is OutcomeKind.ERROR
    assert isinstance(h.controller.outcome.error.__cause__, OSError)
    assert len(h.outcomes) == 1
    assert h.controller.is_user_logged_in() is False
    assert h.repo.load_request_pair() is None

    h.store.heal()
    assert h.controller.start() == 2
    h.controller.on_navigation(CALLBACK)

    assert h.controller.outcome.kind is OutcomeKind.SUCCESS
    assert h.controller.is_user_logged_in() is True


def test_half_written_access_pair_does_not_log_in() -> None:
    h = Harness(store=FailingTokenStore())
    h.controller.start()
    h.controller.on_navigation(CALLBACK)
    assert h.controller.is_user_logged_in() is True

    h.client.request_pair = TokenPair("rt2", "rs2")
    h.client.access_pair = TokenPair("at2", "as2")
    h.store.fail_set.add(USER_SECRET)
    h.controller.start()
    h.controller.on_navigation("app://cb?oauth_token=rt2&oauth_verifier=v2")

    assert h.controller.outcome.kind is OutcomeKind.ERROR
    assert h.store.get(USER_TOKEN) == "at2"
    assert h.store.get(USER_SECRET) == "as1"
    assert h.controller.is_user_logged_in() is False


def test_failure_to_clear_request_pair_still_delivers_outcome() -> None:
    h = Harness(offset=SKEWED, store=FailingTokenStore(fail_remove={REQUEST_TOKEN}))
    h.controller.start()

    assert isinstance(h.controller.outcome.error, ClockSkewError)
    assert h.outcomes == [h.controller.outcome]

    h.store.heal()
    h.checker.offset = IN_SYNC
    h.controller.start()
    assert h.controller.state is FlowState.AWAITING_USER_AUTHORIZATION
