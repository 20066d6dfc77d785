"""sapo-connect command line.

Example host for the connect core: runs the login with the loopback browser,
inspects or clears stored credentials, checks the local clock and performs
signed calls.

Configuration comes from ``SAPO_CONNECT_*`` environment variables (see
:mod:`sapo_connect.config`).  Credentials live in ``SAPO_CONNECT_STORAGE_DIR``
(default ``~/.sapo-connect``).

Exit codes
----------
0  success
1  login failed, denied or cancelled; call failed
2  configuration error

Example
-------
    sapo-connect check-time
    sapo-connect login
    sapo-connect call GET "https://services.sapo.pt/Some/Service?jsonArg=false"
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

from sapo_connect.config import ConnectConfig
from sapo_connect.core.errors import ConfigurationError, ConnectError
from sapo_connect.core.flow import AuthFlowController
from sapo_connect.core.invoker import ProtectedResourceInvoker
from sapo_connect.core.ntp import NTP_SERVER, ClockSyncChecker
from sapo_connect.core.session import is_user_logged_in, logout
from sapo_connect.core.store import DiskTokenStore
from sapo_connect.servers.callback import LoopbackBrowser
from sapo_connect.utils.logging import setup_logging

_LOG = logging.getLogger("sapo-connect.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

LOGIN_TIMEOUT_SECONDS = 300.0


# --------------------------------------------------------------------------- #
# Commands
# --------------------------------------------------------------------------- #
def _store(config: ConnectConfig) -> DiskTokenStore:
    return DiskTokenStore(config.storage_dir)


def _cmd_login(args: argparse.Namespace) -> int:
    config = ConnectConfig.from_env()
    browser = LoopbackBrowser()
    controller = AuthFlowController(config, store=_store(config), browser=browser)
    browser.attach(controller)
    try:
        controller.start()
        print("Waiting for authorization in the browser (Ctrl+C to cancel)...")
        outcome = controller.wait(args.timeout)
        if outcome is None:
            controller.cancel()
            outcome = controller.wait(5)
    except KeyboardInterrupt:
        _LOG.info("Login interrupted by the user.")
        controller.cancel()
        outcome = controller.wait(5)
    finally:
        browser.stop()
        controller.close()

    if outcome is None:
        print("Login did not finish.", file=sys.stderr)
        return EXIT_FAILURE
    if outcome.ok:
        print("Logged in.")
        return EXIT_OK
    if outcome.error is not None:
        print(json.dumps(outcome.error.to_payload()), file=sys.stderr)
    print(f"Login {outcome.kind.value}: {outcome.reason or '-'}", file=sys.stderr)
    return EXIT_FAILURE


def _cmd_logout(args: argparse.Namespace) -> int:
    logout(DiskTokenStore(args.storage_dir))
    print("Logged out.")
    return EXIT_OK


def _cmd_status(args: argparse.Namespace) -> int:
    logged_in = is_user_logged_in(DiskTokenStore(args.storage_dir))
    print("logged in" if logged_in else "not logged in")
    return EXIT_OK if logged_in else EXIT_FAILURE


def _cmd_check_time(args: argparse.Namespace) -> int:
    checker = ClockSyncChecker(args.server)
    offset = checker.check_time_sync()
    if offset is None:
        print("Clock check unavailable.")
        return EXIT_OK
    within = checker.is_within_acceptable_offset(offset)
    print(
        f"offset={offset.delta_millis}ms round_trip={offset.round_trip_millis}ms "
        f"{'OK' if within else 'OUT OF TOLERANCE'}"
    )
    return EXIT_OK if within else EXIT_FAILURE


def _cmd_call(args: argparse.Namespace) -> int:
    config = ConnectConfig.from_env()
    invoker = ProtectedResourceInvoker(config, store=_store(config))
    try:
        body = invoker.call(args.method, args.url, args.body)
    except ConnectError as exc:
        print(json.dumps(exc.to_payload()), file=sys.stderr)
        return EXIT_FAILURE
    finally:
        invoker.close()
    print(body)
    return EXIT_OK


# --------------------------------------------------------------------------- #
# Entry point
# --------------------------------------------------------------------------- #
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sapo-connect", description="SAPO Connect login tool.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Log in through the system browser")
    login.add_argument(
        "--timeout", type=float, default=LOGIN_TIMEOUT_SECONDS, help="Seconds to wait for the user"
    )
    login.set_defaults(func=_cmd_login)

    for name, func, help_text in (
        ("logout", _cmd_logout, "Forget the stored credentials"),
        ("status", _cmd_status, "Report whether a user is logged in"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--storage-dir", default=None, help="Credential directory")
        cmd.set_defaults(func=func)

    check = sub.add_parser("check-time", help="Compare the local clock with NTP")
    check.add_argument("--server", default=NTP_SERVER, help="NTP server")
    check.set_defaults(func=_cmd_check_time)

    call = sub.add_parser("call", help="Send a signed request")
    call.add_argument("method", choices=["GET", "POST", "PATCH"], type=str.upper)
    call.add_argument("url")
    call.add_argument("--body", default=None, help="Request body")
    call.set_defaults(func=_cmd_call)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    setup_logging(level)

    try:
        return args.func(args)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
