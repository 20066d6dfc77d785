"""HTTP client for the three OAuth 1.0a operations.

:class:`OAuthClient` wraps a :class:`requests.Session` and an
:class:`~sapo_connect.core.signing.OAuth1Signer`:

* ``get_request_token`` – consumer-signed, declares ``oauth_callback``;
* ``get_access_token``  – signed with the request pair, carries the verifier;
* ``invoke``            – signed with the access pair, any method/body.

Failures surface as three distinct categories and are never retried here:

* :class:`~sapo_connect.core.errors.NetworkError` – transport failures;
* :class:`~sapo_connect.core.errors.ProtocolError` – HTTP error statuses,
  including the server's ``oauth_problem`` report when present;
* :class:`~sapo_connect.core.errors.MalformedResponseError` – a token
  endpoint answered 2xx without a usable token pair.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping
from urllib.parse import parse_qsl

import requests

from sapo_connect.config import ConnectConfig
from sapo_connect.core.clock import Clock, default_clock
from sapo_connect.core.errors import MalformedResponseError, NetworkError, ProtocolError
from sapo_connect.core.models import TokenPair
from sapo_connect.core.signing import OAuth1Signer, generate_nonce
from sapo_connect.utils.logging import mask_sensitive

_LOG = logging.getLogger("sapo-connect.core.client")


def _problem_from(resp: Any) -> str | None:
    """Extract ``oauth_problem`` from the body or the WWW-Authenticate header."""
    body_params = dict(parse_qsl(resp.text or "", keep_blank_values=True))
    if body_params.get("oauth_problem"):
        return body_params["oauth_problem"]
    header = (resp.headers or {}).get("WWW-Authenticate", "")
    for item in header.replace("OAuth ", "", 1).split(","):
        key, _, value = item.strip().partition("=")
        if key == "oauth_problem":
            return value.strip('"')
    return None


class OAuthClient:
    """Signs and sends OAuth 1.0a requests for one consumer."""

    def __init__(
        self,
        config: ConnectConfig,
        *,
        session: requests.Session | None = None,
        clock: Clock = default_clock,
        nonce_factory: Callable[[], str] = generate_nonce,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.signer = OAuth1Signer(
            config.consumer_key,
            config.consumer_secret,
            clock=clock,
            nonce_factory=nonce_factory,
        )

    # ------------------------------------------------------------------ #
    # Token endpoints                                                    #
    # ------------------------------------------------------------------ #
    def get_request_token(self, callback_url: str | None = None) -> TokenPair:
        """Obtain a request token, signing with consumer credentials only."""
        url = self.signer.sign_url(
            "POST",
            self.config.request_token_url,
            extra={"oauth_callback": callback_url or self.config.callback_url},
        )
        _LOG.info("Requesting OAuth request token from %s", self.config.request_token_url)
        resp = self._send("POST", url)
        pair = self._token_pair(resp, self.config.request_token_url)
        _LOG.debug("Obtained request token=%s", mask_sensitive(pair.token, 6))
        return pair

    def get_access_token(
        self, request_token: str, request_secret: str, verifier: str
    ) -> TokenPair:
        """Exchange an authorized request token and *verifier* for an access pair."""
        url = self.signer.sign_url(
            "POST",
            self.config.access_token_url,
            token=request_token,
            token_secret=request_secret,
            extra={"oauth_verifier": verifier},
        )
        _LOG.info("Exchanging request token at %s", self.config.access_token_url)
        resp = self._send("POST", url)
        pair = self._token_pair(resp, self.config.access_token_url)
        _LOG.debug("Obtained access token=%s", mask_sensitive(pair.token, 6))
        return pair

    # ------------------------------------------------------------------ #
    # Protected resources                                                #
    # ------------------------------------------------------------------ #
    def invoke(
        self,
        access_token: str,
        access_secret: str,
        method: str,
        url: str,
        body: str | None = None,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Send a signed request and return the response body as text."""
        signed = self.signer.sign_url(
            method, url, token=access_token, token_secret=access_secret
        )
        resp = self._send(method, signed, body=body, headers=headers)
        return resp.text

    def send_unsigned(
        self,
        method: str,
        url: str,
        body: str | None = None,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Send a request without OAuth parameters (public services)."""
        return self._send(method, url, body=body, headers=headers).text

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #
    def _send(
        self,
        method: str,
        url: str,
        *,
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        base_url = url.split("?", 1)[0]
        try:
            resp = self.session.request(
                method.upper(),
                url,
                data=body.encode("utf-8") if body else None,
                headers=dict(headers or {}),
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            _LOG.warning("%s %s failed: %s", method.upper(), base_url, exc.__class__.__name__)
            raise NetworkError(f"{method.upper()} {base_url} failed: {exc}", url=base_url) from exc

        if resp.status_code >= 400:
            problem = _problem_from(resp)
            _LOG.warning(
                "%s %s returned %s (oauth_problem=%s)",
                method.upper(),
                base_url,
                resp.status_code,
                problem or "-",
            )
            raise ProtocolError(
                f"{base_url} returned {resp.status_code}"
                + (f": {problem}" if problem else ""),
                status_code=resp.status_code,
                problem=problem,
            )
        return resp

    @staticmethod
    def _token_pair(resp: Any, endpoint: str) -> TokenPair:
        params = dict(parse_qsl(resp.text or "", keep_blank_values=True))
        pair = TokenPair(
            token=params.get("oauth_token", ""),
            secret=params.get("oauth_token_secret", ""),
        )
        if not pair.is_complete:
            raise MalformedResponseError(f"{endpoint} response has no token pair")
        return pair
