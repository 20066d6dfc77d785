"""OAuth 1.0a request signing (RFC 5849, HMAC-SHA1).

The identity server only accepts OAuth protocol parameters in the **query
string**, so :meth:`OAuth1Signer.sign_url` returns the request URL with every
``oauth_*`` parameter (signature included) appended to it rather than an
``Authorization`` header.

Nothing in this module logs; signatures and secrets stay out of log records.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Callable, Iterable, Mapping
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

from sapo_connect.core.clock import Clock, default_clock

SIGNATURE_METHOD = "HMAC-SHA1"
OAUTH_VERSION = "1.0"

_DEFAULT_PORTS = {"http": 80, "https": 443}
# characters RFC 3986 allows unescaped in a path, plus existing escapes
_PATH_SAFE = "/%~!$&'()*+,;=:@"


def percent_encode(value: str) -> str:
    """Percent-encode a value according to RFC 3986.

    Encodes all characters except unreserved: A-Z, a-z, 0-9, -, ., _, ~
    """
    return quote(str(value), safe="~")


def generate_nonce() -> str:
    """Generate a cryptographically secure random nonce."""
    return secrets.token_urlsafe(32)


def normalize_url(url: str) -> str:
    """Return the base string URI: lower-case scheme/host, no default port,
    no query, no fragment, path in its percent-encoded form."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    netloc = host if port is None or port == _DEFAULT_PORTS.get(scheme) else f"{host}:{port}"
    return urlunsplit((scheme, netloc, quote(parts.path or "/", safe=_PATH_SAFE), "", ""))


def signature_base_string(
    method: str, url: str, params: Iterable[tuple[str, str]]
) -> str:
    """Build the signature base string per RFC 5849 section 3.4.1.

    Format: HTTP_METHOD&URL&NORMALIZED_PARAMS
    """
    encoded = sorted((percent_encode(k), percent_encode(v)) for k, v in params)
    param_str = "&".join(f"{k}={v}" for k, v in encoded)
    return "&".join(
        [method.upper(), percent_encode(normalize_url(url)), percent_encode(param_str)]
    )


def sign_hmac_sha1(base_string: str, consumer_secret: str, token_secret: str = "") -> str:
    """Sign the base string using HMAC-SHA1.

    Signing key: percent_encode(consumer_secret)&percent_encode(token_secret)
    """
    key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"
    digest = hmac.new(key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


class OAuth1Signer:
    """Signs URLs on behalf of one consumer."""

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        *,
        clock: Clock = default_clock,
        nonce_factory: Callable[[], str] = generate_nonce,
    ) -> None:
        self.consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._clock = clock
        self._nonce_factory = nonce_factory

    def oauth_parameters(
        self, *, token: str | None = None, extra: Mapping[str, str] | None = None
    ) -> dict[str, str]:
        """Return the unsigned protocol parameters for one request."""
        params = {
            "oauth_consumer_key": self.consumer_key,
            "oauth_signature_method": SIGNATURE_METHOD,
            "oauth_timestamp": str(int(self._clock())),
            "oauth_nonce": self._nonce_factory(),
            "oauth_version": OAUTH_VERSION,
        }
        if token:
            params["oauth_token"] = token
        if extra:
            params.update(extra)
        return params

    def sign_url(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        token_secret: str = "",
        extra: Mapping[str, str] | None = None,
    ) -> str:
        """Return *url* with the signed OAuth parameters appended to its query.

        Parameters already present in the query of *url* are part of the
        signature base string and are kept untouched.
        """
        oauth_params = self.oauth_parameters(token=token, extra=extra)
        parts = urlsplit(url)
        query_params = parse_qsl(parts.query, keep_blank_values=True)

        base_string = signature_base_string(
            method, url, [*query_params, *oauth_params.items()]
        )
        oauth_params["oauth_signature"] = sign_hmac_sha1(
            base_string, self._consumer_secret, token_secret
        )

        oauth_query = "&".join(
            f"{percent_encode(k)}={percent_encode(v)}" for k, v in oauth_params.items()
        )
        query = f"{parts.query}&{oauth_query}" if parts.query else oauth_query
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))
