"""Logged-in checks and logout.

A user counts as logged in only when a complete access pair is stored **and**
the registration flag is set; the flag is written last by the flow controller,
after any post-login step confirmed the registration.
"""

from __future__ import annotations

import logging
from typing import Callable

from sapo_connect.core.store import CredentialRepository, TokenStore

_LOG = logging.getLogger("sapo-connect.core.session")

PostLogoutHook = Callable[[], None]


def as_repository(store: TokenStore | CredentialRepository) -> CredentialRepository:
    """Accept either a raw store or an existing repository."""
    if isinstance(store, CredentialRepository):
        return store
    return CredentialRepository(store)


def get_sso_token(store: TokenStore | CredentialRepository) -> str | None:
    """Return the stored access secret, or ``None`` when the pair is incomplete."""
    pair = as_repository(store).load_access_pair()
    return pair.secret if pair else None


def is_user_logged_in(store: TokenStore | CredentialRepository) -> bool:
    repo = as_repository(store)
    return repo.load_access_pair() is not None and repo.is_registered()


def logout(
    store: TokenStore | CredentialRepository,
    post_logout: PostLogoutHook | None = None,
) -> None:
    """Clear every persisted credential, then run the optional host hook."""
    _LOG.info("Logging out: clearing stored credentials.")
    as_repository(store).clear()
    if post_logout is not None:
        post_logout()
