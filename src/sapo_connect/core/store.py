"""Key/value persistence for OAuth credentials.

This module introduces a *narrow* persistence interface
(:class:`TokenStore`), two implementations and a typed view on top of them:

* :class:`MemoryTokenStore` – dict-backed, for tests and throw-away hosts.
* :class:`DiskTokenStore`   – one JSON document per namespace; writes use
  *temp-file + os.replace* under an advisory lock file.
* :class:`CredentialRepository` – the fixed key layout used by the flow
  controller, the invoker and the session helpers.

The store is a plain durable map.  Nothing here is atomic across keys: a
token and its secret are written with two independent ``set`` calls, and
:class:`CredentialRepository` reports a pair with a missing half as absent.

Environment variables
---------------------
SAPO_CONNECT_STORAGE_DIR
    Base directory for :class:`DiskTokenStore`.
    Defaults to ``~/.sapo-connect`` when unset.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from sapo_connect.core.models import TokenPair
from sapo_connect.utils.logging import mask_sensitive

_LOG = logging.getLogger("sapo-connect.core.store")

StoreValue = str | bool

DEFAULT_NAMESPACE: Final[str] = "OAuth"

REQUEST_TOKEN: Final[str] = "request_token"
REQUEST_SECRET: Final[str] = "request_secret"
USER_TOKEN: Final[str] = "user_token"
USER_SECRET: Final[str] = "user_secret"
USER_REGISTERED: Final[str] = "user_registered"

# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def _slug(text: str, max_len: int = 80) -> str:
    """Filesystem-safe slug."""
    text = (text or "").strip().lower()
    text = re.sub(r"[^a-z0-9._-]+", "-", text)
    text = re.sub(r"-{2,}", "-", text).strip("-")
    return text[:max_len] or "default"


def _atomic_write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    os.replace(tmp, path)  # atomic on POSIX


@contextmanager
def _file_lock(lock_path: Path, retries: int = 25, delay: float = 0.2):  # noqa: D401
    """Advisory file lock using ``os.O_EXCL`` temp-file creation."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
            os.close(fd)
            break  # acquired!
        except FileExistsError:
            if attempt == retries:
                raise TimeoutError(f"Could not acquire lock {lock_path}") from None
            time.sleep(delay)
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class TokenStore(Protocol):
    """Minimal namespaced key/value contract."""

    namespace: str

    def get(self, key: str) -> StoreValue | None: ...
    def set(self, key: str, value: StoreValue) -> None: ...
    def remove(self, key: str) -> None: ...


class MemoryTokenStore:
    """In-process :class:`TokenStore`; contents vanish with the process."""

    def __init__(self, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.namespace = namespace
        self._data: dict[str, StoreValue] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> StoreValue | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: StoreValue) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def snapshot(self) -> dict[str, StoreValue]:
        """Return a copy of the stored entries."""
        with self._lock:
            return dict(self._data)


class DiskTokenStore:
    """JSON-file implementation of :class:`TokenStore`."""

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self.namespace = namespace
        self.base_dir = Path(
            base_dir
            or os.getenv("SAPO_CONNECT_STORAGE_DIR")
            or Path.home() / ".sapo-connect"
        ).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self.base_dir / f"{_slug(self.namespace)}.json"

    @property
    def _lock_path(self) -> Path:
        return self.path.with_suffix(".lock")

    def _read(self) -> dict[str, StoreValue]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open(encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError:
            _LOG.warning("Ignoring corrupt credential file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> StoreValue | None:
        return self._read().get(key)

    def set(self, key: str, value: StoreValue) -> None:
        with _file_lock(self._lock_path):
            data = self._read()
            data[key] = value
            _atomic_write(self.path, data)

    def remove(self, key: str) -> None:
        with _file_lock(self._lock_path):
            data = self._read()
            if key in data:
                del data[key]
                _atomic_write(self.path, data)


# --------------------------------------------------------------------------- #
# Typed view                                                                  #
# --------------------------------------------------------------------------- #


class CredentialRepository:
    """Fixed key layout shared by every component that touches credentials."""

    def __init__(self, store: TokenStore) -> None:
        self.store = store

    def _string(self, key: str) -> str | None:
        value = self.store.get(key)
        return value if isinstance(value, str) and value else None

    def _save_pair(self, token_key: str, secret_key: str, pair: TokenPair | None) -> None:
        for key, value in (
            (token_key, pair.token if pair else None),
            (secret_key, pair.secret if pair else None),
        ):
            if value:
                self.store.set(key, value)
            else:
                self.store.remove(key)

    def _load_pair(self, token_key: str, secret_key: str) -> TokenPair | None:
        token, secret = self._string(token_key), self._string(secret_key)
        if not token or not secret:
            return None
        return TokenPair(token=token, secret=secret)

    # ----- request pair ---------------------------------------------------- #
    def save_request_pair(self, pair: TokenPair | None) -> None:
        _LOG.debug(
            "Saving request token=%s", mask_sensitive(pair.token if pair else None, 6)
        )
        self._save_pair(REQUEST_TOKEN, REQUEST_SECRET, pair)

    def load_request_pair(self) -> TokenPair | None:
        return self._load_pair(REQUEST_TOKEN, REQUEST_SECRET)

    def clear_request_pair(self) -> None:
        self._save_pair(REQUEST_TOKEN, REQUEST_SECRET, None)

    # ----- access pair ----------------------------------------------------- #
    def save_access_pair(self, pair: TokenPair | None) -> None:
        _LOG.debug(
            "Saving access token=%s", mask_sensitive(pair.token if pair else None, 6)
        )
        self._save_pair(USER_TOKEN, USER_SECRET, pair)

    def load_access_pair(self) -> TokenPair | None:
        return self._load_pair(USER_TOKEN, USER_SECRET)

    # ----- registration flag ----------------------------------------------- #
    def is_registered(self) -> bool:
        return self.store.get(USER_REGISTERED) is True

    def set_registered(self, registered: bool) -> None:
        self.store.set(USER_REGISTERED, registered)

    # ----- everything ------------------------------------------------------ #
    def clear(self) -> None:
        """Forget the user: flag off, both pairs removed."""
        self.set_registered(False)
        for key in (REQUEST_TOKEN, REQUEST_SECRET, USER_TOKEN, USER_SECRET):
            self.store.remove(key)
