"""Fixtures for the connect core unit tests."""

from __future__ import annotations

import pytest

from connect_fakes import InlineExecutor, make_config
from sapo_connect.config import ConnectConfig
from sapo_connect.core.store import MemoryTokenStore


@pytest.fixture()
def config() -> ConnectConfig:
    return make_config()


@pytest.fixture()
def memory_store() -> MemoryTokenStore:
    return MemoryTokenStore()


@pytest.fixture()
def inline_executor() -> InlineExecutor:
    return InlineExecutor()
