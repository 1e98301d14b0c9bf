"""
Shared fixtures for the flags service tests.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.config import FlagsConfig
from shared.metrics import MetricsCollector
from service_flags.app.persistence.sticky import UserPersistentStorageHandler
from service_flags.app.rules.engine import Evaluator
from service_flags.app.rules.hashing import clear_hash_memo

from .helpers import InMemoryStorage, StaticStore


@pytest.fixture(autouse=True)
def _reset_hash_memo():
    yield
    clear_hash_memo()


@pytest.fixture
def flags_config():
    """Network-enabled config; tests replace the fetcher so nothing leaves the process."""
    return FlagsConfig(
        server_secret="secret-test",
        api_url="https://flags.test/v1",
        local_mode=False,
        bootstrap_values=None,
        data_adapter_url=None,
        persistent_storage_url=None,
    )


@pytest.fixture
def local_config():
    return FlagsConfig(local_mode=True, bootstrap_values=None, data_adapter_url=None,
                       persistent_storage_url=None)


@pytest.fixture
def metrics():
    return MetricsCollector("flags-test")


@pytest.fixture
def mock_fetcher():
    """SpecsFetcher double with empty responses."""
    fetcher = MagicMock()
    fetcher.download_config_specs = AsyncMock(return_value={"has_updates": False})
    fetcher.get_id_lists = AsyncMock(return_value={})
    fetcher.fetch_id_list_range = AsyncMock()
    fetcher.close = AsyncMock()
    return fetcher


@pytest.fixture
def store():
    return StaticStore()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def evaluator(store, metrics):
    return Evaluator(store, metrics=metrics)


@pytest.fixture
def sticky_evaluator(store, storage, metrics):
    return Evaluator(store, persistent_storage=UserPersistentStorageHandler(storage, metrics), metrics=metrics)
