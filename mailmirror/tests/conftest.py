"""
Test configuration.

Uses mongomock-motor as an in-process MongoDB and a temporary archive root.
"""

import pytest
from mongomock_motor import AsyncMongoMockClient

from mailmirror.core.state_store import StateStore
from mailmirror.storage.eml_storage import EmlStorage
from mailmirror.sync.retry import RetryHandler, RetryPolicy
from mailmirror.tests.fakes import FakeMessageSource


TEST_DATABASE = "test_mailmirror"


@pytest.fixture
def mongo_db():
    """Fresh in-memory database per test."""
    client = AsyncMongoMockClient()
    return client[TEST_DATABASE]


@pytest.fixture
def store(mongo_db) -> StateStore:
    return StateStore(mongo_db)


@pytest.fixture
def storage(tmp_path) -> EmlStorage:
    return EmlStorage(tmp_path / "archive")


@pytest.fixture
def source() -> FakeMessageSource:
    return FakeMessageSource()


@pytest.fixture
def no_sleep_retry() -> RetryHandler:
    """Retry handler that never actually waits."""
    async def fake_sleep(_delay):
        return None

    return RetryHandler(RetryPolicy(max_attempts=3, initial_delay_ms=1), sleep=fake_sleep)
