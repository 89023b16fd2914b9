"""Shared pytest fixtures for inboxsync tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from helpers import FakeRowStore  # noqa: E402


@pytest.fixture
def store() -> FakeRowStore:
    return FakeRowStore()


@pytest.fixture(autouse=True)
def _reset_module_singletons():
    """Reset the worker and tasks-client singletons between tests."""
    import inboxsync.api.routes.tasks_messages as tasks_module
    import inboxsync.api.routes.webhooks as webhooks_module

    tasks_module._set_worker(None)
    webhooks_module._tasks_client.clear()
    yield
    tasks_module._set_worker(None)
    webhooks_module._tasks_client.clear()
