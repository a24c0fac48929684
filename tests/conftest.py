"""
Shared pytest fixtures and configuration for quarry tests.
"""

import pytest

from quarry import FocusManager, OnlineManager, QueryClient, notify_manager


@pytest.fixture(autouse=True)
def reset_notify_manager():
    """Reset the global notify manager so queued deliveries never leak between tests."""
    notify_manager._reset()
    yield
    notify_manager._reset()


@pytest.fixture
def focus():
    """A focus manager private to the test."""
    return FocusManager()


@pytest.fixture
def online():
    """An online manager private to the test."""
    return OnlineManager()


@pytest.fixture
def client(focus, online):
    """Provide a fresh QueryClient wired to the test's own managers."""
    return QueryClient(focus_manager=focus, online_manager=online)
