"""Shared fixtures."""

import pytest

from alertwatch_mcp.models import TestCase, TestCaseResult, TestStatus
from alertwatch_mcp.store import StatusStore


@pytest.fixture
def store(tmp_path):
    """A fresh SQLite-backed store."""
    status_store = StatusStore(f"sqlite:///{tmp_path / 'alerts.db'}")
    yield status_store
    status_store.dispose()


@pytest.fixture
def seeded_store(store):
    """A store with one tracked test, "suite", that has never run."""
    store.add_test_status(TestStatus(test_name="suite", timestamp=0))
    store.add_subscriber("suite", "owner@example.com")
    return store


def cases(**results) -> list[TestCase]:
    """Build a test case batch, e.g. cases(test_a="PASS", test_b="FAIL")."""
    return [TestCase(name=name, result=TestCaseResult(result)) for name, result in results.items()]
