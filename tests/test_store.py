"""Tests for store.py module."""

import pytest
from conftest import cases

from alertwatch_mcp.models import TestCaseReference, TestCaseResult, TestStatus
from alertwatch_mcp.store import (
    EntityNotFoundError,
    StoreConflictError,
    StoreError,
    TestCaseRunRow,
    TestRunRow,
    TestStatusRow,
)


def test_iter_test_statuses_skips_corrupted(store, caplog):
    """Test that a malformed status row is logged and skipped."""
    store.add_test_status(TestStatus(test_name="good", timestamp=5))
    with store.Session() as session, session.begin():
        session.add(TestStatusRow(test_name="broken", timestamp=0, failing_count=2, failing_test_cases=[]))

    statuses = list(store.iter_test_statuses())

    assert [s.test_name for s in statuses] == ["good"]
    assert "Corrupted test status: broken" in caplog.text


def test_status_round_trip(store):
    """Test that failing references survive storage."""
    refs = [TestCaseReference(parent_id=3, offset=1)]
    store.add_test_status(
        TestStatus(test_name="suite", timestamp=10, passing_count=4, failing_count=1, failing_test_cases=refs)
    )

    status = store.get_test_status("suite")

    assert status.failing_test_cases == refs
    assert status.passing_count == 4
    assert store.get_test_status("missing") is None


def test_runs_for_test_skips_invalid_runs(store, caplog):
    """Test that malformed run rows do not stop the stream."""
    store.add_test_status(TestStatus(test_name="suite", timestamp=0))
    store.add_run("suite", 1000, [cases(test_a="PASS")])
    with store.Session() as session, session.begin():
        session.add(TestRunRow(test_name="suite", start_timestamp=2000, run_type="postsubmit", test_case_ids=["x"]))

    runs = list(store.runs_for_test("suite", 0, ["postsubmit"]))

    assert [r.start_timestamp for r in runs] == [1000]
    assert "Invalid test run detected" in caplog.text


def add_raw_case_run(store, test_cases) -> int:
    """Store a test case run exactly as given, bypassing validation."""
    with store.Session() as session, session.begin():
        row = TestCaseRunRow(test_cases=test_cases)
        session.add(row)
        session.flush()
        return row.test_case_run_id


def test_batch_get_skips_only_malformed_case_runs(store, caplog):
    """Test that a malformed test case run is logged and its siblings still read."""
    good = add_raw_case_run(store, [{"name": "test_a", "result": "PASS"}])
    broken = add_raw_case_run(store, [{"result": "FAIL"}])

    result = store.batch_get_test_case_runs([good, broken])

    assert list(result) == [good]
    assert f"Invalid test case run: {broken}" in caplog.text


def test_batch_get_reads_unrecognized_results_as_failures(store):
    """Test that results outside the known set are kept and count as failures."""
    case_run_id = add_raw_case_run(
        store,
        [{"name": "test_a", "result": "FAIL"}, {"name": "test_b", "result": "BLOCKED"}],
    )

    (case_run,) = store.batch_get_test_case_runs([case_run_id]).values()

    assert [c.result for c in case_run.test_cases] == [TestCaseResult.FAIL, TestCaseResult.UNKNOWN]
    assert case_run.test_cases[1].result.is_failure


def test_batch_get_leaves_out_missing(store):
    """Test that unknown test case run ids are absent from the result."""
    run = store.add_run("suite", 1000, [cases(test_a="PASS")])
    case_run_id = run.test_case_ids[0]

    result = store.batch_get_test_case_runs([case_run_id, case_run_id + 1])

    assert list(result) == [case_run_id]
    assert result[case_run_id].test_cases[0].name == "test_a"
    assert store.batch_get_test_case_runs([]) == {}


def test_devices_and_subscribers(store):
    """Test device and subscriber lookups."""
    run = store.add_run("suite", 1000, [cases(test_a="PASS")], build_ids=["1234", "5678"])
    store.add_subscriber("suite", "a@example.com")
    store.add_subscriber("suite", "b@example.com")
    store.add_subscriber("other", "c@example.com")

    assert sorted(d.build_id for d in store.devices_for_run(run.run_id)) == ["1234", "5678"]
    assert store.subscriber_emails("suite") == ["a@example.com", "b@example.com"]


def test_transaction_commit(store):
    """Test a read-check-write transaction."""
    store.add_test_status(TestStatus(test_name="suite", timestamp=0))

    txn = store.begin_transaction()
    current = txn.get("suite")
    txn.put(current.model_copy(update={"timestamp": 100, "passing_count": 3}))
    txn.commit()

    assert not txn.is_active
    assert store.get_test_status("suite").timestamp == 100


def test_transaction_rollback(store):
    """Test that a rolled back write is not visible."""
    store.add_test_status(TestStatus(test_name="suite", timestamp=0))

    txn = store.begin_transaction()
    txn.put(txn.get("suite").model_copy(update={"timestamp": 100}))
    txn.rollback()

    assert store.get_test_status("suite").timestamp == 0


def test_transaction_detects_concurrent_update(store):
    """Test that a write based on a stale read raises a conflict."""
    store.add_test_status(TestStatus(test_name="suite", timestamp=0))

    slow = store.begin_transaction()
    slow_view = slow.get("suite")

    fast = store.begin_transaction()
    fast.put(fast.get("suite").model_copy(update={"timestamp": 200}))
    fast.commit()

    with pytest.raises(StoreConflictError):
        slow.put(slow_view.model_copy(update={"timestamp": 100}))
    slow.rollback()

    assert store.get_test_status("suite").timestamp == 200


def test_transaction_get_missing(store):
    """Test that reading a vanished status raises EntityNotFoundError."""
    txn = store.begin_transaction()
    with pytest.raises(EntityNotFoundError):
        txn.get("missing")
    txn.rollback()


def test_transaction_put_requires_get(store):
    """Test that blind writes are refused."""
    store.add_test_status(TestStatus(test_name="suite", timestamp=0))
    txn = store.begin_transaction()
    with pytest.raises(StoreError):
        txn.put(TestStatus(test_name="suite", timestamp=100))
    txn.rollback()
