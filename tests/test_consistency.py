import sqlite3
import threading

import pytest

from config import Settings
from conftest import assert_invariants, fetch_all
from consistency import ConsistencyGuard, compute_backoff_seconds, is_lock_conflict
from db_models import LinkPrecedence
from db_setup import get_db_connection
from errors import IntegrityViolation, TransientStoreFailure
from reconciliation import identify_contact


def run_concurrently(count, target):
    barrier = threading.Barrier(count)
    results, failures = [], []

    def worker(index):
        barrier.wait()
        try:
            results.append(target(index))
        except Exception as exc:  # collected and asserted on below
            failures.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, failures


def test_concurrent_first_sightings_create_one_primary(guard, conn):
    results, failures = run_concurrently(8, lambda _: identify_contact(guard, "new@x.com", None))

    assert failures == []
    rows = fetch_all(conn)
    assert len(rows) == 1
    assert rows[0]["linkPrecedence"] == "primary"
    assert {view.primaryContactId for view in results} == {rows[0]["id"]}


def test_concurrent_bridges_leave_one_primary(guard, conn):
    identify_contact(guard, "a", "1")
    identify_contact(guard, "b", "2")
    identify_contact(guard, "c", "3")
    requests = [("a", "2"), ("b", "3"), ("c", "1"), ("a", "3")]

    results, failures = run_concurrently(len(requests), lambda i: identify_contact(guard, *requests[i]))

    assert failures == []
    assert_invariants(conn)
    primaries = [row for row in fetch_all(conn) if row["linkPrecedence"] == "primary"]
    assert len(primaries) == 1
    assert primaries[0]["email"] == "a"


def test_failed_work_is_rolled_back(guard, conn):
    def work(store):
        store.create("a", "1", LinkPrecedence.PRIMARY)
        raise IntegrityViolation("boom")

    with pytest.raises(IntegrityViolation):
        guard.run(work)

    assert fetch_all(conn) == []


def test_interrupted_work_is_rolled_back(guard, conn):
    identify_contact(guard, "a", "1")
    identify_contact(guard, "b", "2")

    def work(store):
        store.update_precedence(2, LinkPrecedence.SECONDARY, 1)
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        guard.run(work)

    rows = fetch_all(conn)
    assert [row["linkPrecedence"] for row in rows] == ["primary", "primary"]


def test_lock_held_past_budget_is_a_transient_failure(db_path, conn):
    settings = Settings(
        identify_retry_max=2,
        identify_retry_base_backoff_seconds=0.01,
        identify_retry_max_backoff_seconds=0.02,
        identify_timeout_seconds=5,
        db_busy_timeout_seconds=0.05,
    )
    guard = ConsistencyGuard(db_path, settings=settings)
    blocker = get_db_connection(db_path)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(TransientStoreFailure):
            identify_contact(guard, "a@x.com", None)
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert fetch_all(conn) == []


def test_lock_released_during_retries_succeeds(db_path, settings):
    guard = ConsistencyGuard(db_path, settings=settings.model_copy(update={"db_busy_timeout_seconds": 0.05}))
    blocker = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
    blocker.execute("BEGIN IMMEDIATE")
    timer = threading.Timer(0.08, lambda: blocker.execute("ROLLBACK"))
    timer.start()
    try:
        view = identify_contact(guard, "a@x.com", None)
    finally:
        timer.join()
        blocker.close()

    assert view.emails == ["a@x.com"]


def test_unreachable_store_is_a_transient_failure(tmp_path, settings):
    guard = ConsistencyGuard(str(tmp_path / "missing" / "contacts.db"), settings=settings)

    with pytest.raises(TransientStoreFailure):
        identify_contact(guard, "a@x.com", None)


def test_lock_conflict_detection():
    assert is_lock_conflict(sqlite3.OperationalError("database is locked"))
    assert not is_lock_conflict(sqlite3.OperationalError("no such table: Contact"))


def test_backoff_is_bounded():
    for attempt in range(1, 10):
        delay = compute_backoff_seconds(attempt, base=0.1, maximum=1.0)
        assert 0.1 <= delay <= 1.5
