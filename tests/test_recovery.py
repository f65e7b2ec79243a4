from datetime import timedelta
from decimal import Decimal

from conftest import START


def _records(db_conn):
    return db_conn.execute(
        "SELECT occurrence_time, amount_cents, catchup FROM transaction_records ORDER BY id"
    ).fetchall()


def test_weekly_bill_two_days_overdue_is_caught_up(runtime, make_account, balance_of, db_conn):
    make_account("OfflineTestUser", "1000")
    job = runtime.store.create_job(
        "OfflineTestUser", "bill", -50, "weekly", "Test Offline Bill", "Test Category",
        start_time=START - timedelta(days=9),
    )
    old_next = job.next_execution
    assert old_next == START - timedelta(days=2)

    summary = runtime.recovery.scan()

    assert summary.processed == 1
    assert summary.skipped == 0
    rows = _records(db_conn)
    assert [(r["occurrence_time"], r["amount_cents"], r["catchup"]) for r in rows] == [
        (old_next.isoformat(), -5000, 1)
    ]
    assert balance_of("OfflineTestUser") == Decimal("950.00")
    stored = runtime.store.get_job(job.key)
    assert stored.next_execution == old_next + timedelta(days=7)
    entry = runtime.scheduler.get_entry(job.key)
    assert entry is not None and entry.run_at == stored.next_execution


def test_three_missed_intervals_apply_in_order(runtime, make_account, balance_of, db_conn):
    make_account("alice", "0")
    job = runtime.store.create_job(
        "alice", "payment", 20, "weekly", start_time=START - timedelta(days=7 * 3 + 1)
    )

    summary = runtime.recovery.scan()

    assert summary.processed == 3
    times = [r["occurrence_time"] for r in _records(db_conn)]
    assert times == sorted(times) and len(set(times)) == 3
    assert times[0] == job.next_execution.isoformat()
    assert balance_of("alice") == Decimal("60.00")
    assert runtime.store.get_job(job.key).next_execution > START


def test_catchup_cap_collapses_backlog(runtime, make_account, balance_of, db_conn):
    make_account("alice", "0")
    # 40 weekly occurrences overdue; cap is 5
    job = runtime.store.create_job(
        "alice", "bill", 10, "weekly", start_time=START - timedelta(days=7 * 40 + 1)
    )

    summary = runtime.recovery.scan()

    assert summary.processed == 5
    assert summary.skipped == 35
    assert len(_records(db_conn)) == 5
    assert balance_of("alice") == Decimal("-50.00")
    stored = runtime.store.get_job(job.key)
    assert stored.skipped_occurrences == 35
    assert START < stored.next_execution <= START + timedelta(days=7)
    assert stored.next_execution == job.next_execution + timedelta(days=7 * 40)


def test_second_scan_is_a_no_op(runtime, make_account, balance_of):
    make_account("alice", "100")
    runtime.store.create_job("alice", "bill", 10, "weekly", start_time=START - timedelta(days=15))

    first = runtime.recovery.scan()
    second = runtime.recovery.scan()

    assert first.processed == 2
    assert second.processed == 0
    assert balance_of("alice") == Decimal("80.00")


def test_inactive_and_future_jobs_are_not_applied(runtime, make_account, balance_of):
    make_account("alice", "100")
    stale = runtime.store.create_job("alice", "bill", 10, "weekly", start_time=START - timedelta(days=8))
    future = runtime.store.create_job("alice", "payment", 10, "weekly")
    runtime.store.deactivate(stale.key)

    summary = runtime.recovery.scan()

    assert summary.processed == 0
    assert balance_of("alice") == Decimal("100.00")
    assert runtime.scheduler.get_entry(stale.key) is None
    assert runtime.scheduler.get_entry(future.key) is not None


def test_failure_for_one_owner_does_not_block_others(runtime, make_account, balance_of, db_conn):
    make_account("alice", "100")
    make_account("bob", "100")
    runtime.store.create_job("alice", "bill", 10, "weekly", start_time=START - timedelta(days=8))
    runtime.store.create_job("bob", "bill", 10, "weekly", start_time=START - timedelta(days=8))
    db_conn.execute("DELETE FROM accounts WHERE owner_id = 'alice'")
    db_conn.commit()

    summary = runtime.recovery.scan()

    assert summary.failed == 1
    assert summary.processed == 1
    assert balance_of("bob") == Decimal("90.00")
    # Alice stays tracked so the live timer keeps retrying
    assert len(runtime.scheduler) == 2


def test_catchup_stats_and_server_status(runtime, make_account, db_conn):
    make_account("alice", "100")
    make_account("bob", "100")
    runtime.store.create_job("alice", "bill", 10, "weekly", start_time=START - timedelta(days=8))
    runtime.store.create_job("bob", "payment", 5, "weekly", start_time=START - timedelta(days=8))
    runtime.recovery.scan()

    stats = runtime.recovery.catchup_stats(days=7)
    assert stats == {"totalCatchupTransactions": 2, "totalAmount": -5.0, "users": ["alice", "bob"]}

    runtime.recovery.record_shutdown()
    assert runtime.recovery.last_shutdown() == START
    events = [r[0] for r in db_conn.execute("SELECT event FROM server_status ORDER BY id")]
    assert events == ["startup", "shutdown"]
