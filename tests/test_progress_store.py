import sys
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
import pytest
from psycopg.types.json import Jsonb

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import PersistenceError, ValidationError  # noqa: E402
from progress_record import AttemptLogEntry, ProgressRecord  # noqa: E402
from progress_store import MemoryProgressStore, PostgresProgressStore  # noqa: E402


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._result = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=()):
        flat = " ".join(sql.split())
        self.conn.executed.append((flat, params))
        if self.conn.fail_on and self.conn.fail_on in flat:
            raise psycopg.OperationalError("server closed the connection unexpectedly")
        if flat.startswith("SELECT") and "FROM public.exam_progress" in flat:
            self._result = self.conn.row
        else:
            self._result = None

    def fetchone(self):
        return self._result


class FakeConn:
    def __init__(self, row=None, fail_on=None):
        self.row = row
        self.fail_on = fail_on
        self.executed = []
        self.events = []

    def cursor(self, row_factory=None):
        return FakeCursor(self)

    @contextmanager
    def transaction(self):
        self.events.append("begin")
        try:
            yield
        except BaseException:
            self.events.append("rollback")
            raise
        self.events.append("commit")

    def commit(self):
        self.events.append("commit")


def _get_conn(conn):
    @contextmanager
    def get_conn():
        yield conn
    return get_conn


def _stored_row():
    return {
        "exam_id": "exam-1",
        "total_questions": 3,
        "correct_questions": 2,
        "attempts": 2,
        "highest_percentage": 66.67,
        "lock_until": None,
        "lock_count": 0,
        "last_submitted_at": NOW,
        "attempt_log": [{"percentage": 66.67, "timestamp": "2024-03-01T12:00:00+00:00"}],
        "answer_log": [{"selectedAnswer": "B", "correctAnswer": "B", "isCorrect": True,
                        "timeTaken": 0, "timestamp": "2024-03-01T12:00:00Z"}],
    }


# ------------------------------------------------------------- postgres --
def test_postgres_transaction_locks_then_reads_for_update():
    conn = FakeConn(row=_stored_row())
    store = PostgresProgressStore(_get_conn(conn))

    with store.transaction("exam-1") as tx:
        record = tx.load()

    statements = [sql for sql, _ in conn.executed]
    assert statements[0].startswith("CREATE TABLE IF NOT EXISTS public.exam_progress")
    assert statements[1] == "SELECT pg_advisory_xact_lock(hashtext(%s));"
    assert conn.executed[1][1] == ("exam-1",)
    assert statements[2].endswith("FOR UPDATE;")
    assert conn.events == ["commit", "begin", "commit"]

    assert record.attempts == 2
    assert record.last_submitted_at == NOW
    assert record.attempt_log == [AttemptLogEntry(66.67, NOW)]
    assert record.answer_log[0].timestamp == NOW


def test_postgres_save_upserts_with_jsonb_logs():
    conn = FakeConn()
    store = PostgresProgressStore(_get_conn(conn))
    record = ProgressRecord.new("exam-1", 3)
    record.attempts = 1
    record.attempt_log.append(AttemptLogEntry(100.0, NOW))

    with store.transaction("exam-1") as tx:
        assert tx.load() is None
        tx.save(record)

    sql, params = conn.executed[-1]
    assert sql.startswith("INSERT INTO public.exam_progress")
    assert "ON CONFLICT (exam_id) DO UPDATE" in sql
    assert params[0] == "exam-1"
    assert params[3] == 1
    assert isinstance(params[8], Jsonb)
    assert params[8].obj == [{"percentage": 100.0, "timestamp": "2024-03-01T12:00:00+00:00"}]
    assert isinstance(params[9], Jsonb)
    assert params[9].obj == []


def test_postgres_domain_error_rolls_back_and_propagates():
    conn = FakeConn(row=_stored_row())
    store = PostgresProgressStore(_get_conn(conn))

    with pytest.raises(ValidationError):
        with store.transaction("exam-1") as tx:
            tx.load()
            raise ValidationError("bad answer")

    assert conn.events[-1] == "rollback"
    assert not any(sql.startswith("INSERT") for sql, _ in conn.executed)


def test_postgres_driver_error_becomes_persistence_error():
    conn = FakeConn(fail_on="INSERT INTO public.exam_progress")
    store = PostgresProgressStore(_get_conn(conn))

    with pytest.raises(PersistenceError) as exc:
        with store.transaction("exam-1") as tx:
            tx.save(ProgressRecord.new("exam-1", 2))
    assert isinstance(exc.value.__cause__, psycopg.Error)
    assert conn.events[-1] == "rollback"


def test_postgres_schema_failure_is_a_persistence_error():
    conn = FakeConn(fail_on="CREATE TABLE")
    store = PostgresProgressStore(_get_conn(conn))
    with pytest.raises(PersistenceError):
        store.get("exam-1")


def test_postgres_get_reads_without_locking():
    conn = FakeConn(row=_stored_row())
    store = PostgresProgressStore(_get_conn(conn))
    record = store.get("exam-1")
    assert record.exam_id == "exam-1"
    assert not any("FOR UPDATE" in sql or "advisory" in sql for sql, _ in conn.executed)


# --------------------------------------------------------------- memory --
def test_memory_store_round_trips_records():
    store = MemoryProgressStore()
    record = ProgressRecord.new("exam-1", 3)
    record.lock_until = NOW + timedelta(minutes=1)
    with store.transaction("exam-1") as tx:
        tx.save(record)
    assert store.get("exam-1") == record


def test_memory_store_discards_write_when_block_raises():
    store = MemoryProgressStore()
    with pytest.raises(RuntimeError):
        with store.transaction("exam-1") as tx:
            tx.save(ProgressRecord.new("exam-1", 3))
            raise RuntimeError("boom")
    assert store.get("exam-1") is None


def test_memory_store_loads_independent_copies():
    store = MemoryProgressStore()
    with store.transaction("exam-1") as tx:
        tx.save(ProgressRecord.new("exam-1", 3))
    with store.transaction("exam-1") as tx:
        loaded = tx.load()
        loaded.attempts = 99
    assert store.get("exam-1").attempts == 0
