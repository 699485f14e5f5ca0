# progress_store.py
# -----------------------------------------------------------------------------
# Persistence for ProgressRecord (one row per exam_id).
#
# Both stores hand out a per-exam transaction:
#     with store.transaction(exam_id) as tx:
#         record = tx.load()      # None if absent
#         ...mutate...
#         tx.save(record)
# Concurrent calls for the same exam_id are serialized for the whole
# load -> mutate -> save span; anything raised inside the block discards the
# write.
# -----------------------------------------------------------------------------
import copy
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from errors import PersistenceError
from progress_record import ProgressRecord

_COLUMNS = (
    "exam_id, total_questions, correct_questions, attempts, highest_percentage, "
    "lock_until, lock_count, last_submitted_at, attempt_log, answer_log"
)


# =============================================================================
# PostgreSQL (psycopg 3 via the app's connection pool)
# =============================================================================
class _PgTransaction:
    def __init__(self, cur, exam_id: str):
        self._cur = cur
        self.exam_id = exam_id

    def load(self) -> Optional[ProgressRecord]:
        self._cur.execute(f"""
            SELECT {_COLUMNS}
              FROM public.exam_progress
             WHERE exam_id = %s
               FOR UPDATE;
        """, (self.exam_id,))
        row = self._cur.fetchone()
        return ProgressRecord.from_row(row) if row else None

    def save(self, record: ProgressRecord) -> None:
        r = record.to_row()
        self._cur.execute(f"""
            INSERT INTO public.exam_progress ({_COLUMNS}, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
            ON CONFLICT (exam_id) DO UPDATE SET
                total_questions    = EXCLUDED.total_questions,
                correct_questions  = EXCLUDED.correct_questions,
                attempts           = EXCLUDED.attempts,
                highest_percentage = EXCLUDED.highest_percentage,
                lock_until         = EXCLUDED.lock_until,
                lock_count         = EXCLUDED.lock_count,
                last_submitted_at  = EXCLUDED.last_submitted_at,
                attempt_log        = EXCLUDED.attempt_log,
                answer_log         = EXCLUDED.answer_log,
                updated_at         = now();
        """, (
            r["exam_id"], r["total_questions"], r["correct_questions"], r["attempts"],
            r["highest_percentage"], r["lock_until"], r["lock_count"], r["last_submitted_at"],
            Jsonb(r["attempt_log"]), Jsonb(r["answer_log"]),
        ))


class PostgresProgressStore:
    """ProgressRecord rows in public.exam_progress.

    ``get_conn`` is the app's pooled connection context manager. Each
    transaction takes ``pg_advisory_xact_lock(hashtext(exam_id))`` before
    reading so that two first submissions for a brand-new exam cannot both
    insert; the row itself is then read ``FOR UPDATE``.
    """

    def __init__(self, get_conn: Callable[[], Any]):
        self._get_conn = get_conn
        self._schema_ready = False

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        try:
            with self._get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        CREATE TABLE IF NOT EXISTS public.exam_progress (
                            exam_id            TEXT PRIMARY KEY,
                            total_questions    INTEGER NOT NULL DEFAULT 0,
                            correct_questions  INTEGER NOT NULL DEFAULT 0,
                            attempts           INTEGER NOT NULL DEFAULT 0,
                            highest_percentage DOUBLE PRECISION NOT NULL DEFAULT 0,
                            lock_until         TIMESTAMPTZ,
                            lock_count         INTEGER NOT NULL DEFAULT 0,
                            last_submitted_at  TIMESTAMPTZ,
                            attempt_log        JSONB NOT NULL DEFAULT '[]'::jsonb,
                            answer_log         JSONB NOT NULL DEFAULT '[]'::jsonb,
                            updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
                            CHECK (correct_questions BETWEEN 0 AND total_questions)
                        );
                    """)
                conn.commit()
        except psycopg.Error as e:
            print(f"[progress] ensure table failed: {e}", flush=True)
            raise PersistenceError(f"progress storage unavailable: {e}") from e
        self._schema_ready = True

    @contextmanager
    def transaction(self, exam_id: str) -> Iterator[_PgTransaction]:
        self.ensure_schema()
        try:
            with self._get_conn() as conn:
                with conn.transaction():
                    with conn.cursor(row_factory=dict_row) as cur:
                        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s));", (exam_id,))
                        yield _PgTransaction(cur, exam_id)
        except psycopg.Error as e:
            print(f"[progress] storage failure (exam {exam_id}): {e}", flush=True)
            raise PersistenceError(f"progress storage failed: {e}") from e

    def get(self, exam_id: str) -> Optional[ProgressRecord]:
        self.ensure_schema()
        try:
            with self._get_conn() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(f"SELECT {_COLUMNS} FROM public.exam_progress WHERE exam_id = %s;", (exam_id,))
                    row = cur.fetchone()
        except psycopg.Error as e:
            print(f"[progress] read failed (exam {exam_id}): {e}", flush=True)
            raise PersistenceError(f"progress storage failed: {e}") from e
        return ProgressRecord.from_row(row) if row else None


# =============================================================================
# In-memory (local runs without a database, tests)
# =============================================================================
class _MemoryTransaction:
    def __init__(self, exam_id: str, row: Optional[Dict[str, Any]]):
        self.exam_id = exam_id
        self._row = row
        self.staged: Optional[Dict[str, Any]] = None

    def load(self) -> Optional[ProgressRecord]:
        return ProgressRecord.from_row(copy.deepcopy(self._row)) if self._row else None

    def save(self, record: ProgressRecord) -> None:
        self.staged = copy.deepcopy(record.to_row())


class MemoryProgressStore:
    """Rows kept as serialized copies; one threading.Lock per exam_id."""

    def __init__(self):
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, exam_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(exam_id)
            if lock is None:
                lock = self._locks[exam_id] = threading.Lock()
            return lock

    @contextmanager
    def transaction(self, exam_id: str) -> Iterator[_MemoryTransaction]:
        with self._lock_for(exam_id):
            tx = _MemoryTransaction(exam_id, self._rows.get(exam_id))
            yield tx
            # only reached when the block exits cleanly
            if tx.staged is not None:
                self._rows[exam_id] = tx.staged

    def get(self, exam_id: str) -> Optional[ProgressRecord]:
        with self._lock_for(exam_id):
            row = self._rows.get(exam_id)
            return ProgressRecord.from_row(copy.deepcopy(row)) if row else None


__all__ = ["PostgresProgressStore", "MemoryProgressStore"]
