"""
SQLite storage for jobs, ledger entries and balances.

One connection shared across threads behind an explicit lock; every call is
pushed to a worker thread so the event loop never blocks on disk. Balance
changes run inside BEGIN IMMEDIATE with a conditional UPDATE, so two
concurrent spends for one user can never both pass the funds check.
"""

import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Union

import structlog

from core.errors import JobNotFoundError, StorageError
from core.models import CreditTransaction, User, VideoJob, VideoStatus, utcnow
from core.storage import Storage

logger = structlog.get_logger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    name TEXT,
    credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    video_url TEXT NOT NULL,
    service_video_id TEXT,
    title TEXT,
    duration REAL,
    thumbnail TEXT,
    download_url TEXT,
    transcription_id TEXT,
    transcription TEXT,
    dashboard TEXT,
    tokens_used INTEGER,
    credits_charged INTEGER,
    status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_videos_user_created ON videos(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);

CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount INTEGER NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    description TEXT,
    reference_id TEXT,
    reference_type TEXT,
    tokens_used INTEGER,
    video_id TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_transactions_user_created ON credit_transactions(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_transactions_reference ON credit_transactions(reference_id, reference_type);
"""

_JOB_COLUMNS = (
    'id', 'user_id', 'video_url', 'service_video_id', 'title', 'duration', 'thumbnail',
    'download_url', 'transcription_id', 'transcription', 'dashboard', 'tokens_used',
    'credits_charged', 'status', 'error_message', 'created_at', 'updated_at',
)

_TX_COLUMNS = (
    'id', 'user_id', 'amount', 'type', 'status', 'description', 'reference_id',
    'reference_type', 'tokens_used', 'video_id', 'created_at',
)


def _to_db(key: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if key == 'dashboard' and value is not None:
        return json.dumps(value, ensure_ascii=False)
    if hasattr(value, 'value'):
        return value.value
    return value


class SQLiteStorage(Storage):
    """SQLite-backed Storage"""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        if str(self.db_path) != ':memory:':
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys=ON")
        if str(self.db_path) != ':memory:':
            self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _migrate(self):
        with self._lock:
            self.conn.executescript(_CREATE_TABLES)
            self.conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )

    async def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ── Helpers ──────────────────────────────────────────────────────

    async def _run(self, fn, *args):
        """Run a blocking database call on a worker thread under the lock"""

        def locked():
            with self._lock:
                try:
                    return fn(*args)
                except sqlite3.Error as e:
                    logger.error("SQLite operation failed", operation=fn.__name__, error=str(e))
                    raise StorageError(f"Database error in {fn.__name__}: {e}") from e

        return await asyncio.to_thread(locked)

    @contextmanager
    def _immediate(self):
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> VideoJob:
        data = dict(row)
        if data.get('dashboard'):
            data['dashboard'] = json.loads(data['dashboard'])
        return VideoJob.model_validate(data)

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> CreditTransaction:
        return CreditTransaction.model_validate(dict(row))

    # ── Users ────────────────────────────────────────────────────────

    async def create_user(self, user: User) -> User:
        def insert():
            self.conn.execute(
                "INSERT INTO users (id, email, name, credits, created_at) VALUES (?, ?, ?, ?, ?)",
                (user.id, user.email, user.name, user.credits, user.created_at.isoformat()),
            )
            return user
        return await self._run(insert)

    async def get_user(self, user_id: str) -> Optional[User]:
        def select():
            row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return User.model_validate(dict(row)) if row else None
        return await self._run(select)

    async def list_users(self) -> List[User]:
        def select():
            rows = self.conn.execute("SELECT * FROM users ORDER BY created_at").fetchall()
            return [User.model_validate(dict(r)) for r in rows]
        return await self._run(select)

    # ── Video jobs ───────────────────────────────────────────────────

    async def create_job(self, job: VideoJob) -> VideoJob:
        def insert():
            values = [_to_db(c, getattr(job, c)) for c in _JOB_COLUMNS]
            placeholders = ', '.join('?' for _ in _JOB_COLUMNS)
            self.conn.execute(
                f"INSERT INTO videos ({', '.join(_JOB_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
            return job
        return await self._run(insert)

    async def get_job(self, job_id: str) -> Optional[VideoJob]:
        def select():
            row = self.conn.execute("SELECT * FROM videos WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None
        return await self._run(select)

    @staticmethod
    def _job_filter(user_id: Optional[str], status: Optional[VideoStatus]):
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(VideoStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def list_jobs(self, user_id=None, status=None, limit=None, offset=0) -> List[VideoJob]:
        def select():
            where, params = self._job_filter(user_id, status)
            sql = f"SELECT * FROM videos{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
            rows = self.conn.execute(sql, params + [-1 if limit is None else limit, offset]).fetchall()
            return [self._row_to_job(r) for r in rows]
        return await self._run(select)

    async def count_jobs(self, user_id=None, status=None) -> int:
        def select():
            where, params = self._job_filter(user_id, status)
            return self.conn.execute(f"SELECT COUNT(*) FROM videos{where}", params).fetchone()[0]
        return await self._run(select)

    async def update_job(self, job_id: str, **fields) -> VideoJob:
        unknown = set(fields) - set(_JOB_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown video job fields: {sorted(unknown)}")

        def update():
            fields['updated_at'] = utcnow()
            sets = ', '.join(f"{k} = ?" for k in fields)
            values = [_to_db(k, v) for k, v in fields.items()] + [job_id]
            cursor = self.conn.execute(f"UPDATE videos SET {sets} WHERE id = ?", values)
            if cursor.rowcount == 0:
                raise JobNotFoundError(f"Video job not found: {job_id}")
            row = self.conn.execute("SELECT * FROM videos WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row)
        return await self._run(update)

    # ── Ledger ───────────────────────────────────────────────────────

    def _insert_transaction(self, transaction: CreditTransaction):
        values = [_to_db(c, getattr(transaction, c)) for c in _TX_COLUMNS]
        placeholders = ', '.join('?' for _ in _TX_COLUMNS)
        self.conn.execute(
            f"INSERT INTO credit_transactions ({', '.join(_TX_COLUMNS)}) VALUES ({placeholders})",
            values,
        )

    def _adjust_balance(self, user_id: str, delta: int, require_funds: bool) -> bool:
        if require_funds:
            cursor = self.conn.execute(
                "UPDATE users SET credits = credits + ? WHERE id = ? AND credits + ? >= 0",
                (delta, user_id, delta),
            )
        else:
            cursor = self.conn.execute(
                "UPDATE users SET credits = credits + ? WHERE id = ?",
                (delta, user_id),
            )
        return cursor.rowcount == 1

    async def record_transaction(self, transaction, require_funds) -> Optional[CreditTransaction]:
        def record():
            with self._immediate():
                if not self._adjust_balance(transaction.user_id, transaction.amount, require_funds):
                    return None
                self._insert_transaction(transaction)
            return transaction
        return await self._run(record)

    async def amend_transaction(self, transaction_id: str, **fields) -> Optional[CreditTransaction]:
        def amend():
            with self._immediate():
                row = self.conn.execute(
                    "SELECT * FROM credit_transactions WHERE id = ?", (transaction_id,)
                ).fetchone()
                if row is None:
                    return None
                current = self._row_to_transaction(row)
                updated = CreditTransaction.model_validate({**current.model_dump(), **fields})
                delta = updated.amount - current.amount
                if delta and not self._adjust_balance(current.user_id, delta, True):
                    return None
                columns = [c for c in _TX_COLUMNS if c in fields]
                if columns:
                    sets = ', '.join(f"{c} = ?" for c in columns)
                    values = [_to_db(c, getattr(updated, c)) for c in columns] + [transaction_id]
                    self.conn.execute(f"UPDATE credit_transactions SET {sets} WHERE id = ?", values)
            return updated
        return await self._run(amend)

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        def select():
            row = self.conn.execute(
                "SELECT * FROM credit_transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return self._row_to_transaction(row) if row else None
        return await self._run(select)

    async def list_transactions(self, user_id, limit=None, offset=0) -> List[CreditTransaction]:
        def select():
            rows = self.conn.execute(
                """SELECT * FROM credit_transactions WHERE user_id = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?""",
                (user_id, -1 if limit is None else limit, offset),
            ).fetchall()
            return [self._row_to_transaction(r) for r in rows]
        return await self._run(select)

    async def count_transactions(self, user_id: str) -> int:
        def select():
            return self.conn.execute(
                "SELECT COUNT(*) FROM credit_transactions WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
        return await self._run(select)

    async def list_transactions_by_reference(self, reference_id: str) -> List[CreditTransaction]:
        def select():
            rows = self.conn.execute(
                """SELECT * FROM credit_transactions WHERE reference_id = ?
                   ORDER BY created_at ASC, rowid ASC""",
                (reference_id,),
            ).fetchall()
            return [self._row_to_transaction(r) for r in rows]
        return await self._run(select)

    async def find_latest_by_reference(self, reference_id: str,
                                       reference_type: str) -> Optional[CreditTransaction]:
        def select():
            row = self.conn.execute(
                """SELECT * FROM credit_transactions WHERE reference_id = ? AND reference_type = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT 1""",
                (reference_id, reference_type),
            ).fetchone()
            return self._row_to_transaction(row) if row else None
        return await self._run(select)
