"""SQLite storage: scan results and the credit ledger.

Table: scan_results
- run_id (text, primary key)
- url (text)
- status (text)
- result_json (text)
- created_at (datetime)

Table: credit_ledger (append-only; balance = sum of unexpired deltas)
- id (integer, primary key)
- user_id (text)
- delta (integer, negative for consumption)
- reason (text)
- job_id (text, unique per user)
- ext_ref (text, unique per user)
- expires_at (datetime, nullable)
- created_at (datetime)

Table: free_scans (one monthly free scan per user)
Table: email_scans (anonymous free scans keyed by email hash, with cooldown)
"""

import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from dotenv import load_dotenv

from stores import ConsumeResult, GrantResult

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

DB_PATH = Path(os.getenv("DATABASE_PATH", str(Path(__file__).parent / "visibility.db")))
FREE_SCAN_PERIOD_DAYS = int(os.getenv("FREE_SCAN_PERIOD_DAYS", "30"))
EMAIL_SCAN_COOLDOWN_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_connection(db_path: Path | str = DB_PATH) -> sqlite3.Connection:
    """Return a connection to the SQLite database."""
    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    # IMMEDIATE takes the write lock up front so balance checks and inserts are atomic.
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except Exception:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def init_db(db_path: Path | str = DB_PATH) -> None:
    """Create tables if they do not exist."""
    conn = get_connection(db_path)
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS scan_results (
                run_id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                status TEXT NOT NULL,
                result_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS credit_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                delta INTEGER NOT NULL,
                reason TEXT NOT NULL,
                job_id TEXT,
                ext_ref TEXT,
                expires_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, job_id),
                UNIQUE (user_id, ext_ref)
            );
            CREATE TABLE IF NOT EXISTS free_scans (
                user_id TEXT PRIMARY KEY,
                last_free_scan_at TEXT NOT NULL,
                job_id TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS email_scans (
                email_hash TEXT PRIMARY KEY,
                last_scan_at TEXT NOT NULL,
                job_id TEXT NOT NULL
            );
            """
        )
    finally:
        conn.close()


class SQLiteResultStore:
    """Persisted scan results, addressable by run id."""

    def __init__(self, db_path: Path | str = DB_PATH):
        self.db_path = db_path
        init_db(db_path)

    def put(self, run_id: str, value: dict) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO scan_results (run_id, url, status, result_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status = excluded.status,
                    result_json = excluded.result_json
                """,
                (
                    run_id,
                    str(value.get("url") or ""),
                    str(value.get("status") or ""),
                    json.dumps(value),
                    _utcnow().isoformat(),
                ),
            )
        finally:
            conn.close()

    def get(self, run_id: str) -> Optional[dict]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT result_json FROM scan_results WHERE run_id = ?", (run_id,)).fetchone()
            if row is None:
                return None
            return json.loads(row["result_json"])
        finally:
            conn.close()

    def delete(self, run_id: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM scan_results WHERE run_id = ?", (run_id,))
        finally:
            conn.close()


class SQLiteCreditLedger:
    """Append-only credit ledger. consume/grant are idempotent by job id / ext ref."""

    def __init__(
        self,
        db_path: Path | str = DB_PATH,
        now: Callable[[], datetime] = _utcnow,
        free_scan_period_days: int = FREE_SCAN_PERIOD_DAYS,
    ):
        self.db_path = db_path
        self._now = now
        self.free_scan_period = timedelta(days=free_scan_period_days)
        init_db(db_path)

    def _balance(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(delta), 0) AS balance
            FROM credit_ledger
            WHERE user_id = ? AND (expires_at IS NULL OR expires_at > ?)
            """,
            (user_id, self._now().isoformat()),
        ).fetchone()
        return int(row["balance"])

    def get_balance(self, user_id: str) -> int:
        conn = get_connection(self.db_path)
        try:
            return self._balance(conn, user_id)
        finally:
            conn.close()

    def consume(self, user_id: str, job_id: str, amount: int = 1) -> ConsumeResult:
        if not job_id:
            raise ValueError("job_id is required for idempotent consumption")
        conn = get_connection(self.db_path)
        try:
            with _transaction(conn):
                existing = conn.execute(
                    "SELECT id FROM credit_ledger WHERE user_id = ? AND job_id = ?",
                    (user_id, job_id),
                ).fetchone()
                balance = self._balance(conn, user_id)
                if existing is not None:
                    return ConsumeResult(success=True, remaining_balance=balance, idempotent=True)
                if balance < amount:
                    return ConsumeResult(success=False, remaining_balance=balance)
                conn.execute(
                    """
                    INSERT INTO credit_ledger (user_id, delta, reason, job_id, created_at)
                    VALUES (?, ?, 'consume:standard', ?, ?)
                    """,
                    (user_id, -amount, job_id, self._now().isoformat()),
                )
                return ConsumeResult(success=True, remaining_balance=balance - amount)
        finally:
            conn.close()

    def grant(
        self,
        user_id: str,
        amount: int,
        reason: str,
        expires_at: Optional[datetime] = None,
        ext_ref: Optional[str] = None,
    ) -> GrantResult:
        if amount <= 0:
            raise ValueError("Amount must be positive")
        conn = get_connection(self.db_path)
        try:
            with _transaction(conn):
                if ext_ref:
                    existing = conn.execute(
                        "SELECT id FROM credit_ledger WHERE user_id = ? AND ext_ref = ?",
                        (user_id, ext_ref),
                    ).fetchone()
                    if existing is not None:
                        return GrantResult(success=True, new_balance=self._balance(conn, user_id), idempotent=True)
                conn.execute(
                    """
                    INSERT INTO credit_ledger (user_id, delta, reason, ext_ref, expires_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        amount,
                        reason,
                        ext_ref,
                        expires_at.astimezone(timezone.utc).isoformat() if expires_at else None,
                        self._now().isoformat(),
                    ),
                )
                return GrantResult(success=True, new_balance=self._balance(conn, user_id))
        finally:
            conn.close()

    def free_scan_available(self, user_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT last_free_scan_at FROM free_scans WHERE user_id = ?", (user_id,)).fetchone()
            if row is None:
                return True
            return self._now() - datetime.fromisoformat(row["last_free_scan_at"]) >= self.free_scan_period
        finally:
            conn.close()

    def use_free_scan(self, user_id: str, job_id: str) -> bool:
        """Mark the monthly free scan used by job_id. True if it was available (or already used by this job)."""
        conn = get_connection(self.db_path)
        try:
            with _transaction(conn):
                row = conn.execute(
                    "SELECT last_free_scan_at, job_id FROM free_scans WHERE user_id = ?", (user_id,)
                ).fetchone()
                now = self._now()
                if row is not None:
                    if row["job_id"] == job_id:
                        return True
                    if now - datetime.fromisoformat(row["last_free_scan_at"]) < self.free_scan_period:
                        return False
                conn.execute(
                    """
                    INSERT INTO free_scans (user_id, last_free_scan_at, job_id) VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        last_free_scan_at = excluded.last_free_scan_at,
                        job_id = excluded.job_id
                    """,
                    (user_id, now.isoformat(), job_id),
                )
                return True
        finally:
            conn.close()

    def use_email_scan(self, email_hash: str, job_id: str) -> bool:
        """Record an anonymous scan for an email hash unless it is inside the cooldown."""
        conn = get_connection(self.db_path)
        try:
            with _transaction(conn):
                row = conn.execute(
                    "SELECT last_scan_at, job_id FROM email_scans WHERE email_hash = ?", (email_hash,)
                ).fetchone()
                now = self._now()
                if row is not None:
                    if row["job_id"] == job_id:
                        return True
                    elapsed = now - datetime.fromisoformat(row["last_scan_at"])
                    if elapsed < timedelta(seconds=EMAIL_SCAN_COOLDOWN_SECONDS):
                        return False
                conn.execute(
                    """
                    INSERT INTO email_scans (email_hash, last_scan_at, job_id) VALUES (?, ?, ?)
                    ON CONFLICT(email_hash) DO UPDATE SET
                        last_scan_at = excluded.last_scan_at,
                        job_id = excluded.job_id
                    """,
                    (email_hash, now.isoformat(), job_id),
                )
                return True
        finally:
            conn.close()
