import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Iterator


class Database:
    def __init__(self, db_path: str, timeout: float = 10.0) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self.timeout = timeout
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        # BEGIN IMMEDIATE takes the write lock up front, so check-then-write
        # sequences cannot interleave with another writer, even in another process.
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
        if column not in columns:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _init_db(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS service_requests (
                    id TEXT PRIMARY KEY,
                    requester_id TEXT NOT NULL,
                    booking_mode TEXT NOT NULL,
                    category TEXT NOT NULL,
                    subcategory TEXT NOT NULL,
                    location TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    request_date TEXT,
                    request_time TEXT,
                    title TEXT,
                    description TEXT,
                    notes TEXT,
                    assigned_provider_id TEXT,
                    status TEXT NOT NULL DEFAULT 'Open',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS provider_request_status (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    quote_id TEXT,
                    last_updated TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quotes (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    price TEXT NOT NULL,
                    message TEXT,
                    expires_at TEXT,
                    status TEXT NOT NULL DEFAULT 'Pending',
                    accepted_by_requester INTEGER NOT NULL DEFAULT 0,
                    requester_accepted_at TEXT,
                    accepted_by_provider INTEGER NOT NULL DEFAULT 0,
                    provider_accepted_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agreements (
                    id TEXT PRIMARY KEY,
                    quote_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    requester_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    requester_accepted INTEGER NOT NULL DEFAULT 0,
                    requester_accepted_at TEXT,
                    provider_accepted INTEGER NOT NULL DEFAULT 0,
                    provider_accepted_at TEXT,
                    finalized_at TEXT,
                    status TEXT NOT NULL DEFAULT 'Pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_statuses (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    is_assigned INTEGER NOT NULL DEFAULT 0,
                    assigned_at TEXT,
                    is_in_progress INTEGER NOT NULL DEFAULT 0,
                    in_progress_at TEXT,
                    is_checked_in INTEGER NOT NULL DEFAULT 0,
                    checked_in_at TEXT,
                    is_completed INTEGER NOT NULL DEFAULT 0,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS hidden_requests (
                    id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL,
                    service_request_id TEXT NOT NULL,
                    hidden_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    sender_id TEXT NOT NULL,
                    receiver_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    quote_id TEXT,
                    text TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    is_delivered INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            self._ensure_column(conn, "messages", "is_system", "INTEGER NOT NULL DEFAULT 0")

            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_prs_provider_request "
                "ON provider_request_status (provider_id, request_id)"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_prs_single_assigned "
                "ON provider_request_status (request_id) WHERE status = 'Assigned'"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_quotes_live "
                "ON quotes (request_id, provider_id) WHERE status = 'Pending'"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_agreements_quote_provider "
                "ON agreements (quote_id, provider_id)"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_request_provider "
                "ON workflow_statuses (request_id, provider_id)"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_hidden_provider_request "
                "ON hidden_requests (provider_id, service_request_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS ix_quotes_request ON quotes (request_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS ix_messages_request ON messages (request_id, quote_id)")
