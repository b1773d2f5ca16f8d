"""
File: db_store.py
Author notes: Local persistence layer for MediWallet. I keep the SQLite schema,
the additive upgrade path, the user id backfill and the connection guardian
here so the record repositories only have to translate rows into records.

Upgrades are strictly additive: tables are created with their latest column
set, and stores written by older app versions get the missing columns added in
the order they were introduced. Nothing is ever dropped or renamed.
"""

import sqlite3
import logging
import uuid
from collections import namedtuple
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Any, Dict, List

logger = logging.getLogger("uvicorn.error")


# --- Errors ---

class StoreError(Exception):
    """Base exception for local store errors."""


class NotInitialized(StoreError):
    """The store could not be opened (first open or reopen after a lost handle)."""


class StorageFault(StoreError):
    """Engine or disk error surfaced after the guardian gave up."""


class ConnectionLost(StorageFault):
    """The handle was reported closed again right after reopening."""


class MigrationFault(StorageFault):
    """A critical additive migration could not be applied."""


class ValidationFault(ValueError):
    """Caller data violates a required-field invariant; raised before any I/O."""


# --- Schema ---

TABLES = {
    "test_results": """
        CREATE TABLE IF NOT EXISTS test_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            test_type TEXT NOT NULL,
            image_path TEXT NOT NULL,
            results TEXT,
            notes TEXT,
            analyzed_data TEXT
        );
    """,
    "user_settings": """
        CREATE TABLE IF NOT EXISTS user_settings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT UNIQUE NOT NULL,
            user_name TEXT NOT NULL,
            user_phone TEXT,
            user_email TEXT,
            user_address TEXT,
            user_date_of_birth TEXT,
            insurance_company TEXT,
            insurance_number TEXT,
            doctor_name TEXT NOT NULL,
            doctor_phone TEXT,
            doctor_email TEXT,
            doctor_address TEXT,
            openai_api_key TEXT,
            ai_provider TEXT,
            ai_api_key TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
    """,
    "test_result_shares": """
        CREATE TABLE IF NOT EXISTS test_result_shares (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            test_result_id INTEGER NOT NULL,
            doctor_name TEXT NOT NULL,
            doctor_email TEXT,
            expires_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (test_result_id) REFERENCES test_results(id) ON DELETE CASCADE
        );
    """,
    "chat_messages": """
        CREATE TABLE IF NOT EXISTS chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sender_id TEXT NOT NULL,
            receiver_id TEXT NOT NULL,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL,
            read INTEGER DEFAULT 0
        );
    """,
    "medications": """
        CREATE TABLE IF NOT EXISTS medications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            dosage TEXT,
            frequency TEXT,
            notes TEXT,
            reminder_enabled INTEGER DEFAULT 0,
            reminder_times TEXT,
            created_at TEXT NOT NULL
        );
    """,
    "vaccinations": """
        CREATE TABLE IF NOT EXISTS vaccinations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            date TEXT NOT NULL,
            notes TEXT,
            created_at TEXT NOT NULL
        );
    """,
}

INDEXES = {
    "idx_chat_sender_receiver": "CREATE INDEX IF NOT EXISTS idx_chat_sender_receiver ON chat_messages(sender_id, receiver_id);",
    "idx_chat_receiver_sender": "CREATE INDEX IF NOT EXISTS idx_chat_receiver_sender ON chat_messages(receiver_id, sender_id);",
}

Migration = namedtuple("Migration", "version table column ddl critical")

# Append-only, in the order the columns shipped. Never reorder or remove.
MIGRATIONS = [
    Migration(1, "user_settings", "user_phone", "TEXT", False),
    Migration(2, "user_settings", "user_email", "TEXT", False),
    Migration(3, "user_settings", "user_address", "TEXT", False),
    Migration(4, "user_settings", "user_date_of_birth", "TEXT", False),
    Migration(5, "user_settings", "insurance_company", "TEXT", False),
    Migration(6, "user_settings", "insurance_number", "TEXT", False),
    Migration(7, "user_settings", "openai_api_key", "TEXT", False),
    Migration(8, "user_settings", "ai_provider", "TEXT", False),
    Migration(9, "user_settings", "ai_api_key", "TEXT", False),
    Migration(10, "user_settings", "user_id", "TEXT", True),
    Migration(11, "medications", "reminder_enabled", "INTEGER DEFAULT 0", False),
    Migration(12, "medications", "reminder_times", "TEXT", False),
]

SCHEMA_VERSION = MIGRATIONS[-1].version


def schema_columns(conn, table: str) -> List[str]:
    """Return the live column names of a table (empty if the table is missing)."""
    return [col["name"] for col in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def table_exists(conn, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


def get_schema_version(conn) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def _set_schema_version(conn, version: int):
    # PRAGMA does not take bound parameters
    conn.execute(f"PRAGMA user_version = {int(version)}")


def _apply_migration(conn, step: Migration) -> bool:
    """Add one column if missing. Returns False when a non-critical step was skipped."""
    if step.column in schema_columns(conn, step.table):
        return True
    try:
        conn.execute(f"ALTER TABLE {step.table} ADD COLUMN {step.column} {step.ddl};")
    except sqlite3.Error as exc:
        if step.critical:
            logger.error("Migration %s.%s failed: %s", step.table, step.column, exc)
            raise MigrationFault(f"Could not add {step.table}.{step.column}: {exc}") from exc
        logger.warning("Skipping migration %s.%s: %s", step.table, step.column, exc)
        return False
    logger.info("Added column: %s.%s", step.table, step.column)
    return True


def ensure_schema(conn):
    """Create missing tables/indexes and apply pending additive columns (idempotent)."""
    for ddl in TABLES.values():
        conn.execute(ddl)
    for ddl in INDEXES.values():
        conn.execute(ddl)

    recorded = get_schema_version(conn)
    applied = recorded
    blocked = False
    for step in MIGRATIONS:
        if step.version <= recorded:
            continue
        ok = _apply_migration(conn, step)
        if not ok:
            blocked = True
        elif not blocked:
            applied = step.version
    if applied > recorded:
        _set_schema_version(conn, applied)

    if "user_id" in schema_columns(conn, "user_settings"):
        backfill_user_ids(conn)
    conn.commit()


def ensure_table(conn, table: str):
    """Lazy per-table check used by repositories whose tables shipped after the main schema."""
    if not table_exists(conn, table):
        conn.execute(TABLES[table])
        logger.info("Created table: %s", table)
        return
    for step in MIGRATIONS:
        if step.table == table:
            _apply_migration(conn, step)


# --- Identity backfill ---

def generate_user_id() -> str:
    """32 random hex characters grouped 8-4-4-4-12."""
    return str(uuid.uuid4())


def row_value(row, key: str):
    try:
        return row[key]
    except (KeyError, IndexError):
        return None


def ensure_user_id(conn, row) -> str:
    """Return the profile row's user id, generating and persisting one if absent."""
    existing = row_value(row, "user_id")
    if existing:
        return existing
    row_id = row["id"]
    candidate = generate_user_id()
    cur = conn.execute(
        "UPDATE user_settings SET user_id = ? WHERE id = ? AND (user_id IS NULL OR user_id = '')",
        (candidate, row_id),
    )
    if cur.rowcount:
        logger.info("Generated user_id for user_settings row %s", row_id)
    stored = conn.execute("SELECT user_id FROM user_settings WHERE id = ?", (row_id,)).fetchone()
    return stored[0] if stored and stored[0] else candidate


def backfill_user_ids(conn) -> int:
    """Give every profile row that predates the user_id column a stable id."""
    rows = conn.execute(
        "SELECT id, user_id FROM user_settings WHERE user_id IS NULL OR user_id = ''"
    ).fetchall()
    for row in rows:
        ensure_user_id(conn, row)
    return len(rows)


# --- Connection guardian ---

CLOSED = "closed"
OPENING = "opening"
OPEN = "open"

_HANDLE_LOST_MARKERS = ("closed", "not open")


def _is_handle_lost(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _HANDLE_LOST_MARKERS)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Store:
    """Owns the single SQLite handle for the process and guards every operation.

    Repositories never hold a connection of their own; they hand a callable to
    :meth:`run`, which opens the store on first use, and on a lost handle
    reopens it and retries the callable exactly once.
    """

    def __init__(self, db_path: Path, clock: Optional[Callable[[], datetime]] = None):
        self.db_path = Path(db_path)
        self._clock = clock or _utc_now
        self._conn: Optional[sqlite3.Connection] = None
        self._state = CLOSED

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == OPEN and self._conn is not None

    def now(self) -> str:
        return self._clock().isoformat(timespec="microseconds")

    def open(self):
        """Open the handle and bring its schema up to date. No-op when already open."""
        if self.is_open:
            return
        self._state = OPENING
        conn = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            # Keep temp tables in memory for the grouped chat query
            conn.execute("PRAGMA temp_store = MEMORY;")
            ensure_schema(conn)
        except MigrationFault:
            self._abort(conn)
            raise
        except (sqlite3.Error, OSError) as exc:
            self._abort(conn)
            logger.exception("Store open failed", extra={"db_path": str(self.db_path)})
            raise NotInitialized(f"Failed to initialize store at {self.db_path}: {exc}") from exc
        self._conn = conn
        self._state = OPEN
        logger.info("Store opened: %s (schema v%s)", self.db_path, SCHEMA_VERSION)

    init_store = open

    def _abort(self, conn):
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error as exc:
                logger.warning("Error closing half-open store handle: %s", exc)
        self._conn = None
        self._state = CLOSED

    def close(self):
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                logger.warning("Error closing store handle: %s", exc)
        self._conn = None
        self._state = CLOSED

    def _discard(self):
        """Drop a handle that reported itself unusable."""
        self.close()

    def _execute(self, op: Callable[[sqlite3.Connection], Any]) -> Any:
        if not self.is_open:
            self.open()
        conn = self._conn
        with conn:
            return op(conn)

    def run(self, op: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run ``op(conn)`` in a transaction, recovering once from a lost handle."""
        try:
            return self._execute(op)
        except sqlite3.Error as exc:
            if not _is_handle_lost(exc):
                raise StorageFault(str(exc)) from exc
            logger.warning(
                "Store handle lost (%s); reopening and retrying once",
                exc,
                extra={"db_path": str(self.db_path)},
            )
            self._discard()
        try:
            return self._execute(op)
        except sqlite3.Error as exc:
            if _is_handle_lost(exc):
                raise ConnectionLost(f"Store handle lost again after reopen: {exc}") from exc
            raise StorageFault(str(exc)) from exc

    def schema_report(self) -> Dict[str, Any]:
        """Tables, indexes and schema version of the live store."""
        def op(conn):
            tables = {t: schema_columns(conn, t) for t in TABLES if table_exists(conn, t)}
            indexes = [
                r["name"]
                for r in conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()
            ]
            return {"version": get_schema_version(conn), "tables": tables, "indexes": indexes}

        return self.run(op)
