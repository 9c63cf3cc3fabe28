"""SQLite persistence for stored accounts and the active-account pointer.

2 tables:
- accounts: one row per identity, keyed by "<kind>_<id>" so the same server
  id under two account kinds stays two identities (tokens stored as ciphertext)
- settings: small key/value rows (active account pointer, device id)

Rows are stored per record, so an update only touches the columns it names
on one row. WAL mode for concurrent reads, single writer lock for atomic
writes. Capacity check + insert and delete + pointer reassignment each run
inside one transaction.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import BaseModel, Field, computed_field

from sessiondeck.errors import CapacityExceeded

ACTIVE_ACCOUNT_KEY = "active_account_id"
DEVICE_ID_KEY = "device_id"


class Account(BaseModel):
    """One stored identity, with tokens decrypted for in-memory use.

    ``last_active_at`` and ``logged_out_at`` are epoch milliseconds.
    """

    id: str
    kind: str = "member"
    handle: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    is_logged_in: bool = True
    unread_count: int = Field(default=0, ge=0)
    last_active_at: Optional[int] = None
    logged_out_at: Optional[int] = None
    logout_reason: Optional[str] = None
    logout_source: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @computed_field
    @property
    def key(self) -> str:
        """
        >>> Account(id="7", kind="community").key
        'community_7'
        """
        return account_key(self.kind, self.id)


def account_key(kind: Optional[str], account_id: str) -> str:
    """Storage key of an identity: the same id under two kinds is two accounts.

    >>> account_key("member", 7)
    'member_7'
    """
    return f"{kind or 'member'}_{account_id}"


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    key TEXT PRIMARY KEY,
    id TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'member',
    handle TEXT,
    email TEXT,
    display_name TEXT,
    avatar_url TEXT,
    access_token TEXT,
    refresh_token TEXT,
    is_logged_in BOOLEAN DEFAULT TRUE,
    unread_count INTEGER DEFAULT 0 CHECK (unread_count >= 0),
    last_active_at INTEGER,
    logged_out_at INTEGER,
    logout_reason TEXT,
    logout_source TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_accounts_id ON accounts(id);
CREATE INDEX IF NOT EXISTS idx_accounts_email ON accounts(email);
CREATE INDEX IF NOT EXISTS idx_accounts_last_active ON accounts(is_logged_in, last_active_at);
"""

# Columns callers may write. key/id/kind/created_at/updated_at are managed here.
ACCOUNT_COLUMNS = frozenset(
    {
        "handle",
        "email",
        "display_name",
        "avatar_url",
        "access_token",
        "refresh_token",
        "is_logged_in",
        "unread_count",
        "last_active_at",
        "logged_out_at",
        "logout_reason",
        "logout_source",
    }
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[dict]:
    if row is None:
        return None
    data = dict(row)
    data["is_logged_in"] = bool(data.get("is_logged_in"))
    return data


class Database:
    """SQLite database manager with WAL mode and thread-safe writes.

    >>> db = Database(":memory:")
    >>> db.db_path
    ':memory:'
    >>> db.list_accounts()
    []
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._write_lock = threading.Lock()
        self._local = threading.local()

        # Create parent dir + file if needed (skip for :memory:)
        if self.db_path != ":memory:" and not Path(self.db_path).exists():
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            Path(self.db_path).touch()

        self._init_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        yield self._get_connection()

    def _init_schema(self) -> None:
        with self._writer() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.executescript(INDEXES_SQL)

    def close(self) -> None:
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None

    # ==================================================================
    # Account CRUD
    # ==================================================================

    def upsert_account(
        self,
        account_id: str,
        fields: dict,
        *,
        kind: str = "member",
        max_accounts: Optional[int] = None,
        activate: bool = False,
    ) -> dict:
        """Insert a new account or merge ``fields`` into an existing one.

        Identity is (kind, id). Raises CapacityExceeded when that identity is
        new and ``max_accounts`` rows already exist. With ``activate`` the
        active pointer is moved to this account in the same transaction.

        >>> db = Database(":memory:")
        >>> db.upsert_account("7", {"email": "a@test.com"}, activate=True)["email"]
        'a@test.com'
        >>> db.get_active_id()
        'member_7'
        >>> _ = db.upsert_account("7", {"email": "c@test.com"}, kind="community")
        >>> db.count_accounts()
        2
        """
        invalid_cols = set(fields) - ACCOUNT_COLUMNS
        if invalid_cols:
            raise ValueError(f"Invalid columns for account write: {invalid_cols}")

        key = account_key(kind, account_id)
        now = _now_iso()
        with self._writer() as conn:
            if self._exists(conn, key):
                if fields:
                    assignments = ", ".join(f"{k} = ?" for k in fields)
                    conn.execute(
                        f"UPDATE accounts SET {assignments}, updated_at = ? WHERE key = ?",
                        [*fields.values(), now, key],
                    )
            else:
                if max_accounts is not None:
                    count = conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
                    if count >= max_accounts:
                        raise CapacityExceeded(max_accounts)
                cols = ["key", "id", "kind", *fields.keys(), "created_at", "updated_at"]
                placeholders = ", ".join("?" for _ in cols)
                conn.execute(
                    f"INSERT INTO accounts ({', '.join(cols)}) VALUES ({placeholders})",
                    [key, str(account_id), kind or "member", *fields.values(), now, now],
                )

            if activate:
                self._set_setting(conn, ACTIVE_ACCOUNT_KEY, key, now)

            row = conn.execute("SELECT * FROM accounts WHERE key = ?", (key,)).fetchone()
            return _row_to_dict(row) or {}

    def get_account(self, ref: str) -> Optional[dict]:
        """Get an account row by storage key, or by bare id.

        A bare id shared by several kinds resolves to the oldest of them.

        >>> db = Database(":memory:")
        >>> _ = db.upsert_account("5", {}, kind="community")
        >>> db.get_account("5")["key"], db.get_account("community_5")["kind"]
        ('community_5', 'community')
        >>> db.get_account("missing") is None
        True
        """
        with self._reader() as conn:
            return _row_to_dict(self._find(conn, ref))

    def list_accounts(self) -> list[dict]:
        """List account rows in insertion order."""
        with self._reader() as conn:
            cursor = conn.execute("SELECT * FROM accounts ORDER BY created_at ASC, rowid ASC")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def count_accounts(self) -> int:
        with self._reader() as conn:
            return conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]

    def update_account(self, ref: str, **kwargs: Any) -> bool:
        """Update named columns of one account.

        Returns False when nothing was updated (unknown account or no fields).

        >>> db = Database(":memory:")
        >>> _ = db.upsert_account("1", {"email": "u@test.com"})
        >>> db.update_account("1", unread_count=4)
        True
        >>> db.update_account("2", unread_count=4)
        False
        """
        if not kwargs:
            return False

        invalid_cols = set(kwargs) - ACCOUNT_COLUMNS
        if invalid_cols:
            raise ValueError(f"Invalid columns for account update: {invalid_cols}")

        kwargs["updated_at"] = _now_iso()
        set_clause = ", ".join(f"{k} = ?" for k in kwargs)

        with self._writer() as conn:
            row = self._find(conn, ref)
            if row is None:
                return False
            cursor = conn.execute(
                f"UPDATE accounts SET {set_clause} WHERE key = ?",
                [*kwargs.values(), row["key"]],
            )
            return cursor.rowcount > 0

    def activate_account(self, ref: str, last_active_at: int) -> bool:
        """Stamp ``last_active_at`` and point the active pointer at this account.

        >>> db = Database(":memory:")
        >>> db.activate_account("nope", 1)
        False
        """
        now = _now_iso()
        with self._writer() as conn:
            row = self._find(conn, ref)
            if row is None:
                return False
            conn.execute(
                "UPDATE accounts SET last_active_at = ?, updated_at = ? WHERE key = ?",
                (last_active_at, now, row["key"]),
            )
            self._set_setting(conn, ACTIVE_ACCOUNT_KEY, row["key"], now)
            return True

    def delete_account(self, ref: str) -> tuple[bool, Optional[str]]:
        """Delete an account and repair the active pointer.

        If the deleted account was active, the pointer moves to the most
        recently active logged-in account, else the most recently active
        remaining account, else it is cleared.

        Returns (deleted, active_key_after).

        >>> db = Database(":memory:")
        >>> _ = db.upsert_account("a", {}, activate=True)
        >>> _ = db.upsert_account("b", {})
        >>> db.delete_account("a")
        (True, 'member_b')
        >>> db.delete_account("b")
        (True, None)
        """
        now = _now_iso()
        with self._writer() as conn:
            row = self._find(conn, ref)
            deleted = False
            if row is not None:
                conn.execute("DELETE FROM accounts WHERE key = ?", (row["key"],))
                deleted = True

            active_key = self._get_setting(conn, ACTIVE_ACCOUNT_KEY)
            if active_key is not None and not self._exists(conn, active_key):
                row = conn.execute(
                    """SELECT key FROM accounts
                       ORDER BY is_logged_in DESC,
                                COALESCE(last_active_at, 0) DESC,
                                created_at ASC, rowid ASC
                       LIMIT 1"""
                ).fetchone()
                if row:
                    active_key = row["key"]
                    self._set_setting(conn, ACTIVE_ACCOUNT_KEY, active_key, now)
                else:
                    active_key = None
                    conn.execute(
                        "DELETE FROM settings WHERE key = ?", (ACTIVE_ACCOUNT_KEY,)
                    )
            return deleted, active_key

    def delete_all_accounts(self) -> int:
        """Delete every account and clear the active pointer. Returns row count."""
        with self._writer() as conn:
            cursor = conn.execute("DELETE FROM accounts")
            conn.execute("DELETE FROM settings WHERE key = ?", (ACTIVE_ACCOUNT_KEY,))
            return cursor.rowcount

    # ==================================================================
    # Active pointer + settings
    # ==================================================================

    def get_active_id(self) -> Optional[str]:
        """Storage key the active pointer holds, if any."""
        return self.get_setting(ACTIVE_ACCOUNT_KEY)

    def set_active_id(self, key: Optional[str]) -> None:
        """Point at the account stored under ``key``, or clear the pointer with None."""
        if key is None:
            self.delete_setting(ACTIVE_ACCOUNT_KEY)
        else:
            self.set_setting(ACTIVE_ACCOUNT_KEY, key)

    def get_setting(self, key: str) -> Optional[str]:
        """
        >>> db = Database(":memory:")
        >>> db.get_setting("nope") is None
        True
        """
        with self._reader() as conn:
            return self._get_setting(conn, key)

    def set_setting(self, key: str, value: str) -> None:
        with self._writer() as conn:
            self._set_setting(conn, key, value, _now_iso())

    def delete_setting(self, key: str) -> bool:
        with self._writer() as conn:
            cursor = conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            return cursor.rowcount > 0

    @staticmethod
    def _get_setting(conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    @staticmethod
    def _set_setting(conn: sqlite3.Connection, key: str, value: str, now: str) -> None:
        conn.execute(
            """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   updated_at = excluded.updated_at""",
            (key, value, now),
        )

    @staticmethod
    def _exists(conn: sqlite3.Connection, key: str) -> bool:
        return (
            conn.execute("SELECT 1 FROM accounts WHERE key = ?", (key,)).fetchone()
            is not None
        )

    @staticmethod
    def _find(conn: sqlite3.Connection, ref: str) -> Optional[sqlite3.Row]:
        """Row for a storage key, falling back to the oldest row with that bare id."""
        ref = str(ref)
        row = conn.execute("SELECT * FROM accounts WHERE key = ?", (ref,)).fetchone()
        if row is not None:
            return row
        return conn.execute(
            "SELECT * FROM accounts WHERE id = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
            (ref,),
        ).fetchone()
