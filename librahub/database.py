import json
import logging
import sqlite3
from typing import Any, List, Optional

from librahub.config import settings

logger = logging.getLogger(__name__)

# Known keys of the local key-value store.
USERS = "users"
BOOKS = "books"
BRANCHES = "branches"
BORROWING_RECORDS = "borrowingRecords"
SETTINGS = "settings"
RESERVATIONS = "reservations"
THEME = "theme"


def get_db_connection(db_file: str) -> sqlite3.Connection:
    """Open a connection to the SQLite file backing the local store."""
    conn = sqlite3.connect(db_file)
    conn.row_factory = sqlite3.Row
    return conn


def create_tables(db_file: str) -> None:
    """Create the key-value table if it does not exist."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()
    finally:
        conn.close()


class LocalStore:
    """Persistent key-value store holding JSON-serialized collections.

    There is no schema: a missing key, or a value that no longer parses, reads
    back as the caller's default (an empty list for collections).
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or settings.local_db_file
        create_tables(self.db_file)

    def get(self, key: str, default: Any = None) -> Any:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Unreadable value under local key '{key}': {e}")
            return default

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                """,
                (key, payload),
            )
            conn.commit()
        finally:
            conn.close()

    def remove(self, key: str) -> bool:
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def has(self, key: str) -> bool:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT 1 FROM kv_store WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return row is not None

    def keys(self) -> List[str]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
        finally:
            conn.close()
        return [r["key"] for r in rows]

    def get_collection(self, key: str) -> List[dict]:
        value = self.get(key, [])
        if not isinstance(value, list):
            logger.warning(f"Local key '{key}' does not hold a collection, treating it as empty")
            return []
        return value

    def set_collection(self, key: str, items: List[dict]) -> None:
        self.set(key, list(items))
