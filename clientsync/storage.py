"""
SQLite-backed persistent storage.

Stands in for the browser's persisted key-value storage: it survives a
reload (process restart) but not an explicit wipe of the data file. Values
are JSON documents, one row per key.
"""
import sqlite3
import json
import logging
from pathlib import Path
from typing import Any, List, Optional
from datetime import datetime, timezone
from contextlib import contextmanager

from .models import PendingConfirmation

logger = logging.getLogger("sync.storage")


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

PENDING_CONFIRMATION_KEY = "payment.pending_confirmation"
PAYMENT_RETURN_KEY = "payment.return_marker"
LAST_SELECTED_PLAN_KEY = "payment.last_selected_plan"
ENTITLEMENT_SNAPSHOT_KEY = "entitlement.snapshot"

PAYMENT_RETURN_VERSION = 1


class PersistentStorage:
    """
    Key-value storage in a single SQLite table.

    Every call opens its own short-lived connection, so an instance can be
    shared by every component of a session.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[Any]:
        """Read and decode a value. Undecodable values read as missing."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()

        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding undecodable value for {key}: {e}")
            return None

    def set(self, key: str, value: Any) -> None:
        """Encode and write a value, replacing any previous one."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0

    def keys(self) -> List[str]:
        with self._get_connection() as conn:
            return [row["key"] for row in conn.execute("SELECT key FROM kv ORDER BY key")]

    def clear(self) -> int:
        """Remove every key (explicit user data clearing)."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM kv")
            conn.commit()
            return cursor.rowcount


class PendingConfirmationRepository:
    """Load/save/delete the single PendingConfirmation record."""

    def __init__(self, storage: PersistentStorage):
        self._storage = storage

    def load(self) -> Optional[PendingConfirmation]:
        data = self._storage.get(PENDING_CONFIRMATION_KEY)
        if data is None:
            return None
        try:
            return PendingConfirmation.from_dict(data)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding unreadable pending confirmation: {e}")
            self._storage.delete(PENDING_CONFIRMATION_KEY)
            return None

    def save(self, record: PendingConfirmation) -> None:
        self._storage.set(PENDING_CONFIRMATION_KEY, record.to_dict())
        logger.debug(
            f"Persisted pending confirmation {record.external_ref} "
            f"[state={record.state.value}, attempts={record.attempts}]"
        )

    def delete(self) -> bool:
        return self._storage.delete(PENDING_CONFIRMATION_KEY)

    def remember_selected_plan(self, plan_id: str) -> None:
        """Keep the plan chosen at checkout in case the record is lost."""
        self._storage.set(LAST_SELECTED_PLAN_KEY, {"planId": plan_id})

    def last_selected_plan(self) -> Optional[str]:
        data = self._storage.get(LAST_SELECTED_PLAN_KEY) or {}
        return data.get("planId")


class PaymentReturnMarker:
    """
    Persisted "just returned from the payment page" flag.

    Set when the redirect lands, consumed exactly once by whoever performs
    the forced post-payment refresh.
    """

    def __init__(self, storage: PersistentStorage):
        self._storage = storage

    def mark(self) -> None:
        self._storage.set(PAYMENT_RETURN_KEY, {
            "version": PAYMENT_RETURN_VERSION,
            "returnedAt": datetime.now(timezone.utc).isoformat(),
        })

    def is_set(self) -> bool:
        data = self._storage.get(PAYMENT_RETURN_KEY)
        return isinstance(data, dict) and data.get("version") == PAYMENT_RETURN_VERSION

    def consume(self) -> bool:
        """Clear the marker. Returns True if it was set."""
        was_set = self.is_set()
        self._storage.delete(PAYMENT_RETURN_KEY)
        return was_set
