from __future__ import annotations

"""SQLite-backed key-value store holding the kiosk device identity."""

import sqlite3
import threading
from pathlib import Path
from typing import Optional

DEVICE_ID_KEY = "DeviceId"


class DeviceIdentityStore:
    """Thread-safe SQLite access layer for persisted device settings."""

    def __init__(self, db_path: Path) -> None:
        """Open database connection and ensure schema exists."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row[0])

    def set(self, key: str, value: str) -> None:
        """Insert or overwrite one setting."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value),
            )
            self._conn.commit()

    def delete(self, key: str) -> bool:
        """Remove one setting; returns whether it existed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            self._conn.commit()
            return cursor.rowcount > 0

    def get_device_id(self) -> Optional[str]:
        """Return the onboarded device GUID, or `None` before onboarding."""
        value = self.get(DEVICE_ID_KEY)
        if value is None or not value.strip():
            return None
        return value.strip()

    def set_device_id(self, device_id: str) -> None:
        value = (device_id or "").strip()
        if not value:
            raise ValueError("Device id must not be empty")
        self.set(DEVICE_ID_KEY, value)

    def clear_device_id(self) -> bool:
        return self.delete(DEVICE_ID_KEY)
