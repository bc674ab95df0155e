"""
store.py - Request-scoped key-value stores for sync state and fix receipts.

The orchestrator and the fix executor only ever see the narrow
get/set/delete contract below; whoever builds them decides which backend
to hand in. Values must be JSON-serializable.

Backends:
    InMemoryStore     dict + lock, the default for one request / one CLI run
    JsonFileStore     one JSON document on disk, atomic temp-file writes
    PostgresStore     one row per key in a JSONB table (psycopg)
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

from logging_config import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStore:
    """Process-local store; create one per request rather than sharing it."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class JsonFileStore:
    """Disk-backed store using one JSON file and atomic writes."""

    def __init__(self, path: Optional[str] = None) -> None:
        target = path or os.getenv("RECON_STORE_FILE", "data/recon_store.json")
        self.path = Path(target).resolve()
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                "store_load_warning | path=%s | error_type=%s | error=%s | fallback='empty'",
                self.path,
                type(exc).__name__,
                exc,
            )
            return {}
        return raw if isinstance(raw, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(self.path.parent),
            delete=False,
            suffix=".tmp",
            prefix="recon-store-",
        ) as tmp_file:
            json.dump(data, tmp_file, ensure_ascii=False, indent=2)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)

        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)


class PostgresStore:
    """PostgreSQL-backed store for deployments that share state across workers."""

    def __init__(self, database_url: str, table_name: str = "recon_store") -> None:
        self.database_url = str(database_url or "").strip()
        if not self.database_url:
            raise ValueError("database_url is required for PostgresStore.")
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", table_name):
            raise ValueError("table_name must be a valid SQL identifier.")
        self.table_name = table_name
        self._psycopg = self._import_psycopg()
        self._table_ready = False

    @staticmethod
    def _import_psycopg():
        try:
            import psycopg  # type: ignore

            return psycopg
        except ImportError as exc:
            raise RuntimeError(
                "PostgreSQL store requires psycopg. Install with: pip install 'recon-sync[postgres]'"
            ) from exc

    def _connect(self):
        return self._psycopg.connect(self.database_url, autocommit=True)

    def _ensure_table(self, conn) -> None:
        if self._table_ready:
            return
        with conn.cursor() as cur:
            cur.execute(
                f"CREATE TABLE IF NOT EXISTS {self.table_name} ("
                "key TEXT PRIMARY KEY,"
                "payload JSONB NOT NULL,"
                "updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()"
                ")"
            )
        self._table_ready = True

    def get(self, key: str) -> Optional[Any]:
        with self._connect() as conn:
            self._ensure_table(conn)
            with conn.cursor() as cur:
                cur.execute(f"SELECT payload FROM {self.table_name} WHERE key = %s", (key,))
                row = cur.fetchone()
        if not row:
            return None
        payload = row[0]
        return json.loads(payload) if isinstance(payload, str) else payload

    def set(self, key: str, value: Any) -> None:
        query = (
            f"INSERT INTO {self.table_name} (key, payload, updated_at) "
            "VALUES (%s, %s::jsonb, NOW()) "
            "ON CONFLICT (key) "
            "DO UPDATE SET payload = EXCLUDED.payload, updated_at = NOW()"
        )
        with self._connect() as conn:
            self._ensure_table(conn)
            with conn.cursor() as cur:
                cur.execute(query, (key, json.dumps(value, ensure_ascii=False)))

    def delete(self, key: str) -> None:
        with self._connect() as conn:
            self._ensure_table(conn)
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.table_name} WHERE key = %s", (key,))


def store_from_env() -> KeyValueStore:
    """Pick a backend: RECON_DATABASE_URL, then RECON_STORE_FILE, else memory."""
    database_url = os.getenv("RECON_DATABASE_URL", "").strip()
    if database_url:
        return PostgresStore(database_url)
    if os.getenv("RECON_STORE_FILE", "").strip():
        return JsonFileStore()
    return InMemoryStore()
