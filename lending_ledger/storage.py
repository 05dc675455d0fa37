"""
Storage Backend Module

Provides the abstract storage interface the ledger writes through, with
in-memory (testing) and SQLite (persistence) implementations. All monetary
values are stored as Decimal strings.

Besides single-record access every backend supports apply_batch(): a list
of WriteOps committed atomically, each optionally guarded by the version
the caller read. A stale guard rejects the whole batch with VersionConflict.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path

from .exceptions import VersionConflict


class TransientStorageError(Exception):
    """A storage call failed in a way that is safe to retry (timeout, contention)"""
    pass


def serialize_value(value: Any) -> Any:
    """Convert a value to its JSON-safe storage form"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, date):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def parse_date(value: Any) -> Optional[date]:
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    return date.fromisoformat(value[:10])


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return serialize_value(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data:
            data['created_at'] = parse_datetime(data['created_at'])
        if 'updated_at' in data:
            data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


PUT = "put"
DELETE = "delete"


@dataclass
class WriteOp:
    """
    One storage write in a mutation plan.

    expected_version guards optimistic concurrency: None skips the check,
    0 requires that the record does not exist yet, any other value must
    match the stored record's version.
    """
    kind: str
    table: str
    record_id: str
    data: Optional[Dict[str, Any]] = None
    expected_version: Optional[int] = None
    description: str = ""

    def __post_init__(self):
        if self.kind not in (PUT, DELETE):
            raise ValueError(f"Unknown write kind: {self.kind}")
        if self.kind == PUT and self.data is None:
            raise ValueError("PUT write requires data")


def _check_version(op: WriteOp, current: Optional[Dict[str, Any]]) -> None:
    if op.expected_version is None:
        return
    actual = current.get('version', 1) if current is not None else 0
    if actual != op.expected_version:
        raise VersionConflict(op.table, op.record_id, op.expected_version, actual)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def apply_batch(self, ops: List[WriteOp]) -> None:
        """Apply every write or none of them"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self.load_all(table))


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            # Deep copy to prevent external mutation
            self._table(table)[record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._table(table).get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [json.loads(json.dumps(record)) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def apply_batch(self, ops: List[WriteOp]) -> None:
        """Validate every version guard, then apply all writes under one lock"""
        with self._lock:
            pending: Dict[tuple, Optional[Dict[str, Any]]] = {}
            for op in ops:
                key = (op.table, op.record_id)
                current = pending[key] if key in pending else self._table(op.table).get(op.record_id)
                _check_version(op, current)
                pending[key] = op.data if op.kind == PUT else None
            for op in ops:
                if op.kind == PUT:
                    self.save(op.table, op.record_id, op.data)
                else:
                    self.delete(op.table, op.record_id)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._tables.add(table)

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        self._connection.execute(f"""
            INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?,
                COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                ?)
        """, (record_id, json.dumps(data, default=str), record_id, now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            self._write(table, record_id, data)
            self._connection.commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._connection.commit()
            return cursor.rowcount > 0

    def apply_batch(self, ops: List[WriteOp]) -> None:
        """Apply all writes inside one SQLite transaction"""
        with self._lock:
            for op in ops:
                self._ensure_table(op.table)
            self._connection.commit()
            try:
                # Reads inside the open transaction see earlier writes of this batch
                for op in ops:
                    _check_version(op, self.load(op.table, op.record_id))
                    if op.kind == PUT:
                        self._write(op.table, op.record_id, op.data)
                    else:
                        self._connection.execute(
                            f"DELETE FROM {op.table} WHERE id = ?", (op.record_id,)
                        )
                self._connection.commit()
            except sqlite3.OperationalError as e:
                self._connection.rollback()
                # "database is locked" and friends clear up on retry
                raise TransientStorageError(str(e)) from e
            except Exception:
                self._connection.rollback()
                raise

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """Build a backend from a URL: memory:// or sqlite:///path.db"""
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
