"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Every backend supports a real atomic unit: writes made inside ``atomic()`` are
invisible to other threads until commit and are discarded on any exception.
Tables can be marked append-only, after which overwriting, deleting or
clearing their records fails.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Set
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import (
    FundflowError, ImmutableAuditEntryError, TransactionConflictError
)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._append_only_tables: Set[str] = set()

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
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the calling thread's transaction"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Nested blocks join the outermost unit. A failure anywhere inside the
        unit discards all of its writes.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def mark_append_only(self, table: str) -> None:
        """Forbid overwrite, delete and clear on a table"""
        self._append_only_tables.add(table)

    def is_append_only(self, table: str) -> bool:
        return table in self._append_only_tables

    def _guard_mutation(self, table: str, record_id: Optional[str], operation: str) -> None:
        """Raise if an append-only record would be changed or removed"""
        if table not in self._append_only_tables:
            return
        if operation == "save" and not self.exists(table, record_id):
            return
        target = f"{table}/{record_id}" if record_id else table
        raise ImmutableAuditEntryError(
            f"Records in {table} are immutable and cannot be {operation}d ({target})"
        )


class _Deleted:
    """Marker for a record deleted inside an uncommitted unit"""


_DELETED = _Deleted()


class _UnitOfWork:
    """Per-thread write overlay for InMemoryStorage"""

    def __init__(self):
        self.depth = 0
        self.rollback_only = False
        self.writes: Dict[str, Dict[str, Any]] = {}


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    # Deep copy to prevent external mutation
    return json.loads(json.dumps(record, default=str))


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _unit(self) -> Optional[_UnitOfWork]:
        unit = getattr(self._local, "unit", None)
        if unit is not None and unit.depth > 0:
            return unit
        return None

    def _visible(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed records overlaid with this thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            records = dict(self._data[table])
        unit = self._unit()
        if unit is not None:
            for record_id, record in unit.writes.get(table, {}).items():
                if record is _DELETED:
                    records.pop(record_id, None)
                else:
                    records[record_id] = record
        return records

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        self._guard_mutation(table, record_id, "save")
        record = _copy(data)
        unit = self._unit()
        if unit is not None:
            unit.writes.setdefault(table, {})[record_id] = record
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._visible(table).get(record_id)
        if record:
            return _copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._visible(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        self._guard_mutation(table, record_id, "delete")
        unit = self._unit()
        if unit is not None:
            existed = record_id in self._visible(table)
            if existed:
                unit.writes.setdefault(table, {})[record_id] = _DELETED
            return existed
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._visible(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        results = []
        for record in self._visible(table).values():
            match = True
            for key, value in filters.items():
                if key not in record or record[key] != value:
                    match = False
                    break
            if match:
                results.append(_copy(record))
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._visible(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        self._guard_mutation(table, None, "clear")
        unit = self._unit()
        if unit is not None:
            pending = unit.writes.setdefault(table, {})
            for record_id in self._visible(table):
                pending[record_id] = _DELETED
            return
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Start a unit of work, or join the one already open on this thread"""
        unit = getattr(self._local, "unit", None)
        if unit is None or unit.depth == 0:
            unit = _UnitOfWork()
            self._local.unit = unit
        unit.depth += 1

    def commit(self) -> None:
        """Apply this thread's writes once the outermost unit commits"""
        unit = self._unit()
        if unit is None:
            return
        unit.depth -= 1
        if unit.depth > 0:
            return
        self._local.unit = None
        if unit.rollback_only:
            raise FundflowError("Transaction was rolled back by a nested unit")
        with self._lock:
            for table, writes in unit.writes.items():
                self._ensure_table(table)
                for record_id, record in writes.items():
                    if record is _DELETED:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = record

    def rollback(self) -> None:
        """Discard this thread's writes"""
        unit = self._unit()
        if unit is None:
            return
        unit.depth -= 1
        unit.rollback_only = True
        if unit.depth == 0:
            self._local.unit = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


_CONFLICT_MARKERS = ("locked", "busy")


@contextmanager
def _translate_sqlite_errors():
    """Surface lock contention as a retryable conflict"""
    try:
        yield
    except sqlite3.OperationalError as e:
        if any(marker in str(e).lower() for marker in _CONFLICT_MARKERS):
            raise TransactionConflictError(f"SQLite conflict: {e}") from e
        raise


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 5.0):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue BEGIN IMMEDIATE themselves
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None,
            timeout=busy_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._known_tables: Set[str] = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            # Create index on timestamps for better query performance
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if table in self._append_only_tables:
                self._create_immutability_triggers(table)
            self._known_tables.add(table)

    def _create_immutability_triggers(self, table: str) -> None:
        """Reject UPDATE and DELETE at the database level as well"""
        for operation in ("UPDATE", "DELETE"):
            self._connection.execute(f"""
                CREATE TRIGGER IF NOT EXISTS trg_{table}_no_{operation.lower()}
                BEFORE {operation} ON {table}
                BEGIN
                    SELECT RAISE(ABORT, 'records in {table} are immutable');
                END
            """)

    def mark_append_only(self, table: str) -> None:
        super().mark_append_only(table)
        # Recreate schema objects so the triggers exist
        self._known_tables.discard(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, _translate_sqlite_errors():
            self._ensure_table(table)
            self._guard_mutation(table, record_id, "save")

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            if table in self._append_only_tables:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, data_json, now, now))
                return

            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, _translate_sqlite_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, _translate_sqlite_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, id
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, _translate_sqlite_errors():
            self._ensure_table(table)
            self._guard_mutation(table, record_id, "delete")
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, _translate_sqlite_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            match = True
            for key, value in filters.items():
                if key not in record or record[key] != value:
                    match = False
                    break
            if match:
                results.append(record)
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, _translate_sqlite_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, _translate_sqlite_errors():
            self._ensure_table(table)
            self._guard_mutation(table, None, "clear")
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the connection lock until it ends"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                with _translate_sqlite_errors():
                    self._connection.execute("BEGIN IMMEDIATE")
            except Exception:
                self._lock.release()
                raise
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth -= 1
            try:
                if self._depth == 0:
                    if self._rollback_only:
                        self._connection.execute("ROLLBACK")
                        self._known_tables.clear()
                        raise FundflowError("Transaction was rolled back by a nested unit")
                    try:
                        with _translate_sqlite_errors():
                            self._connection.execute("COMMIT")
                    except Exception:
                        if self._connection.in_transaction:
                            self._connection.execute("ROLLBACK")
                        self._known_tables.clear()
                        raise
            finally:
                self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth -= 1
            self._rollback_only = True
            try:
                if self._depth == 0 and self._connection.in_transaction:
                    self._connection.execute("ROLLBACK")
                    # Tables created inside the unit are gone again
                    self._known_tables.clear()
            finally:
                self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str = "memory://") -> StorageInterface:
    """
    Factory function to create a storage backend from a URL.

    Supported forms:
        memory://               in-process dictionaries
        sqlite://               SQLite in-memory database
        sqlite:///path/to.db    SQLite file
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
