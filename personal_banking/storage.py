"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL persistence. All monetary values stored as Decimal strings.

Every backend supports:
- atomic units (``storage.atomic()``), nested calls join the outer unit
- one declared unique field per table, enforced by the backend
- ``load_for_update`` for row-level locking inside an atomic unit
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union
from decimal import Decimal
from datetime import datetime, timezone, date
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from contextlib import contextmanager


class DuplicateRecordError(Exception):
    """Raised when an insert violates a primary key or declared unique field"""

    def __init__(self, table: str, field: str, value: Any):
        super().__init__(f"Duplicate {field}={value!r} in {table}")
        self.table = table
        self.field = field
        self.value = value


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, (Decimal, datetime, date, Enum)):
                result[key] = _json_default(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._unique_fields: Dict[str, str] = {}

    def declare_unique(self, table: str, field: str) -> None:
        """Declare the unique field for a table (one per table)"""
        existing = self._unique_fields.get(table)
        if existing and existing != field:
            raise ValueError(f"Table {table} already has unique field {existing}")
        self._unique_fields[table] = field

    def _unique_value(self, table: str, data: Dict[str, Any]) -> Optional[str]:
        field = self._unique_fields.get(table)
        if not field or data.get(field) is None:
            return None
        return str(data[field])

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or update a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising DuplicateRecordError on any collision"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a record and lock it until the enclosing atomic unit ends.

        Backends that serialize atomic units through the storage lock get the
        lock for free; PostgreSQL overrides this with SELECT ... FOR UPDATE.
        """
        if not self._depth:
            raise RuntimeError("load_for_update must be called inside storage.atomic()")
        return self.load(table, record_id)

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
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
        """Start a database transaction"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit current transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Rollback current transaction"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        The storage lock is held for the whole unit, so concurrent units are
        serialized and readers never observe a half-applied unit.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self.begin_transaction()
            self._depth = 1
            try:
                yield self
                self.commit()
            except BaseException:
                self.rollback()
                raise
            finally:
                self._depth = 0


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round-trip both deep-copies and normalizes types
        return json.loads(json.dumps(data, default=_json_default))

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        value = self._unique_value(table, data)
        if value is None:
            return
        field = self._unique_fields[table]
        for other_id, record in self._data[table].items():
            if other_id != record_id and str(record.get(field)) == value:
                raise DuplicateRecordError(table, field, value)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._check_unique(table, record_id, data)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateRecordError(table, "id", record_id)
            self._check_unique(table, record_id, data)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Snapshot current state so a rollback can restore it"""
        with self._lock:
            self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        """Discard the snapshot"""
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken at the start of the unit"""
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    unique_key TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_unique_key
                ON {table}(unique_key)
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def _write(self, sql: str, table: str, params: tuple, record_id: str, data: Dict[str, Any]) -> None:
        try:
            self._connection.execute(sql, params)
        except sqlite3.IntegrityError:
            field = self._unique_fields.get(table, "id")
            value = data.get(field, record_id) if field != "id" else record_id
            if field != "id" and self._find_by_unique_key(table, str(value), record_id) is None:
                field, value = "id", record_id
            raise DuplicateRecordError(table, field, value)

    def _find_by_unique_key(self, table: str, value: str, record_id: str) -> Optional[str]:
        row = self._connection.execute(
            f"SELECT id FROM {table} WHERE unique_key = ? AND id != ?", (value, record_id)
        ).fetchone()
        return row['id'] if row else None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=_json_default)
            self._write(f"""
                INSERT INTO {table} (id, data, unique_key, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    unique_key = excluded.unique_key,
                    updated_at = excluded.updated_at
            """, table, (record_id, data_json, self._unique_value(table, data), now, now), record_id, data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into SQLite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=_json_default)
            self._write(f"""
                INSERT INTO {table} (id, data, unique_key, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, table, (record_id, data_json, self._unique_value(table, data), now, now), record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,)).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """).fetchone()
            return row['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a write transaction, taking the database write lock up front"""
        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._connection.in_transaction:
                self._connection.execute("COMMIT")

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
            # Tables created inside the unit are gone after rollback
            self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support and row locks"""

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _finish(self) -> None:
        # Outside an atomic unit every statement is its own transaction
        if not self._depth:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        unique_key TEXT UNIQUE,
                        created_at TIMESTAMP DEFAULT NOW(),
                        updated_at TIMESTAMP DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                self._finish()
                self._tables.add(table)
            finally:
                cursor.close()

    def _write(self, sql: str, table: str, params: tuple, record_id: str) -> None:
        cursor = self._connection.cursor()
        try:
            # Savepoint keeps a failed insert from aborting the enclosing unit
            cursor.execute("SAVEPOINT storage_write")
            try:
                cursor.execute(sql, params)
            except self.psycopg2.IntegrityError as e:
                cursor.execute("ROLLBACK TO SAVEPOINT storage_write")
                field = self._unique_fields.get(table, "id")
                constraint = getattr(getattr(e, 'diag', None), 'constraint_name', '') or ''
                if constraint.endswith('_pkey'):
                    field = "id"
                raise DuplicateRecordError(table, field, record_id if field == "id" else params[2])
            cursor.execute("RELEASE SAVEPOINT storage_write")
            self._finish()
        finally:
            cursor.close()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=_json_default)
            self._write(f"""
                INSERT INTO {table} (id, data, unique_key, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    unique_key = EXCLUDED.unique_key,
                    updated_at = EXCLUDED.updated_at
            """, table, (record_id, data_json, self._unique_value(table, data), now, now), record_id)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=_json_default)
            self._write(f"""
                INSERT INTO {table} (id, data, unique_key, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
            """, table, (record_id, data_json, self._unique_value(table, data), now, now), record_id)

    def _select(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            rows = [dict(row['data']) for row in cursor.fetchall()]
            self._finish()
            return rows
        finally:
            cursor.close()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            rows = self._select(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            return rows[0] if rows else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record holding a row lock until the atomic unit ends"""
        with self._lock:
            if not self._depth:
                raise RuntimeError("load_for_update must be called inside storage.atomic()")
            self._ensure_table(table)
            rows = self._select(f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,))
            return rows[0] if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return self._select(f"SELECT data FROM {table} ORDER BY created_at")

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self._select(f"SELECT data FROM {table} ORDER BY created_at")

            conditions = []
            params = []
            for key, value in filters.items():
                conditions.append("data ->> %s = %s")
                params.extend([key, value if isinstance(value, str) else json.dumps(value)])

            where_clause = " AND ".join(conditions)
            return self._select(
                f"SELECT data FROM {table} WHERE {where_clause} ORDER BY created_at",
                tuple(params)
            )

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
                result = cursor.fetchone()['count']
                self._finish()
                return result
            finally:
                cursor.close()

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"DELETE FROM {table}")
                self._finish()
            finally:
                cursor.close()

    def begin_transaction(self) -> None:
        """PostgreSQL transactions start implicitly with the first statement"""
        pass

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            self._connection.commit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            self._connection.rollback()
            self._tables.clear()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def insert_with_retry(
    storage: StorageInterface,
    table: str,
    build_record: Callable[[], StorageRecord],
    attempts: int
) -> StorageRecord:
    """
    Insert a record whose unique identifier is generated at random.

    ``build_record`` is called again after every collision; the last
    DuplicateRecordError propagates once ``attempts`` are used up.
    """
    for attempt in range(1, attempts + 1):
        record = build_record()
        try:
            storage.insert(table, record.id, record.to_dict())
            return record
        except DuplicateRecordError:
            if attempt >= attempts:
                raise
    raise ValueError("attempts must be at least 1")


def create_storage(database_url: str) -> StorageInterface:
    """Factory function to create a storage backend from a database URL"""
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
