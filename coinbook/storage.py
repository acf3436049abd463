"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL. Records are JSON documents keyed by a string id.

Every backend offers the same transaction contract: atomic() opens one scope,
nested scopes join the outer one, and any failure rolls back every write made
inside the scope. load_for_update() locks a row until the scope ends and
next_id() hands out per-table integer keys.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple, Type
from datetime import datetime, timezone
from enum import Enum
import copy
import re
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from contextlib import contextmanager

from .errors import InvalidArgument, StoreFailure


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def utc_now() -> datetime:
    """Current UTC time truncated to millisecond precision"""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise InvalidArgument(f"Invalid table or field name: {name!r}")
    return name


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: int
    created_at: datetime
    updated_at: datetime

    @property
    def storage_key(self) -> str:
        """Key the record is saved under"""
        return str(self.id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Enum):
                result[key] = value.value
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

    # Driver exceptions that are reported to callers as StoreFailure
    backend_errors: Tuple[Type[BaseException], ...] = ()

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False

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
    def next_id(self, table: str) -> int:
        """Allocate the next integer key for a table (starts at 1)"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record and hold its row lock until the current scope ends"""
        return self.load(table, record_id)

    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Save a record only if its key is free; True when it was written"""
        with self._lock:
            if self.exists(table, record_id):
                return False
            self.save(table, record_id, data)
            return True

    @property
    def in_transaction(self) -> bool:
        """True while the calling thread holds an open scope"""
        with self._lock:
            return self._depth > 0

    # Backend hooks for the outermost scope

    def _begin(self) -> None:
        pass

    def _commit(self) -> None:
        pass

    def _rollback(self) -> None:
        pass

    def begin_transaction(self) -> None:
        """Open a scope, or join the scope already held by this thread"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._begin()
            except BaseException:
                self._lock.release()
                raise
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Commit the outermost scope; inner scopes only leave"""
        if self._depth == 0:
            return
        if self._depth > 1:
            self._depth -= 1
            self._lock.release()
            return
        if self._rollback_only:
            raise StoreFailure("Transaction was rolled back by a nested scope")
        self._commit()
        self._depth = 0
        self._lock.release()

    def rollback(self) -> None:
        """Roll back the outermost scope; inner scopes mark it rollback-only"""
        if self._depth == 0:
            return
        if self._depth > 1:
            self._rollback_only = True
            self._depth -= 1
            self._lock.release()
            return
        try:
            self._rollback()
        finally:
            self._depth = 0
            self._rollback_only = False
            self._lock.release()

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield self
        except self.backend_errors as e:
            self.rollback()
            raise StoreFailure(f"Storage operation failed: {e}") from e
        except BaseException:
            self.rollback()
            raise
        else:
            try:
                self.commit()
            except self.backend_errors as e:
                self.rollback()
                raise StoreFailure(f"Commit failed: {e}") from e
            except BaseException:
                self.rollback()
                raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._snapshot = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _begin(self) -> None:
        self._snapshot = copy.deepcopy((self._data, self._sequences))

    def _commit(self) -> None:
        self._snapshot = None

    def _rollback(self) -> None:
        if self._snapshot is not None:
            self._data, self._sequences = self._snapshot
            self._snapshot = None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

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
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
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

    def next_id(self, table: str) -> int:
        """Allocate the next integer key for a table"""
        with self._lock:
            value = self._sequences.get(table, 0) + 1
            self._sequences[table] = value
            return value

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    One connection is shared by every thread; the storage lock serializes
    access to it and is held for the whole of an open scope.
    """

    backend_errors = (sqlite3.Error,)

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; scopes issue BEGIN IMMEDIATE/COMMIT/ROLLBACK themselves
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._known_tables = set()

        if self.db_path != ":memory:":
            for pragma in ("journal_mode = WAL", "synchronous = NORMAL", "busy_timeout = 5000"):
                self._connection.execute(f"PRAGMA {pragma}")

    def _execute(self, table: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Run one statement against a table, creating the table on first use"""
        with self._lock:
            if table not in self._known_tables:
                _check_identifier(table)
                self._connection.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                self._connection.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
                )
                self._known_tables.add(table)
            return self._connection.execute(sql.format(table=table), params)

    def _begin(self) -> None:
        self._connection.execute("BEGIN IMMEDIATE")

    def _commit(self) -> None:
        self._connection.execute("COMMIT")

    def _rollback(self) -> None:
        # DDL issued inside the scope is undone as well
        self._known_tables.clear()
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record, keeping its first created_at"""
        now = datetime.now(timezone.utc).isoformat()
        self._execute(table, """
            INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
        """, (record_id, json.dumps(data, default=str), now, now))

    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        return self._execute(table, """
            INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
        """, (record_id, json.dumps(data, default=str), now, now)).rowcount > 0

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._execute(table, "SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        return self._execute(table, "DELETE FROM {table} WHERE id = ?", (record_id,)).rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        return self._execute(table, "SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)).fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        conditions = [f"json_extract(data, '$.{_check_identifier(key)}') = ?" for key in filters]
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self._execute(
            table, "SELECT data FROM {table} " + where_clause + " ORDER BY created_at", tuple(filters.values())
        ).fetchall()
        return [json.loads(row['data']) for row in rows]

    def count(self, table: str) -> int:
        return self._execute(table, "SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        self._execute(table, "DELETE FROM {table}")

    def next_id(self, table: str) -> int:
        """Allocate the next integer key for a table"""
        with self.atomic():
            self._connection.execute(
                "CREATE TABLE IF NOT EXISTS _sequences (name TEXT PRIMARY KEY, value INTEGER NOT NULL)"
            )
            self._connection.execute(
                "INSERT INTO _sequences (name, value) VALUES (?, 1) "
                "ON CONFLICT(name) DO UPDATE SET value = value + 1", (table,)
            )
            row = self._connection.execute("SELECT value FROM _sequences WHERE name = ?", (table,)).fetchone()
            return row['value']

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with row-level locking.

    Tables hold one JSONB document per record. Outside a scope every
    statement commits on its own; inside one, the scope decides.
    """

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install coinbook[postgres]")

        super().__init__()
        self.psycopg2 = psycopg2
        self.backend_errors = (psycopg2.Error,)
        self.connection_string = connection_string
        self._known_tables = set()
        with self._lock:
            self._connection = psycopg2.connect(
                connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor
            )
            self._connection.set_session(isolation_level="READ COMMITTED", autocommit=False)

    @contextmanager
    def _cursor(self):
        """Cursor under the storage lock, committed afterwards when no scope is open"""
        with self._lock:
            cursor = self._connection.cursor()
            try:
                yield cursor
                if self._depth == 0:
                    self._connection.commit()
            finally:
                cursor.close()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        _check_identifier(table)
        with self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)
            cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_data ON {table} USING gin(data)")
        self._known_tables.add(table)

    def _commit(self) -> None:
        self._connection.commit()

    def _rollback(self) -> None:
        self._known_tables.clear()
        self._connection.rollback()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Upsert a record"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data, updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """INSERT ... ON CONFLICT DO NOTHING; a concurrent insert of the key wins"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
            """, (record_id, json.dumps(data, default=str), now, now))
            return cursor.rowcount > 0

    def _select_one(self, table: str, record_id: str, lock: bool) -> Optional[Dict[str, Any]]:
        self._ensure_table(table)
        suffix = " FOR UPDATE" if lock else ""
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s{suffix}", (record_id,))
            row = cursor.fetchone()
        return dict(row['data']) if row else None

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._select_one(table, record_id, lock=False)

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """SELECT ... FOR UPDATE; the row stays locked until the scope ends"""
        return self._select_one(table, record_id, lock=True)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose document contains every filter (JSONB containment)"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            if filters:
                cursor.execute(
                    f"SELECT data FROM {table} WHERE data @> %s::jsonb ORDER BY created_at",
                    (json.dumps(filters, default=str),)
                )
            else:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            rows = cursor.fetchall()
        return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table}")

    def next_id(self, table: str) -> int:
        """Allocate the next integer key for a table"""
        with self._cursor() as cursor:
            cursor.execute("CREATE TABLE IF NOT EXISTS _sequences (name TEXT PRIMARY KEY, value BIGINT NOT NULL)")
            cursor.execute("""
                INSERT INTO _sequences (name, value) VALUES (%s, 1)
                ON CONFLICT (name) DO UPDATE SET value = _sequences.value + 1
                RETURNING value
            """, (table,))
            return cursor.fetchone()['value']

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported schemes: memory://, sqlite:///<path> (sqlite:// for an
    in-memory database) and postgresql:// / postgres://.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):].lstrip("/") if database_url.startswith("sqlite:///") else ""
        if database_url.startswith("sqlite:////"):
            path = "/" + path
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise InvalidArgument(f"Unsupported database URL: {database_url}")
