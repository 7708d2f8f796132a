import os
import json
import asyncio
import logging
import contextvars
from contextlib import asynccontextmanager
from typing import Any, Callable, Iterable, List, Optional, Tuple

import aiosqlite

from migrate import migrate, MIGRATIONS

logger = logging.getLogger(__name__)

TABLES = ("pillars", "accessories", "sessions", "config")

_active_transaction: contextvars.ContextVar[Optional["Transaction"]] = (
    contextvars.ContextVar("active_transaction", default=None)
)


class Table:
    """Keyed JSON document access to one table inside a transaction."""

    _PHYSICAL_NAMES = {
        "pillars": "pillars",
        "accessories": "accessories",
        "sessions": "workout_sessions",
        "config": "config",
    }

    def __init__(self, transaction: "Transaction", name: str) -> None:
        self.name = name
        self._tx = transaction
        self._conn = transaction.connection
        self._table = self._PHYSICAL_NAMES[name]
        self._dated = name == "sessions"

    @staticmethod
    def _decode(row: Tuple) -> dict:
        record = json.loads(row[1])
        record["id"] = row[0]
        return record

    async def _fetch(self, query: str, params: Tuple = ()) -> List[dict]:
        cursor = await self._conn.execute(query, params)
        rows = await cursor.fetchall()
        return [self._decode(row) for row in rows]

    async def _write(self, verb: str, record: dict) -> Any:
        self._tx.require_write()
        key = record.get("id")
        if key is None:
            raise ValueError(f"{self.name} record requires an id")
        data = json.dumps(record)
        if self._dated:
            await self._conn.execute(
                f"{verb} INTO {self._table} (id, date, data) VALUES (?, ?, ?);",
                (key, record.get("date", 0), data),
            )
        else:
            await self._conn.execute(
                f"{verb} INTO {self._table} (id, data) VALUES (?, ?);",
                (key, data),
            )
        return key

    async def get(self, key: Any) -> Optional[dict]:
        rows = await self._fetch(
            f"SELECT id, data FROM {self._table} WHERE id = ?;", (key,)
        )
        return rows[0] if rows else None

    async def all(self) -> List[dict]:
        if self._dated:
            return await self._fetch(
                f"SELECT id, data FROM {self._table} ORDER BY date, id;"
            )
        return await self._fetch(f"SELECT id, data FROM {self._table} ORDER BY id;")

    async def between(self, start: int, end: int) -> List[dict]:
        """Return sessions dated within the inclusive range, oldest first."""
        if not self._dated:
            raise ValueError(f"{self.name} is not indexed by date")
        return await self._fetch(
            f"SELECT id, data FROM {self._table} WHERE date BETWEEN ? AND ? "
            "ORDER BY date, id;",
            (start, end),
        )

    async def count(self) -> int:
        cursor = await self._conn.execute(f"SELECT COUNT(*) FROM {self._table};")
        row = await cursor.fetchone()
        return row[0]

    async def add(self, record: dict) -> Any:
        return await self._write("INSERT", record)

    async def put(self, record: dict) -> Any:
        return await self._write("INSERT OR REPLACE", record)

    async def bulk_put(self, records: Iterable[dict]) -> int:
        count = 0
        for record in records:
            await self._write("INSERT OR REPLACE", record)
            count += 1
        return count

    async def update(self, key: Any, changes: dict) -> int:
        """Merge ``changes`` into the stored record; return 1 if it existed."""
        record = await self.get(key)
        if record is None:
            return 0
        record.update(changes)
        record["id"] = key
        await self._write("INSERT OR REPLACE", record)
        return 1

    async def delete(self, key: Any) -> None:
        self._tx.require_write()
        await self._conn.execute(f"DELETE FROM {self._table} WHERE id = ?;", (key,))

    async def clear(self) -> None:
        self._tx.require_write()
        await self._conn.execute(f"DELETE FROM {self._table};")


class Transaction:
    """A unit of work over a fixed set of tables."""

    def __init__(
        self,
        database: "Database",
        connection: aiosqlite.Connection,
        mode: str,
        tables: Iterable[str],
    ) -> None:
        self.database = database
        self.connection = connection
        self.mode = mode
        self.tables = frozenset(tables)
        self._callbacks: List[Callable[[], None]] = []

    def require_write(self) -> None:
        if self.mode != "rw":
            raise RuntimeError("cannot write in a read-only transaction")

    def table(self, name: str) -> Table:
        if name not in self.tables:
            raise ValueError(f"table {name} is not part of this transaction")
        return Table(self, name)

    def after_commit(self, callback: Callable[[], None]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def _run_callbacks(self) -> None:
        for callback in self._callbacks:
            callback()


class Database:
    """Provides SQLite connection management and transactional table access."""

    def __init__(self, db_path: str = "workout_buddy.db", migrations=None) -> None:
        self._db_path = db_path
        self._migrations = migrations if migrations is not None else MIGRATIONS
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.version = 0

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def in_memory(self) -> bool:
        return self._db_path == ":memory:"

    async def open(self) -> int:
        """Connect and bring the schema up to date; return the schema version."""
        if self._conn is not None:
            return self.version
        conn = await aiosqlite.connect(self._db_path, isolation_level=None)
        try:
            self.version = await migrate(conn, self._migrations)
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        logger.info("Opened %s at schema version %d", self._db_path, self.version)
        return self.version

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def delete(self) -> None:
        """Close the connection and remove the database file."""
        await self.close()
        if self.in_memory:
            return
        for suffix in ("", "-journal", "-wal", "-shm"):
            path = self._db_path + suffix
            if os.path.exists(path):
                os.remove(path)
        logger.info("Deleted database %s", self._db_path)

    @asynccontextmanager
    async def transaction(self, mode: str = "rw", tables: Iterable[str] = TABLES):
        if mode not in ("r", "rw"):
            raise ValueError(f"invalid transaction mode {mode!r}")
        tables = tuple(tables)
        unknown = [t for t in tables if t not in TABLES]
        if unknown:
            raise ValueError(f"unknown tables: {', '.join(unknown)}")

        current = _active_transaction.get()
        if current is not None and current.database is self:
            if mode == "rw" and current.mode != "rw":
                raise RuntimeError("cannot write in a read-only transaction")
            missing = [t for t in tables if t not in current.tables]
            if missing:
                raise ValueError(
                    f"table {missing[0]} is not part of the enclosing transaction"
                )
            yield current
            return

        if self._conn is None:
            raise RuntimeError("database is not open")
        async with self._lock:
            tx = Transaction(self, self._conn, mode, tables)
            await self._conn.execute("BEGIN IMMEDIATE;" if mode == "rw" else "BEGIN;")
            token = _active_transaction.set(tx)
            try:
                yield tx
                await self._conn.execute("COMMIT;")
            except BaseException:
                if self._conn.in_transaction:
                    await self._conn.execute("ROLLBACK;")
                raise
            finally:
                _active_transaction.reset(token)
        tx._run_callbacks()
