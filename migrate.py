import re
import sys
import json
import uuid
import asyncio
import logging
from typing import Awaitable, Callable, List, Tuple

import aiosqlite

logger = logging.getLogger(__name__)

LEGACY_PILLAR_IDS = {
    "Back Squat": "back_squat",
    "Bench Press": "bench_press",
    "Pull-Ups": "pull_ups",
    "Romanian Deadlift": "rdl",
    "Walking Lunge": "walking_lunge",
    "Farmer’s Carry": "farmers_carry",
}


class MigrationError(RuntimeError):
    """Raised when a schema transition cannot be applied."""


def slugify(name: str) -> str:
    return re.sub(r"\s+", "_", name.strip().lower())


def legacy_pillar_id(name: str) -> str:
    return LEGACY_PILLAR_IDS.get(name) or f"p_{slugify(name)}"


def legacy_accessory_id(name: str) -> str:
    return f"acc_{slugify(name)}"


async def _rows(conn: aiosqlite.Connection, query: str) -> List[Tuple]:
    cursor = await conn.execute(query)
    return await cursor.fetchall()


async def _create_initial_tables(conn: aiosqlite.Connection) -> None:
    await conn.execute(
        "CREATE TABLE IF NOT EXISTS pillars ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, data TEXT NOT NULL);"
    )
    await conn.execute(
        "CREATE TABLE IF NOT EXISTS accessories ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, data TEXT NOT NULL);"
    )
    await conn.execute(
        "CREATE TABLE IF NOT EXISTS sessions ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, date INTEGER, data TEXT NOT NULL);"
    )
    await conn.execute(
        "CREATE TABLE IF NOT EXISTS config (id TEXT PRIMARY KEY, data TEXT NOT NULL);"
    )


async def _rekey_table(
    conn: aiosqlite.Connection, table: str, make_id: Callable[[str], str]
) -> None:
    await conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
    await conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
    await conn.execute(
        f"CREATE TABLE {table} (id TEXT PRIMARY KEY, data TEXT NOT NULL);"
    )
    for old_id, data in await _rows(conn, f"SELECT id, data FROM {table}_old;"):
        record = json.loads(data)
        if isinstance(old_id, str):
            new_id = old_id
        else:
            new_id = make_id(record.get("name", str(old_id)))
        record["id"] = new_id
        await conn.execute(
            f"INSERT INTO {table} (id, data) VALUES (?, ?);",
            (new_id, json.dumps(record)),
        )
    await conn.execute(f"DROP TABLE {table}_old;")


async def _stable_string_ids(conn: aiosqlite.Connection) -> None:
    await _rekey_table(conn, "pillars", legacy_pillar_id)
    await _rekey_table(conn, "accessories", legacy_accessory_id)


async def _copy_sessions_to_uuid_table(conn: aiosqlite.Connection) -> None:
    await conn.execute(
        "CREATE TABLE IF NOT EXISTS workout_sessions ("
        "id TEXT PRIMARY KEY, date INTEGER NOT NULL, data TEXT NOT NULL);"
    )
    for date, data in await _rows(conn, "SELECT date, data FROM sessions;"):
        record = json.loads(data)
        record["id"] = str(uuid.uuid4())
        if record.get("date") is None:
            record["date"] = date or 0
        await conn.execute(
            "INSERT INTO workout_sessions (id, date, data) VALUES (?, ?, ?);",
            (record["id"], record["date"], json.dumps(record)),
        )


async def _drop_legacy_sessions(conn: aiosqlite.Connection) -> None:
    await conn.execute("DROP TABLE IF EXISTS sessions;")


async def _backfill_active_flag(conn: aiosqlite.Connection) -> None:
    for key, data in await _rows(conn, "SELECT id, data FROM pillars;"):
        record = json.loads(data)
        if record.get("is_active") is None:
            record["is_active"] = True
            await conn.execute(
                "UPDATE pillars SET data = ? WHERE id = ?;", (json.dumps(record), key)
            )


async def _index_session_dates(conn: aiosqlite.Connection) -> None:
    await conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_workout_sessions_date "
        "ON workout_sessions (date);"
    )


Transform = Callable[[aiosqlite.Connection], Awaitable[None]]

MIGRATIONS: List[Tuple[int, int, Transform]] = [
    (0, 1, _create_initial_tables),
    (1, 2, _stable_string_ids),
    (2, 3, _copy_sessions_to_uuid_table),
    (3, 4, _drop_legacy_sessions),
    (4, 5, _backfill_active_flag),
    (5, 6, _index_session_dates),
]

SCHEMA_VERSION = MIGRATIONS[-1][1]


async def current_version(conn: aiosqlite.Connection) -> int:
    cursor = await conn.execute("PRAGMA user_version;")
    row = await cursor.fetchone()
    return row[0]


async def migrate(
    conn: aiosqlite.Connection, migrations: List[Tuple[int, int, Transform]] = MIGRATIONS
) -> int:
    """Apply every registered transition newer than the stored version.

    Each transition commits together with its version bump, so a failure
    leaves the file at the last completed version.
    """
    version = await current_version(conn)
    for from_version, to_version, transform in migrations:
        if from_version < version:
            continue
        if from_version != version:
            raise MigrationError(
                f"no migration from schema version {version} to {from_version}"
            )
        await conn.execute("BEGIN IMMEDIATE;")
        try:
            await transform(conn)
            await conn.execute(f"PRAGMA user_version = {int(to_version)};")
            await conn.execute("COMMIT;")
        except Exception as exc:
            if conn.in_transaction:
                await conn.execute("ROLLBACK;")
            raise MigrationError(
                f"schema migration {from_version} -> {to_version} failed: {exc}"
            ) from exc
        logger.info("Migrated schema %d -> %d", from_version, to_version)
        version = to_version
    return version


async def _migrate_file(db_path: str) -> int:
    conn = await aiosqlite.connect(db_path, isolation_level=None)
    try:
        return await migrate(conn)
    finally:
        await conn.close()


if __name__ == '__main__':
    path = sys.argv[1] if len(sys.argv) > 1 else 'workout_buddy.db'
    print(f"{path}: schema version {asyncio.run(_migrate_file(path))}")
