import os
import sys
import sqlite3
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import Database
from migrate import SCHEMA_VERSION


async def _open(tmp_path, name="store.db") -> Database:
    database = Database(str(tmp_path / name))
    await database.open()
    return database


@pytest.mark.asyncio
async def test_open_creates_current_schema(tmp_path):
    database = await _open(tmp_path)
    try:
        assert database.version == SCHEMA_VERSION
        assert await database.open() == SCHEMA_VERSION
    finally:
        await database.close()
    conn = sqlite3.connect(str(tmp_path / "store.db"))
    tables = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    }
    conn.close()
    assert {"pillars", "accessories", "workout_sessions", "config"} <= tables
    assert "sessions" not in tables


@pytest.mark.asyncio
async def test_keyed_crud(tmp_path):
    database = await _open(tmp_path)
    try:
        async with database.transaction("rw", ("accessories",)) as tx:
            table = tx.table("accessories")
            await table.add({"id": "a1", "name": "Dips", "tags": ["Push"]})
            await table.put({"id": "a2", "name": "Rows", "tags": []})
            assert await table.count() == 2
            assert await table.update("a1", {"tags": ["Push", "Triceps"]}) == 1
            assert await table.update("missing", {"name": "x"}) == 0
            await table.delete("a2")
        async with database.transaction("r", ("accessories",)) as tx:
            rows = await tx.table("accessories").all()
        assert rows == [{"id": "a1", "name": "Dips", "tags": ["Push", "Triceps"]}]
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_add_rejects_duplicate_key(tmp_path):
    database = await _open(tmp_path)
    try:
        async with database.transaction("rw", ("accessories",)) as tx:
            await tx.table("accessories").add({"id": "a1", "name": "Dips"})
        with pytest.raises(sqlite3.IntegrityError):
            async with database.transaction("rw", ("accessories",)) as tx:
                await tx.table("accessories").add({"id": "a1", "name": "Other"})
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_failed_transaction_restores_cleared_tables(tmp_path):
    database = await _open(tmp_path)
    try:
        async with database.transaction("rw", ("pillars", "sessions")) as tx:
            await tx.table("pillars").put({"id": "p1", "name": "Squat"})
            await tx.table("sessions").put({"id": "s1", "date": 10, "pillars_performed": []})

        with pytest.raises(RuntimeError):
            async with database.transaction("rw", ("pillars", "sessions")) as tx:
                await tx.table("pillars").clear()
                await tx.table("sessions").delete("s1")
                await tx.table("pillars").bulk_put([{"id": "p2", "name": "Bench"}])
                raise RuntimeError("boom")

        async with database.transaction("r", ("pillars", "sessions")) as tx:
            assert [p["id"] for p in await tx.table("pillars").all()] == ["p1"]
            assert await tx.table("sessions").get("s1") is not None
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_nested_transaction_joins_outer(tmp_path):
    database = await _open(tmp_path)
    try:
        with pytest.raises(ValueError):
            async with database.transaction("rw", ("pillars",)) as outer:
                async with database.transaction("rw", ("pillars",)) as inner:
                    assert inner is outer
                    await inner.table("pillars").put({"id": "p1", "name": "Squat"})
                raise ValueError("abort outer")
        async with database.transaction("r", ("pillars",)) as tx:
            assert await tx.table("pillars").count() == 0
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_nested_transaction_cannot_widen_scope(tmp_path):
    database = await _open(tmp_path)
    try:
        async with database.transaction("r", ("pillars",)):
            with pytest.raises(RuntimeError):
                async with database.transaction("rw", ("pillars",)):
                    pass
            with pytest.raises(ValueError):
                async with database.transaction("r", ("sessions",)):
                    pass
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_read_only_transaction_rejects_writes(tmp_path):
    database = await _open(tmp_path)
    try:
        async with database.transaction("r", ("config",)) as tx:
            with pytest.raises(RuntimeError):
                await tx.table("config").put({"id": "main"})
            with pytest.raises(ValueError):
                tx.table("pillars")
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_after_commit_runs_once_and_not_on_rollback(tmp_path):
    database = await _open(tmp_path)
    calls = []

    def on_commit():
        calls.append("commit")

    try:
        async with database.transaction("rw", ("config",)) as tx:
            tx.after_commit(on_commit)
            async with database.transaction("rw", ("config",)) as inner:
                inner.after_commit(on_commit)
            assert calls == []
        assert calls == ["commit"]

        with pytest.raises(KeyError):
            async with database.transaction("rw", ("config",)) as tx:
                tx.after_commit(lambda: calls.append("rolled back"))
                raise KeyError("main")
        assert "rolled back" not in calls
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_sessions_between_uses_date(tmp_path):
    database = await _open(tmp_path)
    try:
        async with database.transaction("rw", ("sessions",)) as tx:
            sessions = tx.table("sessions")
            for key, date in (("a", 300), ("b", 100), ("c", 200)):
                await sessions.put({"id": key, "date": date})
            assert [s["id"] for s in await sessions.all()] == ["b", "c", "a"]
            assert [s["id"] for s in await sessions.between(150, 300)] == ["c", "a"]
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_transaction_requires_open_database(tmp_path):
    database = Database(str(tmp_path / "closed.db"))
    with pytest.raises(RuntimeError):
        async with database.transaction("r", ("config",)):
            pass


@pytest.mark.asyncio
async def test_delete_removes_file(tmp_path):
    database = await _open(tmp_path)
    await database.delete()
    assert not database.is_open
    assert not os.path.exists(tmp_path / "store.db")
