from __future__ import annotations
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set

from db import Database
from migrate import slugify
from seed_data import ensure_seeded
from stats_service import StatisticsService
from tools import SingleFlight, generate_uuid

logger = logging.getLogger(__name__)

MUSCLE_GROUPS = ("Legs", "Push", "Pull", "Core", "Full Body", "Conditioning")

PILLAR_DEFAULTS = {
    "min_working_weight": 0,
    "regression_floor_weight": 0,
    "pr_weight": 0,
    "last_counted_at": None,
    "last_logged_at": None,
    "total_workouts": 0,
    "enable_overload_tracking": False,
}

# Session fields that change which pillars qualify or when.
RECALC_SESSION_FIELDS = {"date", "pillars_performed", "is_untracked"}

ChangeListener = Callable[[], Optional[Awaitable[None]]]


def _pillar_view(record: dict) -> dict:
    pillar = {**PILLAR_DEFAULTS, **record}
    if pillar.get("is_active") is None:
        pillar["is_active"] = True
    if pillar.get("preferred_accessory_ids") is None:
        pillar["preferred_accessory_ids"] = []
    return pillar


def _accessory_view(record: dict) -> dict:
    accessory = dict(record)
    if accessory.get("tags") is None:
        accessory["tags"] = []
    if accessory.get("is_active") is None:
        accessory["is_active"] = True
    return accessory


def _session_view(record: dict) -> dict:
    session = dict(record)
    for field in ("pillars_performed", "accessories_performed"):
        if session.get(field) is None:
            session[field] = []
    return session


def _pillar_ids(session: Optional[dict]) -> Set[str]:
    if not session:
        return set()
    return {
        e["pillar_id"]
        for e in session.get("pillars_performed") or []
        if e.get("pillar_id") is not None
    }


class Repository:
    """The single entry point for reading and writing workout data."""

    def __init__(self, database: Database) -> None:
        self.db = database
        self.stats = StatisticsService(database)
        self._listener: Optional[ChangeListener] = None
        self._pending: Set[asyncio.Task] = set()
        self.init_once = SingleFlight(self.initialize)

    # Lifecycle

    async def initialize(self) -> None:
        """Open and migrate the database, then seed canonical data."""
        await self.db.open()
        await ensure_seeded(self.db, self.stats)
        async with self.db.transaction("rw", ("config",)) as tx:
            await tx.table("config").update(
                "main", {"storage_persisted": not self.db.in_memory}
            )

    async def close(self) -> None:
        await self.flush_notifications()
        await self.db.close()

    async def delete_database(self) -> None:
        await self.flush_notifications()
        await self.db.delete()
        self.init_once.reset()

    # Change notification

    def set_change_listener(self, listener: Optional[ChangeListener]) -> None:
        self._listener = listener

    def _notify_change(self) -> None:
        listener = self._listener
        if listener is None:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(listener))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, listener: ChangeListener) -> None:
        try:
            result = listener()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Change listener failed")

    async def flush_notifications(self) -> None:
        """Wait for change notifications that are still running."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _write(self, tables: Iterable[str]):
        return self.db.transaction("rw", tuple(tables))

    def _changed(self, tx) -> None:
        tx.after_commit(self._notify_change)

    async def run_transaction(
        self, mode: str, tables: Iterable[str], fn: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Run ``fn`` so that every facade call it makes commits or rolls back together."""
        async with self.db.transaction(mode, tuple(tables)):
            return await fn()

    # Pillars

    async def get_all_pillars(self) -> List[dict]:
        async with self.db.transaction("r", ("pillars",)) as tx:
            return [_pillar_view(p) for p in await tx.table("pillars").all()]

    async def get_active_pillars(self) -> List[dict]:
        return [p for p in await self.get_all_pillars() if p["is_active"]]

    async def get_pillar_by_id(self, pillar_id: str) -> Optional[dict]:
        async with self.db.transaction("r", ("pillars",)) as tx:
            record = await tx.table("pillars").get(pillar_id)
        return _pillar_view(record) if record is not None else None

    async def is_pillar_name_unique(self, name: str) -> bool:
        wanted = name.strip().lower()
        return all(
            (p.get("name") or "").strip().lower() != wanted
            for p in await self.get_all_pillars()
        )

    async def create_pillar(
        self, name: str, muscle_group: str, cadence_days: int, **fields: Any
    ) -> str:
        name = name.strip()
        if not name:
            raise ValueError("name required")
        if muscle_group not in MUSCLE_GROUPS:
            raise ValueError("invalid muscle group")
        if cadence_days < 1:
            raise ValueError("cadence_days must be positive")
        async with self._write(("pillars",)) as tx:
            pillars = tx.table("pillars")
            if not await self.is_pillar_name_unique(name):
                raise ValueError("pillar exists")
            pillar_id = f"p_{slugify(name)}"
            if await pillars.get(pillar_id) is not None:
                pillar_id = f"{pillar_id}_{generate_uuid()[:8]}"
            record = {
                **PILLAR_DEFAULTS,
                "preferred_accessory_ids": [],
                **fields,
                "id": pillar_id,
                "name": name,
                "muscle_group": muscle_group,
                "cadence_days": cadence_days,
                "is_active": True,
            }
            await pillars.add(record)
            self._changed(tx)
        return pillar_id

    async def update_pillar(self, pillar_id: str, changes: dict) -> None:
        """Merge ``changes`` into the pillar; threshold changes trigger recalculation."""
        changes = {k: v for k, v in changes.items() if k != "id"}
        async with self._write(("pillars", "sessions")) as tx:
            if not await tx.table("pillars").update(pillar_id, changes):
                raise ValueError("pillar not found")
            if "min_working_weight" in changes:
                await self.stats.recalculate(pillar_id)
            self._changed(tx)

    async def replace_pillar(self, pillar: dict) -> str:
        """Store ``pillar`` whole; derived fields are rebuilt from the session log."""
        if not pillar.get("id"):
            raise ValueError("pillar id required")
        async with self._write(("pillars", "sessions")) as tx:
            await tx.table("pillars").put(dict(pillar))
            await self.stats.recalculate(pillar["id"])
            self._changed(tx)
        return pillar["id"]

    async def archive_pillar(self, pillar_id: str) -> None:
        await self.update_pillar(pillar_id, {"is_active": False})

    async def restore_pillar(self, pillar_id: str) -> None:
        await self.update_pillar(pillar_id, {"is_active": True})

    async def clear_pillars(self) -> None:
        async with self._write(("pillars",)) as tx:
            await tx.table("pillars").clear()
            self._changed(tx)

    async def bulk_replace_pillars(self, pillars: Iterable[dict]) -> int:
        async with self._write(("pillars",)) as tx:
            count = await tx.table("pillars").bulk_put(dict(p) for p in pillars)
            self._changed(tx)
        return count

    # Accessories

    async def get_all_accessories(self) -> List[dict]:
        async with self.db.transaction("r", ("accessories",)) as tx:
            return [_accessory_view(a) for a in await tx.table("accessories").all()]

    async def get_active_accessories(self) -> List[dict]:
        return [a for a in await self.get_all_accessories() if a["is_active"]]

    async def get_accessory_by_id(self, accessory_id: str) -> Optional[dict]:
        async with self.db.transaction("r", ("accessories",)) as tx:
            record = await tx.table("accessories").get(accessory_id)
        return _accessory_view(record) if record is not None else None

    async def get_accessory_count(self) -> int:
        async with self.db.transaction("r", ("accessories",)) as tx:
            return await tx.table("accessories").count()

    async def is_accessory_name_unique(self, name: str) -> bool:
        wanted = name.strip().lower()
        return all(
            (a.get("name") or "").strip().lower() != wanted
            for a in await self.get_all_accessories()
        )

    async def create_accessory(self, name: str, tags: Optional[List[str]] = None) -> str:
        name = name.strip()
        if not name:
            raise ValueError("name required")
        async with self._write(("accessories",)) as tx:
            accessories = tx.table("accessories")
            if not await self.is_accessory_name_unique(name):
                raise ValueError("accessory exists")
            accessory_id = f"acc_{slugify(name)}"
            if await accessories.get(accessory_id) is not None:
                accessory_id = f"{accessory_id}_{generate_uuid()[:8]}"
            await accessories.add(
                {"id": accessory_id, "name": name, "tags": list(tags or []), "is_active": True}
            )
            self._changed(tx)
        return accessory_id

    async def update_accessory(self, accessory_id: str, changes: dict) -> None:
        changes = {k: v for k, v in changes.items() if k != "id"}
        async with self._write(("accessories",)) as tx:
            if not await tx.table("accessories").update(accessory_id, changes):
                raise ValueError("accessory not found")
            self._changed(tx)

    async def replace_accessory(self, accessory: dict) -> str:
        if not accessory.get("id"):
            raise ValueError("accessory id required")
        async with self._write(("accessories",)) as tx:
            await tx.table("accessories").put(dict(accessory))
            self._changed(tx)
        return accessory["id"]

    async def archive_accessory(self, accessory_id: str) -> None:
        await self.update_accessory(accessory_id, {"is_active": False})

    async def restore_accessory(self, accessory_id: str) -> None:
        await self.update_accessory(accessory_id, {"is_active": True})

    async def clear_accessories(self) -> None:
        async with self._write(("accessories",)) as tx:
            await tx.table("accessories").clear()
            self._changed(tx)

    async def bulk_replace_accessories(self, accessories: Iterable[dict]) -> int:
        async with self._write(("accessories",)) as tx:
            count = await tx.table("accessories").bulk_put(dict(a) for a in accessories)
            self._changed(tx)
        return count

    # Sessions

    async def _recalculate(self, pillar_ids: Iterable[str]) -> None:
        for pillar_id in sorted(pillar_ids):
            await self.stats.recalculate(pillar_id)

    async def add_session(self, session: dict) -> str:
        if session.get("date") is None:
            raise ValueError("session date required")
        record = _session_view(session)
        record["id"] = record.get("id") or generate_uuid()
        async with self._write(("sessions", "pillars")) as tx:
            await tx.table("sessions").add(record)
            await self._recalculate(_pillar_ids(record))
            self._changed(tx)
        return record["id"]

    async def update_session(self, session_id: str, changes: dict) -> None:
        changes = {k: v for k, v in changes.items() if k != "id"}
        async with self._write(("sessions", "pillars")) as tx:
            sessions = tx.table("sessions")
            previous = await sessions.get(session_id)
            if previous is None:
                raise ValueError("session not found")
            await sessions.put(_session_view({**previous, **changes}))
            if RECALC_SESSION_FIELDS & changes.keys():
                await self._recalculate(_pillar_ids(previous) | _pillar_ids(changes))
            self._changed(tx)

    async def delete_session(self, session_id: str) -> None:
        async with self._write(("sessions", "pillars")) as tx:
            sessions = tx.table("sessions")
            previous = await sessions.get(session_id)
            if previous is None:
                raise ValueError("session not found")
            await sessions.delete(session_id)
            await self._recalculate(_pillar_ids(previous))
            self._changed(tx)

    async def get_session_by_id(self, session_id: str) -> Optional[dict]:
        async with self.db.transaction("r", ("sessions",)) as tx:
            record = await tx.table("sessions").get(session_id)
        return _session_view(record) if record is not None else None

    async def get_all_sessions(self) -> List[dict]:
        """Return all sessions, newest first."""
        async with self.db.transaction("r", ("sessions",)) as tx:
            records = await tx.table("sessions").all()
        return [_session_view(s) for s in reversed(records)]

    async def get_sessions_by_pillar(self, pillar_id: str) -> List[dict]:
        return [
            s for s in await self.get_all_sessions() if pillar_id in _pillar_ids(s)
        ]

    async def get_sessions_between(self, start: int, end: int) -> List[dict]:
        async with self.db.transaction("r", ("sessions",)) as tx:
            records = await tx.table("sessions").between(start, end)
        return [_session_view(s) for s in records]

    async def get_session_count(self) -> int:
        async with self.db.transaction("r", ("sessions",)) as tx:
            return await tx.table("sessions").count()

    async def clear_sessions(self) -> None:
        async with self._write(("sessions",)) as tx:
            await tx.table("sessions").clear()
            self._changed(tx)

    async def bulk_replace_sessions(self, sessions: Iterable[dict]) -> int:
        records = []
        for session in sessions:
            record = _session_view(session)
            record["id"] = record.get("id") or generate_uuid()
            records.append(record)
        async with self._write(("sessions",)) as tx:
            count = await tx.table("sessions").bulk_put(records)
            self._changed(tx)
        return count

    # Config

    async def get_config(self) -> Optional[dict]:
        async with self.db.transaction("r", ("config",)) as tx:
            return await tx.table("config").get("main")

    async def put_config(self, config: dict) -> str:
        async with self._write(("config",)) as tx:
            await tx.table("config").put({**config, "id": "main"})
            self._changed(tx)
        return "main"

    async def update_config(self, changes: dict, notify: bool = True) -> None:
        """Merge ``changes`` into the config row.

        Bookkeeping stamps such as ``last_sync_at`` pass ``notify=False`` so the
        change listener does not see them.
        """
        changes = {k: v for k, v in changes.items() if k != "id"}
        async with self._write(("config",)) as tx:
            if not await tx.table("config").update("main", changes):
                raise ValueError("config not found")
            if notify:
                self._changed(tx)

    async def recalculate_all(self) -> int:
        """Repair derived fields of every pillar."""
        count = await self.stats.recalculate_all()
        self._notify_change()
        return count
