from __future__ import annotations
import logging
from typing import Dict, List, Optional

from db import Database

logger = logging.getLogger(__name__)


class StatisticsService:
    """Derive pillar aggregates from the full session history.

    Qualification is evaluated against the pillar's current
    ``min_working_weight`` on every run, so threshold changes apply
    retroactively. Flags stored on the sessions themselves are left alone.
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    @staticmethod
    def compute(pillar: dict, sessions: List[dict]) -> Dict[str, object]:
        pillar_id = pillar["id"]
        min_weight = pillar.get("min_working_weight") or 0
        pr_weight = 0
        last_counted_at: Optional[int] = None
        last_logged_at: Optional[int] = None
        total = 0
        for session in sessions:
            entries = [
                e
                for e in session.get("pillars_performed") or []
                if e.get("pillar_id") == pillar_id
            ]
            if not entries:
                continue
            date = session.get("date")
            if last_logged_at is None or date > last_logged_at:
                last_logged_at = date
            if session.get("is_untracked"):
                continue
            weights = [
                e.get("weight") or 0
                for e in entries
                if (e.get("weight") or 0) >= min_weight
            ]
            if not weights:
                continue
            total += 1
            pr_weight = max(pr_weight, max(weights))
            if last_counted_at is None or date > last_counted_at:
                last_counted_at = date
        return {
            "pr_weight": pr_weight,
            "last_counted_at": last_counted_at,
            "last_logged_at": last_logged_at,
            "total_workouts": total,
        }

    async def recalculate(self, pillar_id: str) -> Optional[Dict[str, object]]:
        """Rewrite the derived fields of one pillar; ``None`` if it is unknown."""
        async with self.db.transaction("rw", ("pillars", "sessions")) as tx:
            pillars = tx.table("pillars")
            pillar = await pillars.get(pillar_id)
            if pillar is None:
                return None
            stats = self.compute(pillar, await tx.table("sessions").all())
            await pillars.update(pillar_id, stats)
        return stats

    async def recalculate_all(self) -> int:
        async with self.db.transaction("r", ("pillars",)) as tx:
            pillar_ids = [p["id"] for p in await tx.table("pillars").all()]
        for pillar_id in pillar_ids:
            await self.recalculate(pillar_id)
        logger.info("Recalculated statistics for %d pillars", len(pillar_ids))
        return len(pillar_ids)

    @staticmethod
    def pillar_history(sessions: List[dict], pillar_id: str) -> List[Dict[str, object]]:
        """Return weight chart points for ``pillar_id``, oldest first."""
        history = []
        for session in sorted(sessions, key=lambda s: s.get("date") or 0):
            entry = next(
                (
                    e
                    for e in session.get("pillars_performed") or []
                    if e.get("pillar_id") == pillar_id
                ),
                None,
            )
            if entry is None:
                continue
            history.append(
                {
                    "date": session.get("date"),
                    "weight": entry.get("weight", 0),
                    "is_pr": bool(entry.get("is_pr")),
                }
            )
        return history
