from __future__ import annotations
from typing import List, Optional

from tools import now_ms

DAY_MS = 24 * 60 * 60 * 1000
NEVER_DAYS = 999

STATUS_HEX = {
    "green": "#22c55e",
    "yellow": "#eab308",
    "red": "#ef4444",
}


def days_since(timestamp: Optional[int], now: Optional[int] = None) -> int:
    if not timestamp:
        return NEVER_DAYS
    now = now_ms() if now is None else now
    return (now - timestamp) // DAY_MS


def overdue_score(pillar: dict, now: Optional[int] = None) -> float:
    """Days since the last counted session relative to the pillar cadence."""
    cadence = pillar.get("cadence_days") or 1
    return days_since(pillar.get("last_counted_at"), now) / cadence


def status_color(pillar: dict, now: Optional[int] = None) -> str:
    score = overdue_score(pillar, now)
    if score < 0.7:
        return "green"
    if score < 1.0:
        return "yellow"
    return "red"


def overload_ready(pillar: dict) -> bool:
    """Whether enough qualifying sessions were logged to raise the working weight."""
    if not pillar.get("enable_overload_tracking"):
        return False
    threshold = pillar.get("overload_threshold")
    if not threshold:
        return False
    return (pillar.get("total_workouts") or 0) >= threshold


class RecommendationService:
    """Order pillars for the next session."""

    def __init__(self, now: Optional[int] = None) -> None:
        self.now = now

    def recommended_pillars(
        self, pillars: List[dict], focus: Optional[str] = None
    ) -> List[dict]:
        now = now_ms() if self.now is None else self.now

        def key(pillar: dict):
            in_focus = focus is not None and pillar.get("muscle_group") == focus
            return (0 if in_focus else 1, -overdue_score(pillar, now))

        return sorted(pillars, key=key)

    def next_session(
        self, pillars: List[dict], target: int, focus: Optional[str] = None
    ) -> List[dict]:
        active = [p for p in pillars if p.get("is_active", True) is not False]
        return self.recommended_pillars(active, focus)[:target]
