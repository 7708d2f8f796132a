from typing import Optional


def build_entry(pillar: dict, weight: float) -> dict:
    """Return a new session entry for ``pillar`` evaluated at ``weight``."""
    entry = {
        "pillar_id": pillar["id"],
        "name": pillar.get("name", ""),
        "weight": 0,
        "counted": False,
        "is_pr": False,
        "warning": False,
    }
    return calculate_entry_update(entry, pillar, weight)


def calculate_entry_update(entry: dict, pillar: Optional[dict], delta: float) -> dict:
    """Apply a weight change to ``entry`` and re-evaluate its flags.

    The flags are a snapshot against the pillar's thresholds at logging time.
    """
    weight = max(0, entry.get("weight", 0) + delta)
    if pillar is None:
        return {**entry, "weight": weight}
    return {
        **entry,
        "weight": weight,
        "counted": weight >= (pillar.get("min_working_weight") or 0),
        "warning": weight < (pillar.get("regression_floor_weight") or 0),
        "is_pr": weight > (pillar.get("pr_weight") or 0),
    }


def calculate_pillar_update(entry: dict, now: int) -> dict:
    updates = {"last_logged_at": now}
    if entry.get("counted"):
        updates["last_counted_at"] = now
    if entry.get("is_pr"):
        updates["pr_weight"] = entry.get("weight", 0)
    return updates
