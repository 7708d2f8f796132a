import logging
from typing import Optional

from db import Database
from stats_service import StatisticsService
from tools import generate_uuid, now_ms

logger = logging.getLogger(__name__)

# Incremented whenever the built-in pillars or accessories change.
CANONICAL_DATA_VERSION = 5
# Databases seeded at or after this version already had the session table.
SESSION_TABLE_DATA_VERSION = 3

PILLAR_DEFINITION_FIELDS = ("name", "muscle_group", "cadence_days")
ACCESSORY_DEFINITION_FIELDS = ("name", "tags")


def _pillar(pid, name, group, cadence, min_weight, floor, accessories):
    return {
        "id": pid,
        "name": name,
        "muscle_group": group,
        "cadence_days": cadence,
        "min_working_weight": min_weight,
        "regression_floor_weight": floor,
        "pr_weight": 0,
        "last_counted_at": None,
        "last_logged_at": None,
        "is_active": True,
        "total_workouts": 0,
        "preferred_accessory_ids": accessories,
    }


CANONICAL_PILLARS = [
    _pillar("back_squat", "Back Squat", "Legs", 10, 135, 115, ["acc_calf_raise", "acc_ham_curl"]),
    _pillar("bench_press", "Bench Press", "Push", 7, 95, 75, ["acc_dips", "acc_pushups", "acc_tricep_press"]),
    _pillar("pull_ups", "Pull-Ups", "Pull", 5, 0, 0, ["acc_rows", "acc_curls"]),
    _pillar("rdl", "Romanian Deadlift", "Legs", 10, 115, 95, ["acc_ham_curl", "acc_kb_rdl"]),
    _pillar("walking_lunge", "Walking Lunge", "Legs", 7, 40, 30, ["acc_calf_raise"]),
    _pillar("farmers_carry", "Farmer’s Carry", "Conditioning", 7, 50, 40, ["acc_abwheel"]),
]

CANONICAL_ACCESSORIES = [
    {"id": "acc_dips", "name": "Dips", "tags": ["Push", "Triceps"]},
    {"id": "acc_pushups", "name": "Push-Ups", "tags": ["Push", "Chest"]},
    {"id": "acc_abwheel", "name": "Ab Wheel", "tags": ["Core"]},
    {"id": "acc_lsits", "name": "L-Sits", "tags": ["Core"]},
    {"id": "acc_rows", "name": "Rows", "tags": ["Pull", "Back"]},
    {"id": "acc_facepulls", "name": "Face Pulls", "tags": ["Pull", "Shoulders"]},
    {"id": "acc_curls", "name": "Bicep Curls", "tags": ["Pull", "Arms"]},
    {"id": "acc_tricep_press", "name": "Triceps Pressdown", "tags": ["Push", "Arms"]},
    {"id": "acc_calf_raise", "name": "Calf Raise", "tags": ["Legs"]},
    {"id": "acc_ham_curl", "name": "Hamstring Curl", "tags": ["Legs"]},
    {"id": "acc_kb_rdl", "name": "Kettlebell RDL", "tags": ["Legs", "Hinge"]},
    {"id": "acc_russian_twist", "name": "Russian Twist", "tags": ["Core"]},
    {"id": "acc_shoulder_stretch", "name": "Shoulder Stretch", "tags": ["Mobility", "Shoulders"]},
]


def default_config() -> dict:
    return {
        "id": "main",
        "target_exercises_per_session": 4,
        "device_id": generate_uuid(),
        "app_data_version": 0,
    }


async def _upsert_definitions(table, records, fields) -> int:
    inserted = 0
    for record in records:
        existing = await table.get(record["id"])
        if existing is None:
            await table.add(dict(record))
            inserted += 1
        else:
            await table.update(record["id"], {f: record[f] for f in fields})
    return inserted


async def ensure_seeded(
    database: Database,
    stats: StatisticsService,
    now: Optional[int] = None,
) -> bool:
    """Bring built-in pillars and accessories up to the canonical version.

    Safe to call on every start. Returns ``True`` when a seeding pass ran.
    """
    async with database.transaction("rw", ("pillars", "accessories", "config")) as tx:
        configs = tx.table("config")
        config = await configs.get("main")
        if config is None:
            config = default_config()
            await configs.add(config)
        previous = config.get("app_data_version") or 0
        if previous >= CANONICAL_DATA_VERSION:
            return False
        pillars_added = await _upsert_definitions(
            tx.table("pillars"), CANONICAL_PILLARS, PILLAR_DEFINITION_FIELDS
        )
        accessories_added = await _upsert_definitions(
            tx.table("accessories"), CANONICAL_ACCESSORIES, ACCESSORY_DEFINITION_FIELDS
        )
        await configs.update(
            "main",
            {
                "seeded_at": now_ms() if now is None else now,
                "app_data_version": CANONICAL_DATA_VERSION,
            },
        )
    logger.info(
        "Seeded canonical data v%d -> v%d (%d pillars, %d accessories added)",
        previous,
        CANONICAL_DATA_VERSION,
        pillars_added,
        accessories_added,
    )
    if previous >= SESSION_TABLE_DATA_VERSION:
        await stats.recalculate_all()
    return True
