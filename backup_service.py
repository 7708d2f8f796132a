from __future__ import annotations
import json
import logging
import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from config import APP_VERSION
from repository import Repository
from tools import now_ms

logger = logging.getLogger(__name__)

EXPORT_VERSION = 2
ALL_TABLES = ("pillars", "accessories", "sessions", "config")


class ExportData(BaseModel):
    pillars: Optional[List[dict]] = None
    accessories: Optional[List[dict]] = None
    sessions: Optional[List[dict]] = None
    config: Optional[dict] = None


class ExportPayload(BaseModel):
    export_version: int = Field(ge=1)
    data: ExportData


async def snapshot(repo: Repository) -> dict:
    """Return the contents of all four tables."""
    async with repo.db.transaction("r", ALL_TABLES):
        return {
            "pillars": await repo.get_all_pillars(),
            "accessories": await repo.get_all_accessories(),
            "sessions": await repo.get_all_sessions(),
            "config": await repo.get_config() or {},
        }


async def replace_all_tables(repo: Repository, data: dict) -> None:
    """Overwrite local tables with ``data`` in one transaction.

    Tables absent from ``data`` are left untouched. Sessions whose list fields
    were dropped by the remote store get empty lists back, and the config row
    always keeps the ``main`` key.
    """

    async def overwrite() -> None:
        if data.get("pillars") is not None:
            await repo.clear_pillars()
            await repo.bulk_replace_pillars(data["pillars"])
        if data.get("accessories") is not None:
            await repo.clear_accessories()
            await repo.bulk_replace_accessories(data["accessories"])
        if data.get("sessions") is not None:
            await repo.clear_sessions()
            await repo.bulk_replace_sessions(data["sessions"])
        if data.get("config"):
            await repo.put_config({**data["config"], "id": "main"})

    await repo.run_transaction("rw", ALL_TABLES, overwrite)


async def export_payload(repo: Repository, now: Optional[datetime.datetime] = None) -> dict:
    data = await snapshot(repo)
    config = data["config"]
    now = now or datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "export_version": EXPORT_VERSION,
        "app_version": APP_VERSION,
        "app_data_version": config.get("app_data_version") or 0,
        "exported_at": now.isoformat(),
        "device_id": config.get("device_id") or "unknown",
        "data": data,
    }
    if config:
        await repo.update_config({"last_export_at": now_ms()}, notify=False)
    return payload


def parse_payload(payload: object) -> ExportPayload:
    if not isinstance(payload, dict):
        raise ValueError("Invalid backup format: expected a JSON object")
    try:
        return ExportPayload(**payload)
    except ValidationError as e:
        raise ValueError(f"Invalid backup format: {e}")


async def import_payload(repo: Repository, payload: object) -> None:
    """Validate ``payload`` and overwrite every local table with its data."""
    parsed = parse_payload(payload)
    data = {
        table: getattr(parsed.data, table)
        for table in ALL_TABLES
        if getattr(parsed.data, table) is not None
    }
    await replace_all_tables(repo, data)
    logger.info("Imported backup (export version %d)", parsed.export_version)


async def export_to_file(repo: Repository, path: str) -> dict:
    payload = await export_payload(repo)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    return payload


async def import_from_file(repo: Repository, path: str) -> None:
    with open(path, "r", encoding="utf-8") as f:
        try:
            payload = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid backup format: {e}")
    await import_payload(repo, payload)
