import asyncio
import logging
import requests
from typing import Optional

from backup_service import replace_all_tables, snapshot
from repository import Repository
from tools import now_ms

logger = logging.getLogger(__name__)


class CloudSyncClient:
    """REST client that mirrors the whole local dataset to one remote document."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        token: Optional[str],
        timeout: float = 10.0,
    ) -> None:
        if not base_url or not user_id:
            raise ValueError("cloud database url and user id required")
        if not token:
            raise ValueError("authentication token required")
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.token = token
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.base_url}/users/{self.user_id}.json"

    def upload(self, data: dict) -> None:
        resp = requests.put(
            self.url, params={"auth": self.token}, json=data, timeout=self.timeout
        )
        if not resp.ok:
            raise RuntimeError(
                f"Upload failed: {resp.status_code} {resp.reason} - {resp.text}"
            )

    def download(self) -> Optional[dict]:
        resp = requests.get(self.url, params={"auth": self.token}, timeout=self.timeout)
        if not resp.ok:
            raise RuntimeError(f"Download failed: {resp.status_code} {resp.reason}")
        return resp.json()

    async def push(self, repo: Repository) -> None:
        data = await snapshot(repo)
        data["updated_at"] = now_ms()
        await asyncio.to_thread(self.upload, data)
        await repo.update_config({"last_sync_at": data["updated_at"]}, notify=False)
        logger.info("Uploaded %d sessions", len(data["sessions"]))

    async def pull(self, repo: Repository) -> bool:
        """Replace local data with the remote copy; ``False`` if none exists."""
        data = await asyncio.to_thread(self.download)
        if not data:
            return False
        await replace_all_tables(repo, data)
        await repo.update_config({"last_sync_at": now_ms()}, notify=False)
        logger.info("Restored %d sessions from cloud", len(data.get("sessions") or []))
        return True
