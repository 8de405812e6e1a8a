"""Per-card serialized frontmatter updates.

Every card path has at most one pending chain of writes. A new update is
appended behind the current tail and only touches the file once every
earlier update for the same path has settled, so writes for one card never
overlap and land in call order. Different cards proceed independently.

A failed write is reported to the caller that issued it and nowhere else;
the chain moves on to the next queued update regardless. Once the last
queued update for a path settles its entry is dropped, so the map only
holds paths with work in flight.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

from .frontmatter import FrontmatterStore, normalize_path
from .models import CardFrontmatter, TaskStatus

logger = logging.getLogger(__name__)


def now_iso() -> str:
    """Return current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


class FrontmatterUpdateQueue:
    """Serializes ``FrontmatterStore.merge_update`` calls per card path."""

    def __init__(self, store: FrontmatterStore) -> None:
        self._store = store
        self._tails: dict[str, asyncio.Task] = {}

    @property
    def pending_paths(self) -> list[str]:
        return list(self._tails)

    async def update(self, path: str, updates: Mapping | CardFrontmatter) -> None:
        """Merge ``updates`` into the card's header once earlier writes settle.

        None values leave the existing field untouched. Raises whatever the
        underlying write raised (e.g. FileNotFoundError for a deleted card).
        Cancelling the caller does not cancel the queued write.
        """
        key = normalize_path(path)
        if isinstance(updates, CardFrontmatter):
            updates = updates.updates()
        else:
            updates = dict(updates)

        previous = self._tails.get(key)
        link = asyncio.ensure_future(self._write_after(previous, key, updates))
        self._tails[key] = link
        link.add_done_callback(lambda task: self._release(key, task))
        await asyncio.shield(link)

    async def _write_after(
        self, previous: Optional[asyncio.Task], key: str, updates: dict
    ) -> None:
        if previous is not None and not previous.done():
            # wait() never raises the previous link's error
            await asyncio.wait([previous])
        await asyncio.to_thread(self._store.merge_update, key, updates)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Frontmatter update failed for %s: %s", key, task.exception())
        if self._tails.get(key) is task:
            del self._tails[key]

    async def drain(self) -> None:
        """Wait until every queued update has settled."""
        while self._tails:
            await asyncio.wait(list(self._tails.values()))

    # ------------------------------------------------------------------
    # Convenience writers
    # ------------------------------------------------------------------

    async def mark_synced(
        self,
        path: str,
        task_id: str,
        project_id: str,
        project_name: str,
        status: TaskStatus | str = TaskStatus.TODO,
    ) -> None:
        """Record the remote task a card is now linked to."""
        await self.update(path, {
            "vk_task_id": task_id,
            "vk_project_name": project_name,
            "vk_project_id": project_id,
            "vk_status": TaskStatus(status).value,
            "vk_last_synced": now_iso(),
        })

    async def update_execution_status(
        self,
        path: str,
        status: TaskStatus | str,
        attempt_id: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> None:
        """Write a status, plus attempt id and branch when known."""
        updates = {
            "vk_status": TaskStatus(status).value,
            "vk_last_synced": now_iso(),
        }
        if attempt_id:
            updates["vk_attempt_id"] = attempt_id
        if branch:
            updates["vk_branch"] = branch
        await self.update(path, updates)

    async def touch(self, path: str) -> None:
        await self.update(path, {"vk_last_synced": now_iso()})
