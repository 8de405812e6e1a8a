"""Card <-> Vibe Kanban orchestration.

Keeps the task-id -> card index, feeds the status poller with the tasks
and projects found in the vault, and writes the poller's notifications
back into card frontmatter through the per-card update queue. Also hosts
the card workflows: push, execute, pull status, and card creation.

Blocking work (HTTP, file reads) runs in worker threads so everything here
can live on one asyncio loop next to the poller.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from pathlib import PurePosixPath
from typing import Callable, Optional

from .api import VKApiClient, VKApiError
from .frontmatter import FrontmatterStore, join_frontmatter, normalize_path
from .models import (
    DEFAULT_EXECUTOR,
    DEFAULT_EXECUTOR_VARIANTS,
    STATUS_LABELS,
    CardFrontmatter,
    CreateTaskAttemptPayload,
    CreateTaskPayload,
    ExecutorProfileId,
    TaskStatus,
    UpdateTaskPayload,
    VKExecutorOption,
    VKGitBranch,
    VKProject,
    VKTask,
    VKTaskAttempt,
    VKTaskWithAttemptStatus,
    parse_executor_profiles,
)
from .poller import StatusPoller
from .settings import KandoSettings
from .update_queue import FrontmatterUpdateQueue, now_iso

logger = logging.getLogger(__name__)


def _digest(title: str, description: str) -> str:
    return hashlib.sha256(f"{title}\x00{description}".encode("utf-8")).hexdigest()


def _content_digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def sanitize_folder(folder: str) -> str:
    """Normalize a vault folder; rejects traversal. Raises ValueError."""
    normalized = re.sub(r"/+", "/", folder.replace("\\", "/")).strip("/")
    if ".." in normalized.split("/"):
        raise ValueError("Invalid folder path")
    return normalized


def build_card_content(title: str, project: VKProject, description: str = "") -> str:
    """Markdown for a fresh, not yet pushed card."""
    header = {
        "title": title,
        "vk_status": TaskStatus.NOT_SYNCED.value,
        "vk_project_name": project.name,
        "vk_project_id": project.id,
    }
    return join_frontmatter(header, f"\n{description}\n")


def status_label(status: Optional[TaskStatus | str]) -> str:
    if status is None:
        return "Synced"
    try:
        return STATUS_LABELS[TaskStatus(status)]
    except ValueError:
        return "Synced"


class KandoSync:
    """Vault-side orchestrator for one vault and one Vibe Kanban service."""

    def __init__(
        self,
        settings: KandoSettings,
        store: Optional[FrontmatterStore] = None,
        api: Optional[VKApiClient] = None,
        poller_factory: Optional[Callable[[], StatusPoller]] = None,
        notify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.settings = settings
        self.store = store or FrontmatterStore(settings.vault_path)
        self.queue = FrontmatterUpdateQueue(self.store)
        self.api = api or VKApiClient(settings.vk_url, timeout=settings.request_timeout)
        self._poller_factory = poller_factory or self._default_poller
        self._notify = notify or (lambda message: logger.info("%s", message))

        self.poller: Optional[StatusPoller] = None
        self.task_index: dict[str, str] = {}  # task_id -> card path
        # path -> digest of the file content we last wrote ourselves
        self._own_writes: dict[str, str] = {}
        self._pushed_digests: dict[str, str] = {}
        self.store.add_write_listener(self._record_own_write)

    def _default_poller(self) -> StatusPoller:
        return StatusPoller(
            client_factory=lambda url: VKApiClient(url, timeout=self.settings.request_timeout),
            base_interval=self.settings.poll_base_interval,
            max_interval=self.settings.poll_max_interval,
            max_tracked_tasks=self.settings.max_tracked_tasks,
            request_timeout=self.settings.request_timeout,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _read(self, path: str) -> CardFrontmatter:
        return await asyncio.to_thread(self.store.read, path)

    async def _call(self, func, *args):
        return await asyncio.to_thread(func, *args)

    def is_card(self, path: str) -> bool:
        """Whether a vault path lives in the cards folder (any depth)."""
        path = normalize_path(path)
        if not path.endswith(".md"):
            return False
        folder = (self.settings.cards_folder or "").strip("/")
        if not folder:
            return True
        return path.startswith(folder + "/")

    def _index(self, task_id: str, path: str) -> None:
        self.task_index[task_id] = normalize_path(path)
        if self.poller is not None:
            self.poller.track_task(task_id)

    def _record_own_write(self, path: str, content: str) -> None:
        # Called from the writing thread before the file changes on disk
        self._own_writes[path] = _content_digest(content)

    def _task_for_path(self, path: str) -> Optional[str]:
        for task_id, indexed in self.task_index.items():
            if indexed == path:
                return task_id
        return None

    # ------------------------------------------------------------------
    # Index and status sync
    # ------------------------------------------------------------------

    async def build_task_index(self) -> int:
        """Rebuild task_id -> card from the vault. Returns the card count."""
        self.task_index.clear()
        paths = await asyncio.to_thread(lambda: list(self.store.iter_markdown()))
        for path in paths:
            if not self.is_card(path):
                continue
            try:
                fm = await self._read(path)
            except (OSError, UnicodeDecodeError) as e:
                logger.error("Error reading %s: %s", path, e)
                continue
            if fm.vk_task_id:
                self._index(fm.vk_task_id, path)
        logger.info("Indexed %d synced cards", len(self.task_index))
        return len(self.task_index)

    async def start_status_sync(self) -> None:
        """(Re)start the poller seeded from the indexed cards."""
        if self.poller is not None:
            self.poller.stop()
            self.poller = None

        if not self.settings.auto_sync_status:
            return

        self.poller = self._poller_factory()
        project_ids: dict[str, None] = {}

        for task_id, path in list(self.task_index.items()):
            try:
                fm = await self._read(path)
            except OSError:
                continue
            if fm.vk_project_id:
                project_ids[fm.vk_project_id] = None
            self.poller.track_task(task_id)
            if fm.vk_status:
                self.poller.set_known_state(task_id, fm.vk_status)

        if self.settings.default_project_id:
            project_ids[self.settings.default_project_id] = None

        if not project_ids:
            logger.debug("No projects to poll - skipping poller start")
            return

        self.poller.start(
            self.settings.vk_url,
            list(project_ids),
            self.handle_task_update,
            self.settings.debug,
        )

    async def reindex(self) -> dict:
        """Rescan the vault and let the poller pick up new cards and projects.

        Tasks whose cards disappeared without a watcher event are dropped
        from the poller too.
        """
        previous = set(self.task_index)
        await self.build_task_index()
        if self.poller is None or not self.poller.is_running:
            await self.start_status_sync()
            return {"status": "restarted", "cards": len(self.task_index)}
        removed = previous - set(self.task_index)
        for task_id in removed:
            self.poller.untrack_task(task_id)
        if removed:
            logger.info("Untracked %d tasks whose cards are gone", len(removed))
        for task_id, path in self.task_index.items():
            self.poller.track_task(task_id)
            try:
                fm = await self._read(path)
            except OSError:
                continue
            if fm.vk_project_id:
                self.poller.add_project(fm.vk_project_id)
        return {"status": "ok", "cards": len(self.task_index)}

    async def handle_task_update(self, task: VKTaskWithAttemptStatus) -> None:
        """Mirror a poller notification into the card that tracks the task."""
        path = self.task_index.get(task.id)
        if not path or not self.store.exists(path):
            return

        try:
            await self.queue.update(path, {
                "vk_status": task.status.value,
                "vk_last_synced": now_iso(),
            })
            if task.status == TaskStatus.DONE:
                self._notify(f'KanDo: "{task.title}" completed')
            elif task.status == TaskStatus.DELETED:
                # deletion payloads carry no title
                title = await self._call(self.store.get_title, path)
                self._notify(f'KanDo: "{title}" deleted')
        except Exception as e:
            logger.log(
                logging.ERROR if self.settings.debug else logging.DEBUG,
                "Error handling task update for %s: %s", task.id, e,
            )

    # ------------------------------------------------------------------
    # Vault events
    # ------------------------------------------------------------------

    async def on_file_renamed(self, old_path: str, new_path: str) -> None:
        old_path, new_path = normalize_path(old_path), normalize_path(new_path)
        task_id = self._task_for_path(old_path)
        if task_id is None:
            return
        self.task_index[task_id] = new_path
        for digests in (self._pushed_digests, self._own_writes):
            if old_path in digests:
                digests[new_path] = digests.pop(old_path)
        logger.debug("Updated task index: %s -> %s", task_id, new_path)

    async def on_file_deleted(self, path: str) -> None:
        path = normalize_path(path)
        self._pushed_digests.pop(path, None)
        self._own_writes.pop(path, None)
        task_id = self._task_for_path(path)
        if task_id is None:
            return
        del self.task_index[task_id]
        if self.poller is not None:
            self.poller.untrack_task(task_id)
        logger.debug("Removed task from index: %s", task_id)

    async def on_file_modified(self, path: str) -> None:
        """Auto-push synced cards on save, ignoring our own writes."""
        path = normalize_path(path)
        if not self.settings.auto_push_on_save or not self.is_card(path):
            return
        try:
            content = await self._call(self.store.read_text, path)
            if self._own_writes.get(path) == _content_digest(content):
                return
            if await self._call(self.store.is_synced, path):
                await self.push_card_quiet(path)
        except (OSError, VKApiError) as e:
            logger.warning("Auto-push failed for %s: %s", path, e)

    # ------------------------------------------------------------------
    # Card workflows
    # ------------------------------------------------------------------

    async def list_projects(self) -> list[VKProject]:
        return await self._call(self.api.get_projects)

    async def get_project(self, project_id: str) -> VKProject:
        return await self._call(self.api.get_project, project_id)

    async def _project_name(self, project_id: str, known: Optional[str]) -> str:
        if known:
            return known
        projects = await self._call(self.api.get_projects)
        return next((p.name for p in projects if p.id == project_id), "")

    async def _create_remote_task(
        self, path: str, fm: CardFrontmatter, project_id: str
    ) -> VKTask:
        title = await self._call(self.store.get_title, path)
        description = await self._call(self.store.get_description, path)
        task = await self._call(
            self.api.create_task,
            CreateTaskPayload(project_id=project_id, title=title, description=description),
        )
        project_name = await self._project_name(project_id, fm.vk_project_name)
        await self.queue.mark_synced(path, task.id, project_id, project_name, task.status)
        self._index(task.id, path)
        self._pushed_digests[path] = _digest(title, description)
        return task

    async def push_card(self, path: str, project_id: Optional[str] = None) -> VKTask | None:
        """Create the card's task, or update it when already synced.

        Raises ValueError when no project can be determined.
        """
        path = normalize_path(path)
        fm = await self._read(path)
        if fm.vk_task_id:
            await self.push_card_quiet(path, force=True)
            return None

        project_id = project_id or fm.vk_project_id or self.settings.default_project_id
        if not project_id:
            raise ValueError("No project configured - set a default project in settings")
        task = await self._create_remote_task(path, fm, project_id)
        if self.poller is not None:
            self.poller.add_project(project_id)
        return task

    async def push_card_quiet(self, path: str, force: bool = False) -> bool:
        """Send title and description of a synced card. Returns True if sent."""
        path = normalize_path(path)
        fm = await self._read(path)
        if not fm.vk_task_id:
            return False

        title = await self._call(self.store.get_title, path)
        description = await self._call(self.store.get_description, path)
        digest = _digest(title, description)
        if not force and self._pushed_digests.get(path) == digest:
            return False

        await self._call(
            self.api.update_task,
            fm.vk_task_id,
            UpdateTaskPayload(title=title, description=description),
        )
        self._pushed_digests[path] = digest
        await self.queue.touch(path)
        return True

    async def get_execution_options(
        self, project_id: str
    ) -> tuple[list[VKGitBranch], list[VKExecutorOption]]:
        """Branches and executor profiles, with fallbacks when unavailable."""
        branches_result, profiles_result = await asyncio.gather(
            self._call(self.api.get_project_branches, project_id),
            self._call(self.api.get_profiles),
            return_exceptions=True,
        )

        if isinstance(branches_result, BaseException) or not branches_result:
            branches = [VKGitBranch(name=self.settings.default_branch, is_current=True)]
        else:
            branches = branches_result

        options: list[VKExecutorOption] = []
        if not isinstance(profiles_result, BaseException):
            options = parse_executor_profiles(profiles_result)
        if not options:
            options = [
                VKExecutorOption(executor=DEFAULT_EXECUTOR, variants=list(DEFAULT_EXECUTOR_VARIANTS))
            ]
        return branches, options

    async def execute_card(
        self,
        path: str,
        executor: Optional[str] = None,
        variant: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> VKTaskAttempt:
        """Push the card (creating its task if needed) and start an attempt."""
        path = normalize_path(path)
        fm = await self._read(path)
        task_id = fm.vk_task_id
        project_id = fm.vk_project_id or self.settings.default_project_id

        if not task_id:
            if not project_id:
                raise ValueError("No project configured - set a default project in settings")
            task = await self._create_remote_task(path, fm, project_id)
            task_id = task.id
        if not task_id or not project_id:
            raise ValueError("Card not properly synced")

        await self.push_card_quiet(path)

        attempt = await self._call(
            self.api.create_task_attempt,
            CreateTaskAttemptPayload(
                task_id=task_id,
                executor_profile_id=ExecutorProfileId(
                    executor=executor or self.settings.default_executor,
                    variant=variant if variant is not None else self.settings.default_variant,
                ),
                base_branch=branch or self.settings.default_branch,
            ),
        )
        await self.queue.update_execution_status(
            path, TaskStatus.IN_PROGRESS, attempt.id, attempt.branch
        )

        if self.poller is not None and self.poller.is_running:
            self.poller.track_task(task_id)
            self.poller.set_known_state(task_id, TaskStatus.IN_PROGRESS)
            self.poller.add_project(project_id)
        elif self.settings.auto_sync_status:
            await self.start_status_sync()
        return attempt

    async def pull_status(self, path: str) -> tuple[VKTask, list[VKTaskAttempt]]:
        """Fetch the task and its attempts and write them into the card."""
        path = normalize_path(path)
        if not self.is_card(path):
            raise ValueError("Not a card file")
        fm = await self._read(path)
        if not fm.vk_task_id:
            raise ValueError("Card not synced with Vibe Kanban")

        task = await self._call(self.api.get_task, fm.vk_task_id)
        try:
            attempts = await self._call(self.api.get_task_attempts, fm.vk_task_id)
        except VKApiError as e:
            logger.debug("No attempts for %s: %s", fm.vk_task_id, e)
            attempts = []

        latest = attempts[-1] if attempts else None
        await self.queue.update_execution_status(
            path,
            task.status,
            latest.id if latest else None,
            latest.branch if latest else None,
        )
        return task, attempts

    async def create_card(
        self,
        title: str,
        project: VKProject,
        description: str = "",
        folder: Optional[str] = None,
    ) -> str:
        """Write a new unsynced card and return its vault path."""
        folder = sanitize_folder(folder if folder is not None else self.settings.cards_folder)
        target_dir = self.store.resolve(folder) if folder else self.store.vault_path
        if target_dir.exists() and not target_dir.is_dir():
            raise ValueError("Invalid folder path")

        path = self.unique_card_path(folder, title)
        content = build_card_content(title, project, description)

        def _write() -> None:
            target = self.store.resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        return path

    def unique_card_path(self, folder: str, title: str) -> str:
        """``folder/title.md``, numbered when that name is taken."""
        clean = re.sub(r'[\\/:*?"<>|]', "-", title)
        clean = re.sub(r"\s+", " ", clean).strip() or "Untitled"
        base = f"{folder}/{clean}" if folder else clean
        candidate = f"{base}.md"
        counter = 1
        while self.store.resolve(candidate).exists():
            candidate = f"{base} {counter}.md"
            counter += 1
        return candidate

    async def task_url(self, path: str) -> str:
        """Browser URL of the card's task."""
        fm = await self._read(normalize_path(path))
        if not fm.vk_task_id:
            raise ValueError("Card not synced with Vibe Kanban")
        if not fm.vk_project_id:
            raise ValueError("Missing project ID - cannot open task")
        base = self.settings.vk_url.rstrip("/")
        return f"{base}/projects/{fm.vk_project_id}/tasks/{fm.vk_task_id}"

    async def card_status(self, path: str) -> dict:
        path = normalize_path(path)
        fm = await self._read(path)
        return {
            "path": path,
            "title": fm.title or PurePosixPath(path).stem,
            "synced": bool(fm.vk_task_id),
            "status": fm.vk_status.value if fm.vk_status else None,
            "label": status_label(fm.vk_status) if fm.vk_task_id else "Not synced",
            "task_id": fm.vk_task_id,
            "project_id": fm.vk_project_id,
            "attempt_id": fm.vk_attempt_id,
            "branch": fm.vk_branch,
        }

    async def shutdown(self) -> None:
        if self.poller is not None:
            self.poller.stop()
            await self.poller.wait_for_handlers()
        await self.queue.drain()
