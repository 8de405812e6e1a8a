"""Vibe Kanban status poller -- mirrors remote task state for tracked cards.

Each cycle walks the polled projects in insertion order, fetches the
project's tasks and compares every task's combined state (status plus
"attempt running") with the last one recorded. A difference produces an
``on_update`` notification; tasks that vanished from a successful fetch
produce a synthetic ``deleted`` notification. Seeded states never notify.

Failures are isolated per project and only lengthen the interval to the
next cycle (doubling from the base interval, capped). Cycles are chained:
the next one is scheduled only once the current one has finished, so two
cycles never overlap.

Memory stays bounded: tasks in a terminal phase are forgotten unless a
card still tracks them, and past ``max_tracked_tasks`` the oldest
untracked entries are evicted. Tracked (active) tasks are never evicted.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional, Union

from .api import VKApiClient, normalize_base_url
from .config import (
    POLL_BASE_INTERVAL_SECONDS,
    POLL_MAX_INTERVAL_SECONDS,
    POLL_MAX_TRACKED_TASKS,
    VK_REQUEST_TIMEOUT,
)
from .models import CombinedState, TaskStatus, VKTaskWithAttemptStatus, status_value

logger = logging.getLogger(__name__)

TaskUpdateCallback = Callable[
    [VKTaskWithAttemptStatus], Union[None, Awaitable[None]]
]


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SCHEDULED = "scheduled"
    STOPPED = "stopped"


class StatusPoller:
    """Polls task lists per project and reports combined-state changes."""

    def __init__(
        self,
        client_factory: Callable[[str], VKApiClient] = VKApiClient,
        base_interval: float = POLL_BASE_INTERVAL_SECONDS,
        max_interval: float = POLL_MAX_INTERVAL_SECONDS,
        max_tracked_tasks: int = POLL_MAX_TRACKED_TASKS,
        request_timeout: float = VK_REQUEST_TIMEOUT,
    ) -> None:
        self._client_factory = client_factory
        self._client = None
        self._base_interval = base_interval
        self._max_interval = max_interval
        self._max_tracked_tasks = max_tracked_tasks
        self._request_timeout = request_timeout

        self._vk_url = ""
        self._on_update: Optional[TaskUpdateCallback] = None
        self._debug = False
        self._running = False
        self._state = PollerState.IDLE
        # Bumped on every start/stop so a cycle from a previous run can
        # recognize it is stale after an await.
        self._generation = 0

        self._project_ids: dict[str, None] = {}  # insertion-ordered set
        # Insertion order doubles as eviction order (oldest first)
        self._known_states: dict[str, CombinedState] = {}
        self._task_projects: dict[str, str] = {}
        self._active_task_ids: set[str] = set()

        self._consecutive_errors = 0
        self._current_interval = base_interval

        self._timer: Optional[asyncio.TimerHandle] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._handler_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        vk_url: str,
        project_ids: Iterable[str],
        on_update: TaskUpdateCallback,
        debug: bool = False,
    ) -> None:
        """Begin polling. A no-op while already running.

        Must be called from the event loop thread when any project is given,
        since the first cycle is launched immediately.
        """
        if self._running:
            return

        self._vk_url = normalize_base_url(vk_url)
        self._project_ids = {pid: None for pid in project_ids if pid}
        self._on_update = on_update
        self._debug = debug
        self._running = True
        self._generation += 1
        self._state = PollerState.IDLE
        self._client = self._client_factory(self._vk_url)

        self._trace("Poller starting for projects: %s", list(self._project_ids))

        if not self._project_ids:
            self._trace("No projects to poll")
            return

        self._launch_cycle(self._generation)

    def stop(self) -> None:
        """Stop polling and forget all tracked state. Idempotent."""
        self._running = False
        self._generation += 1
        self._state = PollerState.STOPPED

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._cycle_task = None
        if self._client is not None:
            self._client.close()
            self._client = None

        self._known_states.clear()
        self._task_projects.clear()
        self._project_ids.clear()
        self._active_task_ids.clear()
        self._consecutive_errors = 0
        self._current_interval = self._base_interval

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def add_project(self, project_id: str) -> None:
        """Poll another project starting with the next cycle."""
        if project_id and project_id not in self._project_ids:
            self._project_ids[project_id] = None
            self._trace("Added project to poll: %s", project_id)

    def track_task(self, task_id: str) -> None:
        """Mark a task as backed by a card (exempt from cleanup)."""
        self._active_task_ids.add(task_id)

    def untrack_task(self, task_id: str) -> None:
        """Drop a task entirely, e.g. after its card was deleted."""
        self._active_task_ids.discard(task_id)
        self._known_states.pop(task_id, None)
        self._task_projects.pop(task_id, None)

    def set_known_state(
        self, task_id: str, status: TaskStatus | str, executing: bool = False
    ) -> None:
        """Seed a task's state without emitting a notification."""
        self._known_states[task_id] = CombinedState(status_value(status), executing)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def current_interval(self) -> float:
        return self._current_interval

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def project_ids(self) -> list[str]:
        return list(self._project_ids)

    @property
    def tracked_count(self) -> int:
        return len(self._known_states)

    def known_state(self, task_id: str) -> Optional[CombinedState]:
        return self._known_states.get(task_id)

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active_task_ids

    def snapshot(self) -> dict:
        """Small status dict for heartbeats and status tools."""
        return {
            "running": self._running,
            "state": self._state.value,
            "projects": list(self._project_ids),
            "tracked_tasks": len(self._known_states),
            "active_tasks": len(self._active_task_ids),
            "consecutive_errors": self._consecutive_errors,
            "interval_seconds": self._current_interval,
        }

    # ------------------------------------------------------------------
    # Cycle scheduling
    # ------------------------------------------------------------------

    def _trace(self, msg: str, *args) -> None:
        logger.log(logging.INFO if self._debug else logging.DEBUG, msg, *args)

    def _is_current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    def _launch_cycle(self, generation: int) -> None:
        self._timer = None
        if not self._is_current(generation):
            return
        loop = asyncio.get_running_loop()
        self._cycle_task = loop.create_task(self._run_cycle(generation))

    async def _run_cycle(self, generation: int) -> None:
        try:
            interval = await self._poll_cycle(generation)
        except Exception:
            # Keep polling even if something unexpected escapes the cycle
            logger.error("Status poll cycle failed", exc_info=True)
            if not self._is_current(generation):
                return
            interval = self._record_cycle_result(had_error=True)

        if self._is_current(generation):
            loop = asyncio.get_running_loop()
            self._state = PollerState.SCHEDULED
            self._timer = loop.call_later(interval, self._launch_cycle, generation)

    async def poll_cycle(self) -> float:
        """Run one cycle now and return the interval before the next one.

        Does not schedule anything; the running poller chains these itself.
        """
        return await self._poll_cycle(self._generation)

    async def _poll_cycle(self, generation: int) -> float:
        if not self._is_current(generation):
            return self._current_interval

        self._state = PollerState.POLLING
        had_error = False

        for project_id in list(self._project_ids):
            if not self._is_current(generation):
                return self._current_interval

            try:
                self._trace("Polling project %s at %s", project_id, self._vk_url)
                tasks = await asyncio.wait_for(
                    asyncio.to_thread(self._client.get_tasks, project_id),
                    timeout=self._request_timeout,
                )
            except Exception as e:
                had_error = True
                self._trace("Poll error for project %s: %s", project_id, e)
                continue

            # Results that arrive after stop() are discarded
            if not self._is_current(generation):
                return self._current_interval

            self._trace("Poll response for project %s: %d tasks", project_id, len(tasks))
            self._apply_project_tasks(project_id, tasks)
            self._cleanup_terminal_tasks()
            self._evict_over_capacity()

        self._state = PollerState.IDLE
        return self._record_cycle_result(had_error)

    def _record_cycle_result(self, had_error: bool) -> float:
        if had_error:
            self._consecutive_errors += 1
            self._current_interval = min(
                self._base_interval * 2 ** (self._consecutive_errors - 1),
                self._max_interval,
            )
            self._trace("Poll error, backing off for %.1fs", self._current_interval)
        else:
            self._consecutive_errors = 0
            self._current_interval = self._base_interval
        return self._current_interval

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def _apply_project_tasks(
        self, project_id: str, tasks: list[VKTaskWithAttemptStatus]
    ) -> None:
        current_ids = {task.id for task in tasks}

        for task_id, owner in list(self._task_projects.items()):
            if owner != project_id or task_id in current_ids:
                continue
            last = self._known_states.get(task_id)
            if last is None or last.phase == TaskStatus.DELETED.value:
                continue
            self._trace("Task deleted: %s", task_id)
            self._notify(VKTaskWithAttemptStatus(
                id=task_id,
                project_id=project_id,
                title="",
                status=TaskStatus.DELETED,
            ))
            self._known_states.pop(task_id, None)
            self._task_projects.pop(task_id, None)

        for task in tasks:
            current = task.combined_state
            last = self._known_states.get(task.id)
            if last is not None and last != current:
                self._trace("Task state changed: %s %s -> %s", task.id, last, current)
                self._notify(task)
            self._known_states[task.id] = current
            self._task_projects[task.id] = project_id

    def _cleanup_terminal_tasks(self) -> None:
        for task_id, state in list(self._known_states.items()):
            if state.is_terminal and task_id not in self._active_task_ids:
                del self._known_states[task_id]
                self._task_projects.pop(task_id, None)
                self._trace("Cleaned up terminal task: %s %s", task_id, state)

    def _evict_over_capacity(self) -> None:
        excess = len(self._known_states) - self._max_tracked_tasks
        if excess <= 0:
            return
        for task_id in list(self._known_states):
            if excess <= 0:
                break
            if task_id in self._active_task_ids:
                continue
            del self._known_states[task_id]
            self._task_projects.pop(task_id, None)
            excess -= 1

    def _notify(self, task: VKTaskWithAttemptStatus) -> None:
        if self._on_update is None:
            return
        try:
            result = self._on_update(task)
        except Exception:
            logger.error("Task update handler failed for %s", task.id, exc_info=True)
            return
        if inspect.isawaitable(result):
            pending = asyncio.ensure_future(result)
            self._handler_tasks.add(pending)
            pending.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Task update handler failed: %s", task.exception(),
                exc_info=task.exception(),
            )

    async def wait_for_handlers(self) -> None:
        """Wait for update handlers scheduled by previous cycles."""
        while self._handler_tasks:
            await asyncio.wait(list(self._handler_tasks))
