"""KanDo daemon -- long-running asyncio process hosting the status sync.

Runs the orchestrator, status poller and vault watcher on one event loop
and schedules housekeeping modules with APScheduler 3.x. Health goes to
the daemon_state single-row table so MCP tools can report status.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import signal
import subprocess
import sys
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .db import (
    finish_execution,
    get_connection,
    get_daemon_row,
    init_db,
    insert_execution,
    recent_executions,
    upsert_daemon_state,
)

logger = logging.getLogger(__name__)


class DaemonManager:
    """Manages the KanDo daemon lifecycle and scheduled modules."""

    def __init__(self, sync=None) -> None:
        self.scheduler = AsyncIOScheduler()
        self.sync = sync
        self._modules: dict[str, dict] = {}
        self._running = False
        self._pid = os.getpid()
        self._watcher = None
        self._stop_event: Optional[asyncio.Event] = None

    def register_module(
        self,
        name: str,
        func: Callable,
        trigger: CronTrigger | IntervalTrigger,
        description: str = "",
        misfire_grace_time: int | None = 300,
    ) -> None:
        """Register a scheduled module with the daemon.

        ``func`` may be a plain function (run in a worker thread) or a
        coroutine function (run on the daemon's loop).
        """
        wrapped = self._wrap_with_logging(name, func)
        self._modules[name] = {
            "func": wrapped,
            "trigger": trigger,
            "description": description,
        }
        self.scheduler.add_job(
            wrapped,
            trigger=trigger,
            id=name,
            name=name,
            replace_existing=True,
            misfire_grace_time=misfire_grace_time,
            coalesce=True,
            max_instances=1,
        )
        logger.info("Registered module: %s (%s)", name, description)

    def _wrap_with_logging(self, module_name: str, func: Callable) -> Callable:
        """Wrap a module function to log execution to daemon_execution_log."""
        async def wrapper():
            start_time = datetime.now(timezone.utc)
            row_id = None
            try:
                conn = get_connection()
                try:
                    row_id = insert_execution(conn, module_name, start_time.isoformat())
                finally:
                    conn.close()
            except Exception:
                logger.debug("Could not log start of %s", module_name, exc_info=True)

            status = "success"
            error_msg = ""
            result = None
            try:
                if inspect.iscoroutinefunction(func):
                    result = await func()
                else:
                    result = await asyncio.to_thread(func)
            except Exception as e:
                status = "error"
                error_msg = str(e)[:500]
                logger.error("Module %s failed: %s", module_name, e, exc_info=True)

            duration_ms = int(
                (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
            )
            summary = str(result)[:200] if isinstance(result, dict) else ""

            if row_id is not None:
                try:
                    conn = get_connection()
                    try:
                        finish_execution(conn, row_id, status, summary, error_msg, duration_ms)
                    finally:
                        conn.close()
                except Exception:
                    logger.debug("Could not log end of %s", module_name, exc_info=True)
            return result

        wrapper.__name__ = f"{module_name}_job"
        return wrapper

    def _poller_snapshot(self) -> dict:
        poller = getattr(self.sync, "poller", None)
        if poller is None:
            return {"running": False}
        return poller.snapshot()

    def _write_heartbeat(self, poller: dict) -> bool:
        """Update daemon_state with current heartbeat and poller health.

        Returns False when another live daemon owns the row.
        """
        conn = get_connection()
        try:
            row = get_daemon_row(conn)
            if row and row["pid"] and row["pid"] != self._pid and _is_pid_alive(row["pid"]):
                logger.error(
                    "PID COLLISION: daemon_state shows PID %d but we are PID %d. "
                    "Shutting down.", row["pid"], self._pid,
                )
                return False
            upsert_daemon_state(
                conn, self._pid, "running",
                json.dumps(list(self._modules)), json.dumps(poller),
            )
        except Exception as e:
            logger.error("Heartbeat write failed: %s", e)
        finally:
            conn.close()
        return True

    async def _heartbeat_job(self) -> None:
        ok = await asyncio.to_thread(self._write_heartbeat, self._poller_snapshot())
        if not ok:
            self.request_shutdown()

    def _write_status(self, status: str) -> None:
        """Reset the daemon_state row (pid, started_at) with a new status."""
        conn = get_connection()
        try:
            upsert_daemon_state(
                conn, self._pid, status,
                json.dumps(list(self._modules)), json.dumps(self._poller_snapshot()),
                started=True,
            )
        except Exception as e:
            logger.error("Status write failed: %s", e)
        finally:
            conn.close()

    def request_shutdown(self) -> None:
        """Ask the running loop to stop. Safe to call from the loop thread."""
        logger.info("Shutdown requested")
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(
                    sig, lambda signum, frame: loop.call_soon_threadsafe(self.request_shutdown)
                )

    def _rival_pid(self) -> Optional[int]:
        conn = get_connection()
        try:
            row = get_daemon_row(conn)
        finally:
            conn.close()
        if row and row["pid"] and row["pid"] != self._pid and row["status"] == "running":
            if _is_pid_alive(row["pid"]):
                return row["pid"]
        return None

    async def run(self) -> None:
        """Run until a shutdown is requested."""
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._install_signal_handlers(loop)

        if self.sync is not None:
            await self.sync.build_task_index()
            await self.sync.start_status_sync()
            from .vault_watcher import VaultWatcherThread

            try:
                self._watcher = VaultWatcherThread(self.sync, loop, self.sync.settings.vault_path)
                self._watcher.start()
            except Exception:
                logger.error("Failed to start vault watcher", exc_info=True)

        self.scheduler.add_job(
            self._heartbeat_job,
            trigger=IntervalTrigger(seconds=config.DAEMON_HEARTBEAT_INTERVAL),
            id="_heartbeat",
            name="Daemon heartbeat",
            replace_existing=True,
        )
        self.scheduler.start()
        self._running = True
        self._write_status("running")
        logger.info("Daemon started (pid=%d, modules=%s)", self._pid, self.modules)

        try:
            await self._stop_event.wait()
        finally:
            self.scheduler.shutdown(wait=False)
            if self._watcher is not None:
                self._watcher.stop()
            if self.sync is not None:
                await self.sync.shutdown()

    def _cleanup(self) -> None:
        """Write stopped state and remove the PID file."""
        if not self._running:
            return
        self._running = False
        self._write_status("stopped")
        config.DAEMON_PID_FILE.unlink(missing_ok=True)
        logger.info("Daemon cleanup complete.")

    def start(self) -> None:
        """Start the daemon: write PID, refuse rivals, run the loop."""
        config.ensure_data_dirs()
        init_db()

        rival = self._rival_pid()
        if rival is not None:
            logger.error(
                "STARTUP REFUSED: daemon_state shows alive PID %d, we are PID %d.",
                rival, self._pid,
            )
            return

        config.DAEMON_PID_FILE.write_text(str(self._pid))
        try:
            asyncio.run(self.run())
        except KeyboardInterrupt:
            logger.info("Daemon stopped by interrupt.")
        finally:
            self._cleanup()

    @property
    def modules(self) -> list[str]:
        return list(self._modules.keys())


def _is_pid_alive(pid: int) -> bool:
    """Check if a process is still running."""
    if sys.platform == "win32":
        try:
            result = subprocess.run(
                ["tasklist", "/FI", f"PID eq {pid}", "/NH", "/FO", "CSV"],
                capture_output=True, text=True, timeout=5,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return str(pid) in result.stdout
    try:
        os.kill(pid, 0)
        return True
    except (OSError, ProcessLookupError):
        return False


def get_daemon_status() -> dict:
    """Read current daemon status from the DB. Used by MCP tools."""
    init_db()
    conn = get_connection()
    try:
        row = get_daemon_row(conn)
        runs = recent_executions(conn, limit=5)
    finally:
        conn.close()

    if not row:
        return {
            "status": "stopped",
            "pid": None,
            "started_at": None,
            "last_heartbeat": None,
            "modules": [],
            "poller": {},
            "recent_runs": runs,
        }
    pid = row["pid"]
    alive = _is_pid_alive(pid) if pid else False
    return {
        "status": row["status"] if alive else "stopped",
        "pid": pid,
        "started_at": row["started_at"],
        "last_heartbeat": row["last_heartbeat"],
        "modules": json.loads(row["modules"]) if row["modules"] else [],
        "poller": json.loads(row["poller"]) if row["poller"] else {},
        "process_alive": alive,
        "recent_runs": runs,
    }


def daemon_control(action: str) -> dict:
    """Control the daemon. Actions: start, stop."""
    if action == "stop":
        status = get_daemon_status()
        pid = status.get("pid")
        if not pid or not status.get("process_alive"):
            return {"status": "not_running", "message": "Daemon is not running"}
        try:
            if sys.platform == "win32":
                subprocess.run(["taskkill", "/PID", str(pid), "/F"], capture_output=True)
            else:
                os.kill(pid, signal.SIGTERM)
        except (OSError, ProcessLookupError) as e:
            return {"status": "error", "message": str(e)}

        time.sleep(0.5)
        if not _is_pid_alive(pid):
            # Process is gone -- make sure the DB says so
            conn = get_connection()
            try:
                conn.execute("UPDATE daemon_state SET status = 'stopped' WHERE id = 1")
                conn.commit()
            finally:
                conn.close()
        return {"status": "stopped", "message": f"Daemon pid {pid} stopped"}

    if action == "start":
        status = get_daemon_status()
        if status.get("process_alive"):
            return {
                "status": "already_running",
                "message": f"Daemon already running (pid={status['pid']})",
            }
        script = config.PROJECT_ROOT / "scripts" / "start_daemon.py"
        try:
            proc = subprocess.Popen(
                [sys.executable, str(script), "--daemon"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            return {"status": "error", "message": str(e)}
        return {"status": "starting", "message": f"Launcher spawned (pid={proc.pid})"}

    return {"status": "error", "message": f"Unknown action: {action}"}


def build_daemon(settings=None) -> DaemonManager:
    """Build a DaemonManager around a KandoSync for the saved settings."""
    from .settings import load_settings
    from .sync import KandoSync

    settings = settings or load_settings()
    sync = KandoSync(settings)
    dm = DaemonManager(sync)

    dm.register_module(
        "reindex",
        sync.reindex,
        IntervalTrigger(seconds=config.REINDEX_INTERVAL_SECONDS),
        "Rescan the vault for cards created outside the watcher",
    )
    return dm
