"""Vault watcher -- forwards markdown file events to the orchestrator.

Runs a watchdog observer thread over the vault. Modify, move and delete
events for markdown files are converted to vault-relative paths and
handed to the asyncio loop that owns ``KandoSync``.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future
from fnmatch import fnmatch
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from . import config

logger = logging.getLogger(__name__)

# Default ignore patterns (editor and sync noise)
_DEFAULT_IGNORE_PATTERNS = [
    "*/.obsidian/*",
    "*/.trash/*",
    "*/.git/*",
    "*/.DS_Store",
    "*.tmp",
    "*.swp",
    "*.swo",
    "*~",
]


def _should_ignore(file_path: str, extra_patterns: list[str] | None = None) -> bool:
    """Check if a file path matches any ignore pattern."""
    all_patterns = _DEFAULT_IGNORE_PATTERNS + (extra_patterns or [])
    normalized = file_path.replace("\\", "/")
    for pattern in all_patterns:
        if fnmatch(normalized, pattern):
            return True
    return False


class VaultEventHandler(FileSystemEventHandler):
    """Routes card file events into the orchestrator's event loop."""

    def __init__(
        self,
        sync,
        loop: asyncio.AbstractEventLoop,
        vault_path: Path,
        extra_ignore_patterns: list[str] | None = None,
    ):
        super().__init__()
        self._sync = sync
        self._loop = loop
        self._vault_path = Path(vault_path).resolve()
        self._extra_patterns = extra_ignore_patterns or []

    def _relative(self, file_path: str) -> Optional[str]:
        """Vault-relative markdown path, or None when the event is not ours."""
        if _should_ignore(file_path, self._extra_patterns):
            return None
        if not file_path.endswith(".md"):
            return None
        try:
            return Path(file_path).resolve().relative_to(self._vault_path).as_posix()
        except ValueError:
            return None

    def _submit(self, coro) -> Future:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        future.add_done_callback(_log_failure)
        return future

    def on_modified(self, event):
        if event.is_directory:
            return
        path = self._relative(event.src_path)
        if path:
            self._submit(self._sync.on_file_modified(path))

    def on_moved(self, event):
        if event.is_directory:
            return
        old_path = self._relative(event.src_path)
        new_path = self._relative(event.dest_path)
        if old_path and new_path:
            self._submit(self._sync.on_file_renamed(old_path, new_path))
        elif old_path:
            # moved out of the vault or renamed to a non-markdown name
            self._submit(self._sync.on_file_deleted(old_path))

    def on_deleted(self, event):
        if event.is_directory:
            return
        path = self._relative(event.src_path)
        if path:
            self._submit(self._sync.on_file_deleted(path))


def _log_failure(future: Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("Vault event handler failed: %s", error, exc_info=error)


class VaultWatcherThread:
    """Manages the watchdog observer in a background thread."""

    def __init__(self, sync, loop: asyncio.AbstractEventLoop, vault_path: Path):
        self._sync = sync
        self._loop = loop
        self._vault_path = Path(vault_path)
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        if not config.VAULT_WATCHER_ENABLED:
            logger.info("Vault watcher disabled via config")
            return
        if not self._vault_path.is_dir():
            logger.warning("Vault path does not exist: %s", self._vault_path)
            return

        handler = VaultEventHandler(
            self._sync,
            self._loop,
            self._vault_path,
            extra_ignore_patterns=config.VAULT_WATCHER_IGNORE_PATTERNS,
        )
        self._observer = Observer()
        self._observer.schedule(handler, str(self._vault_path), recursive=True)
        self._observer.daemon = True  # Die with main thread
        self._observer.start()
        logger.info("Vault watcher watching: %s", self._vault_path)

    def stop(self) -> None:
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("Vault watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()
