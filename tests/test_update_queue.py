"""Tests for per-card serialized frontmatter updates."""

import asyncio
import threading
import time

import pytest

from kando.frontmatter import FrontmatterStore, split_frontmatter
from kando.models import CardFrontmatter, TaskStatus
from kando.update_queue import FrontmatterUpdateQueue


class RecordingStore:
    """Store double that records write start/end and can block or fail."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.events = []
        self.active = {}
        self.overlaps = []
        self.fail_values = set()
        self.gates = {}
        self._lock = threading.Lock()

    def merge_update(self, path, updates):
        value = updates.get("value")
        with self._lock:
            self.active[path] = self.active.get(path, 0) + 1
            if self.active[path] > 1:
                self.overlaps.append(path)
            self.events.append(("start", path, value))
        try:
            gate = self.gates.get(value)
            if gate is not None:
                gate.wait(timeout=5)
            time.sleep(self.delay)
            if value in self.fail_values:
                raise OSError(f"write {value} failed")
        finally:
            with self._lock:
                self.active[path] -= 1
                self.events.append(("end", path, value))


class TestOrdering:
    def test_same_path_writes_in_call_order_without_overlap(self):
        store = RecordingStore()
        queue = FrontmatterUpdateQueue(store)

        async def main():
            await asyncio.gather(*(
                queue.update("Cards/a.md", {"value": i}) for i in range(5)
            ))

        asyncio.run(main())

        starts = [v for kind, _, v in store.events if kind == "start"]
        assert starts == [0, 1, 2, 3, 4]
        assert store.overlaps == []

    def test_paths_are_normalized_to_one_chain(self):
        store = RecordingStore()
        queue = FrontmatterUpdateQueue(store)

        async def main():
            await asyncio.gather(
                queue.update("Cards/a.md", {"value": 1}),
                queue.update("/Cards//a.md", {"value": 2}),
            )

        asyncio.run(main())
        assert store.overlaps == []
        assert {p for _, p, _ in store.events} == {"Cards/a.md"}

    def test_different_paths_do_not_wait_for_each_other(self):
        store = RecordingStore(delay=0)
        gate = threading.Event()
        store.gates["slow"] = gate
        queue = FrontmatterUpdateQueue(store)

        async def main():
            slow = asyncio.ensure_future(queue.update("Cards/a.md", {"value": "slow"}))
            await queue.update("Cards/b.md", {"value": "fast"})
            finished_first = not slow.done()
            gate.set()
            await slow
            return finished_first

        assert asyncio.run(main()) is True


class TestFailures:
    def test_failure_reported_to_issuing_caller_only(self):
        store = RecordingStore()
        store.fail_values.add(1)
        queue = FrontmatterUpdateQueue(store)

        async def main():
            return await asyncio.gather(
                queue.update("Cards/a.md", {"value": 0}),
                queue.update("Cards/a.md", {"value": 1}),
                queue.update("Cards/a.md", {"value": 2}),
                return_exceptions=True,
            )

        results = asyncio.run(main())
        assert results[0] is None
        assert isinstance(results[1], OSError)
        assert results[2] is None
        starts = [v for kind, _, v in store.events if kind == "start"]
        assert starts == [0, 1, 2]

    def test_missing_card_raises_file_not_found(self, vault):
        queue = FrontmatterUpdateQueue(FrontmatterStore(vault))

        async def main():
            await queue.update("Cards/gone.md", {"vk_status": "done"})

        with pytest.raises(FileNotFoundError):
            asyncio.run(main())


class TestBookkeeping:
    def test_entry_removed_after_chain_drains(self):
        store = RecordingStore()
        queue = FrontmatterUpdateQueue(store)

        async def main():
            pending = [
                asyncio.ensure_future(queue.update("Cards/a.md", {"value": i}))
                for i in range(3)
            ]
            await asyncio.sleep(0)
            during = queue.pending_paths
            await asyncio.gather(*pending)
            await asyncio.sleep(0)
            return during, queue.pending_paths

        during, after = asyncio.run(main())
        assert during == ["Cards/a.md"]
        assert after == []

    def test_cancelled_caller_does_not_cancel_write(self):
        store = RecordingStore(delay=0.05)
        queue = FrontmatterUpdateQueue(store)

        async def main():
            caller = asyncio.ensure_future(queue.update("Cards/a.md", {"value": 7}))
            await asyncio.sleep(0.01)
            caller.cancel()
            await queue.drain()

        asyncio.run(main())
        assert ("end", "Cards/a.md", 7) in store.events


class TestConvenienceWriters:
    def test_mark_synced(self, vault, write_card):
        path = write_card("Cards/a.md", {"title": "A", "vk_status": "notsynced"})
        queue = FrontmatterUpdateQueue(FrontmatterStore(vault))

        asyncio.run(queue.mark_synced("Cards/a.md", "t1", "p1", "Proj"))

        header, _ = split_frontmatter(path.read_text(encoding="utf-8"))
        assert header["vk_task_id"] == "t1"
        assert header["vk_project_id"] == "p1"
        assert header["vk_project_name"] == "Proj"
        assert header["vk_status"] == "todo"
        assert header["vk_last_synced"]

    def test_update_execution_status_keeps_unknown_attempt(self, vault, write_card):
        path = write_card("Cards/a.md", {"vk_attempt_id": "old", "vk_branch": "b1"})
        queue = FrontmatterUpdateQueue(FrontmatterStore(vault))

        asyncio.run(queue.update_execution_status("Cards/a.md", TaskStatus.IN_REVIEW))

        header, _ = split_frontmatter(path.read_text(encoding="utf-8"))
        assert header["vk_status"] == "inreview"
        assert header["vk_attempt_id"] == "old"
        assert header["vk_branch"] == "b1"

    def test_accepts_card_frontmatter(self, vault, write_card):
        path = write_card("Cards/a.md", {"title": "A"})
        queue = FrontmatterUpdateQueue(FrontmatterStore(vault))

        asyncio.run(queue.update("Cards/a.md", CardFrontmatter(vk_branch="feat/x")))

        header, _ = split_frontmatter(path.read_text(encoding="utf-8"))
        assert header == {"title": "A", "vk_branch": "feat/x"}
