"""Tests for the KanDo daemon module."""

import asyncio
import json
import os
import sqlite3
from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

import kando.config as config
from kando.config import ensure_data_dirs
from kando.db import get_connection, init_db, recent_executions


def _setup_db():
    ensure_data_dirs()
    init_db()


def _daemon_row(temp_data_dir):
    conn = sqlite3.connect(str(temp_data_dir / "kando.db"))
    conn.row_factory = sqlite3.Row
    row = conn.execute("SELECT * FROM daemon_state WHERE id = 1").fetchone()
    conn.close()
    return row


class TestDaemonManager:
    def test_register_module(self, temp_data_dir):
        _setup_db()
        from kando.daemon import DaemonManager

        dm = DaemonManager()
        dm.register_module("test_module", MagicMock(), IntervalTrigger(seconds=60), "A test module")
        assert dm.modules == ["test_module"]

    def test_register_multiple_modules(self, temp_data_dir):
        _setup_db()
        from kando.daemon import DaemonManager

        dm = DaemonManager()
        dm.register_module("mod_a", MagicMock(), IntervalTrigger(seconds=30), "Module A")
        dm.register_module("mod_b", MagicMock(), CronTrigger(hour=2), "Module B")
        assert sorted(dm.modules) == ["mod_a", "mod_b"]

    def test_write_heartbeat_includes_poller(self, temp_data_dir):
        _setup_db()
        from kando.daemon import DaemonManager

        sync = MagicMock()
        sync.poller.snapshot.return_value = {"running": True, "projects": ["p1"]}
        dm = DaemonManager(sync)
        dm.register_module("reindex", MagicMock(), IntervalTrigger(seconds=60))

        assert dm._write_heartbeat(dm._poller_snapshot()) is True

        row = _daemon_row(temp_data_dir)
        assert row["status"] == "running"
        assert row["pid"] == os.getpid()
        assert json.loads(row["modules"]) == ["reindex"]
        assert json.loads(row["poller"]) == {"running": True, "projects": ["p1"]}

    def test_heartbeat_detects_rival(self, temp_data_dir):
        _setup_db()
        from kando.daemon import DaemonManager

        dm = DaemonManager()
        dm._write_status("running")
        other = DaemonManager()
        other._pid = os.getpid() + 1_000_000  # a PID that is not ours

        # the row belongs to this (alive) process, so "other" must back off
        assert other._write_heartbeat({}) is False

    def test_write_status(self, temp_data_dir):
        _setup_db()
        from kando.daemon import DaemonManager

        dm = DaemonManager()
        dm._write_status("stopped")
        assert _daemon_row(temp_data_dir)["status"] == "stopped"

    def test_poller_snapshot_without_sync(self, temp_data_dir):
        from kando.daemon import DaemonManager

        assert DaemonManager()._poller_snapshot() == {"running": False}


class TestExecutionLog:
    def _run_wrapped(self, func, name="mod"):
        from kando.daemon import DaemonManager

        dm = DaemonManager()
        wrapped = dm._wrap_with_logging(name, func)
        return asyncio.run(wrapped())

    def _rows(self):
        conn = get_connection()
        try:
            return recent_executions(conn)
        finally:
            conn.close()

    def test_sync_function_logged(self, temp_data_dir):
        _setup_db()
        result = self._run_wrapped(lambda: {"cards": 3}, "reindex")
        assert result == {"cards": 3}
        rows = self._rows()
        assert rows[0]["module_name"] == "reindex"
        assert rows[0]["status"] == "success"
        assert "cards" in rows[0]["result_summary"]
        assert rows[0]["finished_at"]

    def test_coroutine_function_logged(self, temp_data_dir):
        _setup_db()

        async def job():
            await asyncio.sleep(0)
            return {"status": "ok"}

        assert self._run_wrapped(job) == {"status": "ok"}
        assert self._rows()[0]["status"] == "success"

    def test_failure_logged_not_raised(self, temp_data_dir):
        _setup_db()

        def job():
            raise RuntimeError("vault unreadable")

        assert self._run_wrapped(job) is None
        row = self._rows()[0]
        assert row["status"] == "error"
        assert row["error_message"] == "vault unreadable"


class TestDaemonRun:
    def test_run_until_shutdown(self, temp_data_dir, monkeypatch):
        _setup_db()
        from kando.daemon import DaemonManager

        monkeypatch.setattr(config, "VAULT_WATCHER_ENABLED", False)

        class FakeSync:
            def __init__(self):
                self.settings = MagicMock(vault_path=temp_data_dir)
                self.poller = None
                self.calls = []

            async def build_task_index(self):
                self.calls.append("index")

            async def start_status_sync(self):
                self.calls.append("start")

            async def shutdown(self):
                self.calls.append("shutdown")

        sync = FakeSync()
        dm = DaemonManager(sync)

        async def main():
            asyncio.get_running_loop().call_later(0.05, dm.request_shutdown)
            await dm.run()

        asyncio.run(main())
        assert sync.calls == ["index", "start", "shutdown"]
        assert _daemon_row(temp_data_dir)["status"] == "running"

        dm._cleanup()
        assert _daemon_row(temp_data_dir)["status"] == "stopped"

    def test_start_refuses_when_rival_alive(self, temp_data_dir):
        _setup_db()
        from kando.daemon import DaemonManager

        DaemonManager()._write_status("running")
        rival = DaemonManager()
        rival._pid = os.getpid() + 1_000_000
        rival.start()
        assert not config.DAEMON_PID_FILE.exists()


class TestDaemonStatus:
    def test_status_when_no_daemon(self, temp_data_dir):
        _setup_db()
        from kando.daemon import get_daemon_status

        status = get_daemon_status()
        assert status["status"] == "stopped"
        assert status["pid"] is None

    def test_status_with_running_daemon(self, temp_data_dir):
        _setup_db()
        from kando.daemon import DaemonManager, get_daemon_status

        DaemonManager()._write_status("running")

        status = get_daemon_status()
        assert status["status"] == "running"
        assert status["pid"] == os.getpid()
        assert status["process_alive"] is True
        assert status["poller"] == {"running": False}

    def test_status_with_dead_pid(self, temp_data_dir):
        _setup_db()
        from kando.daemon import get_daemon_status

        conn = sqlite3.connect(str(temp_data_dir / "kando.db"))
        conn.execute("""
            INSERT INTO daemon_state (id, pid, started_at, last_heartbeat, modules, status)
            VALUES (1, 999999, '2024-01-01T00:00:00', '2024-01-01T00:00:00', '[]', 'running')
        """)
        conn.commit()
        conn.close()

        status = get_daemon_status()
        assert status["status"] == "stopped"
        assert status["process_alive"] is False


class TestDaemonControl:
    def test_stop_when_not_running(self, temp_data_dir):
        _setup_db()
        from kando.daemon import daemon_control

        assert daemon_control("stop")["status"] == "not_running"

    def test_unknown_action(self, temp_data_dir):
        _setup_db()
        from kando.daemon import daemon_control

        result = daemon_control("invalid")
        assert result["status"] == "error"
        assert "Unknown action" in result["message"]


class TestBuildDaemon:
    def test_registers_reindex(self, temp_data_dir, vault):
        from kando.daemon import build_daemon
        from kando.settings import KandoSettings

        dm = build_daemon(KandoSettings(vault_path=vault, vk_url="http://vk.local"))
        assert dm.modules == ["reindex"]
        assert dm.sync.settings.vault_path == vault


class TestSchema:
    def test_tables_exist(self, temp_data_dir):
        _setup_db()
        conn = get_connection()
        try:
            tables = {
                row[0]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
            }
        finally:
            conn.close()
        assert {"daemon_state", "daemon_execution_log"} <= tables

    def test_daemon_state_single_row_constraint(self, temp_data_dir):
        _setup_db()
        conn = get_connection()
        try:
            conn.execute("INSERT INTO daemon_state (id, status) VALUES (1, 'stopped')")
            conn.commit()
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("INSERT INTO daemon_state (id, status) VALUES (2, 'stopped')")
        finally:
            conn.close()
