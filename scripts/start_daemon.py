#!/usr/bin/env python3
"""Start the KanDo status-sync daemon.

Usage:
    Foreground:  python scripts/start_daemon.py
    Background:  python scripts/start_daemon.py --daemon
    Stop:        python scripts/start_daemon.py --stop
    Status:      python scripts/start_daemon.py --status

Foreground mode runs in the current terminal (Ctrl+C to stop).
Daemon mode detaches the process and writes a PID file + log to data/.
"""

import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path

# Ensure the project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from kando import config  # noqa: E402
from kando.daemon import _is_pid_alive, build_daemon, daemon_control, get_daemon_status  # noqa: E402


def _acquire_lock(lock_path: Path):
    """Acquire an exclusive file lock to prevent dual-daemon startup.

    Returns the open file handle (must stay open for lock to persist)
    or None if another daemon holds the lock.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fh = open(lock_path, "w")
    try:
        if sys.platform == "win32":
            import msvcrt
            msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fh.close()
        return None
    fh.write(str(os.getpid()))
    fh.flush()
    return fh


def run_foreground() -> None:
    """Run the daemon in the foreground."""
    config.ensure_data_dirs()
    lock_handle = _acquire_lock(config.DATA_DIR / "daemon.lock")
    if lock_handle is None:
        print("Another daemon instance holds the lock. Exiting.")
        sys.exit(1)

    handlers = [
        logging.FileHandler(str(config.DAEMON_LOG_FILE)),
        logging.StreamHandler(sys.stderr),
    ]
    logging.basicConfig(
        level=logging.DEBUG if config.DEBUG else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )
    try:
        dm = build_daemon()
        dm.start()
    except Exception:
        logging.exception("Daemon crashed with unhandled exception")
    finally:
        lock_handle.close()


def run_daemon() -> None:
    """Spawn the daemon as a detached background process."""
    config.ensure_data_dirs()
    pid_file = config.DAEMON_PID_FILE

    if pid_file.exists():
        try:
            old_pid = int(pid_file.read_text().strip())
        except ValueError:
            old_pid = None
        if old_pid and _is_pid_alive(old_pid):
            print(f"Daemon already running (pid={old_pid}). Stop it first.")
            sys.exit(1)
        pid_file.unlink(missing_ok=True)

    popen_kwargs = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
    }
    if sys.platform == "win32":
        # DETACHED_PROCESS | CREATE_NEW_PROCESS_GROUP
        popen_kwargs["creationflags"] = 0x00000008 | 0x00000200
    else:
        popen_kwargs["start_new_session"] = True
    proc = subprocess.Popen(
        [sys.executable, str(Path(__file__).resolve())],
        **popen_kwargs,
    )
    print(f"KanDo daemon started in background (pid={proc.pid})")
    print(f"  Log: {config.DAEMON_LOG_FILE}")
    print(f"  PID: {pid_file}")
    print(f"  Stop: python {Path(__file__).name} --stop")


def main() -> None:
    parser = argparse.ArgumentParser(description="Start/stop the KanDo daemon")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--daemon", "-d",
        action="store_true",
        help="Run as a background daemon",
    )
    group.add_argument(
        "--stop", "-s",
        action="store_true",
        help="Stop the running daemon",
    )
    group.add_argument(
        "--status",
        action="store_true",
        help="Print the daemon status as JSON",
    )
    args = parser.parse_args()

    if args.stop:
        print(daemon_control("stop")["message"])
    elif args.status:
        print(json.dumps(get_daemon_status(), indent=2))
    elif args.daemon:
        run_daemon()
    else:
        run_foreground()


if __name__ == "__main__":
    main()
