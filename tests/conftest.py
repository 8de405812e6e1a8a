"""Shared test fixtures."""

import pytest


@pytest.fixture(autouse=True)
def temp_data_dir(monkeypatch, tmp_path):
    """Override data directories to use a temp dir for each test."""
    import kando.config as config

    data_dir = tmp_path / "data"
    data_dir.mkdir()

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "DB_PATH", data_dir / "kando.db")
    monkeypatch.setattr(config, "SETTINGS_PATH", data_dir / "settings.yaml")
    monkeypatch.setattr(config, "VAULT_PATH", tmp_path / "vault")

    # Daemon paths (isolated to tmp_path)
    monkeypatch.setattr(config, "DAEMON_PID_FILE", data_dir / "daemon.pid")
    monkeypatch.setattr(config, "DAEMON_LOG_FILE", data_dir / "daemon.log")

    # Keep a developer's .env and KANDO_* variables out of the tests
    monkeypatch.setattr(config, "_env_initialized", True)

    return data_dir


@pytest.fixture
def vault(tmp_path):
    """An empty vault with a Cards folder."""
    root = tmp_path / "vault"
    (root / "Cards").mkdir(parents=True)
    return root


@pytest.fixture
def write_card(vault):
    """Write a markdown card (optional YAML header) into the vault."""
    import yaml

    def _write(rel_path, header=None, body="Body text\n"):
        path = vault / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if header is None:
            path.write_text(body, encoding="utf-8")
        else:
            dumped = yaml.safe_dump(header, sort_keys=False)
            path.write_text(f"---\n{dumped}---\n{body}", encoding="utf-8")
        return path

    return _write
