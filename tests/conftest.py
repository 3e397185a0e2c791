"""Shared fixtures: settings rooted in a temporary directory."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from mariadb_backup.backup.layout import BackupLayout
from mariadb_backup.config.models import BackupSettings


@pytest.fixture
def settings(tmp_path: Path) -> BackupSettings:
    s = BackupSettings(
        _env_file=None,
        mariadb_root_password="s3cret",
        backup_dir=tmp_path / "backups",
        log_dir=tmp_path / "logs",
        key_file=tmp_path / "backup.key",
        mariadb_user="root",
    )
    for directory in s.state_directories:
        directory.mkdir(parents=True, exist_ok=True)
    return s


@pytest.fixture
def layout(settings: BackupSettings) -> BackupLayout:
    return BackupLayout(settings)


@pytest.fixture
def key_file(settings: BackupSettings) -> Path:
    settings.key_file.write_text("test-passphrase\n")
    return settings.key_file


@pytest.fixture
def server() -> AsyncMock:
    """ServerClient double with a reachable, binlog-enabled server."""
    client = AsyncMock()
    client.list_databases.return_value = ["app_db"]
    client.table_count.return_value = 3
    client.binlog_enabled.return_value = True
    client.binlog_basename.return_value = "/var/lib/mysql/mysql-bin"
    client.master_status.return_value = None
    client.list_binary_logs.return_value = []
    client.test_connection.return_value = True
    return client


@pytest.fixture
def container() -> AsyncMock:
    """DockerContainer double where every tool exists."""
    runner = AsyncMock()
    runner.name = "mariadb"
    runner.which.return_value = True
    runner.find_tool.side_effect = lambda candidates: candidates[0]
    runner.exec.return_value = b""
    return runner
