import subprocess
from datetime import timedelta

import pytest

from tests.fakes import NOW, FakeServer, FakeStore, make_console
from worldkeep.config import Settings
from worldkeep.coordinator import SnapshotCoordinator


@pytest.fixture
def settings(tmp_path):
    """Fast handshake timings, periodic backups off, no audit file."""
    return Settings(
        workspace_dir=tmp_path,
        save_timeout=timedelta(seconds=1),
        hold_grace=timedelta(0),
        poll_interval=timedelta(milliseconds=10),
        backup_interval=timedelta(0),
        start_timeout=timedelta(seconds=5),
        audit_log=False,
    )


@pytest.fixture
def console():
    return make_console()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def server():
    return FakeServer(running=False)


@pytest.fixture
def coordinator(settings, store, server, console):
    coord = SnapshotCoordinator(settings, store, server, console, clock=lambda: NOW)
    yield coord
    coord.close()


@pytest.fixture
def git_workspace(tmp_path):
    """An initialized git repository with a committer identity."""
    ws = tmp_path / "world"
    ws.mkdir()
    for args in (
        ["init", "-q"],
        ["config", "user.name", "worldkeep tests"],
        ["config", "user.email", "tests@worldkeep.invalid"],
        ["config", "commit.gpgsign", "false"],
    ):
        subprocess.run(["git", *args], cwd=ws, check=True, capture_output=True)
    return ws
