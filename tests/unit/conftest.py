"""Shared fixtures for inbox watcher unit tests."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from watcher_fakes import IDLE_VIEWPORT, FakeClock, FakeProcess

from src.inbox_watcher.config import WatcherConfig


@pytest.fixture(autouse=True)
def no_pauses():
    """Keystroke pacing pauses return immediately."""
    with patch("asyncio.sleep", new=AsyncMock()) as mock_sleep:
        yield mock_sleep


@pytest.fixture(autouse=True)
def no_self_watch_processes():
    """Empty process table unless a test patches its own."""
    with patch("src.inbox_watcher.liveness.psutil.process_iter", return_value=[]) as mock_iter:
        yield mock_iter


@pytest.fixture
def tmux_server():
    """libtmux server double; set `.viewport` to change what capture-pane returns.

    tmux child processes are routed to `server.cmd(*args)`, so tests set
    `cmd.side_effect` to script results and read calls back with `injected()`.
    """
    server = MagicMock(tmux_bin="tmux", socket_name=None, socket_path=None, config_file=None)
    server.viewport = IDLE_VIEWPORT

    def cmd(*args):
        if args[0] == "capture-pane":
            return MagicMock(stdout=server.viewport.split("\n"), stderr=[])
        return MagicMock(stdout=[], stderr=[])

    async def exec_tmux(*command, **kwargs):
        return FakeProcess(server.cmd(*command[1:]))

    server.cmd.side_effect = cmd
    with patch("src.inbox_watcher.session.asyncio.create_subprocess_exec", new=exec_tmux):
        yield server


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> WatcherConfig:
    return WatcherConfig(settle_delay=0, notify_timeout=0.05)


@pytest.fixture
def inbox_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "queue" / "inbox"
    directory.mkdir(parents=True)
    return directory
