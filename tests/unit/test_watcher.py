"""Unit tests for watcher.py - processing passes, change handler and run loop."""

import asyncio
import os
from unittest.mock import MagicMock, patch

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)
from watcher_fakes import BUSY_VIEWPORT, injected, read_mailbox, real_sleep, write_mailbox

from src.inbox_watcher.config import WatcherConfig
from src.inbox_watcher.mailbox import post_message
from src.inbox_watcher.models import EscalationPhase
from src.inbox_watcher.watcher import (
    InboxWatcher,
    MailboxEventHandler,
    NotificationUnavailableError,
)

NUDGE = [["-l", "inbox1"], ["Enter"]]
CLAUDE_RESET = [["C-c"], ["-l", "/clear"], ["Enter"]]


def fake_observer(alive: bool = True) -> MagicMock:
    observer = MagicMock()
    observer.is_alive.return_value = alive
    return observer


async def wait_until(condition, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await real_sleep(0.01)


@pytest.fixture
def make_watcher(inbox_dir, tmux_server, clock, config):
    def make(**kwargs) -> InboxWatcher:
        kwargs.setdefault("observer_factory", fake_observer)
        return InboxWatcher(
            "karo",
            "multiagent:0.0",
            inbox_dir=inbox_dir,
            config=kwargs.pop("config", config),
            server=tmux_server,
            clock=clock,
            **kwargs,
        )

    return make


class TestMailboxEventHandler:
    @pytest.fixture
    def handler(self, inbox_dir):
        callback = MagicMock()
        return MailboxEventHandler(inbox_dir / "karo.yaml", callback), callback

    @pytest.mark.parametrize("event_cls", [FileModifiedEvent, FileCreatedEvent, FileDeletedEvent])
    def test_change_to_mailbox_notifies(self, handler, inbox_dir, event_cls):
        handler, callback = handler

        handler.on_any_event(event_cls(str(inbox_dir / "karo.yaml")))

        callback.assert_called_once()

    def test_rename_over_mailbox_notifies(self, handler, inbox_dir):
        handler, callback = handler

        handler.on_any_event(
            FileMovedEvent(str(inbox_dir / ".karo.yaml.x1.tmp"), str(inbox_dir / "karo.yaml"))
        )

        callback.assert_called_once()

    def test_other_agents_mailbox_ignored(self, handler, inbox_dir):
        handler, callback = handler

        handler.on_any_event(FileModifiedEvent(str(inbox_dir / "ashigaru1.yaml")))
        handler.on_any_event(FileModifiedEvent(str(inbox_dir / ".karo.yaml.x1.tmp")))

        callback.assert_not_called()

    def test_read_access_events_ignored(self, handler, inbox_dir):
        handler, callback = handler
        for event_type in ("opened", "closed_no_write"):
            event = MagicMock(
                event_type=event_type,
                is_directory=False,
                src_path=str(inbox_dir / "karo.yaml"),
                dest_path="",
            )
            handler.on_any_event(event)

        callback.assert_not_called()

    def test_directory_events_ignored(self, handler, inbox_dir):
        handler, callback = handler

        handler.on_any_event(DirModifiedEvent(str(inbox_dir)))

        callback.assert_not_called()


class TestProcessOnce:
    @pytest.mark.asyncio
    async def test_single_unread_message_gets_one_nudge(self, make_watcher, inbox_dir, tmux_server):
        messages = [{"kind": "normal", "content": "task done", "read": False}]
        write_mailbox(inbox_dir / "karo.yaml", messages)
        watcher = make_watcher()

        assert await watcher.process_once() is EscalationPhase.PHASE1

        assert injected(tmux_server) == NUDGE
        assert read_mailbox(inbox_dir / "karo.yaml")["messages"] == messages

    @pytest.mark.asyncio
    async def test_specials_delivered_before_escalation(self, make_watcher, inbox_dir, tmux_server):
        write_mailbox(
            inbox_dir / "karo.yaml",
            [
                {"kind": "normal", "content": "report", "read": False},
                {"type": "clear_command", "content": "", "read": False},
            ],
        )
        watcher = make_watcher()

        await watcher.process_once()

        assert injected(tmux_server) == CLAUDE_RESET + NUDGE

    @pytest.mark.asyncio
    async def test_specials_in_mailbox_order(self, make_watcher, inbox_dir, tmux_server):
        write_mailbox(
            inbox_dir / "karo.yaml",
            [
                {"kind": "model_switch", "content": "/model opus", "read": False},
                {"kind": "clear_command", "content": "", "read": False},
            ],
        )
        watcher = make_watcher()

        await watcher.process_once()

        texts = [keys[1] for keys in injected(tmux_server) if keys[0] == "-l"]
        assert texts == ["/model opus", "/clear"]

    @pytest.mark.asyncio
    async def test_special_not_redelivered_after_failed_delivery(
        self, make_watcher, inbox_dir, tmux_server, caplog
    ):
        write_mailbox(inbox_dir / "karo.yaml", [{"kind": "clear_command", "read": False}])
        tmux_server.cmd.side_effect = lambda *args: MagicMock(stdout=[], stderr=["no pane"])
        watcher = make_watcher()

        await watcher.process_once()

        assert read_mailbox(inbox_dir / "karo.yaml")["messages"][0]["read"] is True
        assert "not fully delivered" in caplog.text

        tmux_server.cmd.reset_mock()
        await watcher.process_once()
        assert ["-l", "/clear"] not in injected(tmux_server)

    @pytest.mark.asyncio
    async def test_repeated_pass_does_not_duplicate_commands(
        self, make_watcher, inbox_dir, tmux_server
    ):
        write_mailbox(
            inbox_dir / "karo.yaml", [{"kind": "model_switch", "content": "/model haiku"}]
        )
        watcher = make_watcher()

        await watcher.process_once()
        after_first = (inbox_dir / "karo.yaml").read_text()
        await watcher.process_once()

        assert injected(tmux_server).count(["-l", "/model haiku"]) == 1
        assert (inbox_dir / "karo.yaml").read_text() == after_first

    @pytest.mark.asyncio
    async def test_malformed_mailbox_is_idle(self, make_watcher, inbox_dir):
        (inbox_dir / "karo.yaml").write_text("messages: [ {content: broken")
        watcher = make_watcher()

        assert await watcher.process_once() is EscalationPhase.IDLE

    @pytest.mark.asyncio
    async def test_busy_agent_receives_nothing(self, make_watcher, inbox_dir, tmux_server):
        write_mailbox(inbox_dir / "karo.yaml", [{"kind": "normal", "content": "x", "read": False}])
        tmux_server.viewport = BUSY_VIEWPORT
        watcher = make_watcher()

        await watcher.process_once()

        assert injected(tmux_server) == []

    @pytest.mark.asyncio
    async def test_safe_process_logs_unexpected_errors(self, make_watcher, caplog):
        watcher = make_watcher()

        with patch.object(watcher, "process_once", side_effect=RuntimeError("boom")):
            await watcher._safe_process()

        assert "Processing pass failed" in caplog.text

    def test_unknown_backend_rejected(self, make_watcher):
        with pytest.raises(ValueError, match="Unknown backend"):
            make_watcher(backend="gemini")


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_change_notification_triggers_pass(self, make_watcher, inbox_dir, tmux_server):
        observer = fake_observer()
        watcher = make_watcher(
            config=WatcherConfig(settle_delay=0, notify_timeout=30),
            observer_factory=lambda: observer,
        )
        task = asyncio.create_task(watcher.run())

        await wait_until(lambda: ["C-u"] in injected(tmux_server))
        handler, watched_dir = observer.schedule.call_args.args
        assert watched_dir == str(inbox_dir)
        assert (inbox_dir / "karo.yaml").exists()

        post_message(inbox_dir, "karo", "task done", sender="ashigaru1")
        handler.on_any_event(FileModifiedEvent(str(inbox_dir / "karo.yaml")))
        await wait_until(lambda: ["-l", "inbox1"] in injected(tmux_server))

        watcher.stop()
        await asyncio.wait_for(task, timeout=2)
        observer.stop.assert_called_once()
        observer.join.assert_called_once()

    @pytest.mark.asyncio
    async def test_timeout_fallback_rechecks(self, make_watcher, inbox_dir, tmux_server):
        watcher = make_watcher()
        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: ["C-u"] in injected(tmux_server))

        # No change notification: the 0.05s notify_timeout recheck finds it
        post_message(inbox_dir, "karo", "task done")
        await wait_until(lambda: ["-l", "inbox1"] in injected(tmux_server))

        watcher.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_dead_observer_re_established(self, make_watcher, tmux_server):
        observers = [fake_observer(alive=False), fake_observer()]
        factory = MagicMock(side_effect=observers)
        watcher = make_watcher(observer_factory=factory)

        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: factory.call_count == 2)
        watcher.stop()
        await asyncio.wait_for(task, timeout=2)

        observers[0].stop.assert_called_once()
        observers[1].start.assert_called_once()
        observers[1].stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_observer_failure_raises(self, make_watcher):
        observer = fake_observer()
        observer.schedule.side_effect = OSError("inotify watch limit reached")
        watcher = make_watcher(observer_factory=lambda: observer)

        with pytest.raises(NotificationUnavailableError, match="inotify watch limit"):
            await watcher.run()

    @pytest.mark.asyncio
    async def test_cancelled_run_stops_observer(self, make_watcher, tmux_server):
        observer = fake_observer()
        watcher = make_watcher(observer_factory=lambda: observer)
        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: observer.start.called)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        observer.stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_wait_for_change(self, make_watcher):
        watcher = make_watcher()
        watcher._changed = asyncio.Event()

        watcher._changed.set()
        assert await watcher.wait_for_change() is True
        assert not watcher._changed.is_set()
        assert await watcher.wait_for_change() is False

    @pytest.mark.asyncio
    async def test_real_file_notification(self, inbox_dir, tmux_server, clock):
        """A real watchdog observer wakes the loop on an atomic rename."""
        watcher = InboxWatcher(
            "karo",
            "multiagent:0.0",
            inbox_dir=inbox_dir,
            config=WatcherConfig(settle_delay=0, notify_timeout=30),
            server=tmux_server,
            clock=clock,
        )
        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: ["C-u"] in injected(tmux_server))

        post_message(inbox_dir, "karo", "task done")
        await wait_until(lambda: ["-l", "inbox1"] in injected(tmux_server), timeout=5)

        watcher.stop()
        await asyncio.wait_for(task, timeout=5)

    @pytest.mark.asyncio
    async def test_own_save_does_not_signal_change(self, make_watcher, inbox_dir):
        write_mailbox(
            inbox_dir / "karo.yaml",
            [{"kind": "model_switch", "content": "/model opus", "read": False}],
        )
        watcher = make_watcher()
        await watcher.process_once()
        watcher._loop = asyncio.get_running_loop()
        watcher._changed = asyncio.Event()

        watcher._notify()
        await real_sleep(0)
        assert not watcher._changed.is_set()

        post_message(inbox_dir, "karo", "task done")
        watcher._notify()
        await real_sleep(0)
        assert watcher._changed.is_set()

    @pytest.mark.asyncio
    async def test_marking_specials_read_nudges_once(self, inbox_dir, tmux_server, clock):
        """Saving the mailbox after a special does not start a second pass."""
        write_mailbox(inbox_dir / "karo.yaml", [])
        watcher = InboxWatcher(
            "karo",
            "multiagent:0.0",
            inbox_dir=inbox_dir,
            config=WatcherConfig(settle_delay=0, notify_timeout=30),
            server=tmux_server,
            clock=clock,
        )
        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: ["C-u"] in injected(tmux_server))

        staged = inbox_dir / ".karo.yaml.staged"
        write_mailbox(
            staged,
            [
                {"kind": "normal", "content": "task done", "read": False},
                {"kind": "model_switch", "content": "/model opus", "read": False},
            ],
        )
        os.replace(staged, inbox_dir / "karo.yaml")
        await wait_until(lambda: ["-l", "inbox1"] in injected(tmux_server), timeout=5)
        await real_sleep(1.0)

        assert injected(tmux_server).count(["-l", "inbox1"]) == 1
        assert injected(tmux_server).count(["-l", "/model opus"]) == 1

        watcher.stop()
        await asyncio.wait_for(task, timeout=5)
