"""Mailbox watcher main loop.

Runs one processing pass at startup, then waits for the mailbox file to
change (watchdog/inotify) with a timeout fallback, and runs a pass after
every wake-up. The watch is placed on the mailbox's directory rather than
the file itself: producers replace the file by renaming a temp file over
it, which would silently invalidate a watch on the old inode.
"""

import asyncio
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

import libtmux
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import WatcherConfig, parse_variant
from .delivery import CommandDelivery
from .escalation import EscalationEngine
from .liveness import LivenessDetector
from .mailbox import MailboxStore
from .models import BackendVariant, EscalationPhase
from .session import TmuxSession

logger = logging.getLogger(__name__)

# Event types that can mean new content; opened/closed_no_write come from
# our own reads and must not wake the loop.
CHANGE_EVENTS = frozenset({"modified", "created", "moved", "deleted", "closed"})


class NotificationUnavailableError(RuntimeError):
    """File change notification could not be set up."""


class MailboxEventHandler(FileSystemEventHandler):
    """Forwards change events for one file to a callback."""

    def __init__(self, mailbox_path: Path, on_change: Callable[[], None]):
        super().__init__()
        self.mailbox_name = mailbox_path.name
        self._on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in CHANGE_EVENTS:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and Path(os.fsdecode(p)).name == self.mailbox_name for p in paths):
            self._on_change()


class InboxWatcher:
    """Watches one agent's mailbox and wakes the agent's pane."""

    def __init__(
        self,
        agent_id: str,
        pane_target: str,
        backend: BackendVariant | str = BackendVariant.CLAUDE,
        inbox_dir: str | Path = "queue/inbox",
        config: WatcherConfig | None = None,
        server: libtmux.Server | None = None,
        clock: Callable[[], float] = time.monotonic,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        """Wire up store, session, detectors and engine for one agent.

        Args:
            agent_id: Agent whose mailbox is watched
            pane_target: tmux target of the agent's pane
            backend: CLI running in the pane
            inbox_dir: Directory of mailbox files
            config: Watcher configuration (defaults if omitted)
            server: libtmux server (default server if omitted)
            clock: Seconds source for escalation ages
            observer_factory: Builds the watchdog observer
        """
        self.config = config or WatcherConfig()
        self.agent_id = agent_id
        self.variant = parse_variant(backend)
        profile = self.config.profile_for(self.variant)

        self.store = MailboxStore(inbox_dir, agent_id)
        self.session = TmuxSession(
            pane_target,
            agent_id,
            server=server,
            send_timeout=self.config.send_timeout,
            capture_timeout=self.config.capture_timeout,
        )
        self.liveness = LivenessDetector(
            self.session,
            profile,
            capture_lines=self.config.capture_lines,
            scan_timeout=self.config.process_scan_timeout,
        )
        self.delivery = CommandDelivery(self.session, profile)
        self.escalation = EscalationEngine(self.delivery, self.liveness, self.config, clock=clock)

        self._observer_factory = observer_factory
        self._observer = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._changed: asyncio.Event | None = None
        self._running = False

    async def process_once(self) -> EscalationPhase:
        """One full pass: deliver specials, then escalate for normal messages."""
        info = self.store.extract_unread()

        for kind, content in info.specials:
            delivered = await self.delivery.deliver(kind, content)
            if not delivered:
                logger.warning(
                    f"{kind.value} for {self.agent_id} was not fully delivered "
                    "(already marked read, not retried)",
                    extra={"agent_id": self.agent_id, "kind": kind.value},
                )

        return await self.escalation.evaluate(info.normal_count)

    async def _safe_process(self) -> None:
        try:
            await self.process_once()
        except Exception as e:
            logger.error(f"Processing pass failed for {self.agent_id}: {e}", exc_info=True)

    def _notify(self) -> None:
        # Called from the observer thread
        if self.store.is_own_write():
            return
        if self._loop is not None and self._changed is not None:
            self._loop.call_soon_threadsafe(self._changed.set)

    def _start_observer(self) -> None:
        handler = MailboxEventHandler(self.store.path, self._notify)
        observer = self._observer_factory()
        try:
            observer.schedule(handler, str(self.store.path.parent), recursive=False)
            observer.start()
        except OSError as e:
            raise NotificationUnavailableError(
                f"Cannot watch {self.store.path.parent} for changes: {e}"
            ) from e
        self._observer = observer
        logger.debug(f"Watching {self.store.path.parent} for changes to {self.store.path.name}")

    def _stop_observer(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None

    async def wait_for_change(self) -> bool:
        """Block until the mailbox changes or notify_timeout elapses.

        Returns:
            True if woken by a change notification, False on timeout.
        """
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=self.config.notify_timeout)
            woke = True
        except TimeoutError:
            woke = False
        self._changed.clear()
        return woke

    async def run(self) -> None:
        """Run until stop() is called or the task is cancelled.

        Raises:
            NotificationUnavailableError: If the change watch cannot be set up
        """
        self._loop = asyncio.get_running_loop()
        self._changed = asyncio.Event()

        self.store.ensure_exists()
        self._start_observer()
        self._running = True
        logger.info(
            f"inbox watcher started: agent {self.agent_id}, pane {self.session.target}, "
            f"cli {self.variant.value}",
            extra={"agent_id": self.agent_id, "pane": self.session.target},
        )

        try:
            # Messages that arrived before we started
            await self._safe_process()

            while self._running:
                if not self._observer.is_alive():
                    logger.warning(f"Change watch for {self.agent_id} stopped, re-establishing")
                    self._stop_observer()
                    self._start_observer()

                changed = await self.wait_for_change()
                if not self._running:
                    break
                if not changed:
                    logger.debug(f"No change notification for {self.agent_id}, rechecking")

                await asyncio.sleep(self.config.settle_delay)
                await self._safe_process()
        finally:
            self._running = False
            self._stop_observer()
            logger.info(f"inbox watcher stopped: agent {self.agent_id}")

    def stop(self) -> None:
        """Ask the loop to exit after the current pass."""
        self._running = False
        if self._changed is not None:
            self._changed.set()
