"""Heuristics for whether a nudge would help.

Two independent checks gate every wake signal:

- self-watch: some process is already watching this agent's mailbox file
  (the agent ran its own `inotifywait`), so it will wake by itself;
- busy: the pane shows an in-progress marker, and a confirm keystroke sent
  now would be swallowed while the typed text sits in the input box.

Both read an opaque external surface and can be wrong. When in doubt they
lean towards skipping the nudge.
"""

import asyncio
import logging
import os
import re

import psutil

from .config import BackendProfile
from .session import TmuxSession

logger = logging.getLogger(__name__)


class ActivitySignature:
    """Compiled set of viewport markers meaning "agent is working"."""

    def __init__(self, patterns: list[str]):
        self.patterns = list(patterns)
        self._regex = (
            re.compile("|".join(f"(?:{p})" for p in self.patterns), re.IGNORECASE)
            if self.patterns
            else None
        )

    @classmethod
    def for_profile(cls, profile: BackendProfile) -> "ActivitySignature":
        return cls(profile.busy_patterns)

    def matches(self, viewport: str) -> bool:
        return bool(self._regex and self._regex.search(viewport))


class LivenessDetector:
    """Answers is_busy / has_self_watch for one agent."""

    def __init__(
        self,
        session: TmuxSession,
        profile: BackendProfile,
        capture_lines: int = 15,
        scan_timeout: float = 2.0,
    ):
        self.session = session
        self.agent_id = session.agent_id
        self.signature = ActivitySignature.for_profile(profile)
        self.capture_lines = capture_lines
        self.scan_timeout = scan_timeout
        self._self_watch_re = re.compile(
            profile.self_watch_pattern.replace("{agent_id}", re.escape(self.agent_id))
        )

    async def is_busy(self) -> bool:
        """True if recent pane output shows an activity marker.

        A failed capture counts as busy.
        """
        viewport = await self.session.capture(self.capture_lines)
        if viewport is None:
            logger.debug(f"Viewport unavailable for {self.agent_id}, assuming busy")
            return True
        return self.signature.matches(viewport)

    async def has_self_watch(self) -> bool:
        """True if another process is watching this agent's mailbox."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._scan_processes), timeout=self.scan_timeout
            )
        except TimeoutError:
            logger.warning(
                f"Process scan timed out after {self.scan_timeout}s for {self.agent_id}",
                extra={"agent_id": self.agent_id},
            )
            return False
        except psutil.Error as e:
            logger.warning(
                f"Process scan failed for {self.agent_id}: {e}",
                extra={"agent_id": self.agent_id, "error": str(e)},
            )
            return False

    def _scan_processes(self) -> bool:
        own_pid = os.getpid()
        for proc in psutil.process_iter(["pid", "cmdline"]):
            info = proc.info
            if info.get("pid") == own_pid:
                continue
            cmdline = info.get("cmdline")
            if not cmdline:
                continue
            if self._self_watch_re.search(" ".join(cmdline)):
                logger.debug(
                    f"Self-watch process {info.get('pid')} found for {self.agent_id}",
                    extra={"agent_id": self.agent_id, "pid": info.get("pid")},
                )
                return True
        return False
