"""Time-boxed access to an agent's tmux pane.

The pane is treated as an opaque target: its viewport can be captured and
keystrokes can be injected. Every tmux call is a child process of the
watcher with a deadline; a call that overruns it is killed and reaped, so a
hung tmux server can neither stall the loop nor leave processes behind.
"""

import asyncio
import logging

import libtmux

from .logging_manager import audit_event

logger = logging.getLogger(__name__)


class TmuxSession:
    """Keystroke injection and viewport capture for one tmux pane."""

    def __init__(
        self,
        target: str,
        agent_id: str,
        server: libtmux.Server | None = None,
        send_timeout: float = 5.0,
        capture_timeout: float = 2.0,
    ):
        """Initialize the session handle.

        Args:
            target: tmux target, e.g. "multiagent:0.1"
            agent_id: Agent running in the pane (for logs and audit)
            server: libtmux server; a default server is used when omitted
            send_timeout: Ceiling in seconds for each keystroke injection
            capture_timeout: Ceiling in seconds for a viewport capture
        """
        self.target = target
        self.agent_id = agent_id
        self.server = server if server is not None else libtmux.Server()
        self.send_timeout = send_timeout
        self.capture_timeout = capture_timeout

    def _command_line(self, *args: str) -> list[str]:
        """tmux argv for `args`, addressed to the same server libtmux uses."""
        command = [getattr(self.server, "tmux_bin", None) or "tmux"]
        if getattr(self.server, "socket_name", None):
            command += ["-L", str(self.server.socket_name)]
        if getattr(self.server, "socket_path", None):
            command += ["-S", str(self.server.socket_path)]
        if getattr(self.server, "config_file", None):
            command += ["-f", str(self.server.config_file)]
        command += args
        return command

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    async def _tmux(self, timeout: float, *args: str) -> list[str] | None:
        """Run a tmux command against the server.

        Returns:
            stdout lines, or None if the command failed or timed out.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command_line(*args),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning(
                f"tmux {args[0]} failed for {self.agent_id} ({self.target}): {e}",
                extra={"agent_id": self.agent_id, "pane": self.target, "error": str(e)},
            )
            return None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            await self._kill(proc)
            logger.warning(
                f"tmux {args[0]} timed out after {timeout}s for {self.agent_id} ({self.target})",
                extra={"agent_id": self.agent_id, "pane": self.target, "tmux_command": args[0]},
            )
            return None
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        error = stderr.decode(errors="replace").strip()
        if proc.returncode != 0 or error:
            logger.warning(
                f"tmux {args[0]} error for {self.agent_id} ({self.target}): "
                f"{error or f'exit status {proc.returncode}'}",
                extra={"agent_id": self.agent_id, "pane": self.target},
            )
            return None
        return stdout.decode(errors="replace").splitlines()

    async def send_keys(self, *keys: str, timeout: float | None = None) -> bool:
        """Send tmux key names (Enter, C-c, Escape, ...) to the pane."""
        ok = (
            await self._tmux(
                timeout if timeout is not None else self.send_timeout,
                "send-keys",
                "-t",
                self.target,
                *keys,
            )
            is not None
        )
        audit_event("send_keys", self.agent_id, pane=self.target, keys=list(keys), success=ok)
        return ok

    async def send_text(self, text: str) -> bool:
        """Type `text` literally into the pane, without pressing Enter."""
        ok = (
            await self._tmux(self.send_timeout, "send-keys", "-t", self.target, "-l", text)
            is not None
        )
        audit_event("send_text", self.agent_id, pane=self.target, text=text, success=ok)
        return ok

    async def capture(self, lines: int = 15) -> str | None:
        """Return the last `lines` non-blank-trailing lines of the viewport.

        Returns:
            Captured text, or None if the capture failed or timed out.
        """
        output = await self._tmux(self.capture_timeout, "capture-pane", "-p", "-t", self.target)
        if output is None:
            return None

        while output and not output[-1].strip():
            output = output[:-1]
        return "\n".join(output[-lines:])
