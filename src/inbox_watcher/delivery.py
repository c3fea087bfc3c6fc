"""Keystroke sequences injected into an agent's pane.

Control commands are looked up in a table keyed by backend variant, so a
new CLI only needs a new row. Text and the confirming Enter always go out
as two separate tmux calls: several TUIs drop a combined text+Enter burst.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from .config import BackendProfile
from .logging_manager import audit_event
from .models import BackendVariant, MessageKind
from .session import TmuxSession

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    KEYS = "keys"
    TEXT = "text"
    LAUNCH = "launch"
    COMMAND = "command"
    PAUSE = "pause"


@dataclass(frozen=True)
class Step:
    """One injection step.

    Attributes:
        kind: What the step does.
        keys: Key names for KEYS steps.
        text: Literal text for TEXT steps.
        seconds: Duration for PAUSE steps.
    """

    kind: StepKind
    keys: tuple[str, ...] = ()
    text: str = ""
    seconds: float = 0.0


def keys(*names: str) -> Step:
    return Step(StepKind.KEYS, keys=names)


def text(value: str) -> Step:
    return Step(StepKind.TEXT, text=value)


def pause(seconds: float) -> Step:
    return Step(StepKind.PAUSE, seconds=seconds)


LAUNCH = Step(StepKind.LAUNCH)
COMMAND = Step(StepKind.COMMAND)

# Clear pending input, type the command, confirm
COMMAND_STEPS: tuple[Step, ...] = (
    keys("C-c"),
    pause(0.5),
    COMMAND,
    pause(0.3),
    keys("Enter"),
    pause(1.0),
)

RESET_STEPS: dict[BackendVariant, tuple[Step, ...]] = {
    BackendVariant.CLAUDE: (
        keys("C-c"),
        pause(0.5),
        text("/clear"),
        pause(0.3),
        keys("Enter"),
        pause(3.0),
    ),
    # Codex exits to the shell after /clear; start it again in place
    BackendVariant.CODEX: (
        text("/clear"),
        pause(0.3),
        keys("Enter"),
        pause(3.0),
        LAUNCH,
        pause(0.3),
        keys("Enter"),
        pause(5.0),
    ),
    # Copilot has no /clear; interrupt and relaunch
    BackendVariant.COPILOT: (
        keys("C-c"),
        pause(2.0),
        LAUNCH,
        pause(0.3),
        keys("Enter"),
        pause(3.0),
    ),
}


class CommandDelivery:
    """Delivers control commands and wake signals to one pane."""

    def __init__(self, session: TmuxSession, profile: BackendProfile):
        self.session = session
        self.profile = profile
        self.agent_id = session.agent_id

    async def _run(self, steps: tuple[Step, ...], command: str = "") -> bool:
        """Execute steps in order. Failed steps are logged and skipped."""
        ok = True
        for step in steps:
            if step.kind is StepKind.PAUSE:
                await asyncio.sleep(step.seconds)
            elif step.kind is StepKind.KEYS:
                ok = await self.session.send_keys(*step.keys) and ok
            elif step.kind is StepKind.TEXT:
                ok = await self.session.send_text(step.text) and ok
            elif step.kind is StepKind.COMMAND:
                ok = await self.session.send_text(command) and ok
            elif step.kind is StepKind.LAUNCH:
                if not self.profile.launch_command:
                    logger.warning(
                        f"No launch command configured for {self.profile.variant.value}, "
                        f"cannot restart {self.agent_id}"
                    )
                    ok = False
                    continue
                ok = await self.session.send_text(self.profile.launch_command) and ok
        return ok

    async def deliver(self, kind: MessageKind, content: str) -> bool:
        """Deliver a special message.

        Args:
            kind: RESET or MODEL_SWITCH
            content: For RESET, an optional instruction typed after the
                reset; for MODEL_SWITCH, the command line (e.g. "/model opus")

        Returns:
            True if every injection succeeded, False if any failed or the
            command was dropped.
        """
        variant = self.profile.variant
        content = content.strip()

        if kind is MessageKind.RESET:
            logger.info(
                f"Sending reset to {self.agent_id} ({variant.value})",
                extra={"agent_id": self.agent_id, "backend": variant.value},
            )
            audit_event("reset", self.agent_id, backend=variant.value, pane=self.session.target)
            ok = await self._run(RESET_STEPS[variant])
            if content:
                ok = await self.send_command(content) and ok
            return ok

        if kind is MessageKind.MODEL_SWITCH:
            if not self.profile.supports_model_switch:
                logger.info(
                    f"Skipping {content!r} for {self.agent_id} "
                    f"(model switch not supported on {variant.value})",
                    extra={"agent_id": self.agent_id, "backend": variant.value},
                )
                return False
            if not content:
                logger.warning(f"Empty model switch message for {self.agent_id}, ignoring")
                return False
            return await self.send_command(content)

        raise ValueError(f"Not a special message kind: {kind}")

    async def send_command(self, command: str) -> bool:
        """Clear pending input, then type and confirm `command`."""
        logger.info(
            f"Sending CLI command to {self.agent_id} ({self.profile.variant.value}): {command}",
            extra={"agent_id": self.agent_id, "command": command},
        )
        audit_event("command", self.agent_id, command=command, pane=self.session.target)
        return await self._run(COMMAND_STEPS, command=command)

    async def send_nudge(self, unread_count: int) -> bool:
        """Type `inbox<N>` and confirm it."""
        if not await self.session.send_text(f"inbox{unread_count}"):
            logger.warning(f"Nudge failed or timed out for {self.agent_id}")
            return False
        await asyncio.sleep(0.3)
        ok = await self.session.send_keys("Enter")
        if ok:
            logger.info(
                f"Wake-up sent to {self.agent_id} ({unread_count} unread)",
                extra={"agent_id": self.agent_id, "unread": unread_count},
            )
        return ok

    async def send_escape_nudge(self, unread_count: int) -> bool:
        """Leave any mode with Escape x2, drop stale input with C-c, then nudge."""
        await self.session.send_keys("Escape", "Escape")
        await asyncio.sleep(0.5)
        await self.session.send_keys("C-c")
        await asyncio.sleep(0.5)
        return await self.send_nudge(unread_count)

    async def clear_input(self) -> bool:
        """Erase whatever is typed in the input line (C-u)."""
        return await self.session.send_keys("C-u", timeout=self.session.capture_timeout)
