"""Timed escalation for unread normal messages.

The phase is recomputed on every pass from how long the current run of
unread messages has been waiting:

    age < phase2_after                  PHASE1  nudge
    phase2_after <= age < phase3_after  PHASE2  Escape x2 + C-c + nudge
    age >= phase3_after                 PHASE3  forced reset, at most once
                                                per reset_cooldown; PHASE2
                                                while the cooldown runs

Only an empty unread count clears the timer (IDLE). A forced reset also
clears it, so the next pass starts again from PHASE1.
"""

import logging
import time
from collections.abc import Callable

from .config import WatcherConfig
from .delivery import CommandDelivery
from .liveness import LivenessDetector
from .logging_manager import audit_event
from .models import EscalationPhase, MessageKind, WatcherState

logger = logging.getLogger(__name__)


class EscalationEngine:
    """Decides and performs the wake action for one pass."""

    def __init__(
        self,
        delivery: CommandDelivery,
        liveness: LivenessDetector,
        config: WatcherConfig,
        clock: Callable[[], float] = time.monotonic,
        state: WatcherState | None = None,
    ):
        """Initialize the engine.

        Args:
            delivery: Injects wake signals and the reset command
            liveness: Busy / self-watch checks
            config: Thresholds and cooldown
            clock: Seconds source; tests pass a fake
            state: Existing state to continue from
        """
        self.delivery = delivery
        self.liveness = liveness
        self.config = config
        self.clock = clock
        self.state = state or WatcherState()
        self.agent_id = delivery.agent_id

    def phase_for_age(self, age: float) -> EscalationPhase:
        if age < self.config.phase2_after:
            return EscalationPhase.PHASE1
        if age < self.config.phase3_after:
            return EscalationPhase.PHASE2
        return EscalationPhase.PHASE3

    def reset_throttled(self, now: float) -> bool:
        last = self.state.last_reset_at
        return last is not None and now - last < self.config.reset_cooldown

    async def evaluate(self, normal_count: int) -> EscalationPhase:
        """Run the escalation step for this pass.

        Args:
            normal_count: Unread normal messages currently in the mailbox

        Returns:
            The phase this pass acted in (PHASE2 when a reset is throttled).
        """
        if normal_count <= 0:
            return await self._idle()

        now = self.clock()
        if self.state.first_unread_at is None:
            self.state.first_unread_at = now
        age = now - self.state.first_unread_at
        phase = self.phase_for_age(age)

        if phase is EscalationPhase.PHASE3:
            if not self.reset_throttled(now):
                return await self._force_reset(normal_count, age, now)
            logger.info(
                f"{normal_count} unread for {self.agent_id} ({age:.0f}s), "
                "reset cooldown active, using Escape+nudge"
            )
            phase = EscalationPhase.PHASE2
        else:
            logger.info(
                f"{normal_count} unread for {self.agent_id} ({age:.0f}s, {phase.value})",
                extra={"agent_id": self.agent_id, "unread": normal_count, "phase": phase.value},
            )

        if await self.liveness.has_self_watch():
            logger.info(f"Agent {self.agent_id} has active self-watch, no nudge needed")
            return phase
        if await self.liveness.is_busy():
            logger.info(f"Agent {self.agent_id} is busy, deferring {phase.value} nudge")
            return phase

        audit_event(phase.value, self.agent_id, unread=normal_count, age_seconds=round(age, 1))
        if phase is EscalationPhase.PHASE1:
            await self.delivery.send_nudge(normal_count)
        else:
            await self.delivery.send_escape_nudge(normal_count)
        return phase

    async def _idle(self) -> EscalationPhase:
        if self.state.first_unread_at is not None:
            logger.info(f"All messages read for {self.agent_id}, escalation reset")
        self.state.first_unread_at = None

        # Stale nudge text can linger in the input line; only clear it when idle
        if self.config.clear_input_when_idle and not await self.liveness.is_busy():
            await self.delivery.clear_input()
        return EscalationPhase.IDLE

    async def _force_reset(self, normal_count: int, age: float, now: float) -> EscalationPhase:
        if await self.liveness.is_busy():
            logger.info(f"Agent {self.agent_id} is busy, deferring forced reset ({age:.0f}s)")
            return EscalationPhase.PHASE3

        logger.warning(
            f"ESCALATION: agent {self.agent_id} unresponsive for {age:.0f}s "
            f"with {normal_count} unread, sending reset",
            extra={"agent_id": self.agent_id, "unread": normal_count},
        )
        audit_event("phase3", self.agent_id, unread=normal_count, age_seconds=round(age, 1))
        await self.delivery.deliver(MessageKind.RESET, "")
        self.state.last_reset_at = now
        self.state.first_unread_at = None
        return EscalationPhase.PHASE3
