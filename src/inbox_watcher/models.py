"""Data models for the inbox watcher.

This module defines the message and mailbox structures read from disk, the
backend variants the watcher can drive, and the per-watcher escalation state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageKind(str, Enum):
    """Classification of a mailbox message.

    Attributes:
        NORMAL: Conversational content; the agent reads it itself.
        RESET: Control command asking for a full context reset.
        MODEL_SWITCH: Control command carrying a model switch command line.
    """

    NORMAL = "normal"
    RESET = "reset_command"
    MODEL_SWITCH = "model_switch"

    @classmethod
    def from_wire(cls, value: Any) -> MessageKind:
        """Map a `kind`/`type` value as written by producers to a MessageKind."""
        if not isinstance(value, str):
            return cls.NORMAL
        return _WIRE_KINDS.get(value.strip().lower(), cls.NORMAL)

    @property
    def is_special(self) -> bool:
        return self is not MessageKind.NORMAL


_WIRE_KINDS = {
    "clear_command": MessageKind.RESET,
    "reset_command": MessageKind.RESET,
    "reset-command": MessageKind.RESET,
    "model_switch": MessageKind.MODEL_SWITCH,
    "model_switch_command": MessageKind.MODEL_SWITCH,
    "model-switch-command": MessageKind.MODEL_SWITCH,
}


class BackendVariant(str, Enum):
    """Interactive CLI running in the agent's pane.

    Attributes:
        CLAUDE: Default variant; slash commands pass through as typed.
        CODEX: Exits to the shell after /clear and must be relaunched.
        COPILOT: Has no reset command; reset is Ctrl-C plus relaunch.
    """

    CLAUDE = "claude"
    CODEX = "codex"
    COPILOT = "copilot"


class EscalationPhase(str, Enum):
    """Escalation level selected for a processing pass."""

    IDLE = "idle"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    PHASE3 = "phase3"


@dataclass
class Message:
    """Typed view of a single mailbox entry.

    Attributes:
        kind: Classified message kind.
        content: Text payload.
        read: Whether the message has been consumed.
        timestamp: Producer timestamp (ISO 8601) if present.
    """

    kind: MessageKind
    content: str
    read: bool = False
    timestamp: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        raw_kind = data.get("kind", data.get("type"))
        content = data.get("content")
        return cls(
            kind=MessageKind.from_wire(raw_kind),
            content="" if content is None else str(content),
            read=bool(data.get("read", False)),
            timestamp=data.get("timestamp"),
        )


@dataclass
class Mailbox:
    """In-memory copy of a mailbox file.

    Entries are kept as the raw mappings loaded from YAML so that saving
    preserves every key a producer wrote. Only `read` is ever changed.

    Attributes:
        messages: Raw message mappings in file order.
        extra: Any other top-level keys of the document.
    """

    messages: list[Any] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data["messages"] = self.messages
        return data


@dataclass
class UnreadInfo:
    """Result of one unread extraction pass.

    Attributes:
        normal_count: Number of unread normal messages.
        specials: Unread special messages as (kind, content), in file order.
            They are already marked read on disk.
    """

    normal_count: int = 0
    specials: list[tuple[MessageKind, str]] = field(default_factory=list)


@dataclass
class WatcherState:
    """Escalation state owned by a single watcher.

    Attributes:
        first_unread_at: Clock value when the current run of unread normal
            messages was first seen, or None when nothing is pending.
        last_reset_at: Clock value of the last forced reset, or None.
    """

    first_unread_at: float | None = None
    last_reset_at: float | None = None
