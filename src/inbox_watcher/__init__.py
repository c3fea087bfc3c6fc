"""Mailbox watcher that wakes AI-agent CLI sessions running in tmux panes."""

from .config import BackendProfile, WatcherConfig, load_config
from .mailbox import MailboxFormatError, MailboxStore, post_message
from .models import BackendVariant, EscalationPhase, MessageKind, UnreadInfo, WatcherState
from .watcher import InboxWatcher, NotificationUnavailableError

__all__ = [
    "BackendProfile",
    "BackendVariant",
    "EscalationPhase",
    "InboxWatcher",
    "MailboxFormatError",
    "MailboxStore",
    "MessageKind",
    "NotificationUnavailableError",
    "UnreadInfo",
    "WatcherConfig",
    "WatcherState",
    "load_config",
    "post_message",
]

__version__ = "0.1.0"
