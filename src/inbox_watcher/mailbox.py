"""File-backed agent mailboxes.

Each agent has one YAML file, `<inbox_dir>/<agent_id>.yaml`, holding
`messages: [...]`. Producers append entries; the watcher only flips `read`
on special messages. Both sides write through a temporary file that is
renamed over the mailbox, so readers never observe a partial write.
"""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from .models import Mailbox, Message, MessageKind, UnreadInfo

logger = logging.getLogger(__name__)


class MailboxFormatError(ValueError):
    """Raised when a mailbox file cannot be parsed into a message list."""


class MailboxStore:
    """Loads, saves and scans a single agent's mailbox.

    Attributes:
        agent_id: Agent owning the mailbox.
        path: Location of the mailbox file.
    """

    def __init__(self, inbox_dir: str | Path, agent_id: str):
        """Initialize the store.

        Args:
            inbox_dir: Directory holding all agent mailboxes.
            agent_id: Agent whose mailbox this store manages.
        """
        if not agent_id or "/" in agent_id or agent_id in (".", ".."):
            raise ValueError(f"Invalid agent id: {agent_id!r}")
        self.agent_id = agent_id
        self.path = Path(inbox_dir) / f"{agent_id}.yaml"
        self._saved_stat: tuple[int, int, int] | None = None

    def ensure_exists(self) -> bool:
        """Create an empty mailbox if none exists.

        Returns:
            True if the file was created, False if it already existed.
        """
        if self.path.exists():
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.save(Mailbox())
        logger.info(f"Initialized empty mailbox {self.path}")
        return True

    def load(self) -> Mailbox:
        """Read the mailbox from disk.

        A missing file is initialized and read as empty.

        Raises:
            MailboxFormatError: If the file is not valid mailbox YAML
            OSError: If the file cannot be read
        """
        if not self.path.exists():
            self.ensure_exists()
            return Mailbox()

        try:
            with self.path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise MailboxFormatError(f"Failed to parse mailbox {self.path}: {e}") from e

        if data is None:
            return Mailbox()
        if not isinstance(data, dict):
            raise MailboxFormatError(f"Mailbox {self.path} is not a mapping")

        extra = {k: v for k, v in data.items() if k != "messages"}
        messages = data.get("messages") or []
        if not isinstance(messages, list):
            raise MailboxFormatError(f"Mailbox {self.path}: 'messages' is not a list")

        return Mailbox(messages=messages, extra=extra)

    def save(self, mailbox: Mailbox) -> None:
        """Atomically replace the mailbox file with `mailbox`."""
        _atomic_write_yaml(self.path, mailbox.to_dict())
        self._saved_stat = self._stat_signature()
        logger.debug(f"Saved {len(mailbox.messages)} messages to {self.path}")

    def _stat_signature(self) -> tuple[int, int, int]:
        st = self.path.stat()
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def is_own_write(self) -> bool:
        """True while the file on disk is still the one this store last saved."""
        if self._saved_stat is None:
            return False
        try:
            return self._stat_signature() == self._saved_stat
        except OSError:
            return False

    def extract_unread(self) -> UnreadInfo:
        """Count unread normal messages and collect unread specials.

        Specials found are marked read and the mailbox is saved before this
        method returns, so they are handed out at most once. If that save
        fails, no specials are returned; they stay unread on disk and are
        picked up by a later pass.

        An unreadable or malformed mailbox counts as zero unread.
        """
        try:
            mailbox = self.load()
        except (MailboxFormatError, OSError) as e:
            logger.warning(
                f"Mailbox for {self.agent_id} unreadable, treating as empty: {e}",
                extra={"agent_id": self.agent_id, "error": str(e)},
            )
            return UnreadInfo()

        normal_count = 0
        specials: list[tuple[MessageKind, str]] = []

        for entry in mailbox.messages:
            if not isinstance(entry, dict) or entry.get("read", False):
                continue
            message = Message.from_dict(entry)
            if message.kind.is_special:
                entry["read"] = True
                specials.append((message.kind, message.content))
            else:
                normal_count += 1

        if specials:
            try:
                self.save(mailbox)
            except OSError as e:
                logger.error(
                    f"Could not mark {len(specials)} special message(s) read for "
                    f"{self.agent_id}, deferring delivery: {e}",
                    extra={"agent_id": self.agent_id, "error": str(e)},
                )
                specials = []
            else:
                logger.info(
                    f"Marked {len(specials)} special message(s) read for {self.agent_id}",
                    extra={"agent_id": self.agent_id, "specials": len(specials)},
                )

        return UnreadInfo(normal_count=normal_count, specials=specials)


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    """Write YAML to a sibling temp file, then rename it over `path`."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def post_message(
    inbox_dir: str | Path,
    agent_id: str,
    content: str,
    kind: str = "normal",
    sender: str | None = None,
) -> dict[str, Any]:
    """Append a message to an agent's mailbox.

    This is the producer side of the protocol: existing entries are never
    modified and the file is replaced atomically.

    Args:
        inbox_dir: Directory holding all agent mailboxes
        agent_id: Recipient agent
        content: Message text
        kind: Wire kind (normal, task_assigned, clear_command, model_switch, ...)
        sender: Sending agent, recorded as `from`

    Returns:
        The entry that was appended

    Raises:
        MailboxFormatError: If the existing mailbox is malformed
    """
    store = MailboxStore(inbox_dir, agent_id)
    mailbox = store.load()

    entry = {
        "id": f"msg_{uuid.uuid4().hex[:12]}",
        "from": sender or "unknown",
        "timestamp": datetime.now(UTC).isoformat(),
        "kind": kind,
        "content": content,
        "read": False,
    }
    mailbox.messages.append(entry)
    store.save(mailbox)

    logger.info(
        f"Posted {kind} message to {agent_id}",
        extra={"agent_id": agent_id, "message_id": entry["id"], "kind": kind},
    )
    return entry
