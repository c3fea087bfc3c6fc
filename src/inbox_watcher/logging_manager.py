"""Structured logging for the inbox watcher.

Console output for operators, a rotating JSON log per agent, and a JSONL
audit trail of every keystroke sequence injected into an agent's pane.
"""

import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Any

ROOT_LOGGER = "inbox_watcher"
AUDIT_LOGGER = "inbox_watcher.audit"

_RESERVED_ATTRS = frozenset(
    [
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "taskName",
        "extras",
        "message_json",
    ]
)


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Collect the `extra=` fields attached to a record, JSON-safe."""
    extras = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_ATTRS:
            continue
        try:
            json.dumps(value)
            extras[key] = value
        except (TypeError, ValueError):
            extras[key] = str(value)
    return extras


class JsonExtraFilter(logging.Filter):
    """Renders extra fields into `record.extras` for the JSON file format."""

    def filter(self, record):
        extras = _record_extras(record)
        if extras:
            record.extras = ", " + ", ".join(f'"{k}": {json.dumps(v)}' for k, v in extras.items())
        else:
            record.extras = ""
        return True


class _MessageJsonFilter(logging.Filter):
    def filter(self, record):
        record.message_json = json.dumps(record.getMessage())
        return True


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line, used for the audit trail."""

    def format(self, record):
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "event": record.getMessage(),
            "logger": record.name,
        }
        log_obj.update(_record_extras(record))
        return json.dumps(log_obj)


class LoggingManager:
    """Configures logging for one watcher process."""

    def __init__(
        self,
        log_dir: str | Path = "/tmp/inbox_watcher_logs",
        log_level: str = "INFO",
        agent_id: str = "watcher",
    ):
        """Initialize logging manager.

        Args:
            log_dir: Directory for log files
            log_level: Console log level
            agent_id: Agent whose watcher this process is (names the files)
        """
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper(), None)
        if not isinstance(self.log_level, int):
            raise ValueError(f"Invalid log level: {log_level}")
        self.agent_id = agent_id

        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_watcher_logger()
        self._setup_audit_logger()

    def _setup_watcher_logger(self):
        """Console handler plus rotating JSON file handler on the package logger."""
        logger = logging.getLogger(ROOT_LOGGER)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()

        # Console goes to stderr; stdout stays free for callers
        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(console_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / f"watcher_{self.agent_id}.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(JsonExtraFilter())
        file_handler.setFormatter(
            logging.Formatter(
                '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
                '"message": %(message_json)s, "function": "%(funcName)s", '
                '"line": %(lineno)d%(extras)s}',
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
        file_handler.addFilter(_MessageJsonFilter())
        logger.addHandler(file_handler)

        self.watcher_logger = logger

    def _setup_audit_logger(self):
        """Audit trail logger (JSON Lines format)."""
        logger = logging.getLogger(AUDIT_LOGGER)
        logger.setLevel(logging.INFO)
        logger.propagate = False
        logger.handlers.clear()

        file_handler = logging.FileHandler(self.log_dir / f"audit_{self.agent_id}.jsonl")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(JsonLineFormatter())
        logger.addHandler(file_handler)

        self.audit_logger = logger

    def close(self):
        """Detach and close every handler this manager installed."""
        for name in (ROOT_LOGGER, AUDIT_LOGGER):
            logger = logging.getLogger(name)
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()


def audit_event(event_type: str, agent_id: str, **details: Any) -> None:
    """Record an injected action in the audit trail.

    Args:
        event_type: What was done (nudge, escape_nudge, reset, command, ...)
        agent_id: Agent whose pane received it
        **details: Additional fields (pane target, unread count, ...)
    """
    extra = {"event_type": event_type, "agent_id": agent_id}
    extra.update(details)
    logging.getLogger(AUDIT_LOGGER).info(event_type, extra=extra)
