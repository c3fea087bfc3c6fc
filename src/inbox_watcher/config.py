"""Watcher configuration.

Defaults live in the dataclasses below; an optional YAML file
(config/watcher.yaml at the project root, or the path in
INBOX_WATCHER_CONFIG) overrides any of them.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .models import BackendVariant

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "watcher.yaml"

DEFAULT_BUSY_PATTERNS = ["Working", "Thinking", "Planning", "Sending", "esc to interrupt"]


@dataclass
class BackendProfile:
    """How to talk to one kind of agent CLI.

    Attributes:
        variant: Backend this profile describes.
        launch_command: Command line that restarts the CLI in its pane.
        busy_patterns: Regexes that mark the viewport as mid-operation.
        supports_model_switch: Whether /model commands are passed through.
        self_watch_pattern: Regex matched against process command lines to
            detect an agent watching its own mailbox. `{agent_id}` is
            substituted before compiling.
    """

    variant: BackendVariant
    launch_command: str | None = None
    busy_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_BUSY_PATTERNS))
    supports_model_switch: bool = False
    self_watch_pattern: str = r"inotifywait.*inbox/{agent_id}\.yaml"


def _default_backends() -> dict[BackendVariant, BackendProfile]:
    return {
        BackendVariant.CLAUDE: BackendProfile(
            variant=BackendVariant.CLAUDE,
            launch_command="claude --dangerously-skip-permissions",
            supports_model_switch=True,
        ),
        BackendVariant.CODEX: BackendProfile(
            variant=BackendVariant.CODEX,
            launch_command="codex --dangerously-bypass-approvals-and-sandbox --no-alt-screen",
        ),
        BackendVariant.COPILOT: BackendProfile(
            variant=BackendVariant.COPILOT,
            launch_command="copilot --yolo",
        ),
    }


@dataclass
class WatcherConfig:
    """Timing and behaviour of a watcher.

    Attributes:
        notify_timeout: Seconds to block waiting for a file change (default: 30).
        settle_delay: Pause after a wake-up before processing (default: 0.3).
        capture_timeout: Ceiling for a viewport capture (default: 2).
        send_timeout: Ceiling for one keystroke injection (default: 5).
        process_scan_timeout: Ceiling for the process table scan (default: 2).
        capture_lines: Viewport lines inspected for activity markers (default: 15).
        phase2_after: Unread age that switches to escape+nudge (default: 120).
        phase3_after: Unread age that switches to a forced reset (default: 240).
        reset_cooldown: Minimum seconds between forced resets (default: 300).
        clear_input_when_idle: Send C-u when nothing is unread (default: True).
        backends: Profile per backend variant.
    """

    notify_timeout: float = 30.0
    settle_delay: float = 0.3
    capture_timeout: float = 2.0
    send_timeout: float = 5.0
    process_scan_timeout: float = 2.0
    capture_lines: int = 15
    phase2_after: float = 120.0
    phase3_after: float = 240.0
    reset_cooldown: float = 300.0
    clear_input_when_idle: bool = True
    backends: dict[BackendVariant, BackendProfile] = field(default_factory=_default_backends)

    def profile_for(self, variant: BackendVariant | str) -> BackendProfile:
        return self.backends[parse_variant(variant)]


def parse_variant(value: BackendVariant | str) -> BackendVariant:
    """Return the BackendVariant for a CLI name.

    Raises:
        ValueError: If the name is not a known backend
    """
    if isinstance(value, BackendVariant):
        return value
    try:
        return BackendVariant(value.strip().lower())
    except ValueError:
        allowed = ", ".join(v.value for v in BackendVariant)
        raise ValueError(f"Unknown backend '{value}'. Allowed backends: {allowed}") from None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse watcher configuration YAML: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Watcher configuration must be a mapping: {path}")
    return data


def _apply_backend_overrides(
    backends: dict[BackendVariant, BackendProfile], overrides: dict[str, Any]
) -> dict[BackendVariant, BackendProfile]:
    allowed = {f.name for f in fields(BackendProfile)} - {"variant"}
    merged = dict(backends)
    for name, values in overrides.items():
        variant = parse_variant(name)
        values = values or {}
        unknown = set(values) - allowed
        if unknown:
            raise ValueError(f"Unknown settings for backend '{name}': {', '.join(sorted(unknown))}")
        merged[variant] = replace(merged[variant], **values)
    return merged


def load_config(path: str | Path | None = None) -> WatcherConfig:
    """Load watcher configuration, overlaying YAML on the defaults.

    Args:
        path: Explicit configuration file. When None, INBOX_WATCHER_CONFIG
            is used, then config/watcher.yaml in the project root.

    Returns:
        WatcherConfig with overrides applied

    Raises:
        FileNotFoundError: If an explicitly requested file doesn't exist
        ValueError: If the YAML is invalid or names unknown settings
    """
    explicit = path or os.getenv("INBOX_WATCHER_CONFIG")
    config_path = Path(explicit) if explicit else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(f"Watcher configuration file not found: {config_path}")
        logger.debug(f"No watcher configuration at {config_path}, using defaults")
        return WatcherConfig()

    data = _read_yaml(config_path)
    backend_overrides = data.pop("backends", None) or {}

    allowed = {f.name for f in fields(WatcherConfig)} - {"backends"}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown watcher settings: {', '.join(sorted(unknown))}")

    config = WatcherConfig(**data)
    config.backends = _apply_backend_overrides(config.backends, backend_overrides)

    if config.phase3_after <= config.phase2_after:
        raise ValueError("phase3_after must be greater than phase2_after")

    logger.debug(f"Loaded watcher configuration from {config_path}")
    return config
