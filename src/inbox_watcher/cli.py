"""Command line entry points.

    inbox-watcher <agent_id> <pane_target> [claude|codex|copilot]
    inbox-post <agent_id> <content> [kind] [from]
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

logger = logging.getLogger(__name__)


def _default_inbox_dir() -> str:
    return os.getenv("INBOX_WATCHER_INBOX_DIR", os.path.join("queue", "inbox"))


def build_watch_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inbox-watcher",
        description="Watch an agent mailbox and wake the agent's tmux pane on new messages.",
    )
    parser.add_argument("agent_id", help="agent whose mailbox is watched (e.g. karo)")
    parser.add_argument("pane_target", help="tmux target of the agent pane (e.g. multiagent:0.0)")
    parser.add_argument(
        "backend",
        nargs="?",
        default="claude",
        help="CLI running in the pane: claude (default), codex or copilot",
    )
    parser.add_argument("--inbox-dir", default=_default_inbox_dir(), help="mailbox directory")
    parser.add_argument(
        "--config", default=None, help="YAML settings file (default: config/watcher.yaml)"
    )
    parser.add_argument(
        "--log-dir",
        default=os.getenv("INBOX_WATCHER_LOG_DIR", "/tmp/inbox_watcher_logs"),
        help="directory for log and audit files",
    )
    parser.add_argument(
        "--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="console log level"
    )
    return parser


def build_post_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inbox-post", description="Append a message to an agent mailbox."
    )
    parser.add_argument("agent_id", help="recipient agent")
    parser.add_argument("content", help="message text")
    parser.add_argument(
        "kind",
        nargs="?",
        default="normal",
        help="message kind (normal, task_assigned, clear_command, model_switch, ...)",
    )
    parser.add_argument("sender", nargs="?", default=None, metavar="from", help="sending agent")
    parser.add_argument("--inbox-dir", default=_default_inbox_dir(), help="mailbox directory")
    return parser


async def _run_until_signalled(watcher) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, watcher.stop)
    await watcher.run()


def main(argv: list[str] | None = None) -> int:
    """Run a watcher until terminated.

    Returns:
        Process exit status
    """
    args = build_watch_parser().parse_args(argv)

    try:
        from .config import load_config, parse_variant
        from .logging_manager import LoggingManager
        from .watcher import InboxWatcher, NotificationUnavailableError
    except ImportError as e:
        print(f"Import error: {e}", file=sys.stderr)
        print("Please ensure dependencies are installed: pip install -e .", file=sys.stderr)
        return 1

    try:
        config = load_config(args.config)
        variant = parse_variant(args.backend)
        logging_manager = LoggingManager(args.log_dir, args.log_level, args.agent_id)
    except (OSError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        watcher = InboxWatcher(
            args.agent_id,
            args.pane_target,
            backend=variant,
            inbox_dir=args.inbox_dir,
            config=config,
        )
        asyncio.run(_run_until_signalled(watcher))
    except ValueError as e:
        logger.error(f"Invalid arguments: {e}")
        return 1
    except NotificationUnavailableError as e:
        logger.error(f"File change notification unavailable: {e}")
        return 1
    finally:
        logging_manager.close()

    return 0


def post_main(argv: list[str] | None = None) -> int:
    """Append one message to a mailbox; prints the new message id."""
    args = build_post_parser().parse_args(argv)

    from .mailbox import post_message

    try:
        entry = post_message(
            args.inbox_dir, args.agent_id, args.content, kind=args.kind, sender=args.sender
        )
    except (ValueError, OSError) as e:
        print(f"Failed to post message: {e}", file=sys.stderr)
        return 1

    print(entry["id"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
