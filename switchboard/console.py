"""Interactive yes/no prompt used before running shell commands."""

from __future__ import annotations

import asyncio
import sys

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm

from switchboard.logging import get_logger

log = get_logger(__name__)


def ask_command_confirmation(
    command: str,
    working_dir: str,
    timeout: float,
    console: Console | None = None,
) -> bool:
    """Show the command on stderr and ask the user to allow it (default: no)."""
    if console is None and not sys.stdin.isatty():
        log.warning("Command confirmation requested without an interactive terminal; declining")
        return False
    con = console or Console(stderr=True)
    timeout_label = int(timeout) if float(timeout).is_integer() else timeout
    con.print(
        Panel(
            f"Command: [bold]{escape(command)}[/bold]\n"
            f"Working directory: {escape(working_dir)}\n"
            f"Timeout: {timeout_label}s",
            title="Model wants to execute a command",
            border_style="yellow",
        )
    )
    return Confirm.ask("Allow this command?", default=False, console=con)


async def confirm_command(command: str, working_dir: str, timeout: float) -> bool:
    """Async wrapper so the prompt does not block the event loop."""
    return await asyncio.to_thread(ask_command_confirmation, command, working_dir, timeout)
