"""Shell tool for executing commands."""

import asyncio
import os
import shutil
import signal
from pathlib import Path
from typing import Any

from switchboard.exceptions import ToolIOError, ToolTimeoutError, TurnCancelledError
from switchboard.logging import get_logger
from switchboard.tools.registry import Tool, ToolKind, ToolResult
from switchboard.tools.security import SecurityContext

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 100_000
_KNOWN_SHELLS = {"bash", "zsh", "sh", "fish"}


def default_shell(environ: dict[str, str]) -> tuple[str, str]:
    """Pick the shell binary and its command flag."""
    if os.name == "nt":
        return environ.get("COMSPEC", "cmd.exe"), "/C"
    user_shell = environ.get("SHELL", "")
    if user_shell and Path(user_shell).name in _KNOWN_SHELLS:
        return user_shell, "-c"
    return shutil.which("bash") or "/bin/sh", "-c"


def format_command_output(command: str, working_dir: Path, exit_code: int, stdout: str, stderr: str) -> str:
    lines = [
        f"Command: {command}",
        f"Working directory: {working_dir}",
        f"Exit code: {exit_code}",
        "",
    ]
    if stdout:
        lines.extend(["=== STDOUT ===", stdout.rstrip("\n")])
    if stderr:
        lines.extend(["=== STDERR ===", stderr.rstrip("\n")])
    if not stdout and not stderr:
        lines.append("(No output)")
    output = "\n".join(lines) + "\n"
    if len(output) > MAX_OUTPUT_CHARS:
        output = output[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(output)} total chars]"
    return output


async def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    """Kill the command's whole process group and reap it."""
    if process.returncode is None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class ExecuteCommandTool(Tool):
    """Execute shell commands."""

    name = "execute_command"
    kind = ToolKind.EXECUTE_COMMAND
    description = (
        "Execute a shell command (bash, zsh, sh or cmd). "
        "Use this to run command-line tools like git, gh, npm, cargo, etc. "
        "Returns stdout/stderr and exit code."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The command to execute (e.g., 'git status', 'gh pr list', 'npm test')",
            },
            "working_directory": {
                "type": "string",
                "description": "Optional working directory for command execution (defaults to the current directory)",
            },
        },
        "required": ["command"],
    }

    def __init__(self, security: SecurityContext, environ: dict[str, str] | None = None):
        self.security = security
        self.env = SecurityContext.command_environment(environ)
        self.shell, self.shell_flag = default_shell(dict(os.environ if environ is None else environ))
        # Registry bound sits above our own so the process tree is killed here first.
        self.timeout_seconds = security.command_timeout + 5.0

    async def execute(self, command: str, working_directory: str | None = None, **kwargs: Any) -> ToolResult:
        """Execute an already-authorized shell command.

        Args:
            command: Shell command to execute
            working_directory: Optional directory inside an allowed root

        Returns:
            ToolResult with command output
        """
        working_dir = self.security.resolve(working_directory or self.security.base_dir)
        timeout = self.security.command_timeout
        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            raise TurnCancelledError("Command aborted")

        log.info("Executing shell command", command=command, cwd=str(working_dir), timeout=timeout)
        try:
            process = await asyncio.create_subprocess_exec(
                self.shell,
                self.shell_flag,
                command,
                cwd=str(working_dir),
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            log.error("Shell command failed to start", command=command, error=str(e))
            raise ToolIOError(self.name, f"Failed to execute command: {e}") from e

        communicate_task = asyncio.create_task(process.communicate())
        abort_wait_task: asyncio.Task[bool] | None = None
        if isinstance(abort_event, asyncio.Event):
            abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(wait_tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if communicate_task in done:
                stdout, stderr = communicate_task.result()
            else:
                await _kill_process_tree(process)
                communicate_task.cancel()
                try:
                    await communicate_task
                except asyncio.CancelledError:
                    pass
                if abort_wait_task is not None and abort_wait_task in done:
                    raise TurnCancelledError("Command aborted")
                timeout_label = int(timeout) if float(timeout).is_integer() else timeout
                raise ToolTimeoutError(self.name, f"Command timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await _kill_process_tree(process)
            communicate_task.cancel()
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        exit_code = process.returncode if process.returncode is not None else -1
        output = format_command_output(
            command,
            working_dir,
            exit_code,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        log.info("Shell command finished", exit_code=exit_code)
        return ToolResult(success=True, content=output)
