"""Security context for local tools: path roots, size limit, command policy."""

import os
import re
import shlex
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from switchboard.config import DEFAULT_MAX_FILE_SIZE, Config
from switchboard.exceptions import PermissionDeniedError
from switchboard.logging import get_logger

log = get_logger(__name__)

# Matched case-insensitively against the whitespace-collapsed command.
DEFAULT_COMMAND_BLOCKLIST: tuple[str, ...] = (
    "rm -rf",
    "rm -fr",
    "rm-rf",
    "rmdir /s",
    "dd if=",
    "mkfs",
    "fdisk",
    "parted",
    "diskpart",
    "format c:",
    ":(){ :|:& };:",
    "chmod -r 777",
    "chmod -r 000",
    "chown -r",
    "iptables -f",
    "ufw disable",
)

# Blocked only as the command word of a shell segment, never as a substring.
BLOCKED_COMMAND_WORDS: tuple[str, ...] = ("shutdown", "reboot", "halt", "poweroff")
_BLOCKED_INIT_LEVELS = {"0", "6"}

_ASSIGNMENT_RE = re.compile(r"^[a-z_][a-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "doas", "command", "builtin", "nohup", "time", "exec"}

# Patterns also checked with all whitespace removed, so spacing cannot hide them.
_COMPACT_BLOCKLIST: tuple[str, ...] = (":(){:|:&};:",)

COMMAND_ENV_ALLOWLIST: tuple[str, ...] = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TERM",
    "TMPDIR",
    "TZ",
    "SHELL",
    "SYSTEMROOT",
    "COMSPEC",
)


def _canonical(path: Path | str, base: Path) -> Path:
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate.resolve()


def _normalize_command(command: str) -> str:
    return " ".join(str(command or "").lower().split())


def _split_shell_segments(command: str) -> list[list[str]]:
    """Tokenize a command and split it on shell control operators."""
    try:
        lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
        lexer.whitespace_split = True
        lexer.commenters = ""
        tokens = list(lexer)
    except ValueError:
        tokens = re.sub(r"([;&|]+)", r" \1 ", command).split()
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _segment_command(tokens: list[str]) -> tuple[str, list[str]]:
    """Return the executable name of a segment and the arguments after it."""
    for idx, token in enumerate(tokens):
        if token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token.rsplit("/", 1)[-1], tokens[idx + 1 :]
    return "", []


def blocked_command_word(command: str) -> str | None:
    """Return the power-control command a segment runs, if any."""
    for segment in _split_shell_segments(_normalize_command(command)):
        word, args = _segment_command(segment)
        if word in BLOCKED_COMMAND_WORDS:
            return word
        if word in {"init", "telinit"} and args and args[0] in _BLOCKED_INIT_LEVELS:
            return f"{word} {args[0]}"
    return None


@dataclass(frozen=True)
class SecurityContext:
    """Immutable policy consulted before any local tool body runs.

    An empty `allowed_roots` denies every path. Build a new context with
    `dataclasses.replace` rather than mutating one.
    """

    allowed_roots: tuple[Path, ...] = ()
    base_dir: Path = field(default_factory=lambda: Path.cwd().resolve())
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    command_blocklist: tuple[str, ...] = DEFAULT_COMMAND_BLOCKLIST
    command_timeout: float = 30.0
    allow_command_execution: bool = False
    confirm_commands: bool = False

    @classmethod
    def build(
        cls,
        allowed_dirs: Iterable[Path | str],
        base_dir: Path | str | None = None,
        **kwargs,
    ) -> "SecurityContext":
        """Canonicalize roots (resolving symlinks) relative to `base_dir`/cwd."""
        base = Path(base_dir).expanduser().resolve() if base_dir is not None else Path.cwd().resolve()
        roots: list[Path] = []
        for raw in allowed_dirs:
            root = _canonical(raw, base)
            if root not in roots:
                roots.append(root)
        return cls(allowed_roots=tuple(roots), base_dir=base, **kwargs)

    @classmethod
    def from_config(cls, config: Config, base_dir: Path | str | None = None) -> "SecurityContext":
        tools = config.tools
        return cls.build(
            tools.allowed_dirs,
            base_dir=base_dir,
            max_file_size=tools.max_file_size,
            command_timeout=tools.command_timeout,
            allow_command_execution=tools.allow_command_execution,
            confirm_commands=tools.confirm_commands,
        )

    def resolve(self, path: Path | str) -> Path:
        """Canonical absolute form of a requested path (relative to `base_dir`)."""
        return _canonical(path, self.base_dir)

    def is_path_allowed(self, path: Path | str) -> bool:
        try:
            canonical = self.resolve(path)
        except (OSError, RuntimeError, ValueError):
            return False
        return any(canonical == root or canonical.is_relative_to(root) for root in self.allowed_roots)

    def check_path(self, tool_name: str, path: Path | str) -> Path:
        """Return the canonical path or raise PermissionDeniedError."""
        if not self.is_path_allowed(path):
            log.warning("Path denied", tool=tool_name, path=str(path))
            raise PermissionDeniedError(tool_name, f"Access denied: {path} is outside allowed directories")
        return self.resolve(path)

    def check_size(self, tool_name: str, size: int, label: str = "") -> None:
        if size > self.max_file_size:
            target = f"{label} " if label else ""
            raise PermissionDeniedError(
                tool_name,
                f"{target}size {size} bytes exceeds maximum of {self.max_file_size} bytes".strip(),
            )

    def blocked_pattern(self, command: str) -> str | None:
        """Return the blocklist entry a command matches, if any."""
        normalized = _normalize_command(command)
        for pattern in self.command_blocklist:
            if pattern.lower() in normalized:
                return pattern
        compact = "".join(normalized.split())
        for pattern in _COMPACT_BLOCKLIST:
            if pattern in compact:
                return pattern
        return blocked_command_word(normalized)

    def is_command_allowed(self, command: str) -> bool:
        return bool(str(command or "").strip()) and self.blocked_pattern(command) is None

    def check_command(self, tool_name: str, command: str) -> None:
        if not self.allow_command_execution:
            raise PermissionDeniedError(tool_name, "Command execution is disabled")
        if not str(command or "").strip():
            raise PermissionDeniedError(tool_name, "Command is empty")
        matched = self.blocked_pattern(command)
        if matched is not None:
            log.warning("Blocked command", tool=tool_name, pattern=matched)
            raise PermissionDeniedError(tool_name, f"Command blocked for security reasons (matches '{matched}')")

    @staticmethod
    def command_environment(environ: Mapping[str, str] | None = None) -> dict[str, str]:
        """Environment for spawned commands, built from the allow-list only."""
        source = os.environ if environ is None else environ
        return {name: source[name] for name in COMMAND_ENV_ALLOWLIST if name in source}
