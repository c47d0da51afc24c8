"""API credential pool with rate-limit rotation."""

import os
import random
import re
from collections.abc import Mapping
from dataclasses import dataclass

from switchboard.exceptions import ConfigurationError
from switchboard.logging import get_logger, mask_secret

log = get_logger(__name__)

API_KEY_LENGTH = 39
API_KEY_PREFIX = "AIza"
API_KEY_ENV_VARS = ("GEMINI_API_KEYS", "GEMINI_API_KEY")

_API_KEY_CHARS_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_KEY_SEPARATORS_RE = re.compile(r"[|,\s]+")


def validate_api_key_format(api_key: str) -> bool:
    """Lightweight check for Google-style API keys (39 chars, `AIza` prefix)."""
    if len(api_key) != API_KEY_LENGTH:
        return False
    if not api_key.startswith(API_KEY_PREFIX):
        return False
    return bool(_API_KEY_CHARS_RE.match(api_key))


def parse_api_keys(raw: str) -> list[str]:
    """Split a `|`- or `,`-separated key list, dropping blanks."""
    return [part for part in _KEY_SEPARATORS_RE.split(raw or "") if part]


def read_api_keys_from_env(environ: Mapping[str, str] | None = None) -> list[str]:
    """Snapshot credentials from the environment (first non-empty variable wins)."""
    env = os.environ if environ is None else environ
    for name in API_KEY_ENV_VARS:
        keys = parse_api_keys(env.get(name, ""))
        if keys:
            log.info("Loaded API keys from environment", variable=name, count=len(keys))
            return keys
    return []


@dataclass(frozen=True, slots=True)
class CredentialHandle:
    """One credential plus its position in the pool."""

    index: int
    secret: str
    flagged: bool = False

    def __repr__(self) -> str:
        return f"CredentialHandle(index={self.index}, secret={mask_secret(self.secret)!r}, flagged={self.flagged})"


class CredentialPool:
    """Ordered, immutable set of API credentials.

    `start()` picks the rotation anchor; `next()` walks forward modulo the pool
    size and returns None once the walk comes back to the anchor. Keys that
    fail the format check are kept (fail open) but flagged, and `warnings`
    lists a message for each so the caller can surface them.
    """

    def __init__(self, credentials: list[str] | tuple[str, ...], rng: random.Random | None = None):
        cleaned = tuple(str(item).strip() for item in credentials if str(item or "").strip())
        if not cleaned:
            raise ConfigurationError(
                "No API keys configured. Set GEMINI_API_KEY (or GEMINI_API_KEYS with '|'-separated keys)."
            )
        self._handles = tuple(
            CredentialHandle(index=idx, secret=secret, flagged=not validate_api_key_format(secret))
            for idx, secret in enumerate(cleaned)
        )
        self._rng = rng or random.Random()
        self._anchor: int | None = None
        self.warnings: list[str] = []
        for handle in self._handles:
            if handle.flagged:
                message = (
                    f"API key {handle.index + 1}/{len(self._handles)} looks malformed "
                    f"(expected {API_KEY_PREFIX}... with {API_KEY_LENGTH} characters); it will still be tried"
                )
                self.warnings.append(message)
                log.warning("API key format check failed", key=f"{handle.index + 1}/{len(self._handles)}")

    @classmethod
    def from_environment(
        cls,
        environ: Mapping[str, str] | None = None,
        extra: list[str] | None = None,
    ) -> "CredentialPool":
        """Build a pool from the environment snapshot plus configured keys."""
        keys = read_api_keys_from_env(environ)
        for key in extra or []:
            if key and key not in keys:
                keys.append(key)
        return cls(keys)

    def __len__(self) -> int:
        return len(self._handles)

    @property
    def anchor(self) -> int | None:
        return self._anchor

    def start(self, preferred_index: int | None = None) -> CredentialHandle:
        """Pick the first credential for a turn and remember it as the anchor.

        A valid `preferred_index` (a resumed conversation's last key) is used as
        is; otherwise the index is pseudo-random.
        """
        if preferred_index is not None and 0 <= preferred_index < len(self._handles):
            index = preferred_index
        else:
            index = self._rng.randrange(len(self._handles))
        self._anchor = index
        log.debug("Credential rotation anchored", key=f"{index + 1}/{len(self._handles)}")
        return self._handles[index]

    def next(self, current: CredentialHandle) -> CredentialHandle | None:
        """Return the credential after `current`, or None when rotation is complete."""
        if self._anchor is None:
            raise RuntimeError("CredentialPool.next() called before start()")
        index = (current.index + 1) % len(self._handles)
        if index == self._anchor:
            return None
        return self._handles[index]
