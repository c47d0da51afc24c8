import io
import sys

import pytest
from rich.console import Console

import switchboard.console as console_module
from switchboard.console import ask_command_confirmation, confirm_command


class _NoTTY(io.StringIO):
    def isatty(self) -> bool:
        return False


def test_without_terminal_the_command_is_declined(monkeypatch):
    monkeypatch.setattr(sys, "stdin", _NoTTY())

    assert ask_command_confirmation("ls", "/tmp", 30) is False


def test_prompt_shows_command_and_returns_answer(monkeypatch):
    output = io.StringIO()
    answers: list = []

    def _fake_ask(prompt, default, console):
        answers.append((prompt, default))
        return True

    monkeypatch.setattr(console_module.Confirm, "ask", _fake_ask)

    allowed = ask_command_confirmation("git status", "/repo", 30.0, console=Console(file=output, width=120))

    assert allowed is True
    assert answers == [("Allow this command?", False)]
    rendered = output.getvalue()
    assert "git status" in rendered
    assert "/repo" in rendered
    assert "30s" in rendered


@pytest.mark.asyncio
async def test_async_wrapper_declines_without_terminal(monkeypatch):
    monkeypatch.setattr(sys, "stdin", _NoTTY())

    assert await confirm_command("ls", "/tmp", 5) is False
