"""Operator interaction seam.

Orchestrator components never talk to the terminal directly; they receive a
:class:`Prompter`. The CLI passes :class:`TyperPrompter`, tests pass scripted
implementations.
"""
from __future__ import annotations

from typing import Protocol

import typer


class Prompter(Protocol):
    """Questions the installer may ask the operator."""

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Ask a yes/no question."""

    def ask(self, message: str, *, default: str = "") -> str:
        """Ask for free-form text."""

    def pause(self) -> None:
        """Wait for the operator to acknowledge output."""


class TyperPrompter:
    """Interactive prompts rendered by Typer/Click."""

    def __init__(self, *, interactive: bool = True) -> None:
        """Create a prompter; non-interactive mode answers with defaults."""
        self.interactive = interactive

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Ask a yes/no question."""
        if not self.interactive:
            return default
        return typer.confirm(message, default=default)

    def ask(self, message: str, *, default: str = "") -> str:
        """Ask for free-form text (empty answers are allowed)."""
        if not self.interactive:
            return default
        answer = typer.prompt(message, default=default, show_default=bool(default))
        return str(answer).strip()

    def pause(self) -> None:
        """Wait for a key press in interactive mode."""
        if self.interactive:
            typer.prompt("Press Enter to continue", default="", show_default=False)


class AssumeYesPrompter(TyperPrompter):
    """Non-interactive prompter that accepts every confirmation."""

    def __init__(self) -> None:
        """Create an always-consenting prompter."""
        super().__init__(interactive=False)

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Consent to every question."""
        return True


__all__ = ["AssumeYesPrompter", "Prompter", "TyperPrompter"]
