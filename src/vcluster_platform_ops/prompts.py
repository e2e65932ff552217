"""Operator decision points.

Workflows never read from the terminal directly. They receive a prompter,
a callable taking ``(question, options, default)`` and returning one of the
option strings, so the same flow can run interactively, unattended or under
test.
"""

from __future__ import annotations

from typing import Callable, Sequence

import questionary
from questionary import Style as QStyle

Prompter = Callable[[str, Sequence[str], str], str]

PROMPT_STYLE = QStyle(
    [
        ("qmark", "fg:#88C0D0 bold"),
        ("question", "bold"),
        ("answer", "fg:#A3BE8C"),
        ("pointer", "fg:#88C0D0 bold"),
        ("highlighted", "fg:#81A1C1 bold"),
        ("selected", "fg:#A3BE8C"),
    ]
)


class PromptError(RuntimeError):
    """Raised when an answer cannot be captured from the operator."""


def interactive_prompter(question: str, options: Sequence[str], default: str) -> str:
    """Ask on the terminal. Ctrl-C propagates as ``KeyboardInterrupt``."""
    try:
        answer = questionary.select(
            question,
            choices=list(options),
            default=default,
            style=PROMPT_STYLE,
        ).unsafe_ask()
    except (EOFError, OSError) as error:
        raise PromptError(f"failed to capture your response: {error}") from error

    if answer is None:
        raise PromptError("failed to capture your response: no option was selected")
    return answer


def default_prompter(question: str, options: Sequence[str], default: str) -> str:
    return default


def static_prompter(answer: str) -> Prompter:
    """Always answer ``answer``, falling back to the default when it is not offered."""

    def prompt(question: str, options: Sequence[str], default: str) -> str:
        return answer if answer in options else default

    return prompt
