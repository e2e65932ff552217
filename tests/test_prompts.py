from __future__ import annotations

from types import SimpleNamespace

import pytest

from vcluster_platform_ops.prompts import PromptError, default_prompter, interactive_prompter, static_prompter

OPTIONS = ("Yes", "No")


def test_default_prompter_returns_default() -> None:
    assert default_prompter("continue?", OPTIONS, "No") == "No"


def test_static_prompter_with_unknown_answer_falls_back_to_default() -> None:
    assert static_prompter("Yes")("continue?", OPTIONS, "No") == "Yes"
    assert static_prompter("Maybe")("continue?", OPTIONS, "No") == "No"


def test_interactive_prompter_returns_selected_option(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_select(question: str, **kwargs: object) -> SimpleNamespace:
        captured["question"] = question
        captured.update(kwargs)
        return SimpleNamespace(unsafe_ask=lambda: "No")

    monkeypatch.setattr("vcluster_platform_ops.prompts.questionary.select", fake_select)

    assert interactive_prompter("continue?", OPTIONS, "Yes") == "No"
    assert captured["choices"] == ["Yes", "No"]
    assert captured["default"] == "Yes"


def test_interactive_prompter_with_empty_answer_raises_prompt_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "vcluster_platform_ops.prompts.questionary.select",
        lambda question, **_kwargs: SimpleNamespace(unsafe_ask=lambda: None),
    )

    with pytest.raises(PromptError, match="no option was selected"):
        interactive_prompter("continue?", OPTIONS, "Yes")


def test_interactive_prompter_without_terminal_raises_prompt_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def closed_stdin(question: str, **_kwargs: object) -> SimpleNamespace:
        raise EOFError("stdin closed")

    monkeypatch.setattr("vcluster_platform_ops.prompts.questionary.select", closed_stdin)

    with pytest.raises(PromptError, match="failed to capture your response: stdin closed"):
        interactive_prompter("continue?", OPTIONS, "Yes")


def test_interactive_prompter_with_ctrl_c_propagates_keyboard_interrupt(monkeypatch: pytest.MonkeyPatch) -> None:
    def interrupted() -> str:
        raise KeyboardInterrupt

    monkeypatch.setattr(
        "vcluster_platform_ops.prompts.questionary.select",
        lambda question, **_kwargs: SimpleNamespace(unsafe_ask=interrupted),
    )

    with pytest.raises(KeyboardInterrupt):
        interactive_prompter("continue?", OPTIONS, "Yes")
