"""
Input sources — where plan answers come from.

Every question has a stable key (``domain``, ``ssh_port``, ...) so the
same plan can be driven interactively, from preset answers in
vpsdeploy.yml, or fully non-interactively with ``--yes``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping

import click

logger = logging.getLogger(__name__)

_TRUE = {"y", "yes", "true", "1", "on"}
_FALSE = {"n", "no", "false", "0", "off"}


def parse_bool(value: str, default: bool) -> bool:
    """Interpret a y/n style answer; empty or unknown falls back to ``default``."""
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    return default


class InputSource(ABC):
    """Collects answers to plan questions."""

    # Whether a rejected answer can be asked again
    interactive = False

    def reject(self, key: str, message: str) -> None:
        """Tell the operator why an answer was not accepted."""
        logger.debug("Rejected answer for %s: %s", key, message)

    @abstractmethod
    def ask(self, key: str, prompt: str, default: str = "", secret: bool = False) -> str:
        """Ask a free-form question; returns the answer or the default."""

    @abstractmethod
    def confirm(self, key: str, prompt: str, default: bool = True) -> bool:
        """Ask a yes/no question."""


class ScriptedInput(InputSource):
    """Non-interactive answers (``--yes`` mode and tests).

    Keys present in ``answers`` are used as-is; every other question
    takes its default. Questions asked are recorded in ``asked``.
    """

    def __init__(self, answers: Mapping[str, str] | None = None):
        self.answers = dict(answers or {})
        self.asked: list[str] = []

    def ask(self, key: str, prompt: str, default: str = "", secret: bool = False) -> str:
        self.asked.append(key)
        value = self.answers.get(key)
        if value is None or value == "":
            return default
        return value

    def confirm(self, key: str, prompt: str, default: bool = True) -> bool:
        self.asked.append(key)
        value = self.answers.get(key)
        if value is None:
            return default
        return parse_bool(value, default)


class ConsoleInput(InputSource):
    """Interactive prompts on the terminal, skipping preset answers."""

    interactive = True

    def __init__(self, presets: Mapping[str, str] | None = None):
        self.presets = dict(presets or {})

    def reject(self, key: str, message: str) -> None:
        # A bad preset would be rejected forever; fall back to prompting
        self.presets.pop(key, None)
        click.secho(f"   ✗ {message}", fg="red", err=True)

    def ask(self, key: str, prompt: str, default: str = "", secret: bool = False) -> str:
        if key in self.presets:
            logger.debug("Using preset answer for %s", key)
            return self.presets[key]
        value = click.prompt(
            prompt,
            default=default,
            show_default=bool(default) and not secret,
            hide_input=secret,
        )
        return str(value).strip()

    def confirm(self, key: str, prompt: str, default: bool = True) -> bool:
        if key in self.presets:
            logger.debug("Using preset answer for %s", key)
            return parse_bool(self.presets[key], default)
        return click.confirm(prompt, default=default)
