from __future__ import annotations

import logging
import sys
from typing import Iterable, Protocol

from .errors import UnexpectedConfirmation


logger = logging.getLogger(__name__)


class Confirmer(Protocol):
    def confirm(self, prompt: str) -> bool: ...


class AutoConfirm:
    """Answers yes to everything (--yes)."""

    def confirm(self, prompt: str) -> bool:
        logger.debug("auto-confirmed: %s", prompt)
        return True


class ScriptedConfirm:
    """Replays a fixed sequence of answers; records every prompt asked."""

    def __init__(self, answers: Iterable[bool]) -> None:
        self._answers = list(answers)
        self.prompts: list[str] = []

    def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        if not self._answers:
            raise UnexpectedConfirmation(f"unexpected confirmation prompt: {prompt}")
        return self._answers.pop(0)


class TerminalConfirm:
    """Asks on the terminal. Declines when stdin is not interactive."""

    def confirm(self, prompt: str) -> bool:
        if not sys.stdin.isatty():
            logger.warning("%s: declined (not a terminal; rerun with --yes)", prompt)
            return False
        try:
            answer = input(f"{prompt} [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")
