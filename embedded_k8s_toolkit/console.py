"""Tutorial-style terminal output and confirmation prompts."""

from __future__ import annotations

import os
import sys
import textwrap
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import TextIO

from .errors import OperationAborted

BORDER = "=-" * 39 + "="

_RESET = "\033[0m"
_RED = "\033[0;31m"
_GREEN = "\033[0;32m"
_YELLOW = "\033[0;33m"
_BLUE = "\033[0;34m"


def _color_default(stream: TextIO) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class Console:
    """Print runbook progress the way the operator reads it on a serial console."""

    def __init__(
        self,
        *,
        stream: TextIO | None = None,
        err_stream: TextIO | None = None,
        color: bool | None = None,
        tutorial: bool = True,
    ):
        self._stream = stream
        self._err_stream = err_stream
        self._color = color
        self.tutorial = tutorial
        self._commands_to_stderr = False

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    @property
    def err_stream(self) -> TextIO:
        return self._err_stream or sys.stderr

    def _paint(self, text: str, color: str, stream: TextIO) -> str:
        enabled = self._color if self._color is not None else _color_default(stream)
        if not enabled:
            return text
        return f"{color}{text}{_RESET}"

    def echo(self, message: str = "") -> None:
        print(message, file=self.stream, flush=True)

    def border(self, title: str) -> None:
        self.echo()
        self.echo(BORDER)
        self.echo(f" {title}")
        self.echo(BORDER)

    def success(self, message: str) -> None:
        self.echo(self._paint(f"[OK] {message}", _GREEN, self.stream))

    def info(self, message: str) -> None:
        self.echo(self._paint(f"[INFO] {message}", _YELLOW, self.stream))

    def warn(self, message: str) -> None:
        self.echo(self._paint(f"[WARN] {message}", _YELLOW, self.stream))

    def error(self, message: str) -> None:
        stream = self.err_stream
        print(self._paint(f"[ERROR] {message}", _RED, stream), file=stream, flush=True)

    def step(self, message: str) -> None:
        self.echo(f"==> {message}")

    def command(self, printable: str) -> None:
        if self._commands_to_stderr:
            print(f"$ {printable}", file=self.err_stream, flush=True)
            return
        self.echo(f"$ {printable}")

    @contextmanager
    def commands_on_stderr(self) -> Iterator[None]:
        """Echo ``$ command`` lines to stderr while stdout carries a report."""

        previous = self._commands_to_stderr
        self._commands_to_stderr = True
        try:
            yield
        finally:
            self._commands_to_stderr = previous

    def dry_run(self, printable: str) -> None:
        self.step(f"DRY-RUN: {printable}")

    def explain(self, text: str) -> None:
        """Print a tutorial paragraph unless ``--no-tutorial`` was given."""

        if not self.tutorial:
            return
        for line in textwrap.dedent(text).strip().splitlines():
            self.echo(self._paint(f"  {line}" if line else "", _BLUE, self.stream))

    def next_steps(self, lines: Iterable[str]) -> None:
        self.echo()
        self.echo("Next steps:")
        for number, line in enumerate(lines, start=1):
            self.echo(f"  {number}. {line}")


class Prompter:
    """Collect operator answers, aborting on anything but the expected reply."""

    def __init__(
        self,
        *,
        input_fn: Callable[[str], str] = input,
        assume_yes: bool = False,
        console: Console | None = None,
    ):
        self._input = input_fn
        self.assume_yes = assume_yes
        self.console = console or Console()

    def _read(self, prompt: str) -> str:
        try:
            return self._input(f"> {prompt} ").strip()
        except EOFError:
            raise OperationAborted("No confirmation input received; aborting.") from None

    def ask(self, prompt: str, default: str | None = None) -> str:
        if default is not None:
            if self.assume_yes:
                return default
            answer = self._read(f"{prompt} [{default}]:")
            return answer or default
        return self._read(f"{prompt}:")

    def confirm_phrase(
        self,
        prompt: str,
        phrase: str,
        *,
        abort_message: str = "Confirmation failed. Operation cancelled.",
    ) -> None:
        """Require the operator to type ``phrase`` exactly."""

        if self.assume_yes:
            self.console.info(f"Assuming '{phrase}' due to --assume-yes.")
            return
        if self._read(f"{prompt} Type '{phrase}' to continue:") != phrase:
            raise OperationAborted(abort_message, exit_code=1)

    def accept(self, prompt: str) -> bool:
        """Return ``True`` only when the operator types ``yes``."""

        if self.assume_yes:
            return True
        return self._read(f"{prompt} (yes/no):") == "yes"

    def confirm_yes(
        self,
        prompt: str,
        *,
        abort_message: str = "Operation cancelled.",
        exit_code: int = 0,
    ) -> None:
        if not self.accept(prompt):
            raise OperationAborted(abort_message, exit_code=exit_code)

    def agree(self, prompt: str) -> bool:
        """Return ``True`` when the operator answers ``Y``/``y``."""

        if self.assume_yes:
            return True
        return self._read(f"{prompt} (y/N):") in {"Y", "y"}

    def confirm_yn(
        self,
        prompt: str,
        *,
        abort_message: str = "Operation cancelled.",
        exit_code: int = 0,
    ) -> None:
        if not self.agree(prompt):
            raise OperationAborted(abort_message, exit_code=exit_code)
