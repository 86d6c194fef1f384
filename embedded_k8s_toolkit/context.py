"""Bundle the collaborators every runbook needs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from .config import Settings
from .console import Console, Prompter
from .runner import CommandRunner


@dataclass(slots=True)
class Context:
    console: Console
    runner: CommandRunner
    prompter: Prompter
    settings: Settings = field(default_factory=Settings)

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        dry_run: bool = False,
        assume_yes: bool = False,
        tutorial: bool = True,
        color: bool | None = None,
        input_fn: Callable[[str], str] = input,
    ) -> "Context":
        console = Console(color=color, tutorial=tutorial)
        return cls(
            console=console,
            runner=CommandRunner(dry_run=dry_run, console=console),
            prompter=Prompter(input_fn=input_fn, assume_yes=assume_yes, console=console),
            settings=settings or Settings(),
        )
