"""Shared fixtures: a scripted ``subprocess.run`` and a context factory."""

from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from embedded_k8s_toolkit import preflight, runner  # noqa: E402
from embedded_k8s_toolkit.config import Settings  # noqa: E402
from embedded_k8s_toolkit.context import Context  # noqa: E402


@dataclass
class Call:
    command: list[str]
    kwargs: dict[str, Any]

    @property
    def input(self) -> str | None:
        return self.kwargs.get("input")

    @property
    def env(self) -> dict[str, str] | None:
        return self.kwargs.get("env")


@dataclass
class FakeSubprocess:
    """Record every command and answer from responses registered by prefix."""

    calls: list[Call] = field(default_factory=list)
    responses: list[tuple[tuple[str, ...], list[str], int, str]] = field(default_factory=list)

    def respond(
        self,
        prefix: list[str],
        stdout: str | list[str] = "",
        *,
        returncode: int = 0,
        stderr: str = "",
    ) -> None:
        """Later registrations win; a list of outputs is consumed in order."""

        outputs = [stdout] if isinstance(stdout, str) else list(stdout)
        self.responses.insert(0, (tuple(prefix), outputs, returncode, stderr))

    def __call__(self, command, **kwargs) -> subprocess.CompletedProcess[str]:
        command = list(command)
        self.calls.append(Call(command, kwargs))
        for prefix, outputs, returncode, stderr in self.responses:
            if tuple(command[: len(prefix)]) == prefix:
                stdout = outputs.pop(0) if len(outputs) > 1 else outputs[0]
                return subprocess.CompletedProcess(command, returncode, stdout, stderr)
        return subprocess.CompletedProcess(command, 0, "", "")

    @property
    def commands(self) -> list[list[str]]:
        return [call.command for call in self.calls]

    def ran(self, *prefix: str) -> bool:
        return any(tuple(command[: len(prefix)]) == prefix for command in self.commands)

    def find(self, *prefix: str) -> Call:
        for call in self.calls:
            if tuple(call.command[: len(prefix)]) == prefix:
                return call
        raise AssertionError(f"no call starting with {prefix!r}; saw {self.commands!r}")


@pytest.fixture()
def fake_run(monkeypatch: pytest.MonkeyPatch) -> FakeSubprocess:
    fake = FakeSubprocess()
    monkeypatch.setattr(runner.subprocess, "run", fake)
    monkeypatch.setattr(runner.time, "sleep", lambda _seconds: None)
    return fake


@pytest.fixture()
def as_root(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(preflight.os, "geteuid", lambda: 0)


@pytest.fixture()
def tools_present(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(preflight.shutil, "which", lambda name: f"/usr/bin/{name}")


@pytest.fixture()
def sudo_user(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Pretend ``sudo`` was invoked by ``pilot`` whose home lives in ``tmp_path``."""

    home = tmp_path / "home" / "pilot"
    home.mkdir(parents=True)
    monkeypatch.setenv("SUDO_USER", "pilot")
    monkeypatch.setattr(
        preflight.pwd,
        "getpwnam",
        lambda name: SimpleNamespace(pw_dir=str(home), pw_uid=1000, pw_gid=1000),
    )
    return home


@pytest.fixture()
def make_context() -> Callable[..., Context]:
    def factory(
        settings: Settings | None = None,
        *,
        answers: list[str] | tuple[str, ...] = (),
        dry_run: bool = False,
        assume_yes: bool = False,
    ) -> Context:
        queue = list(answers)

        def input_fn(prompt: str) -> str:
            if not queue:
                raise EOFError
            return queue.pop(0)

        return Context.create(
            settings,
            dry_run=dry_run,
            assume_yes=assume_yes,
            tutorial=True,
            color=False,
            input_fn=input_fn,
        )

    return factory
