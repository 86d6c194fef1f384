"""Utility helpers for running subprocesses consistently."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .console import Console
from .errors import ToolkitError


@dataclass(slots=True)
class CommandError(ToolkitError):
    """Raised when a subprocess exits with a non-zero status."""

    command: Sequence[str]
    returncode: int
    stderr: str | None = None

    def __str__(self) -> str:
        message = f"{format_command(self.command)} exited with status {self.returncode}"
        if self.stderr:
            stderr = self.stderr.strip()
            if stderr:
                message = f"{message}\n{stderr}"
        return message


def format_command(command: Sequence[str]) -> str:
    """Render a subprocess command for display or logging."""

    return " ".join(shlex.quote(part) for part in command)


def _merge_env(env: Mapping[str, str] | None) -> Mapping[str, str] | None:
    if env is None:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


class CommandRunner:
    """Execute external tools with optional dry-run support.

    Mutating commands go through :meth:`run` and are only printed when
    ``dry_run`` is set. Read-only queries (``findmnt``, ``lsblk``, ``blkid``)
    go through :meth:`capture` and always execute so a dry run reports the
    machine's real state.
    """

    def __init__(
        self,
        *,
        dry_run: bool = False,
        console: Console | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.dry_run = dry_run
        self.console = console or Console()
        self._env = _merge_env(env)

    def run(
        self,
        command: Sequence[str],
        *,
        input_text: str | None = None,
        check: bool = True,
        capture_stderr: bool = True,
        env: Mapping[str, str] | None = None,
        cwd: os.PathLike[str] | str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        printable = format_command(command)
        if self.dry_run:
            self.console.dry_run(printable)
            return subprocess.CompletedProcess(list(command), 0, "", "")
        self.console.command(printable)
        result = self._spawn(
            command,
            input_text=input_text,
            stderr=subprocess.PIPE if capture_stderr else None,
            env=env,
            cwd=cwd,
        )
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, stderr=result.stderr)
        return result

    def capture(
        self,
        command: Sequence[str],
        *,
        read_only: bool = True,
        check: bool = True,
        input_text: str | None = None,
    ) -> str:
        """Return the stripped stdout of ``command``.

        Captures that change state (``kubeadm token create``) pass
        ``read_only=False`` and are skipped during a dry run.
        """

        if self.dry_run and not read_only:
            self.console.dry_run(format_command(command))
            return ""
        result = self._spawn(
            command,
            input_text=input_text,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, stderr=result.stderr)
        return (result.stdout or "").strip()

    def succeeds(self, command: Sequence[str]) -> bool:
        """Run ``command`` quietly and report whether it exited cleanly."""

        result = self._spawn(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        return result.returncode == 0

    def json(self, command: Sequence[str]) -> Any:
        output = self.capture(command)
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise ToolkitError(
                f"Failed to parse JSON output from command: {format_command(command)}"
            ) from exc

    def write_text(self, path: Path, content: str, *, mode: int | None = None) -> None:
        if self.dry_run:
            self.console.dry_run(f"write {path}")
            return
        self.console.step(f"Writing {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        if mode is not None:
            path.chmod(mode)

    def write_bytes(self, path: Path, content: bytes, *, mode: int | None = None) -> None:
        if self.dry_run:
            self.console.dry_run(f"write {path}")
            return
        self.console.step(f"Writing {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        if mode is not None:
            path.chmod(mode)

    def pause(self, seconds: float) -> None:
        if self.dry_run:
            return
        time.sleep(seconds)

    def _spawn(
        self,
        command: Sequence[str],
        *,
        input_text: str | None = None,
        stdout: int | None = None,
        stderr: int | None = None,
        env: Mapping[str, str] | None = None,
        cwd: os.PathLike[str] | str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        process_env = self._env
        if env is not None:
            process_env = {**(self._env or os.environ), **env}
        try:
            return subprocess.run(
                list(command),
                check=False,
                text=True,
                input=input_text,
                stdout=stdout,
                stderr=stderr,
                env=process_env,
                cwd=str(cwd) if cwd is not None else None,
            )
        except FileNotFoundError:
            return subprocess.CompletedProcess(
                list(command), 127, "", f"{command[0]}: command not found"
            )
