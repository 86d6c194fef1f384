"""Tests for the subprocess runner."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from embedded_k8s_toolkit import runner
from embedded_k8s_toolkit.console import Console
from embedded_k8s_toolkit.errors import ToolkitError


def _runner(**kwargs) -> runner.CommandRunner:
    return runner.CommandRunner(console=Console(color=False), **kwargs)


def test_dry_run_prints_without_executing(fake_run, capsys) -> None:
    result = _runner(dry_run=True).run(["parted", "-s", "/dev/nvme0n1", "mklabel gpt"])

    assert result.returncode == 0
    assert fake_run.calls == []
    assert "==> DRY-RUN: parted -s /dev/nvme0n1 'mklabel gpt'" in capsys.readouterr().out


def test_run_echoes_command_and_raises_on_failure(fake_run, capsys) -> None:
    fake_run.respond(["efibootmgr"], returncode=5, stderr="Could not delete\n")

    with pytest.raises(runner.CommandError) as excinfo:
        _runner().run(["efibootmgr", "-b", "0009", "-B"])

    assert "$ efibootmgr -b 0009 -B" in capsys.readouterr().out
    message = str(excinfo.value)
    assert "exited with status 5" in message
    assert "Could not delete" in message


def test_run_without_check_returns_result(fake_run) -> None:
    fake_run.respond(["umount"], returncode=32)

    result = _runner().run(["umount", "/mnt/ssd_root"], check=False)

    assert result.returncode == 32


def test_read_only_capture_executes_during_dry_run(fake_run) -> None:
    fake_run.respond(["findmnt"], "/dev/nvme0n1p1\n")

    assert _runner(dry_run=True).capture(["findmnt", "-n", "-o", "SOURCE", "/"]) == (
        "/dev/nvme0n1p1"
    )
    assert fake_run.commands == [["findmnt", "-n", "-o", "SOURCE", "/"]]


def test_mutating_capture_is_skipped_during_dry_run(fake_run, capsys) -> None:
    output = _runner(dry_run=True).capture(
        ["kubeadm", "token", "create", "--print-join-command"], read_only=False
    )

    assert output == ""
    assert fake_run.calls == []
    assert "DRY-RUN: kubeadm token create" in capsys.readouterr().out


def test_input_and_env_are_forwarded(fake_run, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KEEP_ME", "1")

    _runner().run(["sh", "-"], input_text="echo hi\n", env={"ISTIO_VERSION": "1.20.0"}, cwd="/tmp")

    call = fake_run.calls[0]
    assert call.input == "echo hi\n"
    assert call.env["ISTIO_VERSION"] == "1.20.0"
    assert call.env["KEEP_ME"] == "1"
    assert call.kwargs["cwd"] == "/tmp"
    assert "ISTIO_VERSION" not in os.environ


def test_missing_binary_reports_status_127(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(*_args, **_kwargs):
        raise FileNotFoundError("efibootmgr")

    monkeypatch.setattr(runner.subprocess, "run", missing)

    assert _runner().succeeds(["efibootmgr"]) is False
    with pytest.raises(runner.CommandError) as excinfo:
        _runner().capture(["efibootmgr"])
    assert excinfo.value.returncode == 127


def test_json_parses_output_and_rejects_garbage(fake_run) -> None:
    fake_run.respond(["lsblk"], ['{"blockdevices": []}', "not json"])

    assert _runner().json(["lsblk", "-J"]) == {"blockdevices": []}
    with pytest.raises(ToolkitError, match="Failed to parse JSON"):
        _runner().json(["lsblk", "-J"])


def test_write_text_honours_dry_run(tmp_path: Path, capsys) -> None:
    target = tmp_path / "etc" / "hosts"

    _runner(dry_run=True).write_text(target, "127.0.1.1 jetson\n")
    assert not target.exists()
    assert f"DRY-RUN: write {target}" in capsys.readouterr().out

    _runner().write_text(target, "127.0.1.1 jetson\n", mode=0o600)
    assert target.read_text(encoding="utf-8") == "127.0.1.1 jetson\n"
    assert target.stat().st_mode & 0o777 == 0o600


def test_write_bytes_sets_mode(tmp_path: Path) -> None:
    target = tmp_path / "bin" / "argocd"

    _runner(dry_run=True).write_bytes(target, b"\x7fELF")
    assert not target.exists()

    _runner().write_bytes(target, b"\x7fELF", mode=0o755)
    assert target.read_bytes() == b"\x7fELF"
    assert target.stat().st_mode & 0o777 == 0o755


def test_pause_skips_sleep_during_dry_run(monkeypatch: pytest.MonkeyPatch) -> None:
    slept: list[float] = []
    monkeypatch.setattr(runner.time, "sleep", slept.append)

    _runner(dry_run=True).pause(3)
    _runner().pause(3)

    assert slept == [3]
