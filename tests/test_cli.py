"""Regression coverage for the ek8s command-line entry point."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from embedded_k8s_toolkit import cli, config
from embedded_k8s_toolkit.errors import OperationAborted, PreflightError
from embedded_k8s_toolkit.jetson.verify import CheckStatus


@pytest.fixture(autouse=True)
def no_system_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv(config.ENV_CONFIG, raising=False)
    monkeypatch.setattr(config, "SYSTEM_CONFIG", tmp_path / "missing.toml")


@pytest.mark.parametrize(
    "argv",
    [
        ["jetson", "verify", "--json"],
        ["jetson", "factory-reset", "--image", "sd-blob.img"],
        ["nvram", "clean", "--dry-run"],
        ["k8s", "init", "--cni", "calico"],
        ["k8s", "addon", "knative"],
        ["tls", "cert", "--service", "registry", "--hostname", "r.local", "--ip", "10.0.0.5"],
        ["registry", "insecure", "10.0.0.5:5000"],
        ["gitea", "install", "--dry-run"],
        ["gitea", "tls", "--cert", "gitea.crt", "--key", "gitea.key"],
        ["k8s", "addon", "argocd"],
    ],
)
def test_parser_accepts_documented_commands(argv: list[str]) -> None:
    args = cli.build_parser().parse_args(argv)
    assert callable(args.handler)


def test_missing_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 1
    assert cli.main(["k8s"]) == 1
    assert "usage: ek8s" in capsys.readouterr().out


def test_shared_flags_reach_the_context(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = []
    monkeypatch.setattr(cli.nvram, "inspect_nvram", seen.append)

    assert cli.main(["nvram", "inspect", "--dry-run", "--assume-yes", "--no-tutorial"]) == 0

    ctx = seen[0]
    assert ctx.dry_run is True
    assert ctx.prompter.assume_yes is True
    assert ctx.console.tutorial is False


def test_toolkit_errors_become_exit_one(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def boom(_ctx):
        raise PreflightError("This script must be run with root privileges.")

    monkeypatch.setattr(cli.node_setup, "install_deps", boom)

    assert cli.main(["k8s", "deps", "--no-color"]) == 1
    assert "error: This script must be run with root privileges." in capsys.readouterr().err


@pytest.mark.parametrize("exit_code", [0, 1])
def test_aborts_keep_their_exit_code(monkeypatch: pytest.MonkeyPatch, exit_code: int) -> None:
    def abort(_ctx, _image):
        raise OperationAborted("Operation cancelled.", exit_code=exit_code)

    monkeypatch.setattr(cli.recovery, "reimage_microsd", abort)

    assert cli.main(["jetson", "reimage-microsd", "--no-color"]) == exit_code


def test_nvram_clean_fails_when_entries_remain(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli.nvram, "clean_nvram", lambda _ctx: (["0009"], ["000A"]))
    assert cli.main(["nvram", "clean"]) == 1

    monkeypatch.setattr(cli.nvram, "clean_nvram", lambda _ctx: (["0009"], []))
    assert cli.main(["nvram", "clean"]) == 0


def test_verify_exit_code_follows_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    results = [SimpleNamespace(status=CheckStatus.PASS), SimpleNamespace(status=CheckStatus.FAIL)]
    calls = []

    def fake_verify(_ctx, *, as_json):
        calls.append(as_json)
        return results

    monkeypatch.setattr(cli.verify, "verify_setup", fake_verify)

    assert cli.main(["jetson", "verify", "--json"]) == 1
    assert calls == [True]


def test_tls_cert_arguments_are_forwarded(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = {}
    monkeypatch.setattr(cli.tls, "generate_cert", lambda _ctx, **kwargs: seen.update(kwargs))

    argv = ["tls", "cert", "--service", "gitea", "--hostname", "git.local", "--ip", "10.0.0.7"]
    assert cli.main([*argv, "--days", "90"]) == 0

    assert seen == {
        "service": "gitea",
        "hostname": "git.local",
        "ip": "10.0.0.7",
        "ca_cert": None,
        "ca_key": None,
        "days": 90,
    }


def test_invalid_configuration_is_reported(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[registry]\nport = 70000\n", encoding="utf-8")

    assert cli.main(["registry", "install", "--config", str(path)]) == 1
    assert "error: Invalid configuration" in capsys.readouterr().err
