"""containerd/kernel prerequisites and kube package installation."""

from __future__ import annotations

from pathlib import Path

import pytest

from embedded_k8s_toolkit.errors import PreflightError
from embedded_k8s_toolkit.k8s import node_setup

CONTAINERD_DEFAULT = """\
[plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]
            SystemdCgroup = false
"""


@pytest.fixture()
def etc(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setattr(node_setup, "MODULES_CONF", tmp_path / "modules-load.d" / "k8s.conf")
    monkeypatch.setattr(node_setup, "SYSCTL_CONF", tmp_path / "sysctl.d" / "k8s.conf")
    monkeypatch.setattr(node_setup, "CONTAINERD_CONF", tmp_path / "containerd" / "config.toml")
    monkeypatch.setattr(node_setup, "APT_SOURCE", tmp_path / "kubernetes.list")
    return tmp_path


def test_enable_systemd_cgroup() -> None:
    assert "SystemdCgroup = true" in node_setup.enable_systemd_cgroup(CONTAINERD_DEFAULT)
    assert "false" not in node_setup.enable_systemd_cgroup("SystemdCgroup=false")


def test_apt_source_line_pins_minor_version() -> None:
    line = node_setup.apt_source_line("v1.30")

    assert line == (
        "deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] "
        "https://pkgs.k8s.io/core:/stable:/v1.30/deb/ /\n"
    )


def test_install_deps_writes_kernel_and_runtime_config(
    fake_run, make_context, as_root, etc
) -> None:
    fake_run.respond(["swapon"], "")
    fake_run.respond(["containerd", "config", "default"], CONTAINERD_DEFAULT)

    node_setup.install_deps(make_context())

    assert (etc / "modules-load.d" / "k8s.conf").read_text() == "overlay\nbr_netfilter\n"
    sysctl = (etc / "sysctl.d" / "k8s.conf").read_text()
    assert "net.ipv4.ip_forward = 1" in sysctl
    assert "SystemdCgroup = true" in (etc / "containerd" / "config.toml").read_text()
    assert fake_run.ran("modprobe", "br_netfilter")
    assert fake_run.ran("apt-get", "install", "-y", "containerd")
    assert fake_run.commands[-1] == ["systemctl", "enable", "containerd"]


def test_install_deps_refuses_with_swap(fake_run, make_context, as_root, etc) -> None:
    fake_run.respond(["swapon"], "/swapfile file 2G 0B -2\n")

    with pytest.raises(PreflightError, match="Swap is enabled"):
        node_setup.install_deps(make_context())

    assert not fake_run.ran("modprobe")


def test_install_kube_adds_repository_and_holds_packages(
    fake_run, make_context, as_root, etc, monkeypatch: pytest.MonkeyPatch
) -> None:
    fetched: list[str] = []

    def fake_fetch(url: str) -> str:
        fetched.append(url)
        return "-----BEGIN PGP PUBLIC KEY BLOCK-----\n"

    monkeypatch.setattr(node_setup.download, "fetch_text", fake_fetch)

    node_setup.install_kube(make_context())

    assert fetched == ["https://pkgs.k8s.io/core:/stable:/v1.30/deb/Release.key"]
    gpg = fake_run.find("gpg")
    assert gpg.input.startswith("-----BEGIN PGP")
    assert "v1.30" in (etc / "kubernetes.list").read_text()
    assert fake_run.commands[-1] == ["apt-mark", "hold", "kubelet", "kubeadm", "kubectl"]


def test_install_kube_dry_run_skips_download(
    fake_run, make_context, as_root, etc, monkeypatch: pytest.MonkeyPatch, capsys
) -> None:
    def boom(url: str) -> str:
        raise AssertionError("download attempted during dry run")

    monkeypatch.setattr(node_setup.download, "fetch_text", boom)

    node_setup.install_kube(make_context(dry_run=True))

    assert fake_run.calls == []
    assert "DRY-RUN: download https://pkgs.k8s.io" in capsys.readouterr().out
