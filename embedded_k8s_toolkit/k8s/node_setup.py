"""Prepare a node for kubeadm: kernel settings, containerd, kube packages."""

from __future__ import annotations

import re
from pathlib import Path

from .. import download, preflight
from ..context import Context
from ..errors import PreflightError

MODULES_CONF = Path("/etc/modules-load.d/k8s.conf")
SYSCTL_CONF = Path("/etc/sysctl.d/k8s.conf")
CONTAINERD_CONF = Path("/etc/containerd/config.toml")
KEYRING_DIR = Path("/etc/apt/keyrings")
KEYRING = KEYRING_DIR / "kubernetes-apt-keyring.gpg"
APT_SOURCE = Path("/etc/apt/sources.list.d/kubernetes.list")

KERNEL_MODULES = ("overlay", "br_netfilter")
SYSCTL_SETTINGS = {
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.bridge.bridge-nf-call-iptables": "1",
    "net.ipv4.ip_forward": "1",
}
KUBE_PACKAGES = ("kubelet", "kubeadm", "kubectl")
APT_PREREQUISITES = ("apt-transport-https", "ca-certificates", "curl", "gpg")


def repository_url(version: str) -> str:
    return f"https://pkgs.k8s.io/core:/stable:/{version}/deb/"


def apt_source_line(version: str) -> str:
    return f"deb [signed-by={KEYRING}] {repository_url(version)} /\n"


def render_sysctl() -> str:
    return "".join(f"{key} = {value}\n" for key, value in SYSCTL_SETTINGS.items())


def enable_systemd_cgroup(config: str) -> str:
    """Switch the runc runtime to the systemd cgroup driver kubelet expects."""

    return re.sub(r"SystemdCgroup\s*=\s*false", "SystemdCgroup = true", config)


def install_deps(ctx: Context) -> None:
    console, runner = ctx.console, ctx.runner
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    if preflight.swap_active(runner):
        raise PreflightError(
            "Swap is enabled. Kubernetes requires swap to be disabled. "
            "Run 'ek8s jetson headless' or 'swapoff -a' first."
        )
    console.success("Swap is disabled.")

    console.border("Step 1: Kernel Modules and Networking")
    console.explain(
        """
        overlay backs container image layers. br_netfilter lets iptables see
        bridged pod traffic, which kube-proxy and most CNIs depend on.
        """
    )
    runner.write_text(MODULES_CONF, "".join(f"{name}\n" for name in KERNEL_MODULES))
    for name in KERNEL_MODULES:
        runner.run(["modprobe", name])
    runner.write_text(SYSCTL_CONF, render_sysctl())
    runner.run(["sysctl", "--system"])
    console.success("Kernel modules loaded and sysctl parameters applied.")

    console.border("Step 2: Container Runtime (containerd)")
    runner.run(["apt-get", "update"])
    runner.run(["apt-get", "install", "-y", "containerd"])
    default_config = runner.capture(["containerd", "config", "default"], read_only=False)
    runner.write_text(CONTAINERD_CONF, enable_systemd_cgroup(default_config) + "\n")
    runner.run(["systemctl", "restart", "containerd"])
    runner.run(["systemctl", "enable", "containerd"])
    console.success("containerd installed with the systemd cgroup driver.")
    console.next_steps(["Run: sudo ek8s k8s kube"])


def install_kube(ctx: Context) -> None:
    console, runner = ctx.console, ctx.runner
    version = ctx.settings.kubernetes.version
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")

    console.border("Step 1: Installing kubeadm, kubelet, and kubectl")
    console.info("Adding Kubernetes APT repository...")
    runner.run(["apt-get", "update"])
    runner.run(["apt-get", "install", "-y", *APT_PREREQUISITES])
    runner.run(["mkdir", "-p", "-m", "755", str(KEYRING_DIR)])
    key_url = f"{repository_url(version)}Release.key"
    if ctx.dry_run:
        console.dry_run(f"download {key_url}")
        armored = ""
    else:
        armored = download.fetch_text(key_url)
    runner.run(
        ["gpg", "--batch", "--yes", "--dearmor", "-o", str(KEYRING)], input_text=armored
    )
    runner.write_text(APT_SOURCE, apt_source_line(version))
    console.success(f"Kubernetes {version} repository added.")

    console.info("Installing kubelet, kubeadm, and kubectl...")
    runner.run(["apt-get", "update"])
    runner.run(["apt-get", "install", "-y", *KUBE_PACKAGES])
    runner.run(["apt-mark", "hold", *KUBE_PACKAGES])
    console.success("Kubernetes packages installed and version-held.")

    console.border("Kubernetes Tool Installation Complete")
    console.next_steps(
        [
            "To initialize the cluster: sudo ek8s k8s init",
            "To join an existing cluster: sudo ek8s k8s join",
        ]
    )
