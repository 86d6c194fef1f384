"""Stage Flannel or Calico before ``kubeadm init`` and apply them after."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path

from .. import download, preflight
from ..context import Context
from ..errors import PreflightError, ToolkitError
from .kubectl import Kubectl

CNI_CONF_DIR = Path("/etc/cni/net.d")
CNI_BIN_DIR = Path("/opt/cni/bin")

FLANNEL_CONFLIST = {
    "name": "cbr0",
    "cniVersion": "0.3.1",
    "plugins": [
        {"type": "flannel", "delegate": {"hairpinMode": True, "isDefaultGateway": True}},
        {"type": "portmap", "capabilities": {"portMappings": True}},
    ],
}

# mtu 0 lets calico-node detect the MTU; the operator rewrites this file on start.
CALICO_CONFLIST = {
    "name": "k8s-pod-network",
    "cniVersion": "0.3.1",
    "plugins": [
        {
            "type": "calico",
            "log_level": "info",
            "datastore_type": "kubernetes",
            "nodename": "__KUBERNETES_NODE_NAME__",
            "mtu": 0,
            "ipam": {"type": "calico-ipam"},
            "policy": {"type": "k8s"},
            "kubernetes": {"kubeconfig": "__KUBECONFIG_FILEPATH__"},
        },
        {"type": "portmap", "snat": True, "capabilities": {"portMappings": True}},
        {"type": "bandwidth", "capabilities": {"bandwidth": True}},
    ],
}


@dataclass(frozen=True, slots=True)
class CniPlugin:
    name: str
    conflist_name: str
    conflist: dict
    summary: str

    def manifests(self, version: str) -> dict[str, str]:
        """Map staged file names to upstream URLs, in apply order."""

        if self.name == "flannel":
            base = f"https://github.com/flannel-io/flannel/releases/download/{version}"
            return {"10-kube-flannel.yml": f"{base}/kube-flannel.yml"}
        base = f"https://raw.githubusercontent.com/projectcalico/calico/{version}/manifests"
        return {
            "10-tigera-operator.yaml": f"{base}/tigera-operator.yaml",
            "20-custom-resources.yaml": f"{base}/custom-resources.yaml",
        }

    def patch(self, manifest: str, cidr: str) -> str:
        if self.name == "flannel":
            return re.sub(r'"Network": "[^"]*"', f'"Network": "{cidr}"', manifest)
        return re.sub(r"cidr: 192\.168\.0\.0/16", f"cidr: {cidr}", manifest)


PLUGINS = {
    "flannel": CniPlugin(
        "flannel", "10-flannel.conflist", FLANNEL_CONFLIST, "Backend: VXLAN (UDP port 8472)"
    ),
    "calico": CniPlugin(
        "calico", "00-calico.conflist", CALICO_CONFLIST, "Installation Mode: Tigera Operator"
    ),
}


def cni_present() -> bool:
    return preflight.directory_has_entries(CNI_CONF_DIR) or preflight.directory_has_entries(
        CNI_BIN_DIR
    )


def install_cni(ctx: Context, name: str) -> list[Path]:
    """Download, patch and stage the manifests for ``name``; write its conflist."""

    try:
        plugin = PLUGINS[name]
    except KeyError:
        raise ToolkitError(f"Unknown CNI plugin: {name}") from None
    console, runner = ctx.console, ctx.runner
    version = getattr(ctx.settings.versions, plugin.name)
    cidr = ctx.settings.kubernetes.pod_network_cidr
    manifest_dir = ctx.settings.kubernetes.manifest_dir

    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_tool(
        "kubeadm", "kubeadm is not installed. Run 'ek8s k8s deps' and 'ek8s k8s kube' first."
    )
    console.success("Kubernetes tools are installed.")
    if preflight.directory_has_entries(CNI_CONF_DIR):
        existing = ", ".join(sorted(path.name for path in CNI_CONF_DIR.iterdir()))
        raise PreflightError(
            f"A CNI plugin appears to be already installed ({existing} in {CNI_CONF_DIR}). "
            "Installing multiple CNI plugins will cause conflicts."
        )
    console.success("No conflicting CNI installation detected.")

    console.border(f"Step 1: Stage {plugin.name.title()} {version} Manifests")
    staged: list[Path] = []
    for filename, url in plugin.manifests(version).items():
        target = manifest_dir / filename
        if ctx.dry_run:
            console.dry_run(f"download {url}")
        else:
            console.info(f"Downloading {url}...")
        manifest = "" if ctx.dry_run else plugin.patch(download.fetch_text(url), cidr)
        runner.write_text(target, manifest, mode=0o644)
        staged.append(target)
    console.success(f"Manifests patched for pod network {cidr}.")

    console.border("Step 2: Prepare CNI Configuration")
    runner.write_text(
        CNI_CONF_DIR / plugin.conflist_name,
        json.dumps(plugin.conflist, indent=2) + "\n",
        mode=0o644,
    )
    console.success("CNI configuration file created.")

    console.border(f"{plugin.name.title()} CNI Installation Complete")
    console.echo(f"  CNI Plugin:        {plugin.name.title()} {version}")
    console.echo(f"  Pod Network CIDR:  {cidr}")
    console.echo(f"  {plugin.summary}")
    console.next_steps(
        [
            f"Initialize the cluster: sudo ek8s k8s init (pod CIDR {cidr})",
            f"The staged manifests in {manifest_dir} are applied after kubeadm init.",
        ]
    )
    return staged


def install_flannel(ctx: Context) -> list[Path]:
    return install_cni(ctx, "flannel")


def install_calico(ctx: Context) -> list[Path]:
    return install_cni(ctx, "calico")


def staged_manifests(manifest_dir: Path) -> list[Path]:
    if not manifest_dir.is_dir():
        return []
    return sorted(
        path for path in manifest_dir.iterdir() if path.suffix in {".yml", ".yaml"}
    )


def apply_staged_manifests(ctx: Context, kubectl: Kubectl) -> list[Path]:
    manifests = staged_manifests(ctx.settings.kubernetes.manifest_dir)
    for manifest in manifests:
        kubectl.run("create", "-f", str(manifest))
    return manifests
