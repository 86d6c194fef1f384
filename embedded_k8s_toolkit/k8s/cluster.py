"""kubeadm cluster lifecycle: init, join, and node removal."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from .. import preflight
from ..context import Context
from ..errors import PreflightError, ToolkitError
from . import cni
from .kubectl import Kubectl, connect

ADMIN_CONF = Path("/etc/kubernetes/admin.conf")
CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
TOKEN_RE = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
CA_HASH_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
CERT_KEY_RE = re.compile(r"^[0-9a-f]{64}$")
DRAIN_SETTLE_SECONDS = 10


@dataclass(frozen=True, slots=True)
class JoinCommand:
    """A parsed ``kubeadm join`` invocation."""

    endpoint: str
    token: str
    ca_cert_hash: str
    control_plane: bool = False
    certificate_key: str | None = None

    def argv(self) -> list[str]:
        command = [
            "kubeadm",
            "join",
            self.endpoint,
            "--token",
            self.token,
            "--discovery-token-ca-cert-hash",
            self.ca_cert_hash,
        ]
        if self.control_plane:
            command.append("--control-plane")
            if self.certificate_key:
                command.extend(["--certificate-key", self.certificate_key])
        return command

    def render(self) -> str:
        return "sudo " + shlex.join(self.argv())

    def for_control_plane(self, certificate_key: str) -> "JoinCommand":
        return replace(self, control_plane=True, certificate_key=certificate_key)


def parse_join_command(text: str) -> JoinCommand:
    """Validate pasted ``kubeadm join`` output, tolerating ``sudo`` and line breaks."""

    if "kubeadm join" not in text:
        raise ToolkitError("Invalid input. The command must include 'kubeadm join'.")
    try:
        tokens = shlex.split(text.replace("\\\n", " "))
    except ValueError as exc:
        raise ToolkitError(f"Could not parse the join command: {exc}") from exc
    if tokens and tokens[0] == "sudo":
        tokens = tokens[1:]
    if tokens[:2] != ["kubeadm", "join"]:
        raise ToolkitError("The join command must start with 'kubeadm join'.")

    endpoint: str | None = None
    options: dict[str, str] = {}
    control_plane = False
    args = iter(tokens[2:])
    for arg in args:
        if arg == "--control-plane":
            control_plane = True
        elif arg.startswith("--"):
            name, sep, value = arg[2:].partition("=")
            if not sep:
                value = next(args, "")
            options[name] = value
        elif endpoint is None:
            endpoint = arg
        else:
            raise ToolkitError(f"Unexpected argument in join command: {arg}")

    if not endpoint:
        raise ToolkitError("The join command is missing the API server endpoint.")
    token = options.get("token", "")
    if not TOKEN_RE.match(token):
        raise ToolkitError("The join command is missing a valid --token.")
    ca_hash = options.get("discovery-token-ca-cert-hash", "")
    if not CA_HASH_RE.match(ca_hash):
        raise ToolkitError("The join command is missing a valid --discovery-token-ca-cert-hash.")
    certificate_key = options.get("certificate-key")
    if certificate_key is not None and not CERT_KEY_RE.match(certificate_key):
        raise ToolkitError("The --certificate-key value is not a 64 character hex key.")
    return JoinCommand(endpoint, token, ca_hash, control_plane, certificate_key)


def node_status(output: str, name: str | None = None) -> str | None:
    """STATUS column for ``name`` (or the first node) from ``kubectl get nodes``."""

    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and (name is None or fields[0] == name):
            return fields[1]
    return None


def _print_join_commands(ctx: Context) -> tuple[JoinCommand | None, JoinCommand | None]:
    console, runner = ctx.console, ctx.runner
    console.warn("SAVE THE FOLLOWING COMMANDS TO ADD MORE NODES TO THE CLUSTER")
    worker_text = runner.capture(
        ["kubeadm", "token", "create", "--print-join-command"], read_only=False
    )
    upload = runner.capture(
        ["kubeadm", "init", "phase", "upload-certs", "--upload-certs"], read_only=False
    )
    if ctx.dry_run:
        return None, None
    worker = parse_join_command(worker_text)
    lines = upload.splitlines()
    control_plane = worker.for_control_plane(lines[-1].strip()) if lines else None
    rule = "-" * 76
    console.echo("To add a NEW WORKER node, run this on the new node:")
    console.echo(rule)
    console.echo(worker.render())
    console.echo(rule)
    if control_plane is not None:
        console.echo("To add a NEW CONTROL PLANE node, run this on the new node:")
        console.echo(rule)
        console.echo(control_plane.render())
        console.echo(rule)
    console.info("These tokens are only valid for 24 hours. Run 'kubeadm token create' later.")
    return worker, control_plane


def bootstrap_cluster(ctx: Context, cni_plugin: str | None = None) -> JoinCommand | None:
    """Run ``kubeadm init`` on this node and hand kubectl to ``SUDO_USER``."""

    console, runner = ctx.console, ctx.runner
    cidr = ctx.settings.kubernetes.pod_network_cidr
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    user = preflight.target_user()
    console.success(f"Target user for kubectl config: {user.name}")
    preflight.require_tool(
        "kubeadm", "kubeadm is not installed. Run 'ek8s k8s deps' and 'ek8s k8s kube' first."
    )
    if cni_plugin:
        cni.install_cni(ctx, cni_plugin)
    elif not cni.cni_present():
        raise PreflightError(
            "No CNI plugin detected. Run 'ek8s k8s cni flannel' (or calico) first, "
            "or pass --cni."
        )
    console.success("CNI plugin detected.")

    console.border("Step 1: Initialize the Kubernetes Control Plane")
    addresses = runner.capture(["hostname", "-I"]).split()
    if not addresses:
        raise PreflightError("Could not determine this node's IP address.")
    ip_addr = addresses[0]
    console.info(f"Initializing cluster on this node ({ip_addr})... This may take several minutes.")
    runner.run(
        [
            "kubeadm",
            "init",
            f"--pod-network-cidr={cidr}",
            f"--apiserver-advertise-address={ip_addr}",
        ],
        capture_stderr=False,
    )
    console.success("Control plane initialized successfully.")

    console.border("Step 2: Configure kubectl for Cluster Administration")
    if user.kubeconfig.exists() and not ctx.prompter.accept(
        f"{user.kubeconfig} already exists. Overwrite it?"
    ):
        console.info(f"Keeping the existing {user.kubeconfig}.")
    else:
        runner.run(
            [
                "install",
                "-D",
                "-o",
                str(user.uid),
                "-g",
                str(user.gid),
                "-m",
                "600",
                str(ADMIN_CONF),
                str(user.kubeconfig),
            ]
        )
        console.success(f"kubectl is now configured for {user.name}.")

    kubectl = Kubectl(runner, user)
    applied = cni.apply_staged_manifests(ctx, kubectl)
    if applied:
        console.success("Applied staged CNI manifests: " + ", ".join(p.name for p in applied))

    runner.pause(10)
    status = node_status(kubectl.capture("get", "nodes", "--no-headers", check=False))
    if status == "Ready":
        console.success("Control plane node is Ready.")
    elif status:
        console.info(f"Control plane node is {status}; it becomes Ready once the CNI is up.")

    console.border("Control Plane Setup Complete!")
    worker, _ = _print_join_commands(ctx)
    return worker


def join_node(ctx: Context, command_text: str | None = None) -> JoinCommand:
    console = ctx.console
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_tool(
        "kubeadm", "kubeadm is not installed. Run 'ek8s k8s deps' and 'ek8s k8s kube' first."
    )

    console.border("Step 1: Join this Node to the Kubernetes Cluster")
    if not command_text:
        console.info("Paste the full 'sudo kubeadm join ...' command printed by 'ek8s k8s init'.")
        command_text = ctx.prompter.ask("Paste the full join command here")
    join = parse_join_command(command_text)
    console.info("Executing join command...")
    ctx.runner.run(join.argv(), capture_stderr=False)
    console.success("This node has successfully joined the cluster!")
    console.next_steps(["On the control plane node, run 'kubectl get nodes' to see it appear."])
    return join


def is_control_plane(node: dict[str, Any]) -> bool:
    labels = node.get("metadata", {}).get("labels", {}) or {}
    return CONTROL_PLANE_LABEL in labels


def workload_pods(pods: dict[str, Any] | None) -> list[str]:
    """Names of pods not owned by a DaemonSet; those are left behind by a drain."""

    names = []
    for pod in (pods or {}).get("items", []):
        owners = pod.get("metadata", {}).get("ownerReferences", []) or []
        if any(owner.get("kind") == "DaemonSet" for owner in owners):
            continue
        metadata = pod.get("metadata", {})
        names.append(f"{metadata.get('namespace', 'default')}/{metadata.get('name', '?')}")
    return names


def _pods_on(kubectl: Kubectl, name: str) -> dict[str, Any] | None:
    return kubectl.json(
        "get", "pods", "--all-namespaces", "--field-selector", f"spec.nodeName={name}"
    )


def drain_node(ctx: Context, name: str | None = None) -> bool:
    """Cordon, drain and optionally delete ``name``. Returns ``True`` if deleted."""

    console, runner = ctx.console, ctx.runner
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    kubectl = connect(runner)
    console.success("Successfully connected to Kubernetes cluster.")

    console.border("Step 1: Select Node to Drain")
    if not name:
        console.echo(kubectl.capture("get", "nodes", "-o", "wide", check=False))
        name = ctx.prompter.ask("Enter the name of the node to drain")
    if not name:
        raise ToolkitError("Node name cannot be empty.")
    if not kubectl.succeeds("get", "node", name):
        raise PreflightError(f"Node '{name}' not found in cluster.")
    console.success(f"Node '{name}' found in cluster.")

    node = kubectl.json("get", "node", name) or {}
    if is_control_plane(node):
        console.warn(f"'{name}' is a CONTROL PLANE node!")
        control_planes = kubectl.json("get", "nodes", "-l", CONTROL_PLANE_LABEL) or {}
        count = len(control_planes.get("items", []))
        console.echo(f"Total control plane nodes in cluster: {count}")
        if count <= 1:
            raise PreflightError(
                "This is your ONLY control plane node! Draining it will make the cluster "
                "unmanageable. Add another control plane node before proceeding."
            )
        ctx.prompter.confirm_yes("Are you sure you want to drain this control plane node?")

    console.border("Step 2: Review Workloads")
    pods = workload_pods(_pods_on(kubectl, name))
    console.info(f"{len(pods)} non-DaemonSet pod(s) will be evicted from '{name}'.")
    for pod in pods:
        console.echo(f"  {pod}")
    ctx.prompter.confirm_yes("Continue with draining this node?")

    console.border("Step 3: Cordon and Drain")
    kubectl.run("cordon", name)
    if not ctx.dry_run:
        if "SchedulingDisabled" in kubectl.capture("get", "node", name, "--no-headers"):
            console.success(f"Node '{name}' is cordoned.")
        else:
            console.warn(f"Node '{name}' does not report SchedulingDisabled yet.")
    kubectl.run(
        "drain",
        name,
        "--ignore-daemonsets",
        "--delete-emptydir-data",
        "--force",
        "--grace-period=30",
    )
    runner.pause(DRAIN_SETTLE_SECONDS)
    remaining = [] if ctx.dry_run else workload_pods(_pods_on(kubectl, name))
    if remaining:
        console.warn(f"{len(remaining)} pod(s) still on '{name}': " + ", ".join(remaining))
    else:
        console.success(f"All workload pods have been evicted from '{name}'.")

    console.border("Step 4: Remove Node")
    if not ctx.prompter.accept(f"Delete '{name}' from cluster?"):
        console.info(f"'{name}' stays cordoned. Re-enable it with: kubectl uncordon {name}")
        return False
    kubectl.run("delete", "node", name)
    console.success(f"Node '{name}' deleted from the cluster.")
    console.next_steps(
        [
            f"On '{name}': sudo kubeadm reset -f",
            "Then: sudo rm -rf /etc/cni/net.d /var/lib/kubelet /etc/kubernetes",
            "To rejoin later, create a token here: kubeadm token create --print-join-command",
        ]
    )
    return True
