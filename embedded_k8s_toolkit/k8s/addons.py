"""Cluster addon installers.

Networking (ingress-nginx, Istio or Linkerd) comes first. Knative needs one
of them. cert-manager, Argo CD and the Prometheus stack stand alone.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from jinja2 import Template

from .. import download, preflight
from ..context import Context
from ..errors import PreflightError, ToolkitError
from ..runner import CommandError
from .kubectl import Kubectl, connect

ISTIO_INSTALLER = "https://istio.io/downloadIstio"
LINKERD_INSTALLER = "https://run.linkerd.io/install"
INSTALL_BIN = Path("/usr/local/bin")
SCRATCH_DIR = Path("/tmp")
LINKERD_ROOT = SCRATCH_DIR / "linkerd2"
NETWORKING_LAYERS = ("ingress-nginx", "istio-system", "linkerd")
KOURIER_INGRESS_CLASS = "kourier.ingress.networking.knative.dev"
KNATIVE_EVENTING_COMPONENTS = (
    "eventing-crds.yaml",
    "eventing-core.yaml",
    "in-memory-channel.yaml",
    "mt-channel-broker.yaml",
)
ARGOCD_MANIFEST = (
    "https://raw.githubusercontent.com/argoproj/argo-cd/stable/manifests/install.yaml"
)
ARGOCD_ARCHES = {"x86_64": "amd64", "aarch64": "arm64", "arm64": "arm64"}
PROMETHEUS_CHARTS = "https://prometheus-community.github.io/helm-charts"

CLUSTER_ISSUER = Template(
    """\
apiVersion: cert-manager.io/v1
kind: ClusterIssuer
metadata:
  name: {{ name }}
spec:
  selfSigned: {}
"""
)


def cert_manager_manifest_url(version: str) -> str:
    return (
        "https://github.com/cert-manager/cert-manager/releases/download/"
        f"{version}/cert-manager.yaml"
    )


def ingress_nginx_manifest_url(version: str) -> str:
    return (
        "https://raw.githubusercontent.com/kubernetes/ingress-nginx/"
        f"controller-{version}/deploy/static/provider/baremetal/deploy.yaml"
    )


def knative_release_url(project: str, version: str, component: str) -> str:
    return (
        f"https://github.com/knative/{project}/releases/download/knative-{version}/{component}"
    )


def node_ports(service: dict[str, Any] | None) -> dict[str, int]:
    ports = (service or {}).get("spec", {}).get("ports", []) or []
    return {
        port["name"]: port["nodePort"] for port in ports if "nodePort" in port and "name" in port
    }


def _wait_or_warn(ctx: Context, action: Callable[[], None], hint: str) -> None:
    try:
        action()
    except CommandError as exc:
        ctx.console.warn(f"Components may still be starting ({exc}). Check with: {hint}")


def install_cert_manager(ctx: Context, kubectl: Kubectl) -> None:
    console = ctx.console
    version = ctx.settings.versions.cert_manager
    timeout = ctx.settings.kubernetes.wait_timeout

    console.border(f"Step 1: Installing cert-manager {version}")
    kubectl.apply_url(cert_manager_manifest_url(version))
    kubectl.wait_for_namespace("cert-manager", timeout=timeout)
    _wait_or_warn(
        ctx,
        lambda: kubectl.wait(
            ["deployment", "--all"],
            condition="available",
            namespace="cert-manager",
            timeout=timeout,
        ),
        "kubectl get pods -n cert-manager",
    )
    console.success("cert-manager is running.")

    console.border("Step 2: Create a Self-Signed ClusterIssuer")
    console.explain(
        """
        A ClusterIssuer can sign certificates for any namespace. The
        self-signed issuer is handy for bootstrapping a private CA in-cluster.
        """
    )
    kubectl.apply_manifest(CLUSTER_ISSUER.render(name="selfsigned-issuer"))
    console.success("ClusterIssuer 'selfsigned-issuer' created.")
    console.next_steps(
        [
            "List issuers: kubectl get clusterissuers",
            "Reference 'selfsigned-issuer' from a Certificate resource.",
        ]
    )


def install_ingress_nginx(ctx: Context, kubectl: Kubectl) -> None:
    console = ctx.console
    version = ctx.settings.versions.ingress_nginx
    timeout = ctx.settings.kubernetes.wait_timeout

    console.border(f"Step 1: Installing ingress-nginx {version}")
    kubectl.apply_url(ingress_nginx_manifest_url(version))
    kubectl.wait_for_namespace("ingress-nginx", timeout=timeout)
    _wait_or_warn(
        ctx,
        lambda: kubectl.wait(
            ["pod", "--selector=app.kubernetes.io/component=controller"],
            condition="ready",
            namespace="ingress-nginx",
            timeout=timeout,
        ),
        "kubectl get pods -n ingress-nginx",
    )

    console.border("Step 2: Access Information")
    if ctx.dry_run:
        return
    service = kubectl.json("get", "svc", "ingress-nginx-controller", "-n", "ingress-nginx")
    service_type = (service or {}).get("spec", {}).get("type", "unknown")
    if service_type == "NodePort":
        ports = node_ports(service)
        console.success("Ingress controller is exposed via NodePort.")
        console.echo(f"  HTTP:  http://<node-ip>:{ports.get('http', '?')}")
        console.echo(f"  HTTPS: https://<node-ip>:{ports.get('https', '?')}")
    else:
        console.info(f"Ingress controller service type: {service_type}")
    console.next_steps(["Create an Ingress resource with ingressClassName: nginx"])


def install_istio(ctx: Context, kubectl: Kubectl) -> None:
    console, runner = ctx.console, ctx.runner
    version = ctx.settings.versions.istio
    timeout = ctx.settings.kubernetes.wait_timeout
    if kubectl.namespace_exists("linkerd"):
        raise PreflightError(
            "Linkerd is already installed. Running two service meshes causes conflicts."
        )

    console.border(f"Step 1: Installing istioctl {version}")
    installer = "" if ctx.dry_run else download.fetch_text(ISTIO_INSTALLER)
    runner.run(
        ["sh", "-"],
        input_text=installer,
        env={"ISTIO_VERSION": version},
        cwd=SCRATCH_DIR,
        capture_stderr=False,
    )
    release = SCRATCH_DIR / f"istio-{version}"
    runner.run(["install", "-m", "755", str(release / "bin" / "istioctl"), str(INSTALL_BIN)])
    console.success("istioctl installed.")

    console.border("Step 2: Installing the Istio Control Plane")
    runner.run(
        ["sudo", "-u", kubectl.user.name, "istioctl", "install", "--set", "profile=default", "-y"],
        capture_stderr=False,
    )
    kubectl.run("label", "namespace", "default", "istio-injection=enabled", "--overwrite")
    console.success("Sidecar injection enabled for the default namespace.")
    _wait_or_warn(
        ctx,
        lambda: kubectl.wait(
            ["pod", "--all"], condition="ready", namespace="istio-system", timeout=timeout
        ),
        "kubectl get pods -n istio-system",
    )
    runner.run(["rm", "-rf", str(release)])
    console.success(f"Istio {version} is installed.")
    console.next_steps(
        [
            "Restart existing workloads in 'default' to inject sidecars.",
            "Check the mesh: istioctl analyze",
        ]
    )


def install_linkerd(ctx: Context, kubectl: Kubectl) -> None:
    console, runner = ctx.console, ctx.runner
    timeout = ctx.settings.kubernetes.wait_timeout
    as_user = ["sudo", "-u", kubectl.user.name]
    if kubectl.namespace_exists("istio-system"):
        raise PreflightError(
            "Istio is already installed. Running two service meshes causes conflicts."
        )

    console.border("Step 1: Installing the Linkerd CLI")
    installer = "" if ctx.dry_run else download.fetch_text(LINKERD_INSTALLER)
    runner.run(
        ["sh", "-"],
        input_text=installer,
        env={"INSTALLROOT": str(LINKERD_ROOT)},
        capture_stderr=False,
    )
    runner.run(["install", "-m", "755", str(LINKERD_ROOT / "bin" / "linkerd"), str(INSTALL_BIN)])
    console.success("Linkerd CLI installed.")

    console.border("Step 2: Pre-installation Checks")
    runner.run([*as_user, "linkerd", "check", "--pre"], capture_stderr=False)

    console.border("Step 3: Installing the Linkerd Control Plane")
    for extra in (["install", "--crds"], ["install"]):
        manifest = runner.capture([*as_user, "linkerd", *extra], read_only=False)
        kubectl.apply_manifest(manifest)
    _wait_or_warn(
        ctx,
        lambda: kubectl.wait(
            ["pod", "--all"], condition="ready", namespace="linkerd", timeout=timeout
        ),
        "kubectl get pods -n linkerd",
    )
    runner.run([*as_user, "linkerd", "check"], capture_stderr=False)

    console.border("Step 4: Installing the Viz Extension")
    kubectl.apply_manifest(
        runner.capture([*as_user, "linkerd", "viz", "install"], read_only=False)
    )
    _wait_or_warn(
        ctx,
        lambda: kubectl.wait(
            ["pod", "--all"], condition="ready", namespace="linkerd-viz", timeout=timeout
        ),
        "kubectl get pods -n linkerd-viz",
    )
    console.success("Linkerd is installed.")
    console.next_steps(
        [
            "Mesh a deployment:",
            "  kubectl get deploy NAME -o yaml | linkerd inject - | kubectl apply -f -",
            "Open the dashboard: linkerd viz dashboard",
        ]
    )


def install_knative(ctx: Context, kubectl: Kubectl) -> None:
    console = ctx.console
    version = ctx.settings.versions.knative
    timeout = ctx.settings.kubernetes.wait_timeout
    layer = next((ns for ns in NETWORKING_LAYERS if kubectl.namespace_exists(ns)), None)
    if layer is None:
        raise PreflightError(
            "No networking layer found! Install ingress-nginx, istio or linkerd first."
        )
    console.success(f"Networking layer found: {layer}")

    console.border(f"Step 1: Installing Knative Serving {version}")
    for component in ("serving-crds.yaml", "serving-core.yaml"):
        kubectl.apply_url(knative_release_url("serving", version, component))
    _wait_or_warn(
        ctx,
        lambda: kubectl.wait(
            ["pod", "--all"], condition="ready", namespace="knative-serving", timeout=timeout
        ),
        "kubectl get pods -n knative-serving",
    )

    console.border("Step 2: Configuring the Kourier Ingress")
    console.explain(
        """
        Knative routes requests through its own lightweight ingress, Kourier.
        It runs next to whatever networking layer is already installed.
        """
    )
    kubectl.apply_url(
        f"https://github.com/knative/net-kourier/releases/download/knative-{version}/kourier.yaml"
    )
    kubectl.run(
        "patch",
        "configmap/config-network",
        "--namespace",
        "knative-serving",
        "--type",
        "merge",
        "--patch",
        json.dumps({"data": {"ingress-class": KOURIER_INGRESS_CLASS}}),
    )
    try:
        kubectl.apply_url(
            knative_release_url("serving", version, "serving-default-domain.yaml")
        )
    except CommandError as exc:
        console.warn(f"Default domain was not configured ({exc}). Configure DNS manually.")
    console.success("Knative Serving is installed.")

    console.border("Step 3: Knative Eventing (optional)")
    if ctx.prompter.agree("Install Knative Eventing as well?"):
        for component in KNATIVE_EVENTING_COMPONENTS:
            kubectl.apply_url(knative_release_url("eventing", version, component))
        _wait_or_warn(
            ctx,
            lambda: kubectl.wait(
                ["pod", "--all"],
                condition="ready",
                namespace="knative-eventing",
                timeout=timeout,
            ),
            "kubectl get pods -n knative-eventing",
        )
        console.success("Knative Eventing is installed.")
    else:
        console.info("Skipping Knative Eventing.")
    console.next_steps(
        [
            "Deploy a service: kn service create hello --image ghcr.io/knative/helloworld-go",
            "List services: kubectl get ksvc",
            "Find the gateway: kubectl get svc kourier -n kourier-system",
        ]
    )


def argocd_cli_arch(machine: str) -> str:
    try:
        return ARGOCD_ARCHES[machine]
    except KeyError:
        raise PreflightError(f"Unsupported architecture for the Argo CD CLI: {machine}") from None


def install_argocd(ctx: Context, kubectl: Kubectl) -> None:
    console, runner = ctx.console, ctx.runner
    version = ctx.settings.versions.argocd
    timeout = ctx.settings.kubernetes.wait_timeout

    console.border("Step 1: Installing Argo CD")
    kubectl.apply_manifest(
        kubectl.capture("create", "namespace", "argocd", "--dry-run=client", "-o", "yaml")
    )
    kubectl.run("apply", "-n", "argocd", "-f", ARGOCD_MANIFEST)
    _wait_or_warn(
        ctx,
        lambda: kubectl.wait(
            ["pod", "--all"], condition="ready", namespace="argocd", timeout=timeout
        ),
        "kubectl get pods -n argocd",
    )
    console.success("Argo CD is running.")

    console.border(f"Step 2: Installing the argocd CLI {version}")
    arch = argocd_cli_arch(runner.capture(["uname", "-m"]))
    url = (
        f"https://github.com/argoproj/argo-cd/releases/download/{version}/argocd-linux-{arch}"
    )
    binary = b"" if ctx.dry_run else download.fetch_bytes(url)
    runner.write_bytes(INSTALL_BIN / "argocd", binary, mode=0o755)
    console.success("argocd CLI installed.")

    console.warn("Change the initial admin password after the first login.")
    console.next_steps(
        [
            "Initial password: kubectl -n argocd get secret argocd-initial-admin-secret "
            "-o jsonpath='{.data.password}' | base64 -d",
            "Open the UI: kubectl port-forward svc/argocd-server -n argocd 8080:443",
            "Log in: argocd login localhost:8080",
        ]
    )


def install_prometheus(ctx: Context, kubectl: Kubectl) -> None:
    console, runner = ctx.console, ctx.runner
    timeout = ctx.settings.kubernetes.wait_timeout
    preflight.require_tool("helm", "Helm is not installed. See https://helm.sh/docs/intro/install/")
    console.success("Helm is installed.")
    helm = ["sudo", "-u", kubectl.user.name, "helm"]

    console.border("Step 1: Adding the prometheus-community Chart Repository")
    runner.run([*helm, "repo", "add", "prometheus-community", PROMETHEUS_CHARTS])
    runner.run([*helm, "repo", "update"])

    console.border("Step 2: Installing kube-prometheus-stack")
    console.explain(
        """
        The chart bundles Prometheus, Alertmanager, Grafana and the exporters
        that scrape node and cluster metrics.
        """
    )
    runner.run(
        [
            *helm,
            "install",
            "prometheus",
            "prometheus-community/kube-prometheus-stack",
            "--namespace",
            "monitoring",
            "--create-namespace",
            "--wait",
        ],
        capture_stderr=False,
    )
    _wait_or_warn(
        ctx,
        lambda: kubectl.wait(
            ["pod", "--all"], condition="ready", namespace="monitoring", timeout=timeout
        ),
        "kubectl get pods -n monitoring",
    )
    console.success("Prometheus monitoring stack is installed.")
    console.next_steps(
        [
            "Grafana: kubectl port-forward svc/prometheus-grafana -n monitoring 3000:80",
            "Prometheus: kubectl port-forward svc/prometheus-kube-prometheus-prometheus "
            "-n monitoring 9090",
        ]
    )


ADDONS: dict[str, Callable[[Context, Kubectl], None]] = {
    "cert-manager": install_cert_manager,
    "ingress-nginx": install_ingress_nginx,
    "istio": install_istio,
    "linkerd": install_linkerd,
    "knative": install_knative,
    "argocd": install_argocd,
    "prometheus": install_prometheus,
}


def install_addon(ctx: Context, name: str) -> None:
    try:
        installer = ADDONS[name]
    except KeyError:
        raise ToolkitError(f"Unknown addon: {name}") from None
    ctx.console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    ctx.console.success("Running as root.")
    kubectl = connect(ctx.runner)
    ctx.console.success("Successfully connected to Kubernetes cluster.")
    installer(ctx, kubectl)
