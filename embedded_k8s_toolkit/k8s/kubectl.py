"""Run kubectl as the operator who owns the kubeconfig."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .. import preflight
from ..errors import PreflightError, ToolkitError
from ..preflight import TargetUser
from ..runner import CommandRunner


class Kubectl:
    """``kubectl`` invoked through ``sudo -u`` so it reads ``~/.kube/config``."""

    def __init__(self, runner: CommandRunner, user: TargetUser):
        self.runner = runner
        self.user = user

    def command(self, *args: str) -> list[str]:
        return ["sudo", "-u", self.user.name, "kubectl", *args]

    def run(self, *args: str, input_text: str | None = None) -> None:
        self.runner.run(self.command(*args), input_text=input_text)

    def capture(self, *args: str, check: bool = True) -> str:
        return self.runner.capture(self.command(*args), check=check)

    def json(self, *args: str) -> Any:
        return self.runner.json(self.command(*args, "-o", "json"))

    def succeeds(self, *args: str) -> bool:
        return self.runner.succeeds(self.command(*args))

    def namespace_exists(self, name: str) -> bool:
        return self.succeeds("get", "namespace", name)

    def apply_url(self, url: str) -> None:
        self.run("apply", "-f", url)

    def apply_manifest(self, manifest: str) -> None:
        self.run("apply", "-f", "-", input_text=manifest)

    def wait_for_namespace(self, name: str, *, timeout: int, interval: float = 5) -> None:
        """Poll until ``name`` exists; manifests create namespaces asynchronously."""

        if self.runner.dry_run:
            return
        waited = 0.0
        while not self.namespace_exists(name):
            if waited >= timeout:
                raise ToolkitError(f"Timed out waiting for namespace {name} after {timeout}s.")
            self.runner.pause(interval)
            waited += interval

    def wait(
        self,
        resource: Sequence[str],
        *,
        condition: str,
        namespace: str | None = None,
        timeout: int,
    ) -> None:
        args = ["wait", f"--for=condition={condition}", *resource, f"--timeout={timeout}s"]
        if namespace:
            args.extend(["-n", namespace])
        self.run(*args)


def connect(runner: CommandRunner) -> Kubectl:
    """Check kubectl is usable for ``SUDO_USER`` and return a wrapper."""

    user = preflight.target_user()
    preflight.require_tool("kubectl", "kubectl not found. Run 'ek8s k8s kube' first.")
    kubectl = Kubectl(runner, user)
    if not kubectl.succeeds("cluster-info"):
        raise PreflightError(
            f"Cannot connect to the cluster as {user.name}. "
            f"Is {user.kubeconfig} configured? Run 'ek8s k8s init' first."
        )
    return kubectl
