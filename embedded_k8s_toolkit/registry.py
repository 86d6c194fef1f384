"""Run a private Docker registry and switch it between HTTP and HTTPS."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from . import download, preflight
from .context import Context
from .errors import PreflightError, ToolkitError

CONTAINER_CERT = "/certs/domain.crt"
CONTAINER_KEY = "/certs/domain.key"


def running_filter(name: str) -> list[str]:
    return ["docker", "ps", "-q", "-f", f"name=^/{name}$"]


def is_running(ctx: Context, name: str) -> bool:
    return bool(ctx.runner.capture(running_filter(name)))


def container_exists(ctx: Context, name: str) -> bool:
    names = ctx.runner.capture(["docker", "ps", "-a", "--format", "{{.Names}}"])
    return name in names.splitlines()


def host_address(ctx: Context) -> str:
    addresses = ctx.runner.capture(["hostname", "-I"]).split()
    return addresses[0] if addresses else "localhost"


def run_command(ctx: Context, *, tls: bool = False) -> list[str]:
    """Build the ``docker run`` invocation for the registry container."""

    registry = ctx.settings.registry
    command = [
        "docker",
        "run",
        "-d",
        "--name",
        registry.name,
        "--restart=always",
        "-p",
        f"{registry.port}:5000",
        "-v",
        f"{registry.storage}:/var/lib/registry",
    ]
    if tls:
        command += [
            "-v",
            f"{registry.certs_dir}:/certs",
            "-e",
            f"REGISTRY_HTTP_TLS_CERTIFICATE={CONTAINER_CERT}",
            "-e",
            f"REGISTRY_HTTP_TLS_KEY={CONTAINER_KEY}",
        ]
    return [*command, registry.image]


def install_registry(ctx: Context) -> bool:
    """Start the registry container; return ``False`` when it already runs."""

    console, runner = ctx.console, ctx.runner
    registry = ctx.settings.registry
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_tool("docker", "Docker is not installed.")
    console.success("Docker is installed.")

    console.border("Step 1: Run the Docker Registry Container")
    console.explain(
        """
        The official registry image stores pushed images under a host
        directory and restarts with the Docker daemon, so nodes can pull
        images without reaching a public hub.
        """
    )
    started = False
    if is_running(ctx, registry.name):
        console.success(f"Registry container '{registry.name}' is already running.")
    elif container_exists(ctx, registry.name):
        console.info(f"Registry container '{registry.name}' exists but is stopped.")
        runner.run(["docker", "start", registry.name])
        console.success("Registry container started.")
        started = True
    else:
        console.info(f"  - Name: {registry.name}")
        console.info(f"  - Port: {registry.port}")
        console.info(f"  - Storage: {registry.storage}")
        runner.run(["mkdir", "-p", str(registry.storage)])
        runner.run(run_command(ctx))
        console.success("Registry container started successfully.")
        started = True

    address = f"{host_address(ctx)}:{registry.port}"
    console.border("Setup Complete")
    console.warn(f"Registry is serving plain HTTP at http://{address}")
    console.echo("Until TLS is enabled every Docker client must list it as insecure:")
    console.echo(f"  sudo ek8s registry insecure {address}")
    console.next_steps(
        [
            "Generate certificates: sudo ek8s tls ca && sudo ek8s tls cert "
            f"--service registry --hostname registry.local --ip {address.split(':')[0]}",
            "Enable TLS: sudo ek8s registry tls",
            f"Push an image: docker tag alpine {address}/my-alpine && "
            f"docker push {address}/my-alpine",
        ]
    )
    return started


def enable_registry_tls(
    ctx: Context, *, cert: Path | None = None, key: Path | None = None
) -> None:
    console, runner = ctx.console, ctx.runner
    registry = ctx.settings.registry
    tls = ctx.settings.tls
    cert = cert or tls.directory / "registry.crt"
    key = key or tls.directory / "registry.key"

    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_tool("docker", "Docker is not installed.")
    console.success("Docker is installed.")
    if not container_exists(ctx, registry.name):
        raise PreflightError(
            f"Docker registry container '{registry.name}' not found. "
            "Run 'ek8s registry install' first."
        )
    console.success("Docker registry container found.")
    missing = [str(path) for path in (cert, key) if not path.exists()]
    if missing:
        raise PreflightError(
            "Registry certificate files not found: " + ", ".join(missing)
            + ". Generate them with 'ek8s tls cert --service registry'."
        )
    console.success(f"Registry certificates found: {cert}, {key}")

    console.border("Step 1: Stopping Existing Registry")
    if is_running(ctx, registry.name):
        runner.run(["docker", "stop", registry.name])
        console.success("Registry stopped.")
    else:
        console.info("Registry was not running.")

    console.border("Step 2: Preparing TLS Certificates")
    console.explain(
        """
        The registry image looks for its certificate and key under /certs.
        A host directory is bind-mounted there.
        """
    )
    certs_dir = registry.certs_dir
    runner.run(["install", "-d", "-m", "755", str(certs_dir)])
    runner.run(["install", "-m", "644", str(cert), str(certs_dir / "domain.crt")])
    runner.run(["install", "-m", "600", str(key), str(certs_dir / "domain.key")])
    console.success(f"Certificates copied to {certs_dir}")

    console.border("Step 3: Restarting Registry with TLS")
    runner.run(["docker", "rm", registry.name])
    runner.run(run_command(ctx, tls=True))
    runner.pause(5)
    if not ctx.dry_run and not is_running(ctx, registry.name):
        logs = runner.capture(["docker", "logs", registry.name], check=False)
        raise ToolkitError(f"Registry container failed to start with TLS.\n{logs}")
    console.success("Registry is running with TLS enabled.")

    console.border("Step 4: Verifying HTTPS")
    address = f"{host_address(ctx)}:{registry.port}"
    url = f"https://{address}/v2/"
    if ctx.dry_run:
        console.dry_run(f"GET {url}")
    else:
        verify: bool | str = str(tls.ca_cert) if tls.ca_cert.exists() else False
        status = download.endpoint_status(url, verify)
        if status == 200:
            console.success(f"HTTPS endpoint responded: {url}")
        else:
            console.warn(
                f"Could not confirm {url} (status {status}). "
                "Nodes may still need to trust the private CA."
            )
    console.next_steps(
        [
            "Trust the CA on every node: sudo ek8s tls trust",
            "Remove the registry from 'insecure-registries' in daemon.json.",
            f"Test: curl https://{address}/v2/_catalog",
        ]
    )


def merge_insecure_registry(config: dict[str, Any], address: str) -> dict[str, Any]:
    """Return ``config`` with ``address`` listed under ``insecure-registries``."""

    merged = dict(config)
    registries = list(merged.get("insecure-registries") or [])
    if address not in registries:
        registries.append(address)
    merged["insecure-registries"] = registries
    return merged


def read_daemon_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolkitError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ToolkitError(f"{path} must contain a JSON object.")
    return data


def trust_insecure_registry(ctx: Context, address: str) -> bool:
    """Let the local Docker daemon pull from ``address`` over HTTP.

    Returns ``False`` when the address was already trusted.
    """

    console, runner = ctx.console, ctx.runner
    daemon_json = ctx.settings.registry.daemon_json
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")

    console.border("Step 1: Updating the Docker Daemon Configuration")
    current = read_daemon_config(daemon_json)
    if address in (current.get("insecure-registries") or []):
        console.success(f"{address} is already listed in {daemon_json}.")
        return False
    merged = merge_insecure_registry(current, address)
    runner.write_text(daemon_json, json.dumps(merged, indent=2) + "\n", mode=0o644)
    console.success(f"Added {address} to insecure-registries.")

    console.border("Step 2: Restarting Docker")
    runner.run(["systemctl", "restart", "docker"])
    console.success("Docker restarted.")
    if runner.succeeds(["systemctl", "is-active", "--quiet", "containerd"]):
        console.info("containerd is active; configure its registry hosts separately.")
    return True
