"""Entry points for the ek8s CLI."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Sequence

from . import gitea, registry, tls
from .config import load_settings
from .context import Context
from .errors import OperationAborted, ToolkitError
from .jetson import nvram, recovery, setup, verify
from .k8s import addons, cluster, cni, node_setup


def _shared_flags() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--config",
        type=Path,
        help="TOML configuration file (defaults to $EMBEDDED_K8S_CONFIG or "
        "/etc/embedded-k8s/config.toml).",
    )
    parent.add_argument(
        "--dry-run",
        action="store_true",
        help="Print mutating commands without executing them.",
    )
    parent.add_argument(
        "--assume-yes",
        action="store_true",
        help="Answer every confirmation prompt automatically.",
    )
    parent.add_argument(
        "--no-tutorial",
        action="store_true",
        help="Skip the explanatory paragraphs between steps.",
    )
    parent.add_argument(
        "--no-color",
        action="store_true",
        help="Disable ANSI colours in the output.",
    )
    return parent


def _add_command(
    subparsers: argparse._SubParsersAction,
    name: str,
    help_text: str,
    handler: Callable[[argparse.Namespace, Context], int | None],
    shared: argparse.ArgumentParser,
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(name, help=help_text, parents=[shared])
    parser.set_defaults(handler=handler)
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ek8s",
        description="Prepare Jetson boards as Kubernetes nodes and run the cluster runbooks.",
    )
    parser.set_defaults(handler=None)
    shared = _shared_flags()
    sections = parser.add_subparsers(dest="section")

    jetson = sections.add_parser("jetson", help="Jetson Orin SSD migration and recovery.")
    jetson_commands = jetson.add_subparsers(dest="command")
    _add_command(
        jetson_commands, "steps", "List the setup runbook in order.", _handle_steps, shared
    )
    _add_command(
        jetson_commands,
        "headless",
        "Set a static IP and hostname, remove the desktop, disable swap.",
        _handle_headless,
        shared,
    )
    _add_command(
        jetson_commands, "clone", "Partition the SSD and copy the running OS onto it.",
        _handle_clone, shared,
    )
    _add_command(
        jetson_commands, "boot-ssd", "Point extlinux.conf at the SSD root by UUID.",
        _handle_boot_ssd, shared,
    )
    _add_command(
        jetson_commands, "strip-microsd", "Remove everything but /boot from the microSD.",
        _handle_strip_microsd, shared,
    )
    _add_command(
        jetson_commands, "update-os", "Apply OS updates from the SSD root.",
        _handle_update_os, shared,
    )
    verify_parser = _add_command(
        jetson_commands, "verify", "Check the SSD migration without changing anything.",
        _handle_verify, shared,
    )
    verify_parser.add_argument(
        "--json", action="store_true", help="Emit the check results as JSON."
    )
    for name, help_text, handler in (
        ("reimage-microsd", "Write the recovery image to the microSD card.", _handle_reimage),
        (
            "factory-reset",
            "Reimage the microSD and point it back at its own root.",
            _handle_factory_reset,
        ),
    ):
        image_parser = _add_command(jetson_commands, name, help_text, handler, shared)
        image_parser.add_argument(
            "--image",
            type=Path,
            help="Recovery image to write (defaults to [jetson] recovery_image).",
        )

    nvram_parser = sections.add_parser("nvram", help="Inspect or clean UEFI boot entries.")
    nvram_commands = nvram_parser.add_subparsers(dest="command")
    _add_command(
        nvram_commands, "inspect", "Print a read-only boot configuration report.",
        _handle_nvram_inspect, shared,
    )
    _add_command(
        nvram_commands, "clean", "Delete boot entries outside Boot0000..Boot0008.",
        _handle_nvram_clean, shared,
    )

    k8s = sections.add_parser("k8s", help="Kubernetes node and cluster runbooks.")
    k8s_commands = k8s.add_subparsers(dest="command")
    _add_command(
        k8s_commands, "deps", "Kernel modules, sysctl and containerd.", _handle_deps, shared
    )
    _add_command(
        k8s_commands, "kube", "Install kubeadm, kubelet and kubectl.", _handle_kube, shared
    )
    init_parser = _add_command(
        k8s_commands, "init", "Initialise the control plane with kubeadm.", _handle_init, shared
    )
    init_parser.add_argument(
        "--cni",
        choices=sorted(cni.PLUGINS),
        help="Stage this CNI before initialising the control plane.",
    )
    join_parser = _add_command(
        k8s_commands, "join", "Join this node to an existing cluster.", _handle_join, shared
    )
    join_parser.add_argument(
        "join_command",
        nargs="?",
        help="The full 'kubeadm join ...' command printed by 'ek8s k8s init'.",
    )
    drain_parser = _add_command(
        k8s_commands, "drain", "Cordon and drain a node before maintenance.",
        _handle_drain, shared,
    )
    drain_parser.add_argument("node", nargs="?", help="Node name (prompted when omitted).")
    cni_parser = _add_command(
        k8s_commands, "cni", "Stage a CNI plugin for the next kubeadm init.", _handle_cni, shared
    )
    cni_parser.add_argument("plugin", choices=sorted(cni.PLUGINS))
    addon_parser = _add_command(
        k8s_commands, "addon", "Install a cluster addon.", _handle_addon, shared
    )
    addon_parser.add_argument("addon", choices=sorted(addons.ADDONS))

    tls_parser = sections.add_parser("tls", help="Private CA helpers.")
    tls_commands = tls_parser.add_subparsers(dest="command")
    _add_command(tls_commands, "ca", "Create the private root CA.", _handle_tls_ca, shared)
    cert_parser = _add_command(
        tls_commands, "cert", "Sign a service certificate with the private CA.",
        _handle_tls_cert, shared,
    )
    cert_parser.add_argument("--service", required=True, help="Service name, e.g. registry.")
    cert_parser.add_argument("--hostname", required=True, help="DNS name for the certificate.")
    cert_parser.add_argument("--ip", required=True, help="IPv4 address for the certificate.")
    cert_parser.add_argument("--ca-cert", type=Path, help="CA certificate to sign with.")
    cert_parser.add_argument("--ca-key", type=Path, help="CA private key to sign with.")
    cert_parser.add_argument("--days", type=int, help="Validity period in days.")
    trust_parser = _add_command(
        tls_commands, "trust", "Install the CA on cluster nodes over SSH.",
        _handle_tls_trust, shared,
    )
    trust_parser.add_argument("nodes", nargs="*", help="Node IPs or hostnames.")
    trust_parser.add_argument("--user", help="SSH user (defaults to the current user).")
    trust_parser.add_argument("--ca-cert", type=Path, help="CA certificate to distribute.")

    registry_parser = sections.add_parser("registry", help="Local Docker registry.")
    registry_commands = registry_parser.add_subparsers(dest="command")
    _add_command(
        registry_commands, "install", "Run the registry container over HTTP.",
        _handle_registry_install, shared,
    )
    registry_tls = _add_command(
        registry_commands, "tls", "Restart the registry with TLS certificates.",
        _handle_registry_tls, shared,
    )
    registry_tls.add_argument("--cert", type=Path, help="Registry certificate.")
    registry_tls.add_argument("--key", type=Path, help="Registry private key.")
    insecure = _add_command(
        registry_commands, "insecure", "Trust an HTTP registry in daemon.json.",
        _handle_registry_insecure, shared,
    )
    insecure.add_argument("address", help="Registry address, e.g. 192.168.1.50:5000.")

    gitea_parser = sections.add_parser("gitea", help="Self-hosted Gitea server.")
    gitea_commands = gitea_parser.add_subparsers(dest="command")
    _add_command(
        gitea_commands, "install", "Run Gitea and PostgreSQL with Docker Compose.",
        _handle_gitea_install, shared,
    )
    gitea_tls = _add_command(
        gitea_commands, "tls", "Switch Gitea to HTTPS.", _handle_gitea_tls, shared
    )
    gitea_tls.add_argument("--cert", type=Path, help="Gitea certificate.")
    gitea_tls.add_argument("--key", type=Path, help="Gitea private key.")

    return parser


def _handle_steps(args: argparse.Namespace, ctx: Context) -> None:
    setup.print_runbook(ctx)


def _handle_headless(args: argparse.Namespace, ctx: Context) -> None:
    setup.config_headless(ctx)


def _handle_clone(args: argparse.Namespace, ctx: Context) -> None:
    setup.clone_os_to_ssd(ctx)


def _handle_boot_ssd(args: argparse.Namespace, ctx: Context) -> None:
    setup.set_boot_to_ssd(ctx)


def _handle_strip_microsd(args: argparse.Namespace, ctx: Context) -> None:
    setup.strip_microsd_rootfs(ctx)


def _handle_update_os(args: argparse.Namespace, ctx: Context) -> None:
    setup.update_os(ctx)


def _handle_verify(args: argparse.Namespace, ctx: Context) -> int:
    return verify.exit_code(verify.verify_setup(ctx, as_json=args.json))


def _handle_reimage(args: argparse.Namespace, ctx: Context) -> None:
    recovery.reimage_microsd(ctx, args.image)


def _handle_factory_reset(args: argparse.Namespace, ctx: Context) -> None:
    recovery.factory_reset(ctx, args.image)


def _handle_nvram_inspect(args: argparse.Namespace, ctx: Context) -> None:
    nvram.inspect_nvram(ctx)


def _handle_nvram_clean(args: argparse.Namespace, ctx: Context) -> int:
    _, failed = nvram.clean_nvram(ctx)
    return 1 if failed else 0


def _handle_deps(args: argparse.Namespace, ctx: Context) -> None:
    node_setup.install_deps(ctx)


def _handle_kube(args: argparse.Namespace, ctx: Context) -> None:
    node_setup.install_kube(ctx)


def _handle_init(args: argparse.Namespace, ctx: Context) -> None:
    cluster.bootstrap_cluster(ctx, args.cni)


def _handle_join(args: argparse.Namespace, ctx: Context) -> None:
    cluster.join_node(ctx, args.join_command)


def _handle_drain(args: argparse.Namespace, ctx: Context) -> None:
    cluster.drain_node(ctx, args.node)


def _handle_cni(args: argparse.Namespace, ctx: Context) -> None:
    cni.install_cni(ctx, args.plugin)


def _handle_addon(args: argparse.Namespace, ctx: Context) -> None:
    addons.install_addon(ctx, args.addon)


def _handle_tls_ca(args: argparse.Namespace, ctx: Context) -> None:
    tls.generate_ca(ctx)


def _handle_tls_cert(args: argparse.Namespace, ctx: Context) -> None:
    tls.generate_cert(
        ctx,
        service=args.service,
        hostname=args.hostname,
        ip=args.ip,
        ca_cert=args.ca_cert,
        ca_key=args.ca_key,
        days=args.days,
    )


def _handle_tls_trust(args: argparse.Namespace, ctx: Context) -> None:
    tls.trust_ca_on_nodes(ctx, args.nodes, user=args.user, ca_cert=args.ca_cert)


def _handle_registry_install(args: argparse.Namespace, ctx: Context) -> None:
    registry.install_registry(ctx)


def _handle_registry_tls(args: argparse.Namespace, ctx: Context) -> None:
    registry.enable_registry_tls(ctx, cert=args.cert, key=args.key)


def _handle_registry_insecure(args: argparse.Namespace, ctx: Context) -> None:
    registry.trust_insecure_registry(ctx, args.address)


def _handle_gitea_install(args: argparse.Namespace, ctx: Context) -> None:
    gitea.install_gitea(ctx)


def _handle_gitea_tls(args: argparse.Namespace, ctx: Context) -> None:
    gitea.enable_gitea_tls(ctx, cert=args.cert, key=args.key)


def _build_context(args: argparse.Namespace) -> Context:
    return Context.create(
        load_settings(args.config),
        dry_run=args.dry_run,
        assume_yes=args.assume_yes,
        tutorial=not args.no_tutorial,
        color=False if args.no_color else None,
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1

    try:
        ctx = _build_context(args)
    except ToolkitError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    try:
        return handler(args, ctx) or 0
    except OperationAborted as exc:
        if exc.exit_code:
            ctx.console.error(str(exc))
        else:
            ctx.console.info(str(exc))
        return exc.exit_code
    except ToolkitError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("error: interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
