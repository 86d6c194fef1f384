"""Private CA helpers: create a CA, sign service certificates, trust the CA."""

from __future__ import annotations

import ipaddress
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Template

from . import preflight
from .context import Context
from .errors import OperationAborted, PreflightError, ToolkitError
from .runner import CommandError

REMOTE_CA_TMP = "/tmp/private-ca.crt"
REMOTE_CA_PATH = "/usr/local/share/ca-certificates/private-ca.crt"
SSH_OPTIONS = ("-o", "ConnectTimeout=5", "-o", "StrictHostKeyChecking=accept-new")

SUBJECT_DEFAULTS = {
    "C": "US",
    "ST": "California",
    "L": "San Francisco",
    "O": "Homelab",
    "OU": "IT Department",
    "CN": "Homelab Root CA",
}
SUBJECT_PROMPTS = {
    "C": "Country (2 letter code)",
    "ST": "State or Province",
    "L": "City",
    "O": "Organization",
    "OU": "Organizational Unit",
    "CN": "Common Name for the CA",
}
SERVICE_SUBJECT = {
    "C": "US",
    "ST": "California",
    "L": "San Francisco",
    "O": "Homelab",
    "OU": "Services",
}

CA_CONFIG = Template(
    """\
[req]
distinguished_name = dn
x509_extensions = v3_ca
prompt = no

[dn]
{% for key, value in subject.items() -%}
{{ key }} = {{ value }}
{% endfor %}
[v3_ca]
basicConstraints = critical, CA:TRUE
keyUsage = critical, keyCertSign, cRLSign
subjectKeyIdentifier = hash
authorityKeyIdentifier = keyid:always, issuer:always
"""
)

CSR_CONFIG = Template(
    """\
[req]
default_bits = {{ bits }}
prompt = no
default_md = sha256
req_extensions = req_ext
distinguished_name = dn

[dn]
{% for key, value in subject.items() -%}
{{ key }} = {{ value }}
{% endfor -%}
CN = {{ hostname }}

[req_ext]
subjectAltName = @alt_names

[alt_names]
DNS.1 = {{ hostname }}
IP.1 = {{ ip }}
"""
)

EXT_CONFIG = Template(
    """\
basicConstraints = CA:FALSE
keyUsage = digitalSignature, keyEncipherment
extendedKeyUsage = serverAuth
subjectAltName = @alt_names

[alt_names]
DNS.1 = {{ hostname }}
IP.1 = {{ ip }}
"""
)

TRUST_SCRIPT = Template(
    """\
set -e
install -m 644 {{ tmp }} {{ target }}
update-ca-certificates
for unit in containerd docker; do
  if systemctl is-active --quiet "$unit"; then
    systemctl restart "$unit"
  fi
done
rm -f {{ tmp }}
grep -q 'BEGIN CERTIFICATE' {{ target }}
"""
)


def backup_suffix(now: float | None = None) -> str:
    return time.strftime("%Y%m%d_%H%M%S", time.localtime(now))


def validate_ipv4(value: str) -> str:
    try:
        return str(ipaddress.IPv4Address(value))
    except ipaddress.AddressValueError:
        raise ToolkitError(f"Invalid IP address format: {value}") from None


def render_ca_config(subject: dict[str, str]) -> str:
    return CA_CONFIG.render(subject=subject)


def render_csr_config(hostname: str, ip: str, bits: int = 2048) -> str:
    return CSR_CONFIG.render(subject=SERVICE_SUBJECT, hostname=hostname, ip=ip, bits=bits)


def render_ext_config(hostname: str, ip: str) -> str:
    return EXT_CONFIG.render(hostname=hostname, ip=ip)


def _backup_existing(ctx: Context, paths: list[Path], prompt: str) -> None:
    existing = [path for path in paths if path.exists()]
    if not existing:
        return
    for path in existing:
        ctx.console.warn(f"Found existing {path}")
    ctx.prompter.confirm_yes(prompt, abort_message="Keeping the existing files.")
    suffix = backup_suffix()
    for path in existing:
        ctx.runner.run(["mv", str(path), f"{path}.backup.{suffix}"])


def generate_ca(ctx: Context) -> Path:
    """Create ``ca.key``/``ca.crt`` for a self-signed root CA."""

    console, runner = ctx.console, ctx.runner
    tls = ctx.settings.tls
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_tool("openssl", "openssl is not installed.")
    console.success("openssl is installed.")

    console.border("Step 1: Checking for Existing CA")
    _backup_existing(
        ctx,
        [tls.ca_key, tls.ca_cert],
        "Overwrite the existing CA? Certificates it signed will stop validating.",
    )

    console.border("Step 2: CA Subject")
    subject = {
        key: ctx.prompter.ask(SUBJECT_PROMPTS[key], default=default)
        for key, default in SUBJECT_DEFAULTS.items()
    }

    console.border("Step 3: Generating CA Private Key")
    console.explain(
        """
        The CA key signs every service certificate. Anyone holding it can mint
        certificates your nodes trust, so keep it offline once you are done.
        """
    )
    runner.run(["openssl", "genrsa", "-out", str(tls.ca_key), str(tls.ca_key_bits)])
    runner.run(["chmod", "600", str(tls.ca_key)])
    console.success(f"Private key generated: {tls.ca_key}")

    console.border("Step 4: Creating Self-Signed CA Certificate")
    config = tls.directory / "ca.conf"
    runner.write_text(config, render_ca_config(subject))
    try:
        runner.run(
            [
                "openssl",
                "req",
                "-x509",
                "-new",
                "-nodes",
                "-key",
                str(tls.ca_key),
                "-sha256",
                "-days",
                str(tls.ca_days),
                "-out",
                str(tls.ca_cert),
                "-config",
                str(config),
            ]
        )
    finally:
        runner.run(["rm", "-f", str(config)])
    runner.run(["chmod", "644", str(tls.ca_cert)])
    console.success(f"CA certificate created: {tls.ca_cert}")

    if tls.ca_cert.exists():
        console.info(
            runner.capture(
                ["openssl", "x509", "-in", str(tls.ca_cert), "-noout", "-fingerprint", "-sha256"]
            )
        )
    console.next_steps(
        [
            "Issue a service certificate: sudo ek8s tls cert --service NAME "
            "--hostname HOST --ip ADDR",
            "Trust the CA on every node: sudo ek8s tls trust",
        ]
    )
    return tls.ca_cert


def _service_next_steps(service: str, cert: Path, key: Path, hostname: str, ip: str) -> list[str]:
    if service == "registry":
        return [
            f"Enable TLS on the registry: sudo ek8s registry tls --cert {cert} --key {key}",
            "Trust the CA on every node: sudo ek8s tls trust",
            f"Test: curl https://{hostname}:5000/v2/",
        ]
    if service == "gitea":
        return [
            f"Enable HTTPS on Gitea: sudo ek8s gitea tls --cert {cert} --key {key}",
            "Trust the CA on every node: sudo ek8s tls trust",
            f"Test: curl https://{hostname}:3000/",
        ]
    return [
        f"Configure {service} to use {cert} and {key}.",
        f"Clients reach it as {hostname} or {ip} once they trust the CA.",
    ]


def generate_cert(
    ctx: Context,
    *,
    service: str,
    hostname: str,
    ip: str,
    ca_cert: Path | None = None,
    ca_key: Path | None = None,
    days: int | None = None,
) -> Path:
    """Sign a ``serverAuth`` certificate for ``service`` with the private CA."""

    console, runner = ctx.console, ctx.runner
    tls = ctx.settings.tls
    ca_cert = ca_cert or tls.ca_cert
    ca_key = ca_key or tls.ca_key
    days = days or tls.cert_days

    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    preflight.require_tool("openssl", "openssl is not installed.")
    for path, label in ((ca_cert, "CA certificate"), (ca_key, "CA private key")):
        if not path.exists():
            raise PreflightError(f"{label} not found: {path}. Run 'ek8s tls ca' first.")
    console.success(f"CA files found: {ca_cert}, {ca_key}")
    ip = validate_ipv4(ip)
    console.success(f"Valid IP address: {ip}")

    key = tls.directory / f"{service}.key"
    cert = tls.directory / f"{service}.crt"
    csr = tls.directory / f"{service}.csr"
    csr_config = tls.directory / f"{service}.conf"
    ext_config = tls.directory / f"{service}_ext.conf"

    console.border("Step 1: Checking for Existing Certificate")
    _backup_existing(ctx, [key, cert], "Overwrite existing certificate?")

    console.border("Step 2: Generating Service Private Key")
    runner.run(["openssl", "genrsa", "-out", str(key), str(tls.cert_key_bits)])
    runner.run(["chmod", "600", str(key)])
    console.success(f"Private key generated: {key}")

    console.border("Step 3: Creating and Signing the Certificate")
    runner.write_text(csr_config, render_csr_config(hostname, ip, tls.cert_key_bits))
    runner.write_text(ext_config, render_ext_config(hostname, ip))
    try:
        runner.run(
            ["openssl", "req", "-new", "-key", str(key), "-out", str(csr)]
            + ["-config", str(csr_config)]
        )
        runner.run(
            [
                "openssl",
                "x509",
                "-req",
                "-in",
                str(csr),
                "-CA",
                str(ca_cert),
                "-CAkey",
                str(ca_key),
                "-CAcreateserial",
                "-out",
                str(cert),
                "-days",
                str(days),
                "-sha256",
                "-extfile",
                str(ext_config),
            ]
        )
    finally:
        serial = ca_cert.with_suffix(".srl")
        runner.run(["rm", "-f", str(csr), str(csr_config), str(ext_config), str(serial)])
    runner.run(["chmod", "644", str(cert)])
    console.success(f"Certificate signed: {cert}")

    console.border("Step 4: Verifying Certificate")
    runner.run(["openssl", "verify", "-CAfile", str(ca_cert), str(cert)])
    console.success("Certificate chains to the private CA.")
    console.next_steps(_service_next_steps(service, cert, key, hostname, ip))
    return cert


def parse_internal_ips(nodes: dict | None) -> list[str]:
    """``InternalIP`` addresses from ``kubectl get nodes -o json``."""

    addresses = []
    for node in (nodes or {}).get("items", []):
        for address in node.get("status", {}).get("addresses", []):
            if address.get("type") == "InternalIP" and address.get("address"):
                addresses.append(address["address"])
    return addresses


@dataclass(slots=True)
class TrustReport:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _discover_nodes(ctx: Context) -> list[str]:
    try:
        user = preflight.target_user()
    except PreflightError:
        return []
    command = ["sudo", "-u", user.name, "kubectl", "get", "nodes", "-o", "json"]
    try:
        return parse_internal_ips(ctx.runner.json(command))
    except CommandError:
        return []


def trust_ca_on_nodes(
    ctx: Context,
    nodes: list[str] | None = None,
    *,
    user: str | None = None,
    ca_cert: Path | None = None,
) -> TrustReport:
    """Install the CA into every node's system trust store over SSH."""

    console, runner = ctx.console, ctx.runner
    ca_cert = ca_cert or ctx.settings.tls.ca_cert
    console.border("Step 0: Pre-flight Checks")
    for tool in ("ssh", "scp"):
        preflight.require_tool(tool, f"{tool} is not installed.")
    if not ca_cert.exists():
        raise PreflightError(f"CA certificate not found: {ca_cert}. Run 'ek8s tls ca' first.")
    console.success(f"Using CA certificate {ca_cert}")

    console.border("Step 1: Select Nodes")
    if not nodes:
        nodes = _discover_nodes(ctx)
        if nodes:
            console.info("Detected cluster nodes: " + ", ".join(nodes))
            if not ctx.prompter.agree("Use these nodes?"):
                nodes = []
    if not nodes:
        answer = ctx.prompter.ask("Enter node IPs or hostnames separated by spaces")
        nodes = answer.split()
    if not nodes:
        raise ToolkitError("No nodes specified.")
    if user is None:
        default_user = os.environ.get("SUDO_USER") or runner.capture(["whoami"])
        user = ctx.prompter.ask("SSH user", default=default_user)

    console.border("Step 2: Test SSH Connectivity")
    reach = ["ssh", *SSH_OPTIONS, "-o", "BatchMode=yes"]
    unreachable = [
        node for node in nodes if not runner.succeeds([*reach, f"{user}@{node}", "echo"])
    ]
    if unreachable:
        raise PreflightError(
            "Cannot reach these nodes over SSH: " + ", ".join(unreachable)
            + ". Set up key-based SSH access first."
        )
    console.success(f"All {len(nodes)} node(s) are reachable.")

    console.border("Step 3: Distribute and Install the CA")
    script = TRUST_SCRIPT.render(tmp=REMOTE_CA_TMP, target=REMOTE_CA_PATH)
    report = TrustReport()
    for node in nodes:
        target = f"{user}@{node}"
        try:
            runner.run(["scp", *SSH_OPTIONS, str(ca_cert), f"{target}:{REMOTE_CA_TMP}"])
            runner.run(["ssh", *SSH_OPTIONS, target, "sudo", "bash", "-s"], input_text=script)
        except CommandError as exc:
            console.error(f"{node}: {exc}")
            report.failed.append(node)
            continue
        console.success(f"{node}: CA installed.")
        report.succeeded.append(node)

    console.border("Summary")
    console.echo(f"  Successful: {len(report.succeeded)}")
    console.echo(f"  Failed:     {len(report.failed)}")
    if report.failed:
        raise OperationAborted(
            "CA installation failed on: " + ", ".join(report.failed), exit_code=1
        )
    console.next_steps(["Restart pods that pull from services using the private CA."])
    return report
