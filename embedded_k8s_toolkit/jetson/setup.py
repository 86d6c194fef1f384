"""Jetson Orin bring-up runbooks: headless config through OS update.

Each function is one step of the microSD to NVMe migration. A human reboots
or shuts the board down between steps; nothing here resumes across boots.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .. import preflight
from ..context import Context
from ..errors import PreflightError
from . import extlinux, storage

HOSTS_FILE = Path("/etc/hosts")
FSTAB_FILE = Path("/etc/fstab")
SSD_MOUNT = Path("/mnt/ssd_root")
MICROSD_MOUNT = Path("/mnt/microsd_to_clean")
ZRAM_UNIT = "nvzramconfig.service"
RSYNC_EXCLUDES = (
    "/dev/*",
    "/proc/*",
    "/sys/*",
    "/tmp/*",
    "/run/*",
    "/mnt/*",
    "/media/*",
    "/lost+found",
)


@dataclass(frozen=True, slots=True)
class RunbookStep:
    number: str
    command: str
    title: str
    boot_medium: str
    then: str


RUNBOOK: tuple[RunbookStep, ...] = (
    RunbookStep("01", "jetson headless", "Configure headless access", "microSD", "shut down"),
    RunbookStep("02", "jetson clone", "Clone the OS to the NVMe SSD", "microSD", "continue"),
    RunbookStep("03", "jetson boot-ssd", "Point extlinux.conf at the SSD", "microSD", "reboot"),
    RunbookStep("04", "jetson strip-microsd", "Strip the microSD rootfs", "SSD", "continue"),
    RunbookStep("05", "jetson update-os", "Update the operating system", "SSD", "reboot"),
    RunbookStep("06", "jetson verify", "Verify the final configuration", "SSD", "done"),
)


def print_runbook(ctx: Context) -> None:
    ctx.console.border("Jetson Orin Setup Runbook")
    for step in RUNBOOK:
        ctx.console.echo(
            f"  {step.number}. {step.title:<36} ek8s {step.command:<22}"
            f" boot: {step.boot_medium:<8} then: {step.then}"
        )


def parse_default_route(output: str) -> tuple[str, str] | None:
    """Return ``(interface, gateway)`` from ``ip route`` output."""

    for line in output.splitlines():
        fields = line.split()
        if not fields or fields[0] != "default":
            continue
        if len(fields) >= 5 and fields[1] == "via" and fields[3] == "dev":
            return fields[4], fields[2]
    return None


def parse_active_connection(output: str, interface: str) -> str | None:
    """Find the NetworkManager connection bound to ``interface``.

    ``nmcli -t`` escapes literal colons in names as ``\\:``.
    """

    for line in output.splitlines():
        name, sep, device = line.rpartition(":")
        if sep and device == interface and name:
            return name.replace("\\:", ":")
    return None


def parse_subnet_prefix(output: str) -> str | None:
    """First three octets of the global IPv4 address in ``ip -o addr`` output."""

    for line in output.splitlines():
        if "scope global" not in line:
            continue
        match = re.search(r"inet (\d+)\.(\d+)\.(\d+)\.\d+/", line)
        if match:
            return ".".join(match.groups())
    return None


def parse_host_octet(value: str) -> int:
    if not value.isdigit():
        raise PreflightError("Invalid input. You must enter a number.")
    octet = int(value)
    if not 1 <= octet <= 254:
        raise PreflightError("Invalid input. The last octet must be between 1 and 254.")
    return octet


def rename_host(hosts: str, old: str, new: str) -> str:
    pattern = re.compile(rf"^127\.0\.1\.1\s.*\b{re.escape(old)}\b.*$", re.MULTILINE)
    if pattern.search(hosts):
        return pattern.sub(f"127.0.1.1\t{new}", hosts)
    suffix = "" if not hosts or hosts.endswith("\n") else "\n"
    return f"{hosts}{suffix}127.0.1.1\t{new}\n"


def comment_swap_entries(fstab: str) -> str:
    lines = []
    for line in fstab.splitlines(keepends=True):
        if " swap " in line and not line.lstrip().startswith("#"):
            line = f"#{line}"
        lines.append(line)
    return "".join(lines)


def _configure_static_ip(ctx: Context) -> None:
    console, runner = ctx.console, ctx.runner
    route = parse_default_route(runner.capture(["ip", "route"]))
    if route is None:
        raise PreflightError(
            "Could not detect the primary network interface. Is Ethernet plugged in?"
        )
    interface, gateway = route
    connection = parse_active_connection(
        runner.capture(["nmcli", "-t", "-f", "NAME,DEVICE", "con", "show", "--active"]),
        interface,
    )
    if connection is None:
        raise PreflightError(
            f"Could not find a NetworkManager connection for interface '{interface}'."
        )

    method = runner.capture(["nmcli", "-g", "ipv4.method", "con", "show", connection])
    if method == "manual":
        address = runner.capture(["nmcli", "-g", "IP4.ADDRESS", "con", "show", connection])
        console.success(f"Static IP is already configured: {address.split('/')[0]}")
        return

    console.info("A server needs a permanent, predictable IP address. We'll now configure one.")
    subnet = parse_subnet_prefix(
        runner.capture(["ip", "-o", "-f", "inet", "addr", "show", interface])
    )
    if subnet is None:
        raise PreflightError(f"Could not determine the IPv4 subnet of '{interface}'.")
    prefix = ctx.settings.network.prefix_length
    console.echo("Detected Network Details:")
    console.echo(f"  - Connection Name: '{connection}' on Interface '{interface}'")
    console.echo(f"  - Network Subnet:  {subnet}.0/{prefix}")
    console.echo(f"  - Network Gateway: {gateway}")
    octet = parse_host_octet(
        ctx.prompter.ask("Enter the last number (octet) for this node's static IP")
    )
    static_ip = f"{subnet}.{octet}"

    console.echo(f"Configuring static IP to {static_ip}...")
    runner.run(
        [
            "nmcli",
            "con",
            "mod",
            connection,
            "ipv4.method",
            "manual",
            "ipv4.addresses",
            f"{static_ip}/{prefix}",
            "ipv4.gateway",
            gateway,
            "ipv4.dns",
            ",".join(ctx.settings.network.dns),
        ]
    )
    runner.run(["nmcli", "con", "down", connection])
    runner.run(["nmcli", "con", "up", connection])
    runner.pause(2)
    console.success(f"Static IP configured. After shutdown, SSH will be available at: {static_ip}")


def _customize_hostname(ctx: Context) -> None:
    current = ctx.runner.capture(["hostname"])
    new_hostname = ctx.prompter.ask(
        "Enter a new hostname for this node (e.g., k8s-worker-1) or press Enter to keep",
        default=current,
    )
    if not new_hostname or new_hostname == current:
        ctx.console.info("Skipping hostname change.")
        return
    ctx.console.echo(f"Setting hostname to '{new_hostname}'...")
    ctx.runner.run(["hostnamectl", "set-hostname", new_hostname])
    hosts = HOSTS_FILE.read_text(encoding="utf-8") if HOSTS_FILE.exists() else ""
    ctx.runner.write_text(HOSTS_FILE, rename_host(hosts, current, new_hostname))
    ctx.console.success(f"Hostname has been set to '{new_hostname}'.")


def _remove_desktop(ctx: Context) -> None:
    ctx.console.info("To create a lean, secure server, we will remove the desktop GUI.")
    if not ctx.prompter.agree("Remove the full desktop environment? (Highly Recommended)"):
        ctx.console.info("Skipping desktop removal. The GUI will remain installed.")
        return
    ctx.runner.run(["systemctl", "set-default", "multi-user.target"])
    ctx.console.echo("Removing desktop packages... This may take a few minutes.")
    ctx.runner.run(["apt-get", "remove", "--purge", "ubuntu-desktop", "-y"])
    ctx.runner.run(["apt-get", "autoremove", "--purge", "-y"])
    ctx.console.success("Desktop environment removed. System will now boot to terminal.")


def disable_swap(ctx: Context) -> None:
    ctx.console.info("Kubernetes requires swap memory to be disabled for stability.")
    ctx.runner.run(["swapoff", "-a"])
    if FSTAB_FILE.exists():
        fstab = FSTAB_FILE.read_text(encoding="utf-8")
        updated = comment_swap_entries(fstab)
        if updated != fstab:
            ctx.runner.write_text(FSTAB_FILE, updated)
    units = ctx.runner.capture(["systemctl", "list-unit-files"], check=False)
    if ZRAM_UNIT in units:
        ctx.runner.run(["systemctl", "stop", ZRAM_UNIT])
        ctx.runner.run(["systemctl", "disable", ZRAM_UNIT])
    ctx.console.success("All swap has been disabled.")


def config_headless(ctx: Context) -> None:
    console = ctx.console
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_microsd_root(ctx.runner)
    console.success("System is running from microSD card. Proceeding with headless setup.")

    console.border("Step 1: Network Configuration (Static IP)")
    _configure_static_ip(ctx)

    console.border("Step 2: System Customization & Hardening")
    _customize_hostname(ctx)
    _remove_desktop(ctx)
    disable_swap(ctx)

    console.border("Headless Configuration Complete")
    console.echo("The system is now configured for remote access.")
    console.next_steps(
        [
            "Shut down: sudo shutdown now",
            "Disconnect the monitor and keyboard.",
            "Power on, SSH in, and run: sudo ek8s jetson clone",
        ]
    )


def clone_os_to_ssd(ctx: Context) -> str:
    """Partition, format and rsync the running microSD root onto the SSD."""

    console, runner = ctx.console, ctx.runner
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    preflight.require_microsd_root(runner)
    console.success("System is running from microSD card.")
    ssd = storage.find_ssd(runner, ctx.settings.jetson.ssd_device)
    partition = storage.compose_partition(ssd, "1")
    console.success(f"Found NVMe SSD at {ssd}.")

    console.border("Step 1: Confirm Erase")
    console.explain(
        f"""
        The SSD at {ssd} gets a fresh GPT partition table with a single ext4
        partition. Everything currently stored on it is destroyed.
        """
    )
    ctx.prompter.confirm_phrase(
        f"All data on {ssd} will be erased.",
        "erase ssd",
        abort_message="Confirmation failed. No changes were made to the SSD.",
    )

    console.border("Step 2: Partition and Format")
    runner.run(["parted", "-s", ssd, "mklabel", "gpt"])
    runner.run(["parted", "-s", ssd, "mkpart", "primary", "ext4", "0%", "100%"])
    runner.pause(3)
    runner.run(["mkfs.ext4", "-F", partition])
    console.success(f"Created ext4 filesystem on {partition}.")

    console.border("Step 3: Clone Root Filesystem")
    console.explain(
        """
        rsync copies the live root filesystem while preserving hard links, ACLs
        and extended attributes. Virtual filesystems are excluded.
        """
    )
    with storage.mounted(runner, partition, SSD_MOUNT) as target:
        rsync = ["rsync", "-axHAWX", "--numeric-ids", "--info=progress2"]
        for pattern in RSYNC_EXCLUDES:
            rsync.append(f"--exclude={pattern}")
        rsync.extend(["/", f"{target}/"])
        runner.run(rsync, capture_stderr=False)
    console.success("Root filesystem cloned to the SSD.")

    console.border("Clone Complete")
    console.echo("The boot configuration has not been changed yet.")
    console.next_steps(["Run: sudo ek8s jetson boot-ssd"])
    return partition


def set_boot_to_ssd(ctx: Context) -> bool:
    """Rewrite ``extlinux.conf`` to mount the SSD as root.

    Returns ``False`` when the configuration already uses a UUID root.
    """

    console, runner = ctx.console, ctx.runner
    conf = ctx.settings.jetson.extlinux_conf
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    partition = storage.find_ssd_partition(runner, ctx.settings.jetson.ssd_device)
    console.success(f"Found SSD partition {partition}.")
    text = extlinux.read_config(conf)
    if extlinux.uses_uuid_root(text):
        console.success(f"{conf} already boots from UUID={extlinux.root_uuid(text)}.")
        console.info("No changes needed.")
        return False

    console.border("Step 1: Update Bootloader")
    console.explain(
        """
        The bootloader stays on the microSD card. Only the root= argument
        changes so the kernel mounts the SSD as its root filesystem.
        """
    )
    ctx.prompter.confirm_yn(
        f"Point {conf} at {partition}?",
        abort_message="Operation cancelled. extlinux.conf was not modified.",
    )
    uuid = storage.block_uuid(runner, partition)
    runner.write_text(conf, extlinux.point_root_at_uuid(text, uuid))
    console.success(f"Bootloader now uses root=UUID={uuid}.")
    console.next_steps(
        [
            "Reboot: sudo reboot",
            "Confirm the SSD is root: findmnt -n -o SOURCE /",
            "Run: sudo ek8s jetson strip-microsd",
        ]
    )
    return True


def strip_microsd_rootfs(ctx: Context) -> None:
    """Delete everything on the microSD root partition except ``/boot``."""

    console, runner = ctx.console, ctx.runner
    partition = ctx.settings.jetson.microsd_root_partition
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    preflight.require_ssd_root(runner)
    console.success("System is running from the NVMe SSD.")
    preflight.require_block_device(partition, "microSD root partition")

    console.border("Step 1: Confirm")
    console.explain(
        """
        The microSD card keeps only /boot so the firmware can still load the
        kernel and extlinux.conf. The old root filesystem is deleted.
        """
    )
    ctx.prompter.confirm_phrase(
        f"Everything on {partition} except /boot will be deleted.",
        "strip rootfs",
        abort_message="Confirmation failed. The microSD card was not modified.",
    )

    console.border("Step 2: Strip Root Filesystem")
    with storage.mounted(runner, partition, MICROSD_MOUNT, reuse_existing=True) as mount:
        runner.run(
            [
                "find",
                str(mount),
                "-mindepth",
                "1",
                "-maxdepth",
                "1",
                "-not",
                "-name",
                "boot",
                "-exec",
                "rm",
                "-rf",
                "{}",
                "+",
            ]
        )
    console.success("microSD card stripped to /boot.")
    console.next_steps(["Run: sudo ek8s jetson update-os"])


def update_os(ctx: Context) -> None:
    console, runner = ctx.console, ctx.runner
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    preflight.require_ssd_root(runner)
    console.success("System is running from the NVMe SSD.")

    console.border("Step 1: Update Packages")
    ctx.prompter.confirm_yn(
        "Run apt-get update and upgrade now?",
        abort_message="Operation cancelled. No packages were changed.",
    )
    runner.run(["apt-get", "update"])
    runner.run(["apt-get", "upgrade", "-y"], capture_stderr=False)
    console.success("Operating system updated.")
    console.next_steps(["Reboot: sudo reboot", "Run: sudo ek8s jetson verify"])
