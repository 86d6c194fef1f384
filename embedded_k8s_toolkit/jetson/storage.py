"""Block device discovery and temporary mounts."""

from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import PreflightError
from ..runner import CommandRunner

NVME_PARTITION_RE = re.compile(r"^/dev/nvme\d+n\d+p1$")


def compose_partition(disk: str, number: str) -> str:
    if disk.endswith(tuple("0123456789")):
        return f"{disk}p{number}"
    return f"{disk}{number}"


def _is_rotational(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip() not in {"0", "false", ""}


def find_ssd(runner: CommandRunner, configured: str = "") -> str:
    """Return the first non-rotational NVMe disk, e.g. ``/dev/nvme0n1``."""

    if configured:
        return configured
    data = runner.json(["lsblk", "-d", "-J", "-o", "NAME,ROTA,TYPE,SIZE,MODEL"]) or {}
    for device in data.get("blockdevices", []):
        name = str(device.get("name", ""))
        if not name.startswith("nvme") or device.get("type", "disk") != "disk":
            continue
        if _is_rotational(device.get("rota", "0")):
            continue
        return f"/dev/{name}"
    raise PreflightError("No NVMe SSD detected. Is the drive installed and seated correctly?")


def find_ssd_partition(runner: CommandRunner, configured: str = "") -> str:
    if configured:
        return compose_partition(configured, "1")
    for line in runner.capture(["lsblk", "-pnl", "-o", "NAME"]).splitlines():
        name = line.strip()
        if NVME_PARTITION_RE.match(name):
            return name
    raise PreflightError(
        "Could not find an NVMe SSD partition. Did the clone step complete successfully?"
    )


def block_uuid(runner: CommandRunner, device: str) -> str:
    uuid = runner.capture(["blkid", "-s", "UUID", "-o", "value", device], check=False)
    if not uuid:
        raise PreflightError(f"Unable to read the filesystem UUID of {device}.")
    return uuid


def mount_source(runner: CommandRunner, mountpoint: str) -> str:
    return runner.capture(["findmnt", "-n", "-o", "SOURCE", mountpoint], check=False)


@contextmanager
def mounted(
    runner: CommandRunner,
    device: str,
    mountpoint: Path,
    *,
    read_only: bool = False,
    reuse_existing: bool = False,
) -> Iterator[Path]:
    """Mount ``device`` on ``mountpoint`` and always unmount on exit.

    With ``reuse_existing`` an existing mount of the same device is used in
    place. A different device already mounted there is refused.
    """

    if reuse_existing and runner.succeeds(["mountpoint", "-q", str(mountpoint)]):
        source = mount_source(runner, str(mountpoint))
        if source != device:
            raise PreflightError(
                f"{mountpoint} is already mounted from {source or 'an unknown device'}, "
                f"expected {device}."
            )
        try:
            yield mountpoint
        finally:
            runner.run(["umount", str(mountpoint)])
        return
    if not runner.dry_run:
        mountpoint.mkdir(parents=True, exist_ok=True)
    command = ["mount"]
    if read_only:
        command.extend(["-o", "ro"])
    runner.run([*command, device, str(mountpoint)])
    try:
        yield mountpoint
    finally:
        runner.run(["umount", str(mountpoint)])
        runner.run(["rmdir", str(mountpoint)], check=False)
