"""Precondition checks shared by the runbooks."""

from __future__ import annotations

import os
import pwd
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path

from .errors import PreflightError
from .runner import CommandRunner


@dataclass(slots=True)
class TargetUser:
    """The operator who invoked ``sudo``; kubeconfig and kubectl run as them."""

    name: str
    home: Path
    uid: int
    gid: int

    @property
    def kubeconfig(self) -> Path:
        return self.home / ".kube" / "config"


def ensure_root() -> None:
    if os.geteuid() != 0:
        raise PreflightError("This script must be run with root privileges. Please use 'sudo'.")


def has_tool(name: str) -> bool:
    return shutil.which(name) is not None


def require_tool(name: str, hint: str | None = None) -> str:
    located = shutil.which(name)
    if not located:
        raise PreflightError(hint or f"{name} not found. Please install it first.")
    return located


def is_block_device(path: str | Path) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def require_block_device(path: str | Path, description: str) -> None:
    if not is_block_device(path):
        raise PreflightError(f"{description} not found at {path}.")


def root_source(runner: CommandRunner) -> str:
    return runner.capture(["findmnt", "-n", "-o", "SOURCE", "/"])


def booted_from_ssd(source: str) -> bool:
    return "nvme" in source


def require_ssd_root(runner: CommandRunner) -> str:
    source = root_source(runner)
    if not booted_from_ssd(source):
        raise PreflightError(
            f"System is not booted from the NVMe SSD (root is {source or 'unknown'}). "
            "Complete the SSD migration first."
        )
    return source


def require_microsd_root(runner: CommandRunner) -> str:
    source = root_source(runner)
    if booted_from_ssd(source):
        raise PreflightError(
            f"System is already booted from the NVMe SSD (root is {source}). "
            "This step must run while booted from the microSD card."
        )
    return source


def target_user(environ: dict[str, str] | None = None) -> TargetUser:
    """Resolve ``SUDO_USER`` to the account that should own kubeconfig files."""

    environ = os.environ if environ is None else environ
    name = environ.get("SUDO_USER", "")
    if not name or name == "root":
        raise PreflightError(
            "SUDO_USER is not set. Run this script with 'sudo' from your regular user account."
        )
    try:
        entry = pwd.getpwnam(name)
    except KeyError:
        raise PreflightError(f"User {name} does not exist on this system.") from None
    return TargetUser(name=name, home=Path(entry.pw_dir), uid=entry.pw_uid, gid=entry.pw_gid)


def swap_active(runner: CommandRunner) -> bool:
    return bool(runner.capture(["swapon", "--show"], check=False))


def directory_has_entries(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())
