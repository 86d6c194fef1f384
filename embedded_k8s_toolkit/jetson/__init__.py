"""Jetson Orin SSD migration, NVRAM and microSD runbooks."""

from .nvram import BootEntry, BootState, clean_nvram, inspect_nvram, parse_efibootmgr
from .recovery import factory_reset, reimage_microsd
from .setup import (
    RUNBOOK,
    clone_os_to_ssd,
    config_headless,
    set_boot_to_ssd,
    strip_microsd_rootfs,
    update_os,
)
from .verify import CheckResult, verify_setup

__all__ = [
    "BootEntry",
    "BootState",
    "CheckResult",
    "RUNBOOK",
    "clean_nvram",
    "clone_os_to_ssd",
    "config_headless",
    "factory_reset",
    "inspect_nvram",
    "parse_efibootmgr",
    "reimage_microsd",
    "set_boot_to_ssd",
    "strip_microsd_rootfs",
    "update_os",
    "verify_setup",
]
