"""Read-only verification of a finished Jetson SSD migration."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .. import preflight
from ..context import Context
from ..errors import PreflightError
from ..runner import CommandError
from . import extlinux, nvram, storage

VERIFY_MOUNT = Path("/mnt/verify_microsd")
EXTLINUX_RELATIVE = Path("boot/extlinux/extlinux.conf")
HEADLESS_TARGET = "multi-user.target"
MICROSD_ALLOWED = frozenset({"boot", "lost+found"})


class CheckStatus:
    """Possible verification result states."""

    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


STATUS_LABEL = {
    CheckStatus.PASS: "[PASS]",
    CheckStatus.FAIL: "[FAIL]",
    CheckStatus.SKIP: "[SKIP]",
}


@dataclass(slots=True)
class CheckResult:
    """Record the outcome of an individual verification step."""

    name: str
    status: str
    details: str
    data: dict[str, object] = field(default_factory=dict)


def evaluate_root(source: str) -> CheckResult:
    name = "Root filesystem on NVMe SSD"
    if preflight.booted_from_ssd(source):
        return CheckResult(name, CheckStatus.PASS, f"System is booted from the SSD ({source}).")
    return CheckResult(
        name,
        CheckStatus.FAIL,
        f"System is NOT booted from the SSD. Current root is: {source or 'unknown'}.",
    )


def evaluate_bootloader(conf_text: str | None, ssd_uuid: str | None) -> CheckResult:
    name = "Bootloader points at SSD"
    if conf_text is None:
        return CheckResult(
            name, CheckStatus.FAIL, "Could not find extlinux.conf on the microSD card."
        )
    found = extlinux.root_uuid(conf_text)
    if found is None:
        return CheckResult(
            name,
            CheckStatus.FAIL,
            "extlinux.conf does NOT use UUID format. It may still point to the microSD.",
        )
    if found != ssd_uuid:
        return CheckResult(
            name,
            CheckStatus.FAIL,
            f"extlinux.conf has a UUID but not the SSD's. Expected: {ssd_uuid}, Found: {found}",
            {"expected": ssd_uuid, "found": found},
        )
    return CheckResult(
        name, CheckStatus.PASS, f"extlinux.conf points to the SSD (UUID: {found}).", {"uuid": found}
    )


def evaluate_boot_current(current: str | None) -> CheckResult:
    name = "Standard NVIDIA boot path"
    if current == "0001":
        return CheckResult(
            name, CheckStatus.PASS, "System booted via standard path (Boot0001 - microSD ESP)."
        )
    if current == "0008":
        return CheckResult(
            name,
            CheckStatus.FAIL,
            "System booted directly from SSD (Boot0008). The microSD ESP is required.",
        )
    return CheckResult(
        name,
        CheckStatus.FAIL,
        f"System booted via non-standard entry (Boot{current or '????'}). "
        "Custom NVRAM entries may exist.",
    )


def evaluate_microsd_contents(entries: list[str]) -> CheckResult:
    name = "microSD stripped to /boot"
    data: dict[str, object] = {"entries": sorted(entries)}
    if "boot" in entries and not set(entries) - MICROSD_ALLOWED:
        return CheckResult(
            name,
            CheckStatus.PASS,
            "microSD contains only /boot (and optionally /lost+found).",
            data,
        )
    return CheckResult(
        name,
        CheckStatus.FAIL,
        "microSD has NOT been cleaned. It still contains old OS files.",
        data,
    )


def evaluate_efi_mount(source: str, expected: str) -> CheckResult:
    name = "/boot/efi mounted from microSD ESP"
    if source == expected:
        return CheckResult(name, CheckStatus.PASS, f"/boot/efi is mounted from {source}.")
    if not source:
        return CheckResult(
            name, CheckStatus.FAIL, "/boot/efi is NOT mounted. Kernel updates may fail."
        )
    return CheckResult(
        name,
        CheckStatus.FAIL,
        f"/boot/efi is mounted from wrong device: {source} (expected: {expected}).",
    )


def evaluate_swap(output: str) -> CheckResult:
    name = "Swap disabled"
    if not output.strip():
        return CheckResult(name, CheckStatus.PASS, "All swap devices are disabled.")
    return CheckResult(
        name,
        CheckStatus.FAIL,
        "Swap is still active. Kubernetes installation will fail.",
        {"swapon": output.strip()},
    )


def evaluate_default_target(target: str) -> CheckResult:
    name = "Headless boot target"
    if target == HEADLESS_TARGET:
        return CheckResult(name, CheckStatus.PASS, "System is configured for headless boot.")
    return CheckResult(
        name,
        CheckStatus.FAIL,
        f"System is NOT configured for headless boot. Current target: {target or 'unknown'}",
    )


def _ssd_uuid(ctx: Context) -> str | None:
    try:
        partition = storage.find_ssd_partition(ctx.runner, ctx.settings.jetson.ssd_device)
        return storage.block_uuid(ctx.runner, partition)
    except PreflightError:
        return None


def _microsd_checks(ctx: Context) -> list[CheckResult]:
    partition = ctx.settings.jetson.microsd_root_partition
    bootloader = "Bootloader points at SSD"
    contents = "microSD stripped to /boot"
    if ctx.dry_run:
        details = "microSD is not mounted during a dry run."
        return [
            CheckResult(bootloader, CheckStatus.SKIP, details),
            CheckResult(contents, CheckStatus.SKIP, details),
        ]
    if not preflight.is_block_device(partition):
        details = f"Could not find the microSD card partition at {partition}."
        return [
            CheckResult(bootloader, CheckStatus.FAIL, details),
            CheckResult(contents, CheckStatus.FAIL, details),
        ]
    try:
        with storage.mounted(ctx.runner, partition, VERIFY_MOUNT, read_only=True) as mount:
            conf = mount / EXTLINUX_RELATIVE
            conf_text = conf.read_text(encoding="utf-8") if conf.exists() else None
            entries = [child.name for child in mount.iterdir()]
    except CommandError as exc:
        details = f"Could not mount the microSD card: {exc}"
        return [
            CheckResult(bootloader, CheckStatus.FAIL, details),
            CheckResult(contents, CheckStatus.FAIL, details),
        ]
    return [
        evaluate_bootloader(conf_text, _ssd_uuid(ctx)),
        evaluate_microsd_contents(entries),
    ]


def collect_checks(ctx: Context) -> list[CheckResult]:
    runner = ctx.runner
    checks = [evaluate_root(preflight.root_source(runner))]
    bootloader, contents = _microsd_checks(ctx)
    checks.append(bootloader)
    boot_state = nvram.parse_efibootmgr(runner.capture(["efibootmgr"], check=False))
    checks.append(evaluate_boot_current(boot_state.current))
    checks.append(contents)
    checks.append(
        evaluate_efi_mount(
            storage.mount_source(runner, "/boot/efi"), ctx.settings.jetson.efi_partition
        )
    )
    checks.append(evaluate_swap(runner.capture(["swapon", "--show"], check=False)))
    checks.append(
        evaluate_default_target(runner.capture(["systemctl", "get-default"], check=False))
    )
    return checks


def exit_code(checks: list[CheckResult]) -> int:
    """Return 0 if no failures were encountered, otherwise 1."""

    return 1 if any(check.status == CheckStatus.FAIL for check in checks) else 0


def verify_setup(ctx: Context, *, as_json: bool = False) -> list[CheckResult]:
    preflight.ensure_root()
    console = ctx.console
    if as_json:
        with console.commands_on_stderr():
            checks = collect_checks(ctx)
        console.echo(json.dumps([asdict(check) for check in checks], indent=2, sort_keys=True))
        return checks

    checks = collect_checks(ctx)
    console.border("Jetson Setup Verification")
    for number, check in enumerate(checks, start=1):
        console.echo(f"{number}. {STATUS_LABEL[check.status]} {check.name}: {check.details}")
    console.border("Verification Complete")
    if exit_code(checks):
        console.echo("If any checks failed, review the setup steps and re-run them as needed.")
    else:
        console.next_steps(
            ["Install Kubernetes prerequisites: sudo ek8s k8s deps", "Then: sudo ek8s k8s kube"]
        )
    return checks
