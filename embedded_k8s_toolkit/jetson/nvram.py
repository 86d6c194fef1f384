"""Inspect and clean UEFI NVRAM boot entries via ``efibootmgr``."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .. import preflight
from ..context import Context
from ..runner import CommandError

ENTRY_RE = re.compile(r"^Boot(?P<number>[0-9A-Fa-f]{4})(?P<active>\*?)\s+(?P<rest>.*)$")
STANDARD_LABELS = (
    "Enter Setup",
    "UEFI SD Device",
    "UEFI PXE",
    "UEFI HTTP",
    "BootManagerMenuApp",
    "UEFI Shell",
    "UEFI Samsung",
)
EXPECTED_ENTRIES = {
    "0001": "UEFI SD Device (microSD card)",
    "0008": "UEFI Samsung SSD (NVMe drive, if present)",
}
EFIBOOTMGR_HINT = "efibootmgr not found. Is this a UEFI system?"


@dataclass(slots=True)
class BootEntry:
    number: str
    label: str
    active: bool = True
    device_path: str = ""

    def describe(self) -> str:
        marker = "*" if self.active else " "
        text = f"Boot{self.number}{marker} {self.label}"
        if self.device_path:
            text = f"{text}\t{self.device_path}"
        return text


@dataclass(slots=True)
class BootState:
    """Parsed ``efibootmgr`` listing."""

    current: str | None = None
    next: str | None = None
    timeout: int | None = None
    order: list[str] = field(default_factory=list)
    entries: list[BootEntry] = field(default_factory=list)

    def entry(self, number: str) -> BootEntry | None:
        for candidate in self.entries:
            if candidate.number == number.upper():
                return candidate
        return None

    @property
    def fell_back(self) -> bool:
        """Firmware booted something other than the first BootOrder entry."""

        return bool(self.current and self.order and self.current != self.order[0])


def _split_label(rest: str) -> tuple[str, str]:
    if "\t" in rest:
        label, _, path = rest.partition("\t")
        return label.strip(), path.strip()
    parts = re.split(r"\s{2,}", rest.strip(), maxsplit=1)
    if len(parts) == 2:
        return parts[0], parts[1]
    return rest.strip(), ""


def parse_efibootmgr(output: str) -> BootState:
    state = BootState()
    for raw in output.splitlines():
        line = raw.rstrip()
        if line.startswith("BootCurrent:"):
            state.current = line.split(":", 1)[1].strip().upper() or None
        elif line.startswith("BootNext:"):
            state.next = line.split(":", 1)[1].strip().upper() or None
        elif line.startswith("Timeout:"):
            match = re.search(r"\d+", line)
            state.timeout = int(match.group(0)) if match else None
        elif line.startswith("BootOrder:"):
            order = line.split(":", 1)[1].strip()
            state.order = [item.upper() for item in order.split(",") if item]
        else:
            match = ENTRY_RE.match(line)
            if not match:
                continue
            label, path = _split_label(match.group("rest"))
            state.entries.append(
                BootEntry(
                    number=match.group("number").upper(),
                    label=label,
                    active=bool(match.group("active")),
                    device_path=path,
                )
            )
    return state


def custom_entries(state: BootState, standard: tuple[str, ...]) -> list[BootEntry]:
    """Entries outside the factory allow-list, in listing order."""

    allowed = {number.upper() for number in standard}
    return [entry for entry in state.entries if entry.number not in allowed]


def unrecognised_labels(state: BootState) -> list[BootEntry]:
    return [
        entry
        for entry in state.entries
        if not any(label in entry.label for label in STANDARD_LABELS)
    ]


def read_boot_state(ctx: Context, *, verbose: bool = False) -> BootState:
    command = ["efibootmgr", "-v"] if verbose else ["efibootmgr"]
    return parse_efibootmgr(ctx.runner.capture(command))


def inspect_nvram(ctx: Context) -> BootState:
    """Print a read-only report of the firmware boot configuration."""

    console = ctx.console
    console.border("NVRAM Boot Configuration Inspector")
    preflight.ensure_root()
    preflight.require_tool("efibootmgr", EFIBOOTMGR_HINT)

    state = read_boot_state(ctx, verbose=True)

    console.border("Part 1: Current Boot State")
    current_label = state.current or "unknown"
    console.echo(f"BootCurrent (what the system actually booted from): {current_label}")
    console.echo(f"BootOrder (firmware's preference list): {','.join(state.order) or 'empty'}")
    if state.timeout is not None:
        console.echo(f"Timeout: {state.timeout} seconds")
    if state.fell_back:
        console.warn(
            f"Firmware booted Boot{state.current} instead of Boot{state.order[0]}; "
            "the preferred entry failed and the firmware fell back."
        )

    console.border("Part 2: All Boot Entries")
    for entry in state.entries:
        console.echo(entry.describe())

    console.border("Part 3: Analysis")
    current = state.entry(state.current) if state.current else None
    if current is not None:
        console.info(f"Currently booted from: {current.describe()}")
    console.explain(
        """
        Entries whose label is not one of the factory NVIDIA names usually come
        from a manual efibootmgr call. They can bypass extlinux.conf entirely.
        """
    )
    strangers = unrecognised_labels(state)
    if strangers:
        for entry in strangers:
            console.warn(f"CUSTOM ENTRY FOUND: {entry.describe()}")
    else:
        console.success("No custom boot entries detected.")

    console.border("Part 4: Boot Entry Reference")
    console.echo("Standard NVIDIA Boot Entries (Expected):")
    for number, description in EXPECTED_ENTRIES.items():
        console.echo(f"  Boot{number} - {description}")
    console.echo("Your Actual Entries:")
    for number in EXPECTED_ENTRIES:
        entry = state.entry(number)
        console.echo(f"  {entry.describe() if entry else f'Boot{number} missing'}")

    console.border("Inspection Complete")
    console.echo("This was a read-only inspection. No changes were made to NVRAM.")
    if strangers or custom_entries(state, ctx.settings.jetson.standard_boot_entries):
        console.echo("If custom entries were found, consider running 'ek8s nvram clean'.")
    return state


def clean_nvram(ctx: Context) -> tuple[list[str], list[str]]:
    """Delete every boot entry outside the standard allow-list.

    Returns the entry numbers that were removed and those that failed.
    """

    console = ctx.console
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_tool("efibootmgr", EFIBOOTMGR_HINT)
    console.success("efibootmgr is available.")

    console.border("Step 1: Scan for Custom Boot Entries")
    console.explain(
        """
        NVIDIA's factory image creates Boot0000 through Boot0008. Anything else
        was added later and is flagged for removal.
        """
    )
    state = read_boot_state(ctx)
    custom = custom_entries(state, ctx.settings.jetson.standard_boot_entries)
    if not custom:
        console.success("No custom boot entries found. NVRAM is clean.")
        return [], []
    for entry in custom:
        console.info(f"Found custom entry: Boot{entry.number}")
        console.echo(f"    {entry.describe()}")

    console.border("Step 2: Confirm Removal")
    console.echo(f"Found {len(custom)} custom boot entry/entries.")
    console.echo("These will be removed: " + " ".join(entry.number for entry in custom))
    console.echo("Removing these entries will not affect the standard NVIDIA boot entries.")
    ctx.prompter.confirm_yes(
        "Remove these custom entries?",
        abort_message="Operation cancelled. No changes made to NVRAM.",
    )

    console.border("Step 3: Removing Custom Entries")
    removed: list[str] = []
    failed: list[str] = []
    for entry in custom:
        try:
            ctx.runner.run(["efibootmgr", "-b", entry.number, "-B"])
        except CommandError as exc:
            console.error(f"Failed to remove Boot{entry.number}: {exc}")
            failed.append(entry.number)
            continue
        console.success(f"Removed Boot{entry.number}")
        removed.append(entry.number)

    console.border("Step 4: Verification")
    console.echo("Remaining boot entries:")
    for entry in read_boot_state(ctx).entries:
        console.echo(f"  {entry.describe()}")
    if failed:
        console.error("Some entries could not be removed: " + " ".join(failed))
    else:
        console.success("NVRAM cleanup complete.")
    return removed, failed
