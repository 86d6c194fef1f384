"""Re-image the microSD card from an SSD-booted Jetson."""

from __future__ import annotations

from pathlib import Path

from .. import preflight
from ..context import Context
from ..errors import PreflightError
from . import extlinux, storage

FRESH_MOUNT = Path("/mnt/microsd_fresh")


def _check_prerequisites(ctx: Context, image: Path) -> str:
    console = ctx.console
    device = ctx.settings.jetson.microsd_device
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_ssd_root(ctx.runner)
    console.success("System is running from the NVMe SSD.")
    if not image.is_file():
        raise PreflightError(f"Recovery image not found at {image}.")
    console.success(f"Found recovery image {image}.")
    preflight.require_block_device(device, "microSD card")
    console.success(f"Found microSD card at {device}.")
    return device


def _unmount_partitions(ctx: Context, device: str) -> None:
    mounted = ctx.runner.capture(["lsblk", "-lnpo", "NAME,MOUNTPOINT", device], check=False)
    for line in mounted.splitlines():
        parts = line.split(None, 1)
        if len(parts) == 2 and parts[0] != device:
            ctx.runner.run(["umount", parts[0]])


def _write_image(ctx: Context, image: Path, device: str) -> None:
    ctx.console.explain(
        """
        dd copies the image byte for byte. conv=fdatasync makes dd wait until
        the data is physically on the card before it reports success.
        """
    )
    _unmount_partitions(ctx, device)
    ctx.runner.run(
        ["dd", f"if={image}", f"of={device}", "bs=4M", "conv=fdatasync", "status=progress"],
        capture_stderr=False,
    )
    ctx.runner.run(["sync"])
    ctx.console.success(f"Wrote {image.name} to {device}.")


def reimage_microsd(ctx: Context, image: Path | None = None) -> None:
    """Overwrite the microSD card with a recovery image. NVRAM is untouched."""

    image = image or ctx.settings.jetson.recovery_image
    device = _check_prerequisites(ctx, image)

    ctx.console.border("Step 1: Confirm")
    ctx.prompter.confirm_phrase(
        f"ALL data on {device} will be overwritten with {image}.",
        "reimage microsd",
        abort_message="Confirmation failed. The microSD card was not modified.",
    )

    ctx.console.border("Step 2: Write Image")
    _write_image(ctx, image, device)
    ctx.console.next_steps(
        [
            "The SSD is still the root filesystem; NVRAM entries were not changed.",
            "To boot the fresh card, run: sudo ek8s jetson factory-reset",
        ]
    )


def factory_reset(ctx: Context, image: Path | None = None) -> None:
    """Re-image the microSD and make it the root filesystem again."""

    image = image or ctx.settings.jetson.recovery_image
    device = _check_prerequisites(ctx, image)
    partition = ctx.settings.jetson.microsd_root_partition
    runner = ctx.runner

    ctx.console.border("Step 1: Confirm")
    ctx.console.explain(
        """
        A factory reset rewrites the microSD card and points its bootloader at
        the card itself. After the reboot the SSD is no longer used as root.
        """
    )
    ctx.prompter.confirm_phrase(
        f"This node will be reset and {device} overwritten.",
        "reset this node",
        abort_message="Confirmation failed. No changes were made.",
    )

    ctx.console.border("Step 2: Write Image")
    _write_image(ctx, image, device)
    runner.run(["partprobe", device])
    runner.pause(3)

    ctx.console.border("Step 3: Configure Fresh Card")
    with storage.mounted(runner, partition, FRESH_MOUNT) as mount:
        runner.run(["cp", str(image), str(mount / "tmp") + "/"])
        ctx.console.success("Staged a copy of the recovery image in /tmp on the card.")
        conf = mount / ctx.settings.jetson.extlinux_conf.relative_to("/")
        if not ctx.dry_run:
            text = extlinux.read_config(conf)
            runner.write_text(conf, extlinux.point_root_at_device(text, partition))
        ctx.console.success(f"Bootloader now uses root={partition}.")

    ctx.console.border("Factory Reset Complete")
    ctx.console.next_steps(
        [
            "Reboot: sudo reboot",
            "The node boots from the fresh microSD card.",
            "Start the setup again with: sudo ek8s jetson headless",
        ]
    )
