"""``root=`` rewrites in extlinux.conf."""

from __future__ import annotations

from pathlib import Path

import pytest

from embedded_k8s_toolkit.errors import ToolkitError
from embedded_k8s_toolkit.jetson import extlinux

CONF = """\
TIMEOUT 30
DEFAULT primary

LABEL primary
      MENU LABEL primary kernel
      LINUX /boot/Image
      INITRD /boot/initrd
      APPEND ${cbootargs} root=/dev/mmcblk0p1 rw rootwait rootfstype=ext4 root=/dev/sda1

LABEL backup
      APPEND ${cbootargs} root=/dev/mmcblk0p1 rw rootwait
"""

UUID = "5a8b7c2d-1e3f-4a5b-8c9d-0e1f2a3b4c5d"


def test_point_root_at_uuid_rewrites_first_argument_per_line() -> None:
    rewritten = extlinux.point_root_at_uuid(CONF, UUID)

    lines = rewritten.splitlines()
    assert f"root=UUID={UUID} rw rootwait rootfstype=ext4 root=/dev/sda1" in lines[7]
    assert lines[10].endswith(f"root=UUID={UUID} rw rootwait")
    assert extlinux.uses_uuid_root(rewritten)
    assert extlinux.root_uuid(rewritten) == UUID
    assert rewritten.count("\n") == CONF.count("\n")


def test_point_root_at_device_restores_microsd_root() -> None:
    on_ssd = extlinux.point_root_at_uuid(CONF, UUID)

    restored = extlinux.point_root_at_device(on_ssd, "/dev/mmcblk0p1")

    assert not extlinux.uses_uuid_root(restored)
    assert restored == CONF


def test_device_roots_are_not_uuid_roots() -> None:
    assert not extlinux.uses_uuid_root(CONF)
    assert extlinux.root_uuid(CONF) is None


def test_read_config_requires_the_file(tmp_path: Path) -> None:
    with pytest.raises(ToolkitError, match="Bootloader configuration not found"):
        extlinux.read_config(tmp_path / "extlinux.conf")
