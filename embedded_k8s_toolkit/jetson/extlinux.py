"""Read and rewrite the ``root=`` argument in ``extlinux.conf``."""

from __future__ import annotations

import re
from pathlib import Path

from ..errors import ToolkitError

ROOT_ARG_RE = re.compile(r"root=[^ \n]*")
UUID_ROOT_RE = re.compile(r"root=UUID=(?P<uuid>[^ \n]*)")


def uses_uuid_root(text: str) -> bool:
    return UUID_ROOT_RE.search(text) is not None


def root_uuid(text: str) -> str | None:
    match = UUID_ROOT_RE.search(text)
    return match.group("uuid") if match else None


def _rewrite_lines(text: str, pattern: re.Pattern[str], replacement: str) -> str:
    # First match on each line only, like an unflagged sed substitution.
    return "".join(
        pattern.sub(lambda _match: replacement, line, count=1)
        for line in text.splitlines(keepends=True)
    )


def point_root_at_uuid(text: str, uuid: str) -> str:
    return _rewrite_lines(text, ROOT_ARG_RE, f"root=UUID={uuid}")


def point_root_at_device(text: str, device: str) -> str:
    return _rewrite_lines(text, UUID_ROOT_RE, f"root={device}")


def read_config(path: Path) -> str:
    if not path.exists():
        raise ToolkitError(f"Bootloader configuration not found at {path}.")
    return path.read_text(encoding="utf-8")
