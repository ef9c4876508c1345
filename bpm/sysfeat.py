"""Detection of host features that decide which container options are usable."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import NamedTuple

MOUNTINFO_PATH = "/proc/self/mountinfo"

UNIFIED_MOUNTPOINT = "/sys/fs/cgroup"
HYBRID_MOUNTPOINT = "/sys/fs/cgroup/unified"

SWAP_PATH_CGROUP1 = "memory.memsw.limit_in_bytes"
SWAP_PATH_CGROUP2 = "memory.swap.max"

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass
class Features:
    """What the host system supports."""

    swap_limit_supported: bool = False


class _MountEntry(NamedTuple):
    mountpoint: str
    fstype: str
    super_options: tuple[str, ...]


def fetch() -> Features:
    """Inspect the host and report the features it supports."""
    return Features(swap_limit_supported=_swap_limit_supported())


def _unescape(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def _parse_line(line: str) -> _MountEntry | None:
    fields = line.split()
    if len(fields) < 7:
        return None
    try:
        separator = fields.index("-", 6)
    except ValueError:
        return None
    if separator + 1 >= len(fields):
        return None
    fstype = fields[separator + 1]
    options = fields[separator + 3] if separator + 3 < len(fields) else ""
    return _MountEntry(
        mountpoint=_unescape(fields[4]),
        fstype=fstype,
        super_options=tuple(opt for opt in options.split(",") if opt),
    )


def _read_mounts() -> Iterator[_MountEntry]:
    with open(MOUNTINFO_PATH, encoding="utf-8", errors="surrogateescape") as handle:
        for line in handle:
            entry = _parse_line(line)
            if entry is not None:
                yield entry


def _fstype_at(mounts: Iterable[_MountEntry], path: str) -> str | None:
    target = os.path.normpath(path)
    fstype = None
    for entry in mounts:
        if os.path.normpath(entry.mountpoint) == target:
            fstype = entry.fstype
    return fstype


def _exists(path: str) -> bool:
    try:
        os.stat(path)
    except OSError:
        return False
    return True


def _find_cgroup1_mountpoint(mounts: Iterable[_MountEntry], subsystem: str) -> str:
    for entry in mounts:
        if entry.fstype == "cgroup" and subsystem in entry.super_options:
            return entry.mountpoint
    raise FileNotFoundError(f"mountpoint for {subsystem} not found")


def _swap_limit_supported() -> bool:
    mounts = list(_read_mounts())

    if _fstype_at(mounts, UNIFIED_MOUNTPOINT) == "cgroup2":
        mountpoint = UNIFIED_MOUNTPOINT
        if _fstype_at(mounts, HYBRID_MOUNTPOINT) == "cgroup2":
            mountpoint = HYBRID_MOUNTPOINT
        return _exists(os.path.join(mountpoint, SWAP_PATH_CGROUP2))

    mountpoint = _find_cgroup1_mountpoint(mounts, "memory")
    return _exists(os.path.join(mountpoint, SWAP_PATH_CGROUP1))