"""Bind mount descriptions and de-duplication of container mounts."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from bpm.specbuilder import Mount

_log = logging.getLogger(__name__)


@dataclass
class _MountOptions:
    rbind: bool = False
    exec: bool = False
    suid: bool = False
    dev: bool = False
    writable: bool = False

    def opts(self) -> list[str]:
        return [
            "rbind" if self.rbind else "bind",
            "exec" if self.exec else "noexec",
            "suid" if self.suid else "nosuid",
            "dev" if self.dev else "nodev",
            "rw" if self.writable else "ro",
        ]


MountOption = Callable[[_MountOptions], None]


def mount(source: str, destination: str, *options: MountOption) -> Mount:
    """Describe a bind mount; the most restrictive options apply by default."""
    settings = _MountOptions()
    for option in options:
        option(settings)
    return Mount(destination=destination, source=source, type="bind", options=settings.opts())


def identity_mount(path: str, *options: MountOption) -> Mount:
    """Describe a bind mount of ``path`` onto itself."""
    return mount(path, path, *options)


def allow_exec() -> MountOption:
    """Allow binaries to be executed from the mount."""

    def option(settings: _MountOptions) -> None:
        settings.exec = True

    return option


def allow_writes() -> MountOption:
    """Allow writes to the mount."""

    def option(settings: _MountOptions) -> None:
        settings.writable = True

    return option


def with_recursive_bind() -> MountOption:
    """Bind nested mounts of the source recursively."""

    def option(settings: _MountOptions) -> None:
        settings.rbind = True

    return option


class MountDeduplicator:
    """Collects mounts, keeping the first one for each destination."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._by_destination: dict[str, Mount] = {}
        self._logger = logger or _log

    def add_mounts(self, mounts: Iterable[Mount]) -> None:
        for entry in mounts:
            destination = entry.destination
            if destination in self._by_destination:
                self._logger.info("duplicate-mount: %s", destination)
                continue
            self._by_destination[destination] = entry

    def mounts(self) -> list[Mount]:
        """Return the mounts, shallower destinations first."""
        return sorted(
            self._by_destination.values(),
            key=lambda m: len(m.destination.split("/")),
        )