"""Turns job and process configuration into host prerequisites and runc specs."""

from __future__ import annotations

import dataclasses
import glob as _glob
import logging
import os
import re
import stat
from collections.abc import Callable, Iterable, Sequence
from typing import Any, BinaryIO

from bpm import specbuilder
from bpm.mount import (
    MountDeduplicator,
    allow_exec,
    allow_writes,
    identity_mount,
    mount,
    with_recursive_bind,
)
from bpm.specbuilder import Mount, Spec, User
from bpm.sysfeat import Features

RESOLV_CONF_DIR = "/run/resolvconf"
SYSTEMD_RESOLVED_CONF_DIR = "/run/systemd/resolve"
DEFAULT_LANG = "en_US.UTF-8"

_DEFAULT_PATH = "{}:/usr/local/bin:/usr/local/sbin:/usr/bin:/usr/sbin:/bin:/sbin:."

GlobFunc = Callable[[str], list[str]]
MountShare = Callable[[str], None]

_KILOBYTE = 1024
_UNITS = {
    "B": 1,
    "K": _KILOBYTE,
    "M": _KILOBYTE**2,
    "G": _KILOBYTE**3,
    "T": _KILOBYTE**4,
    "P": _KILOBYTE**5,
    "E": _KILOBYTE**6,
}
_NUMBER = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_INVALID_QUANTITY = (
    "byte quantity must be a positive integer with a unit of measurement "
    "like M, MB, MiB, G, GiB, or GB"
)


def to_bytes(value: str) -> int:
    """Parse a human byte quantity such as ``100G`` or ``1.5MiB`` (1024-based)."""
    text = value.strip().upper()
    index = next((i for i, char in enumerate(text) if char.isalpha()), -1)
    if index == -1:
        raise ValueError(_INVALID_QUANTITY)
    number, unit = text[:index], text[index:]
    if not _NUMBER.fullmatch(number):
        raise ValueError(_INVALID_QUANTITY)
    amount = float(number)
    if amount < 0:
        raise ValueError(_INVALID_QUANTITY)
    if unit == "B":
        return int(amount)
    prefix = unit[0]
    if prefix not in _UNITS or prefix == "B" or unit[1:] not in ("", "B", "IB"):
        raise ValueError(_INVALID_QUANTITY)
    return int(amount * _UNITS[prefix])


class RuncAdapter:
    """Prepares the host for a job process and builds its container spec.

    ``bpm_cfg`` objects expose directory pairs (``pid_dir``, ``log_dir``,
    ``socket_dir``, ``temp_dir``, ``data_dir``, ``store_dir``, ``job_dir``,
    ``package_dir``, ``data_package_dir``, ``stdout``, ``stderr``,
    ``tini_path``) with ``external`` and ``internal`` paths, plus
    ``root_fs_path``. ``locker.lock_volume(path)`` returns a held lock with an
    ``unlock()`` method.
    """

    def __init__(
        self,
        features: Features,
        glob: GlobFunc = _glob.glob,
        share_mount: MountShare | None = None,
        locker: Any = None,
        *,
        resolv_conf_dirs: Sequence[str] = (RESOLV_CONF_DIR, SYSTEMD_RESOLVED_CONF_DIR),
    ) -> None:
        self._features = features
        self._glob = glob
        self._share_mount = share_mount
        self._locker = locker
        self._resolv_conf_dirs = tuple(resolv_conf_dirs)

    def create_job_prerequisites(
        self, bpm_cfg: Any, proc_cfg: Any, user: User
    ) -> tuple[BinaryIO, BinaryIO]:
        """Create the job's directories and open its stdout and stderr log files."""
        _make_dirs(bpm_cfg.pid_dir.external, 0o700)

        dirs_to_create: list[str] = []
        paths_to_chown: list[str] = []
        for volume in proc_cfg.additional_volumes or ():
            if volume.shared:
                self._make_shared(volume.path)

            if volume.mount_only:
                continue

            try:
                info = os.stat(volume.path)
            except FileNotFoundError:
                dirs_to_create.append(volume.path)
            else:
                if stat.S_ISDIR(info.st_mode):
                    os.chmod(volume.path, 0o700)

            paths_to_chown.append(volume.path)

        dirs_to_create += [
            bpm_cfg.log_dir.external,
            bpm_cfg.socket_dir.external,
            bpm_cfg.temp_dir.external,
        ]

        if proc_cfg.ephemeral_disk:
            dirs_to_create.append(bpm_cfg.data_dir.external)

        if proc_cfg.persistent_disk:
            store_dir = bpm_cfg.store_dir.external
            if not _path_exists(os.path.dirname(store_dir)):
                raise FileNotFoundError("requested persistent disk does not exist")
            dirs_to_create.append(store_dir)

        for directory in dirs_to_create:
            _make_dirs(directory, 0o700)
            os.chown(directory, user.uid, user.gid)

        for path in paths_to_chown:
            os.chown(path, user.uid, user.gid)

        return _create_log_files(bpm_cfg, user)

    def _make_shared(self, path: str) -> None:
        held = self._locker.lock_volume(path)
        try:
            self._share_mount(path)
        finally:
            held.unlock()

    def build_spec(
        self, logger: logging.Logger, bpm_cfg: Any, proc_cfg: Any, user: User
    ) -> Spec:
        """Build the runc spec for running the process described by ``proc_cfg``."""
        cwd = proc_cfg.work_dir or bpm_cfg.job_dir.internal

        dedup = MountDeduplicator(logger)
        mounts = _system_identity_mounts()
        mounts += [identity_mount(d) for d in self._resolv_conf_dirs if _path_exists(d)]
        dedup.add_mounts(mounts)

        bosh = _bosh_mounts(bpm_cfg, proc_cfg.ephemeral_disk, proc_cfg.persistent_disk)
        dedup.add_mounts(bosh)
        dedup.add_mounts(_user_identity_mounts(proc_cfg.additional_volumes or ()))

        unsafe = proc_cfg.unsafe
        if unsafe is not None and unsafe.unrestricted_volumes:
            expanded = self._glob_expand(unsafe.unrestricted_volumes)
            dedup.add_mounts(_user_identity_mounts(_filter_under_bosh_mounts(bosh, expanded)))

        executable = bpm_cfg.tini_path.internal
        args = ["-w", "-s", "--", proc_cfg.executable, *(proc_cfg.args or ())]

        spec = specbuilder.build(
            specbuilder.with_root_filesystem(bpm_cfg.root_fs_path),
            specbuilder.with_user(user),
            specbuilder.with_process(
                executable,
                args,
                _process_environment(proc_cfg.env or {}, bpm_cfg),
                cwd,
            ),
            specbuilder.with_capabilities([f"CAP_{cap}" for cap in proc_cfg.capabilities or ()]),
            specbuilder.with_mounts(dedup.mounts()),
            specbuilder.with_namespace("ipc"),
            specbuilder.with_namespace("mount"),
            specbuilder.with_namespace("uts"),
        )

        limits = proc_cfg.limits
        if limits is not None:
            if limits.memory is not None:
                memory = to_bytes(limits.memory)
                specbuilder.apply(spec, specbuilder.with_memory_limit(memory, self._features))
            if limits.processes is not None:
                specbuilder.apply(spec, specbuilder.with_pid_limit(limits.processes))
            if limits.open_files is not None:
                specbuilder.apply(spec, specbuilder.with_open_file_limit(limits.open_files))

        if unsafe is None or not unsafe.host_pid_namespace:
            specbuilder.apply(spec, specbuilder.with_namespace("pid"))

        if unsafe is not None and unsafe.privileged:
            specbuilder.apply(spec, specbuilder.with_privileged())

        return spec

    def _glob_expand(self, volumes: Iterable[Any]) -> list[Any]:
        return [
            _with_path(volume, match)
            for volume in volumes
            for match in self._glob(volume.path)
        ]


def _with_path(volume: Any, path: str) -> Any:
    if dataclasses.is_dataclass(volume):
        return dataclasses.replace(volume, path=path)
    clone = type(volume).__new__(type(volume))
    clone.__dict__.update(vars(volume))
    clone.path = path
    return clone


def _make_dirs(path: str, mode: int) -> None:
    """Create ``path`` and any missing parents, all with ``mode``."""
    try:
        os.mkdir(path, mode)
    except FileExistsError:
        if not os.path.isdir(path):
            raise
    except FileNotFoundError:
        parent = os.path.dirname(path)
        if not parent or parent == path:
            raise
        _make_dirs(parent, mode)
        try:
            os.mkdir(path, mode)
        except FileExistsError:
            if not os.path.isdir(path):
                raise


def _path_exists(path: str) -> bool:
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    return True


def _private_opener(path: str, flags: int) -> int:
    return os.open(path, flags, 0o600)


def _create_file_for(path: str, uid: int, gid: int) -> BinaryIO:
    handle = open(path, "ab+", opener=_private_opener)
    try:
        os.chown(path, uid, gid)
    except BaseException:
        handle.close()
        raise
    return handle


def _create_log_files(bpm_cfg: Any, user: User) -> tuple[BinaryIO, BinaryIO]:
    stdout = _create_file_for(bpm_cfg.stdout.external, user.uid, user.gid)
    try:
        stderr = _create_file_for(bpm_cfg.stderr.external, user.uid, user.gid)
    except BaseException:
        stdout.close()
        raise
    return stdout, stderr


def _filter_under_bosh_mounts(bosh_mounts: list[Mount], volumes: list[Any]) -> list[Any]:
    # Compare whole path components so that a job named "service-metrics" can
    # still mount the directory of a "service-metrics-adapter" job.
    def covered(volume: Any) -> bool:
        volume_parts = volume.path.split(os.sep)
        for entry in bosh_mounts:
            mount_parts = entry.destination.split(os.sep)
            if volume_parts[: len(mount_parts)] == mount_parts and len(mount_parts) <= len(volume_parts):
                return True
        return False

    return [volume for volume in volumes if not covered(volume)]


def _system_identity_mounts() -> list[Mount]:
    return [
        identity_mount(path, allow_exec())
        for path in ("/bin", "/etc", "/lib", "/lib64", "/sbin", "/usr")
    ]


def _bosh_mounts(bpm_cfg: Any, mount_data: bool, mount_store: bool) -> list[Mount]:
    job_dir = bpm_cfg.job_dir
    log_dir = bpm_cfg.log_dir
    tmp_dir = bpm_cfg.temp_dir
    package_dir = bpm_cfg.package_dir
    data_package_dir = bpm_cfg.data_package_dir

    mounts = [
        mount(tmp_dir.external, "/tmp", with_recursive_bind(), allow_writes()),
        mount(tmp_dir.external, "/var/tmp", with_recursive_bind(), allow_writes()),
        mount(tmp_dir.external, tmp_dir.internal, with_recursive_bind(), allow_writes()),
        mount(data_package_dir.external, data_package_dir.internal, allow_exec()),
        mount(package_dir.external, package_dir.internal, allow_exec()),
        mount(job_dir.external, job_dir.internal, allow_exec()),
        mount(log_dir.external, log_dir.internal, with_recursive_bind(), allow_writes()),
    ]

    if mount_data:
        data_dir = bpm_cfg.data_dir
        mounts.append(
            mount(data_dir.external, data_dir.internal, with_recursive_bind(), allow_writes())
        )

    if mount_store:
        store_dir = bpm_cfg.store_dir
        mounts.append(
            mount(store_dir.external, store_dir.internal, with_recursive_bind(), allow_writes())
        )

    return mounts


def _user_identity_mounts(volumes: Iterable[Any]) -> list[Mount]:
    mounts = []
    for volume in volumes:
        options = [with_recursive_bind()]
        if volume.allow_executions:
            options.append(allow_exec())
        if volume.writable:
            options.append(allow_writes())
        mounts.append(identity_mount(volume.path, *options))
    return mounts


def _default_path(bpm_cfg: Any) -> str:
    return _DEFAULT_PATH.format(bpm_cfg.job_dir.join("bin").internal)


def _process_environment(env: dict[str, str], bpm_cfg: Any) -> list[str]:
    environ = [f"{key}={value}" for key, value in env.items()]
    defaults = (
        ("TMPDIR", lambda: bpm_cfg.temp_dir.internal),
        ("LANG", lambda: DEFAULT_LANG),
        ("PATH", lambda: _default_path(bpm_cfg)),
        ("HOME", lambda: bpm_cfg.data_dir.internal),
    )
    environ += [f"{key}={value()}" for key, value in defaults if key not in env]
    return environ