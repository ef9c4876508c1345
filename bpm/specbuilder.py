"""Construction of OCI runtime specs for job containers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bpm.seccomp import LinuxSeccomp, default_seccomp
from bpm.sysfeat import Features

VERSION = "1.2.0"


@dataclass
class User:
    """The identity a container process runs as."""

    uid: int = 0
    gid: int = 0
    username: str = ""


@dataclass
class Mount:
    """A filesystem mounted into the container."""

    destination: str
    type: str = ""
    source: str = ""
    options: list[str] = field(default_factory=list)


@dataclass
class Root:
    """The container's root filesystem."""

    path: str
    readonly: bool = False


@dataclass
class Capabilities:
    """The Linux capability sets of a process."""

    bounding: list[str] = field(default_factory=list)
    effective: list[str] = field(default_factory=list)
    inheritable: list[str] = field(default_factory=list)
    permitted: list[str] = field(default_factory=list)
    ambient: list[str] = field(default_factory=list)


@dataclass
class Rlimit:
    """A POSIX resource limit."""

    type: str
    hard: int
    soft: int


@dataclass
class Process:
    """The process started inside the container."""

    user: User = field(default_factory=User)
    args: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    cwd: str = ""
    capabilities: Capabilities | None = None
    rlimits: list[Rlimit] = field(default_factory=list)
    no_new_privileges: bool = False
    terminal: bool = False


@dataclass
class Memory:
    """Memory limits of the container, in bytes."""

    limit: int | None = None
    swap: int | None = None


@dataclass
class Resources:
    """Cgroup resource limits of the container."""

    memory: Memory | None = None
    pids_limit: int | None = None


@dataclass
class Namespace:
    """A Linux namespace the container is placed in."""

    type: str
    path: str = ""


@dataclass
class Linux:
    """Linux-specific container configuration."""

    namespaces: list[Namespace] = field(default_factory=list)
    masked_paths: list[str] = field(default_factory=list)
    readonly_paths: list[str] = field(default_factory=list)
    resources: Resources | None = None
    rootfs_propagation: str = ""
    seccomp: LinuxSeccomp | None = None


@dataclass
class Spec:
    """An OCI runtime spec."""

    version: str = ""
    process: Process | None = None
    root: Root | None = None
    mounts: list[Mount] = field(default_factory=list)
    linux: Linux | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the spec in its JSON form (config.json)."""
        data: dict[str, Any] = {"ociVersion": self.version}
        if self.process is not None:
            data["process"] = _process_dict(self.process)
        if self.root is not None:
            root: dict[str, Any] = {"path": self.root.path}
            if self.root.readonly:
                root["readonly"] = True
            data["root"] = root
        if self.mounts:
            data["mounts"] = [_mount_dict(m) for m in self.mounts]
        if self.linux is not None:
            data["linux"] = _linux_dict(self.linux)
        return data


def _user_dict(user: User) -> dict[str, Any]:
    data: dict[str, Any] = {"uid": user.uid, "gid": user.gid}
    if user.username:
        data["username"] = user.username
    return data


def _mount_dict(mount: Mount) -> dict[str, Any]:
    data: dict[str, Any] = {"destination": mount.destination}
    if mount.type:
        data["type"] = mount.type
    if mount.source:
        data["source"] = mount.source
    if mount.options:
        data["options"] = list(mount.options)
    return data


def _capabilities_dict(caps: Capabilities) -> dict[str, Any]:
    sets = {
        "bounding": caps.bounding,
        "effective": caps.effective,
        "inheritable": caps.inheritable,
        "permitted": caps.permitted,
        "ambient": caps.ambient,
    }
    return {name: list(values) for name, values in sets.items() if values}


def _process_dict(process: Process) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if process.terminal:
        data["terminal"] = True
    data["user"] = _user_dict(process.user)
    if process.args:
        data["args"] = list(process.args)
    if process.env:
        data["env"] = list(process.env)
    data["cwd"] = process.cwd
    if process.capabilities is not None:
        data["capabilities"] = _capabilities_dict(process.capabilities)
    if process.rlimits:
        data["rlimits"] = [
            {"type": r.type, "hard": r.hard, "soft": r.soft} for r in process.rlimits
        ]
    if process.no_new_privileges:
        data["noNewPrivileges"] = True
    return data


def _resources_dict(resources: Resources) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if resources.memory is not None:
        memory: dict[str, Any] = {}
        if resources.memory.limit is not None:
            memory["limit"] = resources.memory.limit
        if resources.memory.swap is not None:
            memory["swap"] = resources.memory.swap
        data["memory"] = memory
    if resources.pids_limit is not None:
        data["pids"] = {"limit": resources.pids_limit}
    return data


def _linux_dict(linux: Linux) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if linux.resources is not None:
        data["resources"] = _resources_dict(linux.resources)
    if linux.namespaces:
        namespaces = []
        for ns in linux.namespaces:
            entry = {"type": ns.type}
            if ns.path:
                entry["path"] = ns.path
            namespaces.append(entry)
        data["namespaces"] = namespaces
    if linux.seccomp is not None:
        data["seccomp"] = linux.seccomp.to_dict()
    if linux.rootfs_propagation:
        data["rootfsPropagation"] = linux.rootfs_propagation
    if linux.masked_paths:
        data["maskedPaths"] = list(linux.masked_paths)
    if linux.readonly_paths:
        data["readonlyPaths"] = list(linux.readonly_paths)
    return data


SpecOption = Callable[[Spec], None]

ROOT_USER = User(uid=0, gid=0)

_PRIVILEGED_CAPABILITIES = (
    "CAP_AUDIT_CONTROL",
    "CAP_AUDIT_READ",
    "CAP_AUDIT_WRITE",
    "CAP_BLOCK_SUSPEND",
    "CAP_CHOWN",
    "CAP_DAC_OVERRIDE",
    "CAP_DAC_READ_SEARCH",
    "CAP_FOWNER",
    "CAP_FSETID",
    "CAP_IPC_LOCK",
    "CAP_IPC_OWNER",
    "CAP_KILL",
    "CAP_LEASE",
    "CAP_LINUX_IMMUTABLE",
    "CAP_MAC_ADMIN",
    "CAP_MAC_OVERRIDE",
    "CAP_MKNOD",
    "CAP_NET_ADMIN",
    "CAP_NET_BIND_SERVICE",
    "CAP_NET_BROADCAST",
    "CAP_NET_RAW",
    "CAP_SETFCAP",
    "CAP_SETGID",
    "CAP_SETPCAP",
    "CAP_SETUID",
    "CAP_SYSLOG",
    "CAP_SYS_ADMIN",
    "CAP_SYS_BOOT",
    "CAP_SYS_CHROOT",
    "CAP_SYS_MODULE",
    "CAP_SYS_NICE",
    "CAP_SYS_PACCT",
    "CAP_SYS_PTRACE",
    "CAP_SYS_RAWIO",
    "CAP_SYS_RESOURCE",
    "CAP_SYS_TIME",
    "CAP_SYS_TTY_CONFIG",
    "CAP_WAKE_ALARM",
)


def default_privileged_capabilities() -> list[str]:
    """Return the capabilities granted to privileged containers."""
    return list(_PRIVILEGED_CAPABILITIES)


def default_spec() -> Spec:
    """Return the restrictive base spec every job container starts from."""
    return Spec(
        version=VERSION,
        process=Process(capabilities=Capabilities(), no_new_privileges=True),
        linux=Linux(
            masked_paths=[
                "/etc/sv",
                "/proc/kcore",
                "/proc/latency_stats",
                "/proc/sched_debug",
                "/proc/timer_list",
                "/proc/timer_stats",
                "/sys/firmware",
            ],
            readonly_paths=[
                "/proc/asound",
                "/proc/bus",
                "/proc/fs",
                "/proc/irq",
                "/proc/sys",
                "/proc/sysrq-trigger",
            ],
            resources=Resources(),
            rootfs_propagation="private",
            seccomp=default_seccomp(),
        ),
        mounts=[
            Mount(destination="/proc", type="proc", source="proc"),
            Mount(
                destination="/dev",
                type="tmpfs",
                source="tmpfs",
                options=["nosuid", "noexec", "mode=755"],
            ),
            Mount(
                destination="/dev/pts",
                type="devpts",
                source="devpts",
                options=["nosuid", "noexec", "newinstance", "ptmxmode=0666", "mode=0620", "gid=5"],
            ),
            Mount(
                destination="/dev/shm",
                type="tmpfs",
                source="shm",
                options=["nosuid", "noexec", "nodev", "mode=1777"],
            ),
            Mount(
                destination="/dev/mqueue",
                type="mqueue",
                source="mqueue",
                options=["nosuid", "noexec", "nodev"],
            ),
            Mount(
                destination="/sys",
                type="sysfs",
                source="sysfs",
                options=["nosuid", "noexec", "nodev", "ro"],
            ),
        ],
    )


def build(*options: SpecOption) -> Spec:
    """Return the default spec with ``options`` applied in order."""
    spec = default_spec()
    apply(spec, *options)
    return spec


def apply(spec: Spec, *options: SpecOption) -> None:
    """Apply ``options`` to ``spec`` in order."""
    for option in options:
        option(spec)


def with_root_filesystem(path: str) -> SpecOption:
    def option(spec: Spec) -> None:
        spec.root = Root(path=path)

    return option


def with_namespace(namespace: str) -> SpecOption:
    def option(spec: Spec) -> None:
        spec.linux.namespaces.append(Namespace(type=namespace))

    return option


def with_user(user: User) -> SpecOption:
    def option(spec: Spec) -> None:
        spec.process.user = user

    return option


def with_process(executable: str, args: list[str], environment: list[str], cwd: str) -> SpecOption:
    def option(spec: Spec) -> None:
        spec.process.args = [executable, *args]
        spec.process.env = list(environment)
        spec.process.cwd = cwd

    return option


def with_capabilities(capabilities: list[str]) -> SpecOption:
    # The effective set is left alone: the kernel derives it from the others.
    def option(spec: Spec) -> None:
        caps = spec.process.capabilities
        if caps is None:
            caps = spec.process.capabilities = Capabilities()
        caps.ambient.extend(capabilities)
        caps.bounding.extend(capabilities)
        caps.inheritable.extend(capabilities)
        caps.permitted.extend(capabilities)

    return option


def with_mounts(mounts: list[Mount]) -> SpecOption:
    def option(spec: Spec) -> None:
        spec.mounts.extend(mounts)

    return option


def _resources(spec: Spec) -> Resources:
    if spec.linux.resources is None:
        spec.linux.resources = Resources()
    return spec.linux.resources


def with_memory_limit(limit: int, features: Features) -> SpecOption:
    def option(spec: Spec) -> None:
        memory = Memory(limit=limit)
        if features.swap_limit_supported:
            memory.swap = limit
        _resources(spec).memory = memory

    return option


def with_pid_limit(limit: int) -> SpecOption:
    def option(spec: Spec) -> None:
        _resources(spec).pids_limit = limit

    return option


def with_open_file_limit(limit: int) -> SpecOption:
    def option(spec: Spec) -> None:
        spec.process.rlimits.append(Rlimit(type="RLIMIT_NOFILE", hard=limit, soft=limit))

    return option


def _remove_nosuid(options: list[str]) -> list[str]:
    if "nosuid" not in options:
        return options
    index = options.index("nosuid")
    return options[:index] + options[index + 1:]


def with_privileged() -> SpecOption:
    def option(spec: Spec) -> None:
        apply(spec, with_capabilities(default_privileged_capabilities()))
        apply(spec, with_user(User(uid=ROOT_USER.uid, gid=ROOT_USER.gid)))

        spec.process.no_new_privileges = False

        spec.linux.masked_paths = []
        spec.linux.readonly_paths = []
        spec.linux.seccomp = None

        for mount in spec.mounts:
            mount.options = _remove_nosuid(mount.options)

    return option