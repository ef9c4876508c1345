"""Default seccomp profile applied to job containers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

ACT_ERRNO = "SCMP_ACT_ERRNO"
ACT_ALLOW = "SCMP_ACT_ALLOW"

ARCH_X86_64 = "SCMP_ARCH_X86_64"
ARCH_X86 = "SCMP_ARCH_X86"
ARCH_X32 = "SCMP_ARCH_X32"

OP_EQUAL_TO = "SCMP_CMP_EQ"
OP_MASKED_EQUAL = "SCMP_CMP_MASKED_EQ"


@dataclass(frozen=True)
class LinuxSeccompArg:
    """A condition on one syscall argument."""

    index: int
    value: int
    value_two: int
    op: str

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"index": self.index, "value": self.value}
        if self.value_two:
            data["valueTwo"] = self.value_two
        data["op"] = self.op
        return data


@dataclass
class LinuxSyscall:
    """An action taken for a set of syscalls."""

    names: list[str]
    action: str
    args: list[LinuxSeccompArg] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"names": list(self.names), "action": self.action}
        if self.args:
            data["args"] = [arg.to_dict() for arg in self.args]
        return data


@dataclass
class LinuxSeccomp:
    """A complete seccomp profile."""

    default_action: str
    architectures: list[str] = field(default_factory=list)
    syscalls: list[LinuxSyscall] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"defaultAction": self.default_action}
        if self.architectures:
            data["architectures"] = list(self.architectures)
        if self.syscalls:
            data["syscalls"] = [syscall.to_dict() for syscall in self.syscalls]
        return data


_Entry = Union[str, tuple[str, LinuxSeccompArg]]

_ALLOWED: tuple[_Entry, ...] = (
    "_llseek", "_newselect", "accept", "accept4", "access", "alarm",
    "arch_prctl", "bind", "brk", "capget", "capset", "chdir", "chmod",
    "chown", "chown32", "chroot", "clock_getres", "clock_gettime",
    "clock_nanosleep",
    ("clone", LinuxSeccompArg(0, 2080505856, 0, OP_MASKED_EQUAL)),
    "close", "connect", "copy_file_range", "creat", "dup", "dup2", "dup3",
    "epoll_create", "epoll_create1", "epoll_ctl", "epoll_ctl_old",
    "epoll_pwait", "epoll_wait", "epoll_wait_old", "eventfd", "eventfd2",
    "execve", "execveat", "exit", "exit_group", "faccessat", "fadvise64",
    "fadvise64_64", "fallocate", "fanotify_mark", "fchdir", "fchmod",
    "fchmodat", "fchown", "fchown32", "fchownat", "fcntl", "fcntl64",
    "fdatasync", "fgetxattr", "flistxattr", "flock", "fork", "fremovexattr",
    "fsetxattr", "fstat", "fstat64", "fstatat64", "fstatfs", "fstatfs64",
    "fsync", "ftruncate", "ftruncate64", "futex", "futimesat",
    "get_robust_list", "get_thread_area", "getcpu", "getcwd", "getdents",
    "getdents64", "getegid", "getegid32", "geteuid", "geteuid32", "getgid",
    "getgid32", "getgroups", "getgroups32", "getitimer", "getpeername",
    "getpgid", "getpgrp", "getpid", "getppid", "getpriority", "getrandom",
    "getresgid", "getresgid32", "getresuid", "getresuid32", "getrlimit",
    "getrusage", "getsid", "getsockname", "getsockopt", "gettid",
    "gettimeofday", "getuid", "getuid32", "getxattr", "inotify_add_watch",
    "inotify_init", "inotify_init1", "inotify_rm_watch", "io_cancel",
    "io_destroy", "io_getevents", "io_setup", "io_submit", "ioctl",
    "ioprio_get", "ioprio_set", "ipc", "kill", "lchown", "lchown32",
    "lgetxattr", "link", "linkat", "listen", "listxattr", "llistxattr",
    "lremovexattr", "lseek", "lsetxattr", "lstat", "lstat64", "madvise",
    "memfd_create", "mincore", "mkdir", "mkdirat", "mknod", "mknodat",
    "mlock", "mlock2", "mlockall", "mmap", "mmap2", "modify_ldt", "mprotect",
    "mq_getsetattr", "mq_notify", "mq_open", "mq_timedreceive",
    "mq_timedsend", "mq_unlink", "mremap", "msgctl", "msgget", "msgrcv",
    "msgsnd", "msync", "munlock", "munlockall", "munmap", "nanosleep",
    "newfstatat", "open", "openat", "pause",
    ("personality", LinuxSeccompArg(0, 0, 0, OP_EQUAL_TO)),
    ("personality", LinuxSeccompArg(0, 4294967295, 0, OP_EQUAL_TO)),
    ("personality", LinuxSeccompArg(0, 8, 0, OP_EQUAL_TO)),
    "pipe", "pipe2", "poll", "ppoll", "prctl", "pread64", "preadv",
    "prlimit64", "pselect6", "pwrite64", "pwritev", "read", "readahead",
    "readlink", "readlinkat", "readv", "recv", "recvfrom", "recvmmsg",
    "recvmsg", "remap_file_pages", "removexattr", "rename", "renameat",
    "renameat2", "restart_syscall", "rmdir", "rt_sigaction", "rt_sigpending",
    "rt_sigprocmask", "rt_sigqueueinfo", "rt_sigreturn", "rt_sigsuspend",
    "rt_sigtimedwait", "rt_tgsigqueueinfo", "sched_get_priority_max",
    "sched_get_priority_min", "sched_getaffinity", "sched_getattr",
    "sched_getparam", "sched_getscheduler", "sched_rr_get_interval",
    "sched_setaffinity", "sched_setattr", "sched_setparam",
    "sched_setscheduler", "sched_yield", "seccomp", "select", "semctl",
    "semget", "semop", "semtimedop", "send", "sendfile", "sendfile64",
    "sendmmsg", "sendmsg", "sendto", "set_robust_list", "set_thread_area",
    "set_tid_address", "setfsgid", "setfsgid32", "setfsuid", "setfsuid32",
    "setgid", "setgid32", "setgroups", "setgroups32", "setitimer", "setpgid",
    "setpriority", "setregid", "setregid32", "setresgid", "setresgid32",
    "setresuid", "setresuid32", "setreuid", "setreuid32", "setrlimit",
    "setsid", "setsockopt", "setuid", "setuid32", "setxattr", "shmat",
    "shmctl", "shmdt", "shmget", "shutdown", "sigaltstack", "signalfd",
    "signalfd4", "sigreturn", "socket", "socketcall", "socketpair", "splice",
    "stat", "stat64", "statfs", "statfs64", "symlink", "symlinkat", "sync",
    "sync_file_range", "syncfs", "sysinfo", "syslog", "tee", "tgkill", "time",
    "timer_create", "timer_delete", "timer_getoverrun", "timer_gettime",
    "timer_settime", "timerfd_create", "timerfd_gettime", "timerfd_settime",
    "times", "tkill", "truncate", "truncate64", "ugetrlimit", "umask",
    "uname", "unlink", "unlinkat", "utime", "utimensat", "utimes", "vfork",
    "vmsplice", "wait4", "waitid", "waitpid", "write", "writev",
)


def allow_syscall(syscall: str, *args: LinuxSeccompArg) -> LinuxSyscall:
    """Return a rule allowing ``syscall``, optionally restricted by ``args``."""
    return LinuxSyscall(names=[syscall], action=ACT_ALLOW, args=list(args))


def _rule(entry: _Entry) -> LinuxSyscall:
    if isinstance(entry, str):
        return allow_syscall(entry)
    name, arg = entry
    return allow_syscall(name, arg)


def default_seccomp() -> LinuxSeccomp:
    """Return a fresh copy of the default seccomp profile."""
    return LinuxSeccomp(
        default_action=ACT_ERRNO,
        architectures=[ARCH_X86_64, ARCH_X86, ARCH_X32],
        syscalls=[_rule(entry) for entry in _ALLOWED],
    )