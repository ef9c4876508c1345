"""Client that drives the runc binary to manage job containers."""

from __future__ import annotations

import enum
import io
import json
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from bpm.specbuilder import Spec, User

_CHUNK = 65536
_NOT_EXIST_MESSAGE = "container does not exist"


class Signal(enum.Enum):
    """Signals that can be delivered to a container."""

    TERM = "TERM"
    QUIT = "QUIT"
    INT = "INT"

    def __str__(self) -> str:
        return self.value


@dataclass
class ContainerState:
    """One entry of the container list reported by runc."""

    id: str = ""
    init_process_pid: int = 0
    status: str = ""


@dataclass
class State:
    """The OCI runtime state of a single container."""

    oci_version: str = ""
    id: str = ""
    status: str = ""
    pid: int = 0
    bundle: str = ""
    annotations: dict[str, str] = field(default_factory=dict)


def _state_from_dict(data: Any) -> State:
    if not isinstance(data, dict):
        raise ValueError(f"unexpected container state: {data!r}")
    return State(
        oci_version=data.get("ociVersion", ""),
        id=data.get("id", ""),
        status=data.get("status", ""),
        pid=data.get("pid", 0),
        bundle=data.get("bundle", ""),
        annotations=dict(data.get("annotations") or {}),
    )


def _container_state_from_dict(data: Any) -> ContainerState:
    if not isinstance(data, dict):
        raise ValueError(f"unexpected container entry: {data!r}")
    return ContainerState(
        id=data.get("id", ""),
        init_process_pid=data.get("pid", 0),
        status=data.get("status", ""),
    )


def _reports_missing_container(output: bytes) -> bool:
    try:
        decoded = json.loads(output)
    except ValueError:
        return False
    if not isinstance(decoded, dict):
        return False
    message = decoded.get("msg")
    if message is None:
        message = next((v for k, v in decoded.items() if k.lower() == "msg"), "")
    return isinstance(message, str) and _NOT_EXIST_MESSAGE in message


def _fileno(stream: Any) -> int | None:
    if stream is None:
        return None
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        return None


def _flush(stream: Any) -> None:
    flush = getattr(stream, "flush", None)
    if flush is not None:
        try:
            flush()
        except (OSError, ValueError):
            pass


def _write(target: Any, chunk: bytes) -> None:
    if isinstance(target, io.TextIOBase):
        target.write(chunk.decode(errors="replace"))
    else:
        target.write(chunk)


def _feed(source: Any, pipe: Any) -> None:
    try:
        while True:
            chunk = source.read(_CHUNK)
            if not chunk:
                break
            if isinstance(chunk, str):
                chunk = chunk.encode()
            pipe.write(chunk)
            pipe.flush()
    except (OSError, ValueError):
        pass
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def _drain(pipe: Any, target: Any) -> None:
    for chunk in iter(partial(pipe.read1, _CHUNK), b""):
        _write(target, chunk)
    _flush(target)


def _run(argv: list[str], *, stdin: Any = None, stdout: Any = None, stderr: Any = None) -> int:
    """Run ``argv`` wired to arbitrary readers and writers; return its exit code."""
    stdin_fd = _fileno(stdin)
    if stdin is None:
        stdin_arg: Any = subprocess.DEVNULL
    else:
        stdin_arg = stdin_fd if stdin_fd is not None else subprocess.PIPE

    outputs: dict[str, Any] = {}
    for name, target in (("stdout", stdout), ("stderr", stderr)):
        if target is None:
            outputs[name] = subprocess.DEVNULL
            continue
        _flush(target)
        fd = _fileno(target)
        outputs[name] = fd if fd is not None else subprocess.PIPE

    with subprocess.Popen(argv, stdin=stdin_arg, **outputs) as proc:
        if proc.stdin is not None:
            threading.Thread(target=_feed, args=(stdin, proc.stdin), daemon=True).start()
        drains = [
            threading.Thread(target=_drain, args=(pipe, target), daemon=True)
            for pipe, target in ((proc.stdout, stdout), (proc.stderr, stderr))
            if pipe is not None
        ]
        for thread in drains:
            thread.start()
        proc.wait()
        for thread in drains:
            thread.join()
    return proc.returncode


class RuncClient:
    """Runs runc commands against a given state root."""

    def __init__(self, runc_path: str, runc_root: str, in_systemd: bool = False) -> None:
        self._runc_path = runc_path
        self._runc_root = runc_root
        self._in_systemd = in_systemd

    def create_bundle(self, bundle_path: str, job_spec: Spec, user: User) -> None:
        """Create the bundle directory, an empty rootfs and its config.json."""
        os.makedirs(bundle_path, 0o700, exist_ok=True)
        os.makedirs(os.path.join(bundle_path, "rootfs"), 0o755, exist_ok=True)

        config_path = os.path.join(bundle_path, "config.json")
        fd = os.open(config_path, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o600)
        with open(fd, "w", encoding="utf-8") as handle:
            json.dump(job_spec.to_dict(), handle, indent="\t")
            handle.write("\n")

    def run_container(
        self,
        pid_file_path: str,
        bundle_path: str,
        container_id: str,
        detach: bool,
        stdout: Any,
        stderr: Any,
    ) -> int:
        """Run the container; raise CalledProcessError carrying the exit status on failure."""
        args = ["--bundle", bundle_path]
        if detach:
            args += ["--pid-file", pid_file_path, "--detach"]
        args.append(container_id)
        argv = self._command("run", *args)

        try:
            status = _run(argv, stdout=stdout, stderr=stderr)
        except OSError as exc:
            raise subprocess.CalledProcessError(1, argv) from exc
        if status != 0:
            raise subprocess.CalledProcessError(status if status > 0 else -1, argv)
        return 0

    def exec(self, container_id: str, command: str, stdin: Any, stdout: Any, stderr: Any) -> None:
        """Run ``command`` interactively on a terminal inside the container."""
        argv = self._command(
            "exec",
            "--tty",
            "--env",
            f"TERM={os.environ.get('TERM', '')}",
            container_id,
            command,
        )
        status = _run(argv, stdin=stdin, stdout=stdout, stderr=stderr)
        if status != 0:
            raise subprocess.CalledProcessError(status, argv)

    def container_state(self, container_id: str) -> State | None:
        """Return the container's state, or None if the container does not exist."""
        argv = self._command("--log-format", "json", "state", container_id)
        result = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
        if result.returncode != 0:
            if _reports_missing_container(result.stdout):
                return None
            raise subprocess.CalledProcessError(result.returncode, argv, output=result.stdout)
        return _state_from_dict(json.loads(result.stdout))

    def list_containers(self) -> list[ContainerState]:
        """Return every container runc knows about."""
        argv = self._command("list", "--format", "json")
        result = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=True,
        )
        data = json.loads(result.stdout)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValueError(f"unexpected container list: {data!r}")
        return [_container_state_from_dict(entry) for entry in data]

    def signal_container(self, container_id: str, signal: Signal) -> None:
        """Deliver ``signal`` to the container's init process."""
        self._check(self._command("kill", container_id, str(signal)))

    def delete_container(self, container_id: str) -> None:
        """Forcefully delete the container."""
        self._check(self._command("delete", "--force", container_id))

    def destroy_bundle(self, bundle_path: str) -> None:
        """Remove the bundle directory; a missing bundle is not an error."""
        try:
            shutil.rmtree(bundle_path)
        except FileNotFoundError:
            pass
        except NotADirectoryError:
            os.remove(bundle_path)

    @staticmethod
    def _check(argv: list[str]) -> None:
        subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )

    def _command(self, command: str, *extra: str) -> list[str]:
        argv = [self._runc_path, "--root", self._runc_root]
        if self._in_systemd:
            argv.append("--systemd-cgroup")
        argv.append(command)
        argv.extend(extra)
        return argv