"""Starting, stopping and inspecting job processes in runc containers."""

from __future__ import annotations

import io
import logging
import os
import subprocess
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bpm.client import Signal
from bpm.usertools import VCAP_USER

CONTAINER_SIGQUIT_GRACE_PERIOD = 2.0
CONTAINER_STATE_POLL_INTERVAL = 1.0

CONTAINER_STATE_RUNNING = "running"
CONTAINER_STATE_PAUSED = "paused"
CONTAINER_STATE_STOPPED = "stopped"

PROCESS_STATE_CREATING = "creating"
PROCESS_STATE_CREATED = "created"
PROCESS_STATE_RUNNING = "running"
PROCESS_STATE_FAILED = "failed"

_STATE_NAMES = {
    "creating": PROCESS_STATE_CREATING,
    "created": PROCESS_STATE_CREATED,
    "running": PROCESS_STATE_RUNNING,
    "stopped": PROCESS_STATE_FAILED,
}


class ProcessNotFoundError(LookupError):
    """The process is not running or could not be found."""

    def __init__(self, message: str = "process is not running or could not be found") -> None:
        super().__init__(message)


class StopTimeoutError(TimeoutError):
    """The job did not stop within its exit timeout."""

    def __init__(self, message: str = "failed to stop job within timeout") -> None:
        super().__init__(message)


def is_not_exist(err: BaseException | None) -> bool:
    """Tell whether ``err`` means the process does not exist."""
    return isinstance(err, ProcessNotFoundError)


@dataclass
class Process:
    """A job process as reported to users."""

    name: str
    pid: int
    status: str


class Clock:
    """Source of time; replaceable in tests."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


@dataclass
class _Command:
    args: list[str]
    env: list[str] = field(default_factory=list)
    stdout: Any = None
    stderr: Any = None


class CommandRunner:
    """Runs hook commands on the host."""

    def run(self, cmd: _Command) -> None:
        env = dict(item.split("=", 1) for item in cmd.env if "=" in item)
        for stream in (cmd.stdout, cmd.stderr):
            if stream is not None:
                stream.flush()
        subprocess.run(
            cmd.args,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=cmd.stdout,
            stderr=cmd.stderr,
            check=True,
        )


class _Tee:
    """A writer that copies everything to several targets."""

    def __init__(self, *targets: Any) -> None:
        self._targets = targets

    def write(self, data: bytes) -> int:
        for target in self._targets:
            if isinstance(target, io.TextIOBase):
                target.write(data.decode(errors="replace"))
            else:
                target.write(data)
        return len(data)

    def flush(self) -> None:
        for target in self._targets:
            target.flush()


def _binary(stream: Any) -> Any:
    return getattr(stream, "buffer", stream)


def _status_name(container_status: str) -> str:
    return _STATE_NAMES.get(container_status, PROCESS_STATE_FAILED)


def _shutdown_signal(proc_cfg: Any) -> Signal:
    return Signal.INT if getattr(proc_cfg, "shutdown_signal", "") == "INT" else Signal.TERM


class RuncLifecycle:
    """Manages job processes through a runc adapter and client."""

    def __init__(
        self,
        runc_client: Any,
        runc_adapter: Any,
        user_finder: Any,
        command_runner: CommandRunner | None = None,
        clock: Clock | None = None,
        delete_file: Callable[[str], None] = os.remove,
    ) -> None:
        self._runc_client = runc_client
        self._runc_adapter = runc_adapter
        self._user_finder = user_finder
        self._command_runner = command_runner or CommandRunner()
        self._clock = clock or Clock()
        self._delete_file = delete_file

    def start_process(self, logger: logging.Logger, bpm_cfg: Any, proc_cfg: Any) -> None:
        """Prepare and start the process in a detached container."""
        logger.info("start-process.starting")
        try:
            stdout, stderr = self._setup_process(logger, bpm_cfg, proc_cfg)
            with stdout, stderr:
                logger.info("start-process.running-container")
                self._runc_client.run_container(
                    bpm_cfg.pid_file.external,
                    bpm_cfg.bundle_path,
                    bpm_cfg.container_id,
                    True,
                    stdout,
                    stderr,
                )
        finally:
            logger.info("start-process.complete")

    def run_process(self, logger: logging.Logger, bpm_cfg: Any, proc_cfg: Any) -> int:
        """Run the process in the foreground, echoing its output; return its exit status."""
        logger.info("run-process.starting")
        try:
            stdout, stderr = self._setup_process(logger, bpm_cfg, proc_cfg)
            with stdout, stderr:
                logger.info("run-process.running-container")
                return self._runc_client.run_container(
                    bpm_cfg.pid_file.external,
                    bpm_cfg.bundle_path,
                    bpm_cfg.container_id,
                    False,
                    _Tee(stdout, _binary(sys.stdout)),
                    _Tee(stderr, _binary(sys.stderr)),
                )
        finally:
            logger.info("run-process.complete")

    def _setup_process(self, logger: logging.Logger, bpm_cfg: Any, proc_cfg: Any) -> tuple[Any, Any]:
        user = self._user_finder.lookup(VCAP_USER)

        logger.info("creating-job-prerequisites")
        try:
            stdout, stderr = self._runc_adapter.create_job_prerequisites(bpm_cfg, proc_cfg, user)
        except Exception as exc:
            raise RuntimeError(f"failed to create system files: {exc}") from exc

        try:
            logger.info("building-spec")
            spec = self._runc_adapter.build_spec(logger, bpm_cfg, proc_cfg, user)

            logger.info("creating-bundle")
            try:
                self._runc_client.create_bundle(bpm_cfg.bundle_path, spec, user)
            except Exception as exc:
                raise RuntimeError(f"bundle build failure: {exc}") from exc

            hooks = getattr(proc_cfg, "hooks", None)
            if hooks is not None and hooks.pre_start:
                env = list(spec.process.env) if spec.process is not None else []
                command = _Command(args=[hooks.pre_start], env=env, stdout=stdout, stderr=stderr)
                try:
                    self._command_runner.run(command)
                except Exception as exc:
                    raise RuntimeError(f"prestart hook failed: {exc}") from exc
        except BaseException:
            stdout.close()
            stderr.close()
            raise

        return stdout, stderr

    def stat_process(self, cfg: Any) -> Process:
        """Return the process's current state; raise ProcessNotFoundError if absent."""
        state = self._runc_client.container_state(cfg.container_id)
        if state is None:
            raise ProcessNotFoundError()
        return Process(name=state.id, pid=state.pid, status=_status_name(state.status))

    def open_shell(self, cfg: Any, stdin: Any, stdout: Any, stderr: Any) -> None:
        """Open an interactive shell inside the process's container."""
        self._runc_client.exec(cfg.container_id, "/bin/bash", stdin, stdout, stderr)

    def list_processes(self) -> list[Process]:
        """Return every process known to runc."""
        return [
            Process(name=c.id, pid=c.init_process_pid, status=_status_name(c.status))
            for c in self._runc_client.list_containers()
        ]

    def stop_process(
        self, logger: logging.Logger, cfg: Any, proc_cfg: Any, exit_timeout: float
    ) -> None:
        """Signal the process and wait up to ``exit_timeout`` seconds for it to stop."""
        container_id = cfg.container_id
        self._runc_client.signal_container(container_id, _shutdown_signal(proc_cfg))

        if self._is_stopped(logger, container_id):
            return

        deadline = self._clock.monotonic() + exit_timeout
        while True:
            remaining = deadline - self._clock.monotonic()
            if remaining > 0:
                self._clock.sleep(min(CONTAINER_STATE_POLL_INTERVAL, remaining))
            if self._clock.monotonic() >= deadline:
                break
            if self._is_stopped(logger, container_id):
                return

        try:
            self._runc_client.signal_container(container_id, Signal.QUIT)
        except Exception as exc:
            logger.error("failed-to-sigquit: %s", exc)

        self._clock.sleep(CONTAINER_SIGQUIT_GRACE_PERIOD)
        raise StopTimeoutError()

    def _is_stopped(self, logger: logging.Logger, container_id: str) -> bool:
        try:
            state = self._runc_client.container_state(container_id)
        except Exception as exc:
            logger.error("failed-to-fetch-state: %s", exc)
            return False
        return state is None or state.status == CONTAINER_STATE_STOPPED

    def remove_process(self, logger: logging.Logger, cfg: Any) -> None:
        """Delete the container, its bundle and its pid file."""
        logger.info("forcefully-deleting-container")
        self._runc_client.delete_container(cfg.container_id)

        logger.info("destroying-bundle")
        self._runc_client.destroy_bundle(cfg.bundle_path)

        logger.info("deleting-pidfile")
        self._delete_file(cfg.pid_file.external)