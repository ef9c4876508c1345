# bpm

A library for running job processes inside isolated runc containers on Linux
hosts. It builds OCI runtime specs, prepares the host directories and log
files a job needs, drives the `runc` binary, and manages a process from
start to stop.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `bpm.sysfeat`: `fetch()` reads `/proc/self/mountinfo` and returns a
  `Features` value whose `swap_limit_supported` tells whether the memory
  cgroup (v1 or v2) offers a swap limit.
- `bpm.seccomp`: `default_seccomp()` returns a fresh `LinuxSeccomp` profile
  that denies by default and allows a fixed list of syscalls on x86_64, x86
  and x32. `allow_syscall(name, *args)` builds one allow rule from optional
  `LinuxSeccompArg` conditions. Each type has a `to_dict()` giving its JSON
  form.
- `bpm.specbuilder`: the OCI spec data types (`Spec`, `Process`, `User`,
  `Mount`, `Root`, `Capabilities`, `Rlimit`, `Memory`, `Resources`,
  `Namespace`, `Linux`) and options that change a spec.
  - `default_spec()` returns the restrictive base spec: masked and read-only
    `/proc` and `/sys` paths, the default seccomp profile, no new privileges,
    and the standard `/proc`, `/dev`, `/dev/pts`, `/dev/shm`, `/dev/mqueue`
    and `/sys` mounts.
  - `build(*options)` builds a spec from the base spec and the given options.
  - `apply(spec, *options)` applies options to an existing spec.
  - The options are `with_root_filesystem`, `with_namespace`, `with_user`,
    `with_process`, `with_capabilities`, `with_mounts`, `with_memory_limit`,
    `with_pid_limit`, `with_open_file_limit` and `with_privileged`.
  - `default_privileged_capabilities()` lists the capabilities a privileged
    container gets.
  - `Spec.to_dict()` returns the spec in its `config.json` form.
- `bpm.mount`: `mount(source, destination, *options)` and
  `identity_mount(path, *options)` build bind mounts, which are `bind`,
  `noexec`, `nosuid`, `nodev` and `ro` unless relaxed by `allow_exec()`,
  `allow_writes()` or `with_recursive_bind()`. `MountDeduplicator` keeps the
  first mount for each destination and returns mounts shallowest first.
- `bpm.usertools`: `UserFinder().lookup(name)` resolves a system user to a
  `User` with its uid and gid; an unknown name raises `KeyError`.
- `bpm.adapter`: `RuncAdapter` creates a job's directories and opens its
  stdout and stderr log files (`create_job_prerequisites`), and turns job
  and process configuration into a container spec (`build_spec`).
  `to_bytes("100G")` parses a 1024-based memory size and raises
  `ValueError` on bad input.
- `bpm.client`: `RuncClient` wraps the `runc` command line: `create_bundle`,
  `destroy_bundle`, `run_container`, `exec`, `container_state`,
  `list_containers`, `signal_container` and `delete_container`. Failed runc
  commands raise `subprocess.CalledProcessError`; `container_state` returns
  `None` when runc reports that the container does not exist.
- `bpm.lifecycle`: `RuncLifecycle` starts, runs, stats, lists, stops and
  removes containerised processes, reported as `Process` values. A missing
  container raises `ProcessNotFoundError`; a stop that does not finish
  within its timeout sends `QUIT` and raises `StopTimeoutError`. `Clock` and
  `CommandRunner` can be replaced, for instance in tests.

## Example

```python
from bpm import specbuilder
from bpm.specbuilder import User

spec = specbuilder.build(
    specbuilder.with_root_filesystem("/var/vcap/data/bpm/bundles/web/web/rootfs"),
    specbuilder.with_user(User(uid=2000, gid=3000, username="vcap")),
    specbuilder.with_process("/bin/sleep", ["60"], ["LANG=en_US.UTF-8"], "/"),
    specbuilder.with_namespace("pid"),
    specbuilder.with_pid_limit(30),
)
print(spec.to_dict())
```

Container operations need root privileges and a `runc` binary on the host.

## What this package does not do

- It has no command-line program; it is a library only.
- It does not read job configuration files. `RuncAdapter` and
  `RuncLifecycle` take configuration objects supplied by the caller, which
  must provide the directory paths, container id, bundle path and process
  settings the methods read.
- It does not provide the volume lock or the mount-sharing function used for
  shared volumes; `RuncAdapter` takes them from the caller.