import io
import json
import os
import shlex
import stat
import subprocess

import pytest

from bpm.client import ContainerState, RuncClient, Signal, State
from bpm.specbuilder import Spec, User

USER = User(uid=200, gid=300, username="vcap")


@pytest.fixture(autouse=True)
def _umask():
    old = os.umask(0o022)
    yield
    os.umask(old)


@pytest.fixture
def client():
    return RuncClient("/var/vcap/packages/runc/bin/runc", "/var/vcap/data/bpm/runc", False)


def fake_runc(tmp_path, body, in_systemd=False):
    path = tmp_path / "fakeRunc"
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o700)
    return RuncClient(str(path), "/path/to/things", in_systemd)


def mode_of(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def test_create_bundle_makes_bundle_directory(tmp_path, client):
    bundle = tmp_path / "bundle"
    client.create_bundle(str(bundle), Spec(version="example-version"), USER)
    assert bundle.is_dir()
    assert mode_of(bundle) == 0o700


def test_create_bundle_makes_empty_rootfs(tmp_path, client):
    bundle = tmp_path / "bundle"
    client.create_bundle(str(bundle), Spec(version="example-version"), USER)
    rootfs = bundle / "rootfs"
    assert rootfs.is_dir()
    assert mode_of(rootfs) == 0o755
    assert list(rootfs.iterdir()) == []


def test_create_bundle_writes_config_json(tmp_path, client):
    bundle = tmp_path / "bundle"
    spec = Spec(version="example-version")
    client.create_bundle(str(bundle), spec, USER)
    config = bundle / "config.json"
    assert mode_of(config) == 0o600
    assert json.loads(config.read_text()) == spec.to_dict()
    assert json.loads(config.read_text())["ociVersion"] == "example-version"


def test_create_bundle_fails_when_bundle_path_is_a_file(tmp_path, client):
    bundle = tmp_path / "bundle"
    bundle.write_text("")
    with pytest.raises(OSError):
        client.create_bundle(str(bundle), Spec(version="example-version"), USER)


def test_create_bundle_fails_when_rootfs_is_a_file(tmp_path, client):
    bundle = tmp_path / "bundle"
    bundle.mkdir(mode=0o700)
    (bundle / "rootfs").write_text("")
    with pytest.raises(OSError):
        client.create_bundle(str(bundle), Spec(version="example-version"), USER)


def test_destroy_bundle_deletes_the_bundle(tmp_path, client):
    bundle = tmp_path / "bundle"
    client.create_bundle(str(bundle), Spec(version="test-version"), User(300, 400, "vcap"))
    client.destroy_bundle(str(bundle))
    assert not bundle.exists()


def test_destroy_missing_bundle_is_not_an_error(tmp_path, client):
    bundle = tmp_path / "missing"
    client.destroy_bundle(str(bundle))
    assert not bundle.exists()


def test_list_containers_ignores_stderr_noise(tmp_path):
    runc = fake_runc(tmp_path, "printf 'error: could not list' >&2\nprintf '[]'\nexit 0\n")
    assert runc.list_containers() == []


def test_list_containers_parses_entries(tmp_path):
    runc = fake_runc(
        tmp_path,
        "printf '%s' '[{\"id\":\"job-process-1\",\"pid\":34567,\"status\":\"running\"}]'\n",
    )
    assert runc.list_containers() == [
        ContainerState(id="job-process-1", init_process_pid=34567, status="running")
    ]


def test_list_containers_null_is_empty(tmp_path):
    runc = fake_runc(tmp_path, "printf 'null'\n")
    assert runc.list_containers() == []


def test_list_containers_failure_raises(tmp_path):
    runc = fake_runc(tmp_path, "exit 1\n")
    with pytest.raises(subprocess.CalledProcessError):
        runc.list_containers()


def test_systemd_flag_is_passed(tmp_path):
    body = (
        'echo "{}"\n'
        'if echo "$@" | grep -q -- "--systemd-cgroup"; then\n'
        "  exit 0\nelse\n  exit 1\nfi\n"
    )
    runc = fake_runc(tmp_path, body, in_systemd=True)
    assert runc.container_state("foo") == State()


def test_systemd_flag_absent_without_systemd(tmp_path):
    body = (
        'echo "{}"\n'
        'if echo "$@" | grep -q -- "--systemd-cgroup"; then\n'
        "  exit 0\nelse\n  exit 1\nfi\n"
    )
    runc = fake_runc(tmp_path, body, in_systemd=False)
    with pytest.raises(subprocess.CalledProcessError):
        runc.container_state("foo")


def test_container_state_missing_container_returns_none(tmp_path):
    runc = fake_runc(tmp_path, "printf '{\"msg\": \"container does not exist\"}'\nexit 1\n")
    assert runc.container_state("foo") is None


def test_container_state_missing_container_with_spaces(tmp_path):
    runc = fake_runc(
        tmp_path, "echo '         {\"msg\":\"container does not exist\"}     '\nexit 1\n"
    )
    assert runc.container_state("foo") is None


def test_container_state_other_error_raises(tmp_path):
    runc = fake_runc(tmp_path, "printf 'some unrelated error'\nexit 1\n")
    with pytest.raises(subprocess.CalledProcessError) as excinfo:
        runc.container_state("foo")
    assert excinfo.value.output == b"some unrelated error"


def test_container_state_parses_state(tmp_path):
    runc = fake_runc(
        tmp_path,
        "printf '%s' '{\"ociVersion\":\"1.2.0\",\"id\":\"foo\",\"status\":\"running\",\"pid\":1234}'\n",
    )
    state = runc.container_state("foo")
    assert state == State(oci_version="1.2.0", id="foo", status="running", pid=1234)


def test_run_container_passes_detach_arguments(tmp_path):
    runc = fake_runc(tmp_path, "printf '%s\\n' \"$@\"\n")
    out = io.BytesIO()
    status = runc.run_container("/pid/file", "/bundle", "cid", True, out, io.BytesIO())
    assert status == 0
    assert out.getvalue().decode().splitlines() == [
        "--root", "/path/to/things", "run",
        "--bundle", "/bundle", "--pid-file", "/pid/file", "--detach", "cid",
    ]


def test_run_container_without_detach(tmp_path):
    runc = fake_runc(tmp_path, "printf '%s\\n' \"$@\"\n")
    out = io.BytesIO()
    runc.run_container("/pid/file", "/bundle", "cid", False, out, io.BytesIO())
    assert out.getvalue().decode().splitlines() == [
        "--root", "/path/to/things", "run", "--bundle", "/bundle", "cid",
    ]


def test_run_container_failure_reports_exit_status(tmp_path):
    runc = fake_runc(tmp_path, "echo oops >&2\nexit 3\n")
    err = io.BytesIO()
    with pytest.raises(subprocess.CalledProcessError) as excinfo:
        runc.run_container("/pid", "/bundle", "cid", False, io.BytesIO(), err)
    assert excinfo.value.returncode == 3
    assert err.getvalue() == b"oops\n"


def test_run_container_missing_binary_reports_status_one(tmp_path):
    runc = RuncClient(str(tmp_path / "absent"), "/root", False)
    with pytest.raises(subprocess.CalledProcessError) as excinfo:
        runc.run_container("/pid", "/bundle", "cid", False, io.BytesIO(), io.BytesIO())
    assert excinfo.value.returncode == 1


def test_run_container_writes_to_real_files(tmp_path):
    runc = fake_runc(tmp_path, "echo hello\n")
    log = tmp_path / "out.log"
    with open(log, "ab+") as handle:
        runc.run_container("/pid", "/bundle", "cid", False, handle, handle)
    assert log.read_bytes() == b"hello\n"


def test_exec_passes_terminal_and_stdin(tmp_path, monkeypatch):
    monkeypatch.setenv("TERM", "xterm")
    runc = fake_runc(tmp_path, "printf '%s\\n' \"$@\"\ncat\n")
    out = io.BytesIO()
    runc.exec("cid", "/bin/bash", io.BytesIO(b"input\n"), out, io.BytesIO())
    assert out.getvalue().decode().splitlines() == [
        "--root", "/path/to/things", "exec", "--tty", "--env", "TERM=xterm",
        "cid", "/bin/bash", "input",
    ]


def test_exec_failure_raises(tmp_path):
    runc = fake_runc(tmp_path, "exit 2\n")
    with pytest.raises(subprocess.CalledProcessError) as excinfo:
        runc.exec("cid", "/bin/bash", io.BytesIO(b""), io.BytesIO(), io.BytesIO())
    assert excinfo.value.returncode == 2


def test_signal_container_sends_signal_name(tmp_path):
    record = tmp_path / "args"
    runc = fake_runc(tmp_path, f"printf '%s\\n' \"$@\" > {shlex.quote(str(record))}\n")
    runc.signal_container("cid", Signal.QUIT)
    assert record.read_text().splitlines() == [
        "--root", "/path/to/things", "kill", "cid", "QUIT",
    ]


def test_delete_container_forces_deletion(tmp_path):
    record = tmp_path / "args"
    runc = fake_runc(tmp_path, f"printf '%s\\n' \"$@\" > {shlex.quote(str(record))}\n")
    runc.delete_container("cid")
    assert record.read_text().splitlines() == [
        "--root", "/path/to/things", "delete", "--force", "cid",
    ]


def test_delete_container_failure_raises(tmp_path):
    runc = fake_runc(tmp_path, "exit 1\n")
    with pytest.raises(subprocess.CalledProcessError):
        runc.delete_container("cid")