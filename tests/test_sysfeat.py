import pytest

from bpm import sysfeat


def _line(mount_id, mountpoint, fstype, super_options):
    escaped = mountpoint.replace("\\", "\\134").replace(" ", "\\040")
    return f"{mount_id} 1 0:{mount_id} / {escaped} rw,nosuid shared:1 - {fstype} {fstype} {super_options}\n"


@pytest.fixture
def host(tmp_path, monkeypatch):
    unified = tmp_path / "cgroup"
    hybrid = unified / "unified"
    unified.mkdir()
    mountinfo = tmp_path / "mountinfo"
    monkeypatch.setattr(sysfeat, "MOUNTINFO_PATH", str(mountinfo))
    monkeypatch.setattr(sysfeat, "UNIFIED_MOUNTPOINT", str(unified))
    monkeypatch.setattr(sysfeat, "HYBRID_MOUNTPOINT", str(hybrid))
    return tmp_path, unified, hybrid, mountinfo


def test_features_default_to_no_swap_limit():
    assert sysfeat.Features().swap_limit_supported is False


def test_unified_with_swap_file(host):
    _, unified, _, mountinfo = host
    mountinfo.write_text(_line(30, str(unified), "cgroup2", "rw"))
    (unified / sysfeat.SWAP_PATH_CGROUP2).write_text("max\n")
    assert sysfeat.fetch() == sysfeat.Features(swap_limit_supported=True)


def test_unified_without_swap_file(host):
    _, unified, _, mountinfo = host
    mountinfo.write_text(_line(30, str(unified), "cgroup2", "rw"))
    assert sysfeat.fetch().swap_limit_supported is False


def test_unified_with_hybrid_uses_hybrid_mountpoint(host):
    _, unified, hybrid, mountinfo = host
    hybrid.mkdir()
    mountinfo.write_text(
        _line(30, str(unified), "cgroup2", "rw") + _line(31, str(hybrid), "cgroup2", "rw")
    )
    (unified / sysfeat.SWAP_PATH_CGROUP2).write_text("max\n")
    assert sysfeat.fetch().swap_limit_supported is False

    (hybrid / sysfeat.SWAP_PATH_CGROUP2).write_text("max\n")
    assert sysfeat.fetch().swap_limit_supported is True


def test_cgroup1_with_memsw_file(host):
    tmp_path, unified, _, mountinfo = host
    memory = tmp_path / "memory controller"
    memory.mkdir()
    mountinfo.write_text(
        _line(20, str(unified), "tmpfs", "rw,mode=755")
        + _line(21, str(tmp_path / "cpu"), "cgroup", "rw,cpu,cpuacct")
        + _line(22, str(memory), "cgroup", "rw,memory")
    )
    (memory / sysfeat.SWAP_PATH_CGROUP1).write_text("9223372036854771712\n")
    assert sysfeat.fetch().swap_limit_supported is True


def test_cgroup1_without_memsw_file(host):
    tmp_path, unified, _, mountinfo = host
    memory = tmp_path / "memory"
    memory.mkdir()
    mountinfo.write_text(
        _line(20, str(unified), "tmpfs", "rw,mode=755") + _line(22, str(memory), "cgroup", "rw,memory")
    )
    assert sysfeat.fetch().swap_limit_supported is False


def test_cgroup1_without_memory_controller_raises(host):
    tmp_path, unified, _, mountinfo = host
    mountinfo.write_text(
        _line(20, str(unified), "tmpfs", "rw,mode=755")
        + _line(21, str(tmp_path / "cpu"), "cgroup", "rw,cpu")
    )
    with pytest.raises(FileNotFoundError, match="memory"):
        sysfeat.fetch()


def test_missing_mountinfo_raises(host):
    with pytest.raises(OSError):
        sysfeat.fetch()