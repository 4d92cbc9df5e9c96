import io
import tarfile
from types import SimpleNamespace

import pytest
from docker.errors import APIError, NotFound
from docker.types import Ulimit

from ds_server.app.errors import FsOperationError, ImageNotAllowedError, SandboxGoneError
from ds_server.app.sandbox.core import LABEL_MANAGED, LABEL_SESSION, LABEL_USER
from ds_server.app.sandbox.runtime import (
    APT_CAPS,
    SandboxHandle,
    SandboxRuntime,
    compute_cpu_percent,
    image_allowed,
    parse_stats_sample,
    tar_from_bytes,
)

from fakes import make_settings

DIGEST = "dev-base@sha256:" + "a" * 64


def _stats(cpu_total, pre_total, sys_total, pre_sys, cpus=2, usage=256, limit=1024):
    return {
        "cpu_stats": {"cpu_usage": {"total_usage": cpu_total}, "system_cpu_usage": sys_total, "online_cpus": cpus},
        "precpu_stats": {"cpu_usage": {"total_usage": pre_total}, "system_cpu_usage": pre_sys},
        "memory_stats": {"usage": usage, "limit": limit},
    }


class _NoClient:
    def __call__(self):
        raise AssertionError("docker client must not be created")


def _runtime(**overrides) -> SandboxRuntime:
    return SandboxRuntime(make_settings(**overrides), client_factory=_NoClient())


# --------------------------
# Image policy
# --------------------------

def test_image_allowlist_and_digest():
    assert image_allowed("dev-base:latest", ["dev-base:latest"])
    assert not image_allowed("ubuntu:22.04", ["dev-base:latest"])
    assert not image_allowed("dev-base:latest", ["dev-base:latest"], digest_required=True)
    assert image_allowed(DIGEST, [DIGEST], digest_required=True)


def test_provision_refuses_image_outside_allowlist():
    rt = _runtime(base_image="ubuntu:22.04", allowlist_images=["dev-base:latest"])
    with pytest.raises(ImageNotAllowedError):
        rt.provision("alice_0123456789ab", "alice")


# --------------------------
# Stats
# --------------------------

def test_cpu_percent_scaled_by_cores():
    assert compute_cpu_percent(_stats(300, 200, 2000, 1000, cpus=2)) == 20.0


def test_cpu_percent_absent_on_bad_deltas():
    assert compute_cpu_percent(_stats(300, 200, 1000, 1000)) is None
    assert compute_cpu_percent(_stats(100, 200, 2000, 1000)) is None
    assert compute_cpu_percent({}) is None


def test_cpu_percent_zero_when_idle():
    assert compute_cpu_percent(_stats(200, 200, 2000, 1000)) == 0.0


def test_parse_stats_sample():
    sample = parse_stats_sample(_stats(300, 200, 2000, 1000, usage=512, limit=1024))
    assert sample.to_payload() == {"cpuPercent": 20.0, "memUsed": 512, "memLimit": 1024, "memPercent": 50.0}
    empty = parse_stats_sample({"memory_stats": {}})
    assert empty.mem_percent == 0.0 and empty.cpu_percent is None


# --------------------------
# Container shape
# --------------------------

def test_create_kwargs_hardened_defaults():
    kw = _runtime(
        enable_apt_caps=False,
        retain_cap_drop_all=True,
        allowed_extra_caps=[],
        memory_limit="512m",
        cpu_limit="0.5",
        pids_limit=64,
        read_only_root=True,
    ).build_create_kwargs("alice_0123456789ab", "alice", "dev-base:latest")
    assert kw["name"] == "devspace_alice_0123456789ab"
    assert kw["command"] == ["sleep", "infinity"]
    assert kw["security_opt"] == ["no-new-privileges:true"]
    assert kw["init"] is True
    assert kw["network_mode"] == "none"
    assert kw["cap_drop"] == ["ALL"] and "cap_add" not in kw
    assert kw["read_only"] is True
    assert kw["mem_limit"] == 512 * 1024**2
    assert kw["nano_cpus"] == 500_000_000
    assert kw["pids_limit"] == 64
    assert kw["labels"][LABEL_MANAGED] == "true"
    assert kw["labels"][LABEL_SESSION] == "alice_0123456789ab"
    assert kw["labels"][LABEL_USER] == "alice"
    assert "volumes" not in kw and "user" not in kw


def test_create_kwargs_apt_caps_force_writable_root():
    kw = _runtime(enable_apt_caps=True, read_only_root=True).build_create_kwargs("s_1", "u", "img")
    assert kw["read_only"] is False
    assert kw["cap_drop"] == ["ALL"]
    assert kw["cap_add"] == APT_CAPS


def test_create_kwargs_optional_limits():
    kw = _runtime(
        enable_apt_caps=False,
        retain_cap_drop_all=False,
        allowed_extra_caps=["NET_BIND_SERVICE"],
        container_runtime="runsc",
        blkio_write_bps=1048576,
        ulimit_nofile=1024,
        tmpfs={"/tmp": "size=64m"},
        sandbox_user="1000:1000",
    ).build_create_kwargs("s_1", "u", "img", host_dir="/srv/ws/s_1")
    assert "cap_drop" not in kw and kw["cap_add"] == ["NET_BIND_SERVICE"]
    assert kw["runtime"] == "runsc"
    assert kw["device_write_bps"] == [{"Path": "/dev/sda", "Rate": 1048576}]
    assert "device_read_bps" not in kw
    assert kw["ulimits"] == [Ulimit(name="nofile", soft=1024, hard=1024)]
    assert kw["tmpfs"] == {"/tmp": "size=64m"}
    assert kw["volumes"] == {"/srv/ws/s_1": {"bind": "/workspace", "mode": "rw"}}
    assert kw["user"] == "1000:1000"


def test_tar_from_bytes_single_member():
    buf = tar_from_bytes("hello.txt", b"hi there")
    with tarfile.open(fileobj=buf, mode="r") as tar:
        members = tar.getmembers()
        assert [m.name for m in members] == ["hello.txt"]
        assert tar.extractfile(members[0]).read() == b"hi there"


# --------------------------
# Container calls
# --------------------------

class _Container:
    def __init__(self, *, exec_exc=None, put_exc=None, stop_exc=None):
        self.id = "cid"
        self.exec_exc = exec_exc
        self.put_exc = put_exc
        self.stop_exc = stop_exc
        self.removed = False
        self.archives = []

    def exec_run(self, argv, **kw):
        if self.exec_exc:
            raise self.exec_exc
        return SimpleNamespace(exit_code=0, output=(b"out", None))

    def put_archive(self, path, data):
        if self.put_exc:
            raise self.put_exc
        self.archives.append((path, data.read()))
        return True

    def stop(self, timeout=None):
        if self.stop_exc:
            raise self.stop_exc

    def remove(self, force=False):
        self.removed = True


class _Shell:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def _handle(container, auto_remove=True):
    return SandboxHandle(
        session_id="alice_0123456789ab",
        container=container,
        exec_id="e1",
        shell=_Shell(),
        image="dev-base:latest",
        network_mode="none",
        auto_remove=auto_remove,
    )


def test_exec_run_captures_output():
    res = _runtime().exec_run(_handle(_Container()), ["echo", "out"])
    assert res.ok and res.stdout == b"out" and res.stderr == b""


def test_exec_run_missing_container_is_sandbox_gone():
    rt = _runtime()
    with pytest.raises(SandboxGoneError):
        rt.exec_run(_handle(_Container(exec_exc=NotFound("No such container: cid"))), ["ls"])
    stopped = APIError("Conflict", response=SimpleNamespace(status_code=409, reason="Conflict", url="http+docker://localhost/exec"))
    with pytest.raises(SandboxGoneError):
        rt.exec_run(_handle(_Container(exec_exc=stopped)), ["ls"])


def test_put_archive_wraps_single_file_tar():
    c = _Container()
    _runtime().put_archive(_handle(c), "/workspace/src", "a.py", b"print(1)")
    path, data = c.archives[0]
    assert path == "/workspace/src"
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        assert tar.getnames() == ["a.py"]


def test_put_archive_missing_parent_is_fs_error():
    c = _Container(put_exc=NotFound("Could not find the file /workspace/nope in container cid"))
    with pytest.raises(FsOperationError):
        _runtime().put_archive(_handle(c), "/workspace/nope", "a", b"")


def test_destroy_never_raises():
    c = _Container(stop_exc=RuntimeError("engine hiccup"))
    h = _handle(c, auto_remove=False)
    _runtime().destroy(h)
    assert h.shell.closed and c.removed

    gone = _Container(stop_exc=NotFound("No such container"))
    _runtime().destroy(_handle(gone, auto_remove=False))
    assert not gone.removed


def test_release_workspace_dir_removes_host_dir(tmp_path):
    ws = tmp_path / "alice_0123456789ab"
    (ws / "src").mkdir(parents=True)
    (ws / "src" / "a.py").write_text("x", encoding="utf-8")
    h = _handle(_Container())
    h.workspace_dir = str(ws)
    _runtime().release_workspace_dir(h)
    assert not ws.exists()
