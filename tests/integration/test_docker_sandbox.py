"""
Real-container checks for the sandbox runtime. Requires a reachable Docker
daemon and pulls ``ubuntu:22.04`` (it ships bash, find, stat and tar).
"""

import asyncio
import os
import threading
import time

import pytest

from ds_server.app.errors import SandboxGoneError
from ds_server.app.sandbox.core import gen_session_id
from ds_server.app.sandbox.fs_ops import SandboxFS
from ds_server.app.sandbox.runtime import SandboxRuntime
from ds_server.app.sandbox.tree import build_tree

from fakes import make_settings

IMAGE = os.environ.get("DS_TEST_IMAGE", "ubuntu:22.04")

pytestmark = pytest.mark.docker


@pytest.fixture
def sandbox():
    settings = make_settings(
        base_image=IMAGE,
        allowlist_images=[IMAGE],
        memory_limit="256m",
        cpu_limit="0.5",
        auto_remove=True,
    )
    runtime = SandboxRuntime(settings)
    handle = runtime.provision(gen_session_id("itest"), "itest")
    try:
        yield runtime, handle, settings
    finally:
        runtime.destroy(handle)
        runtime.release_workspace_dir(handle)
        runtime.close()


def test_container_is_hardened(sandbox):
    runtime, handle, _ = sandbox
    handle.container.reload()
    host = handle.container.attrs["HostConfig"]
    assert "no-new-privileges:true" in host["SecurityOpt"]
    assert host["Init"] is True
    assert host["NetworkMode"] == "none"
    assert host["Memory"] == 256 * 1024**2
    assert handle.container.labels["devspace.session"] == handle.session_id


def test_shell_roundtrip(sandbox):
    runtime, handle, _ = sandbox
    received = []
    seen = threading.Event()

    def on_data(text):
        received.append(text)
        if "marker-42" in "".join(received):
            seen.set()

    stop = runtime.start_output_pump(handle, on_data, lambda err: seen.set())
    runtime.resize(handle, 120, 40)
    runtime.write_input(handle, b"echo marker-$((40+2))\n")
    assert seen.wait(timeout=20)
    stop()


def test_filesystem_proxy_against_container(sandbox):
    runtime, handle, settings = sandbox
    fs = SandboxFS(runtime, handle, settings.workspace_path, max_inline_read=8)

    async def main():
        await fs.write_file("src/hello.txt", "hello world\n")
        await fs.create_directory("empty")
        read = await fs.read_file("src/hello.txt")
        assert read["truncated"] is True and read["size"] == 12 and read["content"] == "hello wo"
        listing = await fs.list_directory("")
        assert [(e["name"], e["isDir"]) for e in listing["entries"]] == [("empty", True), ("src", True)]
        await fs.rename_entry("src/hello.txt", "moved/hello.txt")
        tree = build_tree(await fs.scan_tree())
        assert tree == {"empty": {}, "moved": {"hello.txt": None}, "src": {}}
        await fs.delete_entry("moved")
        stream, name = await fs.create_download_archive("src")
        assert name == "src.tar" and b"".join(stream)

    asyncio.run(main())


def test_exec_after_destroy_reports_gone(sandbox):
    runtime, handle, _ = sandbox
    runtime.destroy(handle)
    deadline = time.monotonic() + 15
    while True:
        try:
            runtime.exec_run(handle, ["true"])
        except SandboxGoneError:
            break
        assert time.monotonic() < deadline
        time.sleep(0.5)
