import subprocess

import pytest

import nodeboot.launcher as launcher
from nodeboot.config import RuntimeConfig
from nodeboot.errors import KVUnavailableError
from nodeboot.pipeline import run_pipeline


class World:
    """Fake mount table, build tool and exec hand-off recording what happened."""

    def __init__(self, tmp_path, mounted=True, build_rc=0):
        self.tmp_path = tmp_path
        self.mount_dir = tmp_path / "datenlord_data_dir"
        self.mounts_file = tmp_path / "mounts"
        self.build_rc = build_rc
        self.events = []
        self.builds = []
        self.execs = []
        line = f"datenlord {self.mount_dir} fuse rw,nosuid,nodev 0 0\n" if mounted else ""
        self.mounts_file.write_text("proc /proc proc rw 0 0\n" + line, encoding="utf-8")

        binary = tmp_path / "target" / "debug" / "datenlord"
        binary.parent.mkdir(parents=True)
        binary.write_text("#!/bin/sh\n", encoding="utf-8")

    def cfg(self, **kw):
        return RuntimeConfig(
            bind_mounter=str(self.tmp_path / "target" / "debug" / "bind_mounter"),
            repo_dir=str(self.tmp_path),
            mount_dir=str(self.mount_dir),
            mounts_file=str(self.mounts_file),
            **kw,
        )

    def run(self, argv, **kwargs):
        if argv[0] == "fusermount":
            self.events.append("unmount")
            self.mounts_file.write_text("proc /proc proc rw 0 0\n", encoding="utf-8")
            return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")
        if argv[0] == "cargo":
            self.events.append("build")
            self.builds.append(list(argv))
            return subprocess.CompletedProcess(argv, self.build_rc)
        raise AssertionError(f"unexpected command {argv}")

    def execve(self, path, argv, env):
        self.events.append("exec")
        self.execs.append((argv, sorted(p.name for p in self.mount_dir.iterdir())))

    def install(self, monkeypatch):
        monkeypatch.chdir(self.tmp_path)
        monkeypatch.setattr(subprocess, "run", self.run)
        monkeypatch.setattr(launcher.os, "execve", self.execve)


def _populate(path):
    path.mkdir()
    (path / "leftover.txt").write_text("stale", encoding="utf-8")


def test_end_to_end_from_mounted_state(tmp_path, monkeypatch):
    world = World(tmp_path, mounted=True)
    world.install(monkeypatch)
    _populate(world.mount_dir)

    assert run_pipeline(world.cfg()) == 0

    assert world.events == ["unmount", "build", "exec"]
    assert world.builds == [["cargo", "build"]]
    argv, contents_at_launch = world.execs[0]
    assert contents_at_launch == []
    assert f"--mount-path={world.mount_dir}" in argv
    assert "--kv-server-list=127.0.0.1:2379" in argv
    assert world.mount_dir.is_dir()


def test_build_flags_reach_the_build_tool(tmp_path, monkeypatch):
    world = World(tmp_path, mounted=False)
    world.install(monkeypatch)

    assert run_pipeline(world.cfg(), "-F abi-7-23") == 0
    assert world.builds == [["cargo", "build", "-F", "abi-7-23"]]


def test_build_failure_stops_before_mkdir_and_launch(tmp_path, monkeypatch):
    world = World(tmp_path, mounted=True, build_rc=101)
    world.install(monkeypatch)
    _populate(world.mount_dir)

    assert run_pipeline(world.cfg()) == 1
    assert world.events == ["unmount", "build"]
    assert not world.mount_dir.exists()


def test_skipped_reconcile_fails_on_mkdir(tmp_path, monkeypatch):
    world = World(tmp_path, mounted=False)
    world.install(monkeypatch)
    _populate(world.mount_dir)

    assert run_pipeline(world.cfg(), reconcile_mounts=False) == 1
    assert world.events == ["build"]
    assert world.execs == []


def test_removal_failure_stops_before_build(tmp_path, monkeypatch):
    world = World(tmp_path, mounted=False)
    world.install(monkeypatch)
    _populate(world.mount_dir)

    def busy(path, *a, **kw):
        raise OSError(16, "Device or resource busy", path)
    monkeypatch.setattr("nodeboot.mounts.shutil.rmtree", busy)

    assert run_pipeline(world.cfg()) == 1
    assert world.events == []


def test_kv_readiness_gates_the_pipeline(tmp_path, monkeypatch):
    world = World(tmp_path, mounted=False)
    world.install(monkeypatch)
    monkeypatch.setattr("nodeboot.pipeline.wait_for_kv", _unavailable)

    assert run_pipeline(world.cfg(check_kv=True, kv_wait_sec=1.0)) == 1
    assert world.events == []


def _unavailable(endpoint, wait_sec):
    raise KVUnavailableError(f"KV backend at {endpoint} not healthy within {wait_sec:g}s")


@pytest.mark.parametrize("mounted", [True, False])
def test_rerun_after_success_is_clean(tmp_path, monkeypatch, mounted):
    world = World(tmp_path, mounted=mounted)
    world.install(monkeypatch)

    assert run_pipeline(world.cfg()) == 0
    assert run_pipeline(world.cfg()) == 0
    assert world.events.count("exec") == 2
    assert world.events.count("unmount") == (1 if mounted else 0)
