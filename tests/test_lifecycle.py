import json
from pathlib import Path

import pytest

from rvbuild.core.errors import BuildInterrupted
from rvbuild.core.models import EXIT_FAILURE, EXIT_SKIPPED, EXIT_SUCCESS, FailureReason, MountPoint
from rvbuild.executor.base import CommandResult
from rvbuild.executor.chroot import SandboxLifecycleManager
from rvbuild.isolation.mounts import MountSafety
from rvbuild.services.checkpoints import built_marker, installed_marker
from rvbuild.services.storage import BuildStorage

from conftest import FakeMountTable, FakeRunner, KernelRunner, no_sleep, provisioned_layout


def make_manager(layout, runner, qemu_static, **kw):
    mounts = MountSafety(runner, runner.table, retries=2, retry_delay_s=0, sleep=no_sleep)
    return SandboxLifecycleManager(
        layout,
        qemu_static=qemu_static,
        build_parallel=2,
        runner=runner,
        mounts=mounts,
        handle_signals=False,
        **kw,
    )


def test_successful_build_collects_installs_and_cleans_up(storage, qemu_static):
    layout = provisioned_layout(storage)
    runner = FakeRunner(FakeMountTable())

    rc = make_manager(layout, runner, qemu_static).run()

    assert rc == EXIT_SUCCESS
    assert [p.name for p in layout.artifacts()] == ["hello_1.0_riscv64.deb"]
    assert layout.checkpoints.exists(built_marker("hello"))
    assert layout.checkpoints.exists(installed_marker("hello"))
    assert layout.snapshot.is_file()
    # every mount acquired during setup is gone again
    assert runner.table.mounted == []
    assert not layout.builder.exists()
    assert not (layout.out_dir / "hello.partial").exists()
    info = json.loads((layout.records_dir / "build_info_hello.json").read_text())
    assert info["package"] == "hello" and info["arch"] == "riscv64"
    assert (layout.records_dir / "target-rootfs_dpkg-l.txt").is_file()


def test_build_steps_run_in_order(storage, qemu_static):
    layout = provisioned_layout(storage)
    runner = FakeRunner(FakeMountTable())
    make_manager(layout, runner, qemu_static, version="2.10-3").run()

    scripts = [c[-1] for c in runner.calls if c[0] == "chroot" and "/builder" in c[1]]
    assert "apt-get build-dep -y hello" in scripts[0]
    assert scripts[1] == "cd /build && apt-get source hello=2.10-3"
    assert scripts[2].startswith("cd /build/hello-1.0 && dpkg-buildpackage -us -uc -b -j2")
    assert "20_build_hello.log" in str(layout.build_log)
    assert "dpkg-buildpackage" in layout.build_log.read_text()


def test_mount_plan_creates_private_dev(storage, qemu_static):
    layout = provisioned_layout(storage)
    runner = FakeRunner(FakeMountTable())
    make_manager(layout, runner, qemu_static).run()

    mounts = runner.commands("mount")
    assert mounts[0] == f"mount --bind /proc {layout.builder / 'proc'}"
    assert any("-t devpts -o newinstance,ptmxmode=0666,mode=620,gid=5" in m for m in mounts)
    nodes = [c[3] for c in runner.calls if c[0] == "mknod"]
    assert [n.rsplit("/", 1)[1] for n in nodes] == ["null", "zero", "random", "urandom", "tty", "ptmx"]


def test_already_built_is_skipped_without_touching_the_sandbox(storage, qemu_static):
    layout = provisioned_layout(storage)
    assert make_manager(layout, FakeRunner(FakeMountTable()), qemu_static).run() == EXIT_SUCCESS
    snapshot_mtime = layout.snapshot.stat().st_mtime_ns

    runner = FakeRunner(FakeMountTable())
    rc = make_manager(layout, runner, qemu_static).run()

    assert rc == EXIT_SKIPPED
    assert runner.calls == []
    assert not layout.builder.exists()
    assert layout.snapshot.stat().st_mtime_ns == snapshot_mtime


def test_force_rebuild_purges_and_rebuilds(storage, qemu_static):
    layout = provisioned_layout(storage)
    make_manager(layout, FakeRunner(FakeMountTable()), qemu_static).run()
    (layout.artifact_dir / "stale.deb").write_bytes(b"old")

    runner = FakeRunner(FakeMountTable())
    rc = make_manager(layout, runner, qemu_static, force_rebuild=True).run()

    assert rc == EXIT_SUCCESS
    assert [p.name for p in layout.artifacts()] == ["hello_1.0_riscv64.deb"]
    assert runner.commands("chroot")


def test_stale_built_marker_triggers_rebuild(storage, qemu_static):
    layout = provisioned_layout(storage)
    layout.checkpoints.mark(built_marker("hello"))
    runner = FakeRunner(FakeMountTable())
    assert make_manager(layout, runner, qemu_static).run() == EXIT_SUCCESS
    assert any("dpkg-buildpackage" in c for c in runner.commands("chroot"))


def test_compile_failure_preserves_sandbox_and_records_reason(storage, qemu_static):
    layout = provisioned_layout(storage, "broken")
    runner = FakeRunner(FakeMountTable(), fail={"dpkg-buildpackage": 2})

    rc = make_manager(layout, runner, qemu_static).run()

    assert rc == EXIT_FAILURE
    record = layout.load_failure()
    assert record.reason is FailureReason.COMPILE
    assert record.preserved is True
    assert layout.builder.is_dir()
    assert runner.table.mounted == []
    assert not layout.artifact_dir.exists()
    assert not layout.checkpoints.exists(built_marker("broken"))


def test_dependency_failure_is_classified(storage, qemu_static):
    layout = provisioned_layout(storage)
    runner = FakeRunner(FakeMountTable(), fail={"apt-get build-dep": 100})
    assert make_manager(layout, runner, qemu_static).run() == EXIT_FAILURE
    assert layout.load_failure().reason is FailureReason.DEPENDENCIES
    assert not any("apt-get source" in c[-1] for c in runner.calls if c[0] == "chroot")


def test_mount_failure_rolls_back_and_never_builds(storage, qemu_static):
    layout = provisioned_layout(storage)
    runner = FakeRunner(FakeMountTable(), fail={"-t devpts": 32})

    rc = make_manager(layout, runner, qemu_static).run()

    assert rc == EXIT_FAILURE
    assert layout.load_failure().reason is FailureReason.SANDBOX_SETUP
    assert runner.table.mounted == []
    assert not any("build-dep" in c[-1] for c in runner.calls if c[0] == "chroot")


def test_no_artifacts_is_a_failure(storage, qemu_static):
    class NoDebRunner(FakeRunner):
        def _chroot(self, root, script):
            if "dpkg-buildpackage" in script:
                return CommandResult(0, "")
            return super()._chroot(root, script)

    layout = provisioned_layout(storage)
    runner = NoDebRunner(FakeMountTable())
    assert make_manager(layout, runner, qemu_static).run() == EXIT_FAILURE
    assert layout.load_failure().reason is FailureReason.NO_ARTIFACTS


def test_interrupt_tears_down_and_discards_partial_work(storage, qemu_static):
    class InterruptingRunner(FakeRunner):
        def _chroot(self, root, script):
            if "dpkg-buildpackage" in script:
                raise BuildInterrupted(15)
            return super()._chroot(root, script)

    layout = provisioned_layout(storage)
    runner = InterruptingRunner(FakeMountTable())

    rc = make_manager(layout, runner, qemu_static).run()

    assert rc == EXIT_FAILURE
    record = layout.load_failure()
    assert record.reason is FailureReason.INTERRUPTED
    assert record.preserved is False
    assert runner.table.mounted == []
    assert not layout.builder.exists()
    assert not layout.artifact_dir.exists()


def test_reset_refuses_to_delete_over_live_mounts(storage, qemu_static):
    layout = provisioned_layout(storage)
    layout.builder.mkdir(parents=True)
    stuck = layout.builder / "proc"
    table = FakeMountTable()
    runner = FakeRunner(table, lazy_fails=[stuck])
    table.mounted.append(MountPoint(stuck, "none", source="/proc", bind=True))

    rc = make_manager(layout, runner, qemu_static).run()

    assert rc == EXIT_FAILURE
    assert layout.load_failure().reason is FailureReason.SANDBOX_SETUP
    assert layout.builder.is_dir()


def test_build_env_carries_emulation_overrides(storage, qemu_static):
    layout = provisioned_layout(storage)
    env = make_manager(layout, FakeRunner(FakeMountTable()), qemu_static).build_env()
    assert env["QEMU_CPU"] == "rv64"
    assert env["DEB_BUILD_OPTIONS"] == "parallel=2"
    assert env["ac_cv_func_openat"] == "yes"


@pytest.mark.parametrize("base", ["relative", "symlink"])
def test_mounts_are_released_when_base_dir_is_not_canonical(tmp_path, monkeypatch, qemu_static, base):
    if base == "relative":
        monkeypatch.chdir(tmp_path)
        storage = BuildStorage(Path("srv"))
    else:
        (tmp_path / "real-srv").mkdir()
        (tmp_path / "srv-link").symlink_to(tmp_path / "real-srv")
        storage = BuildStorage(tmp_path / "srv-link")
    layout = provisioned_layout(storage)
    runner = KernelRunner(FakeMountTable())

    assert make_manager(layout, runner, qemu_static).run() == EXIT_SUCCESS

    assert layout.root.is_absolute() and not layout.root.is_symlink()
    umounted = {c.split()[-1] for c in runner.commands("umount")}
    assert str(layout.builder / "proc") in umounted
    assert str(layout.builder / "dev/pts") in umounted
    assert runner.table.mounted == []
    assert not layout.builder.exists()


def test_built_but_not_installed_is_still_skipped(storage, qemu_static):
    layout = provisioned_layout(storage)
    layout.artifact_dir.mkdir(parents=True)
    (layout.artifact_dir / "hello_1.0_riscv64.deb").write_bytes(b"x")
    layout.checkpoints.mark(built_marker("hello"))
    runner = FakeRunner(FakeMountTable())

    assert make_manager(layout, runner, qemu_static).run() == EXIT_SKIPPED

    assert runner.calls == []
    assert not layout.checkpoints.exists(installed_marker("hello"))


def test_artifact_copy_error_is_recorded_as_a_failure(storage, qemu_static, monkeypatch):
    layout = provisioned_layout(storage)
    runner = FakeRunner(FakeMountTable())

    def disk_full(src, dst, **kw):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("rvbuild.executor.chroot.shutil.copy2", disk_full)
    manager = make_manager(layout, runner, qemu_static)

    assert manager.run() == EXIT_FAILURE

    record = layout.load_failure()
    assert record.reason is FailureReason.NO_ARTIFACTS
    assert "No space left" in record.detail
    assert not (layout.out_dir / "hello.partial").exists()
    assert runner.table.mounted == []


def test_build_info_write_error_does_not_fail_the_build(storage, qemu_static, monkeypatch):
    layout = provisioned_layout(storage)
    runner = FakeRunner(FakeMountTable())

    def read_only(*args, **kw):
        raise OSError(30, "Read-only file system")

    monkeypatch.setattr(layout, "save_meta", read_only)

    assert make_manager(layout, runner, qemu_static).run() == EXIT_SUCCESS
    assert layout.load_failure() is None
    assert layout.checkpoints.exists(installed_marker("hello"))
