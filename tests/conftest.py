import shlex
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest
import structlog

from rvbuild.core.models import MountPoint
from rvbuild.executor.base import CommandResult, CommandRunner, ExecSpec
from rvbuild.isolation.mounts import MountSafety, MountTable
from rvbuild.services.checkpoints import BUILDER_READY, ROOTFS_READY
from rvbuild.services.storage import BuildStorage


class FakeMountTable(MountTable):
    """In-memory mount table; FakeRunner mutates it on mount/umount."""

    def __init__(self, mounted: Optional[Iterable[MountPoint]] = None):
        self.mounted: List[MountPoint] = list(mounted or [])

    def entries(self):
        return list(self.mounted)


class FakeRunner(CommandRunner):
    """
    Pretends to be mount/umount/mknod/chroot.
    `fail`: substring of the joined command -> rc to return.
    `busy`: targets whose non-lazy umount keeps failing.
    `lazy_fails`: targets whose lazy umount fails too.
    """

    def __init__(self, table=None, *, fail: Optional[Dict[str, int]] = None,
                 busy=(), lazy_fails=()):
        self.table = table or FakeMountTable()
        self.calls: List[List[str]] = []
        self.fail = dict(fail or {})
        self.busy = {Path(b) for b in busy}
        self.lazy_fails = {Path(b) for b in lazy_fails}

    def commands(self, prefix: str) -> List[str]:
        return [" ".join(c) for c in self.calls if " ".join(c).startswith(prefix)]

    def run(self, spec: ExecSpec, log_path=None) -> CommandResult:
        cmd = list(spec.cmd)
        self.calls.append(cmd)
        joined = " ".join(cmd)
        if log_path is not None:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a", encoding="utf-8") as fh:
                fh.write(f"$ {joined}\n")
        for needle, rc in self.fail.items():
            if needle in joined:
                if log_path is not None:
                    with open(log_path, "a", encoding="utf-8") as fh:
                        fh.write(f"dpkg-buildpackage: error: {needle} failed\n")
                return CommandResult(rc, f"{needle} failed")
        if cmd[0] == "mount":
            return self._mount(cmd)
        if cmd[0] == "umount":
            return self._umount(cmd)
        if cmd[0] == "chroot":
            return self._chroot(Path(cmd[1]), cmd[-1])
        return CommandResult(0, "")

    def _mount(self, cmd):
        if cmd[1] == "--bind":
            mp = MountPoint(Path(cmd[3]), "none", source=cmd[2], bind=True)
        else:
            options = cmd[4] if cmd[3] == "-o" else ""
            mp = MountPoint(Path(cmd[-1]), cmd[2], source=cmd[-2], options=options)
        self.table.mounted.append(mp)
        return CommandResult(0, "")

    def _umount(self, cmd):
        lazy = cmd[1] == "-l"
        target = Path(cmd[-1])
        if not lazy and target in self.busy:
            return CommandResult(32, "target is busy")
        if lazy and target in self.lazy_fails:
            return CommandResult(32, "umount failed")
        for i in range(len(self.table.mounted) - 1, -1, -1):
            if self.table.mounted[i].target == target:
                del self.table.mounted[i]
                return CommandResult(0, "")
        return CommandResult(32, "not mounted")

    def _chroot(self, root: Path, script: str):
        build = root / "build"
        if "apt-get source" in script:
            spec = shlex.split(script)[-1]
            (build / f"{spec.split('=')[0]}-1.0").mkdir(parents=True, exist_ok=True)
        if "dpkg-buildpackage" in script:
            src = shlex.split(script.split("&&")[0])[-1]
            pkg = Path(src).name.rsplit("-", 1)[0]
            (build / f"{pkg}_1.0_riscv64.deb").write_bytes(b"!<arch>\n")
        if script == "dpkg -l":
            return CommandResult(0, "ii  base-files  13ubuntu10  riscv64\n")
        return CommandResult(0, "")


class KernelRunner(FakeRunner):
    """Records mount targets the way mountinfo shows them: absolute, symlinks resolved."""

    def _mount(self, cmd):
        return super()._mount(cmd[:-1] + [str(Path(cmd[-1]).resolve())])

    def _umount(self, cmd):
        return super()._umount(cmd[:-1] + [str(Path(cmd[-1]).resolve())])


def no_sleep(_s):
    return None


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def table():
    return FakeMountTable()


@pytest.fixture
def runner(table):
    return FakeRunner(table)


@pytest.fixture
def mounts(runner, table):
    return MountSafety(runner, table, retries=3, retry_delay_s=0.01, sleep=no_sleep)


@pytest.fixture
def storage(tmp_path):
    return BuildStorage(tmp_path / "srv")


@pytest.fixture
def qemu_static(tmp_path):
    p = tmp_path / "qemu-riscv64-static"
    p.write_bytes(b"\x7fELF")
    return p


def provisioned_layout(storage, package="hello"):
    """A sandbox whose rootfs and builder base already exist."""
    layout = storage.layout(package).prepare()
    layout.checkpoints.mark(ROOTFS_READY)
    (layout.target_rootfs / "usr/bin").mkdir(parents=True)
    (layout.builder_base / "etc/apt").mkdir(parents=True)
    (layout.builder_base / "etc/apt/sources.list").write_text("deb http://mirror noble main\n")
    (layout.builder_base / "usr/bin").mkdir(parents=True)
    (layout.builder_base / "usr/bin/true").write_text("#!/bin/sh\n")
    layout.checkpoints.mark(BUILDER_READY)
    return layout
