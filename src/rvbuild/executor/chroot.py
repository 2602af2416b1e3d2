# src/rvbuild/executor/chroot.py
from __future__ import annotations
import fcntl, os, shlex, shutil, signal, socket, tarfile, time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

from ..core.errors import BuildError, BuildInterrupted, RvbuildError, SandboxSetupError
from ..core.models import (
    EXIT_FAILURE, EXIT_SKIPPED, EXIT_SUCCESS,
    CleanupOutcome, FailureReason, FailureRecord, MountPoint, SandboxState,
)
from ..isolation.mounts import MountSafety
from ..logging import get_logger
from ..services.checkpoints import BUILDER_READY, ROOTFS_READY, built_marker, installed_marker
from ..services.storage import BuildLayout
from .base import CommandRunner, ExecSpec, chroot_spec

# configure probes for these *at() functions fail under user-mode emulation
EMULATION_CONFIGURE_CACHE = {
    f"ac_cv_func_{fn}": "yes"
    for fn in ("mkfifoat", "mknodat", "openat", "fstatat",
               "unlinkat", "renameat", "symlinkat", "readlinkat")
}

# (name, major, minor) under the private /dev
DEVICE_NODES = (("null", 1, 3), ("zero", 1, 5), ("random", 1, 8), ("urandom", 1, 9), ("tty", 5, 0))
DEV_SYMLINKS = (("stdin", "/proc/self/fd/0"), ("stdout", "/proc/self/fd/1"),
                ("stderr", "/proc/self/fd/2"), ("fd", "/proc/self/fd"))

DEVPTS_OPTIONS = "newinstance,ptmxmode=0666,mode=620,gid=5"
INSTALL_LOCK = ".rvbuild-install.lock"
HOST_OUT = "host-out"


class SandboxLifecycleManager:
    """
    Drives one package through its sandbox:
      UNINITIALIZED -> ROOTFS_READY -> BUILDER_READY -> RESET -> MOUNTED
                    -> BUILT -> INSTALLED -> TORN_DOWN
    run() returns the process exit code (0 success, 1 failure, 2 skipped).
    """

    def __init__(
        self,
        layout: BuildLayout,
        *,
        suite: str = "noble",
        arch: str = "riscv64",
        mirror: str = "http://ports.ubuntu.com/ubuntu-ports",
        qemu_static: Path = Path("/usr/bin/qemu-riscv64-static"),
        target_packages: Optional[List[str]] = None,
        builder_packages: Optional[List[str]] = None,
        version: Optional[str] = None,
        build_parallel: int = 1,
        force_rebuild: bool = False,
        runner: Optional[CommandRunner] = None,
        mounts: Optional[MountSafety] = None,
        handle_signals: bool = True,
    ):
        self.layout = layout
        self.package = layout.package
        self.suite = suite
        self.arch = arch
        self.mirror = mirror
        self.qemu_static = Path(qemu_static)
        self.target_packages = list(target_packages or [])
        self.builder_packages = list(builder_packages or [])
        self.version = version
        self.build_parallel = max(1, int(build_parallel))
        self.force_rebuild = force_rebuild
        self.runner = runner or CommandRunner()
        self.mounts = mounts or MountSafety(self.runner)
        self.handle_signals = handle_signals

        self.state = SandboxState.UNINITIALIZED
        self.checkpoints = layout.checkpoints
        self.timings: Dict[str, float] = {}
        self.log = get_logger("lifecycle", package=self.package, sandbox=str(layout.root))
        self._interrupted: Optional[int] = None
        self._saved_handlers: Dict[int, object] = {}

    @classmethod
    def from_settings(cls, settings, layout: BuildLayout, **kw) -> "SandboxLifecycleManager":
        kw.setdefault("force_rebuild", settings.force_rebuild)
        return cls(
            layout,
            suite=settings.suite,
            arch=settings.arch,
            mirror=settings.mirror,
            qemu_static=settings.qemu_static,
            target_packages=settings.target_packages,
            builder_packages=settings.builder_packages,
            version=settings.package_versions.get(layout.package),
            build_parallel=settings.build_parallel,
            mounts=kw.pop("mounts", None) or MountSafety(
                kw.get("runner"),
                retries=settings.unmount_retries,
                retry_delay_s=settings.unmount_retry_delay_s,
            ),
            **kw,
        )

    # ------------ signals ------------

    def _on_signal(self, signum, frame):
        if self._interrupted is not None:
            return
        self._interrupted = signum
        # teardown must not be cut short by a second signal
        for s in (signal.SIGINT, signal.SIGTERM):
            signal.signal(s, signal.SIG_IGN)
        raise BuildInterrupted(signum)

    def _install_signal_handlers(self):
        for s in (signal.SIGINT, signal.SIGTERM):
            self._saved_handlers[s] = signal.signal(s, self._on_signal)

    def _restore_signal_handlers(self):
        for s, h in self._saved_handlers.items():
            signal.signal(s, h)
        self._saved_handlers.clear()

    # ------------ entry point ------------

    def run(self) -> int:
        if self.handle_signals:
            self._install_signal_handlers()
        try:
            return self._run()
        finally:
            if self.handle_signals:
                self._restore_signal_handlers()

    def _run(self) -> int:
        t0 = time.monotonic()
        self.layout.prepare()
        self.layout.clear_failure()
        self.log.info("build_start", force_rebuild=self.force_rebuild)

        try:
            if self.force_rebuild:
                self.checkpoints.invalidate_package(self.package, self.layout.artifact_dir)

            if self.checkpoints.is_built(self.package):
                if not self.layout.artifacts():
                    self.log.warning("stale_built_marker", artifact_dir=str(self.layout.artifact_dir))
                    self.checkpoints.invalidate_package(self.package, self.layout.artifact_dir)
                else:
                    self.log.info("already_built_skip",
                                  installed=self.checkpoints.exists(installed_marker(self.package)))
                    return EXIT_SKIPPED

            self.ensure_rootfs()
            self.ensure_builder()
            self.reset_builder()
            try:
                self.mount_build_env()
                self.build()
            finally:
                self._warn(self.teardown_mounts())
            self.collect()
            self.install()
            self._finish(t0)
            self._warn(self.remove_working_copy())
            return EXIT_SUCCESS

        except BuildInterrupted as e:
            self.log.error("build_interrupted", signal=e.signum)
            self._warn(self.teardown_mounts())
            self._discard_partial()
            self._warn(self.remove_working_copy())
            self._fail(FailureReason.INTERRUPTED, str(e), preserved=False)
            return EXIT_FAILURE
        except BuildError as e:
            self.log.error("build_failed", reason=e.reason.value, detail=e.detail)
            self._fail(e.reason, e.detail, log_path=e.log_path)
            return EXIT_FAILURE
        except SandboxSetupError as e:
            self.log.error("sandbox_setup_failed", error=str(e))
            self._fail(FailureReason.SANDBOX_SETUP, str(e))
            return EXIT_FAILURE
        except RvbuildError as e:
            self.log.error("build_failed", error=str(e))
            self._fail(FailureReason.UNKNOWN, str(e))
            return EXIT_FAILURE
        except OSError as e:
            self.log.error("build_failed", error=str(e))
            self._fail(FailureReason.UNKNOWN, str(e))
            return EXIT_FAILURE
        finally:
            self._warn(self.teardown_mounts())
            self.state = SandboxState.TORN_DOWN

    def _finish(self, t0: float) -> None:
        self.timings["total_s"] = round(time.monotonic() - t0, 3)
        try:
            self.record_build_info()
        except OSError as e:
            self.log.warning("build_info_not_written", error=str(e))
        self.log.info("build_success", artifacts=len(self.layout.artifacts()),
                      duration_s=self.timings["total_s"])

    def _fail(self, reason: FailureReason, detail: str, preserved: bool = True, log_path=None):
        record = FailureRecord(
            package=self.package,
            reason=reason,
            detail=detail,
            preserved=preserved and self.layout.builder.exists(),
            log_path=str(log_path or self.layout.build_log),
        )
        self.layout.save_failure(record)

    def _warn(self, outcome: CleanupOutcome) -> None:
        for w in outcome.warnings:
            self.log.warning("cleanup_degraded", detail=w)

    def _stage(self, state: SandboxState, started: Optional[float] = None) -> None:
        self.state = state
        if started is not None:
            self.timings[state.value.lower() + "_s"] = round(time.monotonic() - started, 3)
        self.log.info("stage", state=state.value)

    def _check(self, ok: bool, error: Exception) -> None:
        if not ok:
            raise error

    # ------------ rootfs / builder ------------

    def _sources_list(self) -> str:
        comps = "main universe multiverse restricted"
        return "".join(
            f"{kind} {self.mirror} {self.suite}{suffix} {comps}\n"
            for suffix in ("", "-updates", "-security")
            for kind in ("deb", "deb-src")
        )

    def _provision(self, root: Path, packages: List[str], log_path: Path) -> None:
        """Two-stage foreign debootstrap, then apt sources and a package set."""
        def run(spec: ExecSpec):
            return self.runner.run(spec, log_path=log_path)

        if not (root / "debootstrap").exists() and not (root / "usr/bin").is_dir():
            res = run(ExecSpec(cmd=["debootstrap", f"--arch={self.arch}", "--foreign",
                                    self.suite, str(root), self.mirror]))
            self._check(res.ok, SandboxSetupError(f"debootstrap stage one failed for {root} (rc={res.rc})"))
        if (root / "debootstrap").exists():
            (root / "usr/bin").mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.qemu_static, root / "usr/bin" / self.qemu_static.name)
            res = run(ExecSpec(cmd=["chroot", str(root), "/debootstrap/debootstrap", "--second-stage"]))
            self._check(res.ok, SandboxSetupError(f"debootstrap second stage failed for {root} (rc={res.rc})"))

        apt_dir = root / "etc/apt"
        apt_dir.mkdir(parents=True, exist_ok=True)
        (apt_dir / "sources.list").write_text(self._sources_list(), encoding="utf-8")

        env = {"DEBIAN_FRONTEND": "noninteractive"}
        res = run(chroot_spec(root, "apt-get update", env))
        self._check(res.ok, SandboxSetupError(f"apt-get update failed in {root}"))
        if packages:
            script = "apt-get install -y " + " ".join(shlex.quote(p) for p in packages)
            res = run(chroot_spec(root, script, env))
            self._check(res.ok, SandboxSetupError(f"package install failed in {root}"))

    def ensure_rootfs(self) -> None:
        if self.checkpoints.exists(ROOTFS_READY):
            self._stage(SandboxState.ROOTFS_READY)
            return
        t = time.monotonic()
        root = self.layout.target_rootfs
        root.mkdir(parents=True, exist_ok=True)
        try:
            self._provision(root, self.target_packages, self.layout.rootfs_log)
            (root / "etc/hostname").write_text(f"ubuntu-rv-{self.package}\n", encoding="utf-8")
        except OSError as e:
            raise SandboxSetupError(f"target rootfs: {e}") from e
        self.checkpoints.mark(ROOTFS_READY)
        self._stage(SandboxState.ROOTFS_READY, t)

    def ensure_builder(self) -> None:
        base, snap = self.layout.builder_base, self.layout.snapshot
        if base.is_dir() and snap.is_file():
            self._stage(SandboxState.BUILDER_READY)
            return
        t = time.monotonic()
        try:
            if not self.checkpoints.exists(BUILDER_READY) or not base.is_dir():
                base.mkdir(parents=True, exist_ok=True)
                self._provision(base, self.builder_packages, self.layout.builder_log)
            self.freeze_snapshot()
        except (OSError, tarfile.TarError) as e:
            raise SandboxSetupError(f"builder base: {e}") from e
        self.checkpoints.mark(BUILDER_READY)
        self._stage(SandboxState.BUILDER_READY, t)

    def freeze_snapshot(self) -> Path:
        snap = self.layout.snapshot
        tmp = snap.with_name(snap.name + ".partial")
        with tarfile.open(tmp, "w") as tf:
            tf.add(self.layout.builder_base, arcname=".")
        tmp.replace(snap)
        self.log.info("snapshot_frozen", snapshot=str(snap))
        return snap

    def reset_builder(self) -> None:
        """Discard the working copy and extract a fresh one from the snapshot."""
        t = time.monotonic()
        work = self.layout.builder
        if work.exists():
            self._warn(self.mounts.release_under(work))
            if self.mounts.table.under(work):
                raise SandboxSetupError(f"mounts still present under {work}; refusing to reset")
            shutil.rmtree(work)
        work.mkdir(parents=True)
        try:
            with tarfile.open(self.layout.snapshot, "r") as tf:
                tf.extractall(work, numeric_owner=True, filter="fully_trusted")
        except (OSError, tarfile.TarError) as e:
            raise SandboxSetupError(f"snapshot extraction failed: {e}") from e
        (work / "build").mkdir(parents=True, exist_ok=True)
        self._stage(SandboxState.RESET, t)

    # ------------ mounts ------------

    def build_mount_plan(self) -> List[List[MountPoint]]:
        w = self.layout.builder
        return [
            [MountPoint(w / "proc", "none", source="/proc", bind=True),
             MountPoint(w / "proc", "proc", source="proc")],
            [MountPoint(w / "sys", "none", source="/sys", bind=True),
             MountPoint(w / "sys", "sysfs", source="sysfs")],
            [MountPoint(w / "dev", "tmpfs", source="tmpfs", options="mode=755")],
            [MountPoint(w / "dev/pts", "devpts", source="devpts", options=DEVPTS_OPTIONS)],
        ]

    def _mknod(self, path: Path, major: int, minor: int) -> None:
        if path.exists() or path.is_symlink():
            return
        res = self.runner.run(ExecSpec(cmd=["mknod", "-m", "666", str(path), "c", str(major), str(minor)]))
        self._check(res.ok, SandboxSetupError(f"mknod {path} failed: {res.output.strip()}"))

    def _populate_mount(self, mp: MountPoint) -> None:
        w = self.layout.builder
        if mp.target == w / "dev":
            for name, major, minor in DEVICE_NODES:
                self._mknod(w / "dev" / name, major, minor)
            for name, dest in DEV_SYMLINKS:
                link = w / "dev" / name
                if not (link.exists() or link.is_symlink()):
                    link.symlink_to(dest)
        elif mp.target == w / "dev/pts":
            self._mknod(w / "dev/ptmx", 5, 2)

    def mount_build_env(self) -> List[MountPoint]:
        acquired = self.mounts.acquire(self.build_mount_plan(), after=self._populate_mount)
        self._stage(SandboxState.MOUNTED)
        return acquired

    def teardown_mounts(self) -> CleanupOutcome:
        outcome = CleanupOutcome()
        for root in (self.layout.builder, self.layout.target_rootfs / HOST_OUT):
            outcome.merge(self.mounts.release_under(root))
        return outcome

    # ------------ build ------------

    def build_env(self) -> Dict[str, str]:
        env = {
            "QEMU_CPU": "rv64",
            "DEB_BUILD_OPTIONS": f"parallel={self.build_parallel}",
            "DEBIAN_FRONTEND": "noninteractive",
            "SYSTEMD_OFFLINE": "1",
        }
        env.update(EMULATION_CONFIGURE_CACHE)
        return env

    def _step(self, script: str, reason: FailureReason) -> None:
        spec = chroot_spec(self.layout.builder, script, self.build_env())
        res = self.runner.run(spec, log_path=self.layout.build_log)
        if not res.ok:
            raise BuildError(reason, f"exit {res.rc}: {script}", log_path=self.layout.build_log)

    def source_dir(self) -> Optional[Path]:
        build = self.layout.builder / "build"
        dirs = sorted(p for p in build.iterdir() if p.is_dir()) if build.is_dir() else []
        return dirs[0] if dirs else None

    def build(self) -> None:
        t = time.monotonic()
        pkg = shlex.quote(self.package)
        spec = shlex.quote(f"{self.package}={self.version}" if self.version else self.package)

        self._step(f"dpkg --configure -a || true; apt-get update && apt-get build-dep -y {pkg}",
                   FailureReason.DEPENDENCIES)
        self._step(f"cd /build && apt-get source {spec}", FailureReason.SOURCE_FETCH)
        src = self.source_dir()
        if src is None:
            raise BuildError(FailureReason.SOURCE_FETCH, "no source directory after apt-get source",
                             log_path=self.layout.build_log)
        self._step(f"cd /build/{shlex.quote(src.name)} && "
                   f"dpkg-buildpackage -us -uc -b -j{self.build_parallel}",
                   FailureReason.COMPILE)
        self._stage(SandboxState.BUILT, t)

    # ------------ artifacts ------------

    def _partial_dir(self) -> Path:
        return self.layout.out_dir / f"{self.package}.partial"

    def _discard_partial(self) -> None:
        shutil.rmtree(self._partial_dir(), ignore_errors=True)

    def collect(self) -> List[Path]:
        """Copy *.deb out of the builder; the artifact dir appears atomically or not at all."""
        debs = sorted((self.layout.builder / "build").glob("*.deb"))
        if not debs:
            raise BuildError(FailureReason.NO_ARTIFACTS, "no .deb produced", log_path=self.layout.build_log)
        partial = self._partial_dir()
        self._discard_partial()
        try:
            partial.mkdir(parents=True)
            for d in debs:
                shutil.copy2(d, partial / d.name)
            if self.layout.artifact_dir.exists():
                shutil.rmtree(self.layout.artifact_dir)
            partial.rename(self.layout.artifact_dir)
        except OSError as e:
            self._discard_partial()
            raise BuildError(FailureReason.NO_ARTIFACTS, f"artifact collection failed: {e}",
                             log_path=self.layout.build_log) from e
        self.checkpoints.mark(built_marker(self.package))
        self.log.info("artifacts_collected", count=len(debs), path=str(self.layout.artifact_dir))
        return self.layout.artifacts()

    # ------------ install ------------

    @contextmanager
    def install_lock(self):
        lock = self.layout.target_rootfs / INSTALL_LOCK
        lock.parent.mkdir(parents=True, exist_ok=True)
        with open(lock, "w") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)

    def install(self) -> None:
        if self.checkpoints.exists(installed_marker(self.package)):
            self._stage(SandboxState.INSTALLED)
            return
        t = time.monotonic()
        root = self.layout.target_rootfs
        host_out = root / HOST_OUT
        bind = MountPoint(host_out, "none", source=str(self.layout.artifact_dir), bind=True)
        try:
            with self.install_lock():
                qemu = root / "usr/bin" / self.qemu_static.name
                if not qemu.exists() and self.qemu_static.exists():
                    qemu.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(self.qemu_static, qemu)
                self.mounts.acquire([[bind]])
                try:
                    res = self.runner.run(
                        chroot_spec(root, f"dpkg -i /{HOST_OUT}/*.deb || apt-get -f -y install",
                                    {"DEBIAN_FRONTEND": "noninteractive", "QEMU_CPU": "rv64"}),
                        log_path=self.layout.install_log,
                    )
                finally:
                    self._warn(self.mounts.release([bind]))
        except OSError as e:
            raise BuildError(FailureReason.INSTALL, f"install setup failed: {e}",
                             log_path=self.layout.install_log) from e
        if not res.ok:
            raise BuildError(FailureReason.INSTALL, f"exit {res.rc}", log_path=self.layout.install_log)
        self.checkpoints.mark(installed_marker(self.package))
        self._stage(SandboxState.INSTALLED, t)

    # ------------ records / cleanup ------------

    def record_build_info(self) -> Path:
        for root in (self.layout.target_rootfs, self.layout.builder):
            if not root.is_dir():
                continue
            res = self.runner.run(chroot_spec(root, "dpkg -l"))
            if res.ok:
                (self.layout.records_dir / f"{root.name}_dpkg-l.txt").write_text(res.output, encoding="utf-8")
            else:
                self.log.warning("record_dpkg_list_failed", root=str(root), rc=res.rc)
            sources = root / "etc/apt/sources.list"
            if sources.is_file():
                shutil.copy2(sources, self.layout.records_dir / f"{root.name}_sources.list")

        return self.layout.save_meta(f"build_info_{self.package}.json", {
            "package": self.package,
            "version": self.version,
            "build_date": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "build_host": socket.gethostname(),
            "uname": " ".join(os.uname()),
            "build_pid": os.getpid(),
            "build_parallel": self.build_parallel,
            "arch": self.arch,
            "suite": self.suite,
            "mirror": self.mirror,
            "build_root": str(self.layout.root),
            "artifacts": [p.name for p in self.layout.artifacts()],
            "timings": dict(self.timings),
        })

    def remove_working_copy(self) -> CleanupOutcome:
        outcome = CleanupOutcome()
        work = self.layout.builder
        if not work.exists():
            return outcome
        if self.mounts.table.under(work):
            return outcome.warn(f"working copy kept, mounts remain under {work}")
        try:
            shutil.rmtree(work)
            self.log.info("working_copy_removed", path=str(work))
        except OSError as e:
            outcome.warn(f"could not remove {work}: {e}")
        return outcome
