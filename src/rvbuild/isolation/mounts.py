"""
Mount safety for sandbox roots.

Mounting is strict: any failure while building the mount set rolls back what
was already mounted and raises. Unmounting is best-effort: it never raises and
reports leftovers through CleanupOutcome warnings.

Unmount strategy, in priority order:
  1. devtmpfs        -> lazy unmount only, always reported as detached
  2. dangerous bind  -> lazy unmount only (source is /dev, /proc, /sys, /boot, /etc)
  3. ordinary        -> umount with bounded retry/backoff, then lazy fallback
Force unmount (-f) is never used.
"""
from __future__ import annotations
import os, re, time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ..core.errors import MountError
from ..core.models import CleanupOutcome, MountKind, MountPoint
from ..core.utils import host_path, is_within, retry_with_backoff
from ..executor.base import CommandRunner, ExecSpec
from ..logging import get_logger

CRITICAL_HOST_PATHS = ("/dev", "/proc", "/sys", "/boot", "/etc")

MOUNTINFO = Path("/proc/self/mountinfo")

_OCTAL = re.compile(r"\\([0-7]{3})")


def _unescape(field: str) -> str:
    # mountinfo escapes space, tab, newline and backslash as \ooo
    return _OCTAL.sub(lambda m: chr(int(m.group(1), 8)), field)


def parse_mountinfo(text: str) -> List[MountPoint]:
    entries: List[MountPoint] = []
    for line in text.splitlines():
        parts = line.split()
        if "-" not in parts:
            continue
        sep = parts.index("-")
        if sep < 6 or len(parts) < sep + 3:
            continue
        root = _unescape(parts[3])
        target = _unescape(parts[4])
        fstype = parts[sep + 1]
        source = _unescape(parts[sep + 2])
        bind = root != "/"
        entries.append(MountPoint(
            target=Path(target),
            fstype=fstype,
            source=root if bind else source,
            options=parts[5],
            bind=bind,
        ))
    return entries


class MountTable:
    """Read-only view of the host mount table."""

    def __init__(self, path: Path = MOUNTINFO):
        self.path = Path(path)

    def entries(self) -> List[MountPoint]:
        try:
            return parse_mountinfo(self.path.read_text(encoding="utf-8", errors="replace"))
        except OSError:
            return []

    def find(self, target) -> Optional[MountPoint]:
        t = host_path(target)
        found = None
        for mp in self.entries():
            if mp.target == t:
                found = mp  # last one wins when stacked
        return found

    def is_mounted(self, target) -> bool:
        return self.find(target) is not None

    def under(self, root) -> List[MountPoint]:
        """Mounts at or below `root`, deepest path first."""
        r = host_path(root)
        hits = [mp for mp in self.entries() if is_within(mp.target, r)]
        return sorted(hits, key=lambda mp: (mp.depth, str(mp.target)), reverse=True)


def is_critical_source(source: str) -> bool:
    if not source or not source.startswith("/"):
        return False
    src = os.path.normpath(source)
    return any(src == c or src.startswith(c + "/") for c in CRITICAL_HOST_PATHS)


def classify_mount(mp: MountPoint) -> MountKind:
    if mp.fstype == "devtmpfs":
        return MountKind.DEVTMPFS
    if is_critical_source(mp.source):
        return MountKind.DANGEROUS_BIND
    return MountKind.ORDINARY


def deepest_first(mounts: Iterable[MountPoint]) -> List[MountPoint]:
    return sorted(mounts, key=lambda mp: (mp.depth, str(mp.target)), reverse=True)


class MountSafety:
    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        table: Optional[MountTable] = None,
        *,
        retries: int = 3,
        retry_delay_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        log=None,
    ):
        self.runner = runner or CommandRunner()
        self.table = table or MountTable()
        self.retries = retries
        self.retry_delay_s = retry_delay_s
        self.sleep = sleep
        self.log = log or get_logger("mounts")
        # mounts created by this process, keyed by target
        self.registry: Dict[Path, MountPoint] = {}

    # ------------ mount ------------

    @staticmethod
    def mount_argv(mp: MountPoint) -> List[str]:
        if mp.bind:
            return ["mount", "--bind", mp.source, str(mp.target)]
        argv = ["mount", "-t", mp.fstype]
        if mp.options:
            argv += ["-o", mp.options]
        return argv + [mp.source or mp.fstype, str(mp.target)]

    def mount(self, *alternatives: MountPoint) -> MountPoint:
        """Mount the first alternative that succeeds; raise MountError if none does."""
        errors = []
        for mp in alternatives:
            Path(mp.target).mkdir(parents=True, exist_ok=True)
            mp = replace(mp, target=host_path(mp.target))
            res = self.runner.run(ExecSpec(cmd=self.mount_argv(mp)))
            if res.ok:
                self.registry[mp.target] = mp
                self.log.info("mounted", target=str(mp.target), fstype=mp.fstype, source=mp.source)
                return mp
            errors.append(f"{' '.join(self.mount_argv(mp))}: rc={res.rc} {res.output.strip()}")
        raise MountError("mount failed: " + "; ".join(errors))

    def acquire(self, plan: List[List[MountPoint]], after: Optional[Callable[[MountPoint], None]] = None) -> List[MountPoint]:
        """
        Mount every step of `plan` (each step a list of alternatives).
        On any failure, everything acquired so far is released before re-raising.
        """
        acquired: List[MountPoint] = []
        try:
            for alternatives in plan:
                mp = self.mount(*alternatives)
                acquired.append(mp)
                if after:
                    after(mp)
        except BaseException as e:
            self.log.error("mount_setup_failed", error=str(e), rollback=len(acquired))
            outcome = self.release(acquired)
            for w in outcome.warnings:
                self.log.warning("rollback_residue", detail=w)
            raise
        return acquired

    # ------------ unmount ------------

    def _umount(self, target: Path, lazy: bool = False) -> bool:
        argv = ["umount", "-l", str(target)] if lazy else ["umount", str(target)]
        return self.runner.run(ExecSpec(cmd=argv)).ok

    def kind_of(self, mp: MountPoint) -> MountKind:
        """Classify using what we mounted and what the host table reports."""
        target = host_path(mp.target)
        views = [mp, self.registry.get(target), self.table.find(target)]
        kinds = {classify_mount(v) for v in views if v is not None}
        for k in (MountKind.DEVTMPFS, MountKind.DANGEROUS_BIND):
            if k in kinds:
                return k
        return MountKind.ORDINARY

    def unmount(self, mp: MountPoint) -> CleanupOutcome:
        outcome = CleanupOutcome()
        target = host_path(mp.target)
        known = self.registry.get(target, mp)

        if not self.table.is_mounted(target):
            self.registry.pop(target, None)
            return outcome

        kind = self.kind_of(mp)

        if kind is MountKind.DEVTMPFS:
            # never a blocking or forced unmount on a live device filesystem
            rc_ok = self._umount(target, lazy=True)
            self.registry.pop(target, None)
            self.log.warning("devtmpfs_lazy_detach", target=str(target), rc_ok=rc_ok)
            return outcome.warn(f"devtmpfs lazily detached: {target}")

        if kind is MountKind.DANGEROUS_BIND:
            if self._umount(target, lazy=True):
                self.registry.pop(target, None)
                self.log.warning("dangerous_bind_lazy_detach", target=str(target), source=known.source)
                return outcome.warn(f"bind of {known.source} lazily detached: {target}")
            self.log.warning("dangerous_bind_detach_failed", target=str(target), source=known.source)
            return outcome.warn(f"bind of {known.source} still mounted: {target}")

        if retry_with_backoff(lambda: self._umount(target), self.retries,
                              self.retry_delay_s, sleep=self.sleep):
            self.registry.pop(target, None)
            self.log.info("unmounted", target=str(target))
            return outcome

        self.log.warning("umount_failed_trying_lazy", target=str(target), attempts=self.retries)
        if self._umount(target, lazy=True):
            self.registry.pop(target, None)
            # detached from the namespace; the device may still be busy
            return outcome.warn(f"lazily detached after {self.retries} attempts: {target}")
        return outcome.warn(f"could not unmount: {target}")

    def release(self, mounts: Iterable[MountPoint]) -> CleanupOutcome:
        outcome = CleanupOutcome()
        for mp in deepest_first(replace(m, target=host_path(m.target)) for m in mounts):
            try:
                outcome.merge(self.unmount(mp))
            except Exception as e:
                outcome.warn(f"unmount {mp.target} raised: {e}")
        return outcome

    def release_under(self, root) -> CleanupOutcome:
        """Sweep the host mount table for anything left below `root`."""
        r = host_path(root)
        found = {mp.target: self.registry.get(mp.target, mp) for mp in self.table.under(r)}
        for target, mp in self.registry.items():
            if is_within(target, r):
                found.setdefault(target, mp)
        outcome = self.release(found.values())
        for mp in self.table.under(r):
            self.log.warning("residual_mount", target=str(mp.target), fstype=mp.fstype)
            if not any(str(mp.target) in w for w in outcome.warnings):
                outcome.warn(f"residual mount: {mp.target}")
        return outcome
