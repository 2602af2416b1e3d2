from __future__ import annotations
import shutil
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..core.models import CleanupOutcome, MountPoint
from ..core.utils import is_within
from ..isolation.mounts import MountSafety, deepest_first
from ..isolation.processes import ProcessInfo, ProcessReaper, Verdict, sandbox_of
from ..logging import get_logger
from .storage import BuildLayout, BuildStorage


@dataclass
class SystemReport:
    processes: List[Tuple[ProcessInfo, Verdict]] = field(default_factory=list)
    mounts: List[MountPoint] = field(default_factory=list)
    build_dirs: List[BuildLayout] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.processes or self.mounts or self.build_dirs)

    def render(self) -> str:
        out = []
        if self.processes:
            out.append("Build processes:")
            for info, verdict in self.processes:
                tag = "kill" if verdict.safe else "keep"
                out.append(f"  [{tag}] {info.pid:>7} {' '.join(info.cmdline)[:80]}  ({verdict.reason})")
        if self.mounts:
            out.append("Mount points:")
            out.extend(f"  {mp.target} ({mp.fstype})" for mp in self.mounts)
        if self.build_dirs:
            out.append("Build directories:")
            out.extend(f"  {l.root}" for l in self.build_dirs)
        out.append("System is clean." if self.clean else "System is not clean.")
        return "\n".join(out)


class SystemCleaner:
    """Host-wide check/clean of everything under <base_dir>/rvbuild-*."""

    def __init__(self, storage: BuildStorage, mounts: MountSafety, reaper: ProcessReaper):
        self.storage = storage
        self.mounts = mounts
        self.reaper = reaper
        self.log = get_logger("cleaner", base_dir=str(storage.base_dir))

    def _layouts(self, package: Optional[str]) -> List[BuildLayout]:
        if package:
            layout = self.storage.layout(package)
            return [layout] if layout.root.exists() or self.mounts.table.under(layout.root) else []
        return self.storage.build_dirs()

    def _mounts(self, package: Optional[str]) -> List[MountPoint]:
        if package:
            return self.mounts.table.under(self.storage.path_for(package))
        base = self.storage.base_dir
        return deepest_first(mp for mp in self.mounts.table.entries()
                             if sandbox_of(str(mp.target), base))

    def check(self, package: Optional[str] = None) -> SystemReport:
        layouts = self._layouts(package)
        return SystemReport(
            processes=self.reaper.candidates(package),
            mounts=self._mounts(package),
            build_dirs=layouts,
        )

    def clean(self, package: Optional[str] = None) -> CleanupOutcome:
        """Processes, then mounts deepest first, then directories."""
        outcome = CleanupOutcome()

        report = self.reaper.reap(package)
        for pid, reason in report.skipped:
            outcome.warn(f"process {pid} left running: {reason}")
        self.log.info("processes_reaped", terminated=len(report.terminated),
                      killed=len(report.killed), skipped=len(report.skipped))

        layouts = self._layouts(package)
        for layout in layouts:
            outcome.merge(self.mounts.release_under(layout.root))
        # mounts whose sandbox directory is already gone
        stray = [mp for mp in self._mounts(package)
                 if not any(is_within(mp.target, l.root) for l in layouts)]
        outcome.merge(self.mounts.release(stray))
        self.log.info("mounts_released", sandboxes=len(layouts), stray=len(stray))

        for layout in layouts:
            if self.mounts.table.under(layout.root):
                outcome.warn(f"kept {layout.root}: mounts remain")
                continue
            try:
                shutil.rmtree(layout.root)
                self.log.info("build_dir_removed", path=str(layout.root))
            except OSError as e:
                outcome.warn(f"could not remove {layout.root}: {e}")
        return outcome
