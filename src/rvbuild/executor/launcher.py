from __future__ import annotations
import os, signal, subprocess, sys, time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence

from ..logging import get_logger

log = get_logger("launcher")


@dataclass
class JobHandle:
    """Typed handle for a child we spawned: no need to rediscover it by command line."""
    package: str
    sandbox: Path
    process: subprocess.Popen
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def reaped(self) -> bool:
        return self.process.returncode is not None

    def signal(self, signum: int = signal.SIGTERM) -> bool:
        if self.reaped:
            return False
        try:
            self.process.send_signal(signum)
            return True
        except ProcessLookupError:
            return False


class Reaped(NamedTuple):
    handle: JobHandle
    rc: Optional[int]
    vanished: bool = False


def try_reap(h: JobHandle) -> Optional[Reaped]:
    """Non-blocking: None while the child runs, otherwise its exit (or disappearance)."""
    if h.reaped:
        return Reaped(h, h.process.returncode)
    try:
        # WNOWAIT leaves the zombie for Popen.wait() to collect
        info = os.waitid(os.P_PID, h.pid, os.WEXITED | os.WNOHANG | os.WNOWAIT)
    except ChildProcessError:
        # reaped by someone else: we never saw its exit status
        return Reaped(h, None, vanished=True)
    if info is None:
        return None
    return Reaped(h, h.process.wait())


def wait_for_any(handles: Sequence[JobHandle]) -> Optional[Reaped]:
    """
    Block until any one of `handles` finishes; whichever exits first wins.
    Children that are not ours are reaped and ignored.
    """
    if not handles:
        return None
    by_pid: Dict[int, JobHandle] = {h.pid: h for h in handles}
    while True:
        for h in handles:
            r = try_reap(h)
            if r is not None:
                return r
        try:
            info = os.waitid(os.P_ALL, 0, os.WEXITED | os.WNOWAIT)
        except ChildProcessError:
            # no children left at all, yet none of ours reported an exit
            return Reaped(handles[0], None, vanished=True)
        if info is not None and info.si_pid not in by_pid:
            try:
                os.waitpid(info.si_pid, 0)
            except ChildProcessError:
                pass


class SubprocessLauncher:
    """Spawns `rvbuild build-one` per package in its own session."""

    def __init__(
        self,
        *,
        force_rebuild: bool = False,
        python: str = sys.executable,
        conf_path: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.force_rebuild = force_rebuild
        self.python = python
        self.conf_path = conf_path
        self.env = dict(env or {})

    def argv(self, package: str, sandbox: Path) -> List[str]:
        argv = [self.python, "-m", "rvbuild.cli", "build-one", package, "--build-dir", str(sandbox)]
        if self.force_rebuild:
            argv.append("--force-rebuild")
        return argv

    def launch(self, package: str, sandbox: Path) -> JobHandle:
        sandbox = Path(sandbox)
        logs = sandbox / "logs"
        logs.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, **self.env}
        if self.conf_path:
            env["RVBUILD_CONF"] = str(self.conf_path)
        argv = self.argv(package, sandbox)
        with open(logs / "dispatch.log", "a", encoding="utf-8") as fh:
            p = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=fh,
                stderr=subprocess.STDOUT,
                env=env,
                # terminal signals go to the supervisor only; it forwards them
                start_new_session=True,
            )
        log.info("job_launched", package=package, pid=p.pid, sandbox=str(sandbox))
        return JobHandle(package=package, sandbox=sandbox, process=p)
