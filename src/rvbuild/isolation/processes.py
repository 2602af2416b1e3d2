"""
Process safety for best-effort cleanup.

Jobs the scheduler launches itself are tracked by handle and never looked up
here. This module only deals with stray processes left behind by a crashed or
killed job, and it is deliberately conservative: a process is killable only
when it looks like build work AND it is confined to one of our sandboxes (or is
the top-level build-one dispatcher running on the host root).
"""
from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

import psutil

from ..core.utils import host_path
from ..logging import get_logger

SANDBOX_PREFIX = "rvbuild-"

# init system, kernel helpers and host daemons
CRITICAL_SIGNATURES = frozenset({
    "init", "systemd", "kthreadd", "systemd-journald", "systemd-udevd", "udevd",
    "systemd-logind", "systemd-resolved", "dbus-daemon", "dbus-broker", "polkitd",
    "cron", "rsyslogd", "agetty", "login", "containerd", "dockerd",
})
CRITICAL_PREFIXES = ("systemd", "kworker", "ksoftirqd", "migration", "rcu_")

# operator sessions: shells, editors, remote shells, pagers, IDE helpers
INTERACTIVE_SIGNATURES = frozenset({
    "bash", "sh", "dash", "zsh", "fish", "ksh", "csh", "tcsh",
    "tmux", "screen", "vi", "vim", "nvim", "view", "nano", "emacs", "emacsclient",
    "code", "code-server", "ssh", "sshd", "sshd-session", "mosh-server",
    "less", "more", "top", "htop", "gdb",
})
IDE_MARKERS = (".vscode-server", ".cursor-server", "jetbrains", "code-server")

BUILD_TOOL_SIGNATURES = frozenset({
    "dpkg-buildpackage", "dpkg-source", "dpkg-deb", "dpkg-genbuildinfo",
    "dpkg-genchanges", "dpkg", "debuild", "apt-get", "apt", "debootstrap",
    "make", "gmake", "cmake", "ninja", "meson", "configure", "libtool",
    "autoreconf", "autoconf", "automake", "gcc", "g++", "cc", "c++", "cpp",
    "cc1", "cc1plus", "collect2", "as", "ld", "ld.bfd", "ld.gold",
    "clang", "clang++", "rustc", "cargo", "go", "fakeroot", "faked-sysv",
    "dh", "ccache", "chroot", "tar",
})
TOOLCHAIN_SUFFIXES = ("-gcc", "-g++", "-ld", "-as", "-cpp")

WRAPPERS = frozenset({"sudo", "env", "nohup", "nice", "ionice", "setsid", "timeout", "doas"})


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    cmdline: Tuple[str, ...]
    root: Optional[str] = None      # resolved /proc/<pid>/root, None when unreadable


@dataclass(frozen=True)
class Verdict:
    safe: bool
    reason: str
    candidate: bool = False         # looked like build work at all

    def __bool__(self) -> bool:
        return self.safe


def _basename(token: str) -> str:
    return os.path.basename(token.rstrip("/")) if token else ""


def program_name(cmdline: Iterable[str]) -> str:
    """Name of the program actually being run, seen through wrappers and binfmt qemu."""
    tokens = list(cmdline)
    i = 0
    while i < len(tokens):
        name = _basename(tokens[i])
        if name.startswith("qemu-") and i + 1 < len(tokens):
            i += 1
            continue
        if name in WRAPPERS:
            i += 1
            while i < len(tokens) and (tokens[i].startswith("-") or "=" in tokens[i]):
                i += 1
            continue
        return name
    return ""


def is_dispatch(cmdline: Iterable[str]) -> bool:
    """`python -m rvbuild.cli build-one ...` or the `rvbuild build-one ...` console script."""
    tokens = list(cmdline)
    if "build-one" not in tokens:
        return False
    prog = program_name(tokens)
    if prog == "rvbuild":
        return True
    return prog.startswith("python") and "rvbuild.cli" in tokens


def is_build_tool(name: str) -> bool:
    if name in BUILD_TOOL_SIGNATURES:
        return True
    if name.startswith("dh_") or name.startswith("gcc-") or name.startswith("g++-"):
        return True
    return name.endswith(TOOLCHAIN_SUFFIXES)


def sandbox_of(root: Optional[str], base_dir) -> Optional[str]:
    """The `rvbuild-<pkg>` directory name containing `root`, if any."""
    if not root:
        return None
    r = root[: -len(" (deleted)")] if root.endswith(" (deleted)") else root
    try:
        rel = Path(os.path.normpath(r)).relative_to(Path(base_dir))
    except ValueError:
        return None
    if not rel.parts or not rel.parts[0].startswith(SANDBOX_PREFIX):
        return None
    return rel.parts[0]


def classify_process(info: ProcessInfo, base_dir) -> Verdict:
    tokens = tuple(info.cmdline)
    if info.pid <= 1 or info.pid == os.getpid():
        return Verdict(False, "protected pid")
    if not tokens:
        return Verdict(False, "no command line (kernel thread)")

    prog = program_name(tokens)
    if prog in CRITICAL_SIGNATURES or prog.startswith(CRITICAL_PREFIXES):
        return Verdict(False, f"system-critical: {prog}")
    if prog in INTERACTIVE_SIGNATURES:
        return Verdict(False, f"interactive: {prog}", candidate=True)
    if any(marker in tok for tok in tokens for marker in IDE_MARKERS):
        return Verdict(False, "interactive: IDE helper", candidate=True)

    dispatch = is_dispatch(tokens)
    if not dispatch and not is_build_tool(prog):
        if sandbox_of(info.root, base_dir):
            return Verdict(False, f"not a build tool: {prog}", candidate=True)
        return Verdict(False, f"not a build tool: {prog}")

    if sandbox_of(info.root, base_dir):
        return Verdict(True, f"build tool in sandbox: {prog}", candidate=True)
    if dispatch and info.root == "/":
        return Verdict(True, "build dispatcher on host root", candidate=True)
    if info.root is None:
        return Verdict(False, f"root unreadable: {prog}", candidate=True)
    return Verdict(False, f"outside sandboxes ({info.root}): {prog}", candidate=True)


def belongs_to(info: ProcessInfo, base_dir, package: str) -> bool:
    """True when the process is tied to one package's sandbox or dispatcher."""
    if sandbox_of(info.root, base_dir) == SANDBOX_PREFIX + package:
        return True
    tokens = list(info.cmdline)
    if is_dispatch(tokens):
        i = tokens.index("build-one")
        return i + 1 < len(tokens) and tokens[i + 1] == package
    return False


def _read_root(pid: int) -> Optional[str]:
    try:
        return os.readlink(f"/proc/{pid}/root")
    except OSError:
        return None


def iter_processes() -> Iterator[ProcessInfo]:
    # process_iter fills unreadable attributes with None instead of raising
    for p in psutil.process_iter(["pid", "cmdline"]):
        cmdline = tuple(p.info.get("cmdline") or ())
        yield ProcessInfo(pid=p.info["pid"], cmdline=cmdline, root=_read_root(p.info["pid"]))


@dataclass
class ReapReport:
    terminated: List[int] = field(default_factory=list)
    killed: List[int] = field(default_factory=list)
    skipped: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def touched(self) -> int:
        return len(self.terminated) + len(self.killed)


class ProcessReaper:
    """SIGTERM, bounded grace, re-check, SIGKILL. Only for processes classified safe."""

    def __init__(
        self,
        base_dir,
        *,
        kill_grace_s: float = 5.0,
        source: Callable[[], Iterable[ProcessInfo]] = iter_processes,
        log=None,
    ):
        self.base_dir = host_path(base_dir)
        self.kill_grace_s = kill_grace_s
        self.source = source
        self.log = log or get_logger("reaper")

    def candidates(self, package: Optional[str] = None) -> List[Tuple[ProcessInfo, Verdict]]:
        out = []
        for info in self.source():
            if package and not belongs_to(info, self.base_dir, package):
                continue
            verdict = classify_process(info, self.base_dir)
            if verdict.candidate:
                out.append((info, verdict))
        return out

    def reap(self, package: Optional[str] = None) -> ReapReport:
        report = ReapReport()
        procs: List[psutil.Process] = []
        for info, verdict in self.candidates(package):
            if not verdict.safe:
                report.skipped.append((info.pid, verdict.reason))
                self.log.info("process_skipped", pid=info.pid, reason=verdict.reason)
                continue
            try:
                p = psutil.Process(info.pid)
                p.terminate()
                procs.append(p)
                self.log.info("process_terminate", pid=info.pid, reason=verdict.reason)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                report.skipped.append((info.pid, "access denied"))

        if not procs:
            return report

        gone, alive = psutil.wait_procs(procs, timeout=self.kill_grace_s)
        report.terminated.extend(p.pid for p in gone)
        for p in alive:
            # is_running() guards against pid reuse during the grace period
            if not p.is_running():
                report.terminated.append(p.pid)
                continue
            try:
                p.kill()
                report.killed.append(p.pid)
                self.log.warning("process_killed", pid=p.pid, grace_s=self.kill_grace_s)
            except psutil.NoSuchProcess:
                report.terminated.append(p.pid)
            except psutil.AccessDenied:
                report.skipped.append((p.pid, "access denied"))
        if report.killed:
            psutil.wait_procs([p for p in alive if p.pid in report.killed], timeout=self.kill_grace_s)
        return report
