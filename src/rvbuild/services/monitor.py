from __future__ import annotations
import re
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, List, Optional

from ..core.utils import tail_file
from ..isolation.processes import ProcessInfo, belongs_to, is_dispatch, iter_processes
from .storage import BuildLayout

ERROR_PATTERNS = [
    re.compile(r"dpkg-buildpackage.*error"),
    re.compile(r"make.*Error"),
    re.compile(r"configure.*failed"),
]
ERROR_LINE = re.compile(r"error|failed|fatal|cannot|unable|not found", re.IGNORECASE)


@dataclass
class DirStatus:
    package: str
    status: str                 # RUNNING | SUCCESS | FAILED | BUILDING | PREPARED
    build_dir: str
    artifacts: int = 0
    last_line: str = ""
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def log_has_errors(path) -> bool:
    for line in tail_file(path, lines=5000):
        if any(p.search(line) for p in ERROR_PATTERNS):
            return True
    return False


def error_lines(path, limit: int = 5) -> List[str]:
    return [l for l in tail_file(path, lines=5000) if ERROR_LINE.search(l)][-limit:]


def dispatch_alive(layout: BuildLayout, processes: Iterable[ProcessInfo]) -> bool:
    base = layout.root.parent
    return any(is_dispatch(p.cmdline) and belongs_to(p, base, layout.package) for p in processes)


def inspect_build_dir(
    layout: BuildLayout,
    source: Callable[[], Iterable[ProcessInfo]] = iter_processes,
) -> DirStatus:
    st = DirStatus(package=layout.package, status="PREPARED", build_dir=str(layout.root))
    st.artifacts = len(layout.artifacts())
    logs = layout.log_files()
    if logs:
        last = tail_file(logs[0], 1)
        st.last_line = last[0] if last else ""

    failure = layout.load_failure()
    if dispatch_alive(layout, source()):
        st.status = "RUNNING"
    elif st.artifacts:
        st.status = "SUCCESS"
    elif failure is not None:
        st.status = "FAILED"
        st.reason = failure.reason.value
    elif layout.build_log.is_file():
        st.status = "FAILED" if log_has_errors(layout.build_log) else "BUILDING"
    return st
