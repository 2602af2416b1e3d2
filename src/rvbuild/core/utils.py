from __future__ import annotations
import os, re, time
from collections import deque
from pathlib import Path
from typing import Callable, Iterable, List

from .errors import ConfigurationError
from ..logging import get_logger

PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+.-]*$")

log = get_logger("utils")


def is_valid_package_name(name: str) -> bool:
    return bool(PACKAGE_NAME_RE.match(name or ""))


def validate_package_name(name: str) -> str:
    if not is_valid_package_name(name):
        raise ConfigurationError(f"invalid package name: {name!r}")
    return name


def normalize_packages(names: Iterable[str]) -> List[str]:
    """Validate names and drop duplicates, keeping first-seen order."""
    out: List[str] = []
    seen = set()
    for raw in names:
        name = (raw or "").strip()
        validate_package_name(name)
        if name in seen:
            log.warning("duplicate_package_ignored", package=name)
            continue
        seen.add(name)
        out.append(name)
    return out


def load_package_list(path: Path) -> List[str]:
    """
    One package per line; blank lines and '#' comments skipped.
    Build order is the file order (no dependency resolution).
    """
    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"package list not found: {p}")
    names = []
    for line in p.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        names.append(line)
    return normalize_packages(names)


def format_duration(seconds) -> str:
    if seconds is None:
        return "N/A"
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def retry_with_backoff(
    action: Callable[[], bool],
    attempts: int,
    delay: float,
    *,
    backoff: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Call `action` until it returns True, at most `attempts` times."""
    wait = delay
    for i in range(max(1, attempts)):
        if action():
            return True
        if i + 1 < attempts:
            sleep(wait)
            wait *= backoff
    return False


def host_path(path) -> Path:
    """Absolute, symlink-free form of `path`, the way the kernel reports mount targets."""
    try:
        return Path(path).resolve()
    except OSError:
        return Path(os.path.abspath(path))


def is_within(path, root) -> bool:
    try:
        Path(path).relative_to(Path(root))
        return True
    except ValueError:
        return False


def tail_file(path: Path, lines: int = 20) -> List[str]:
    p = Path(path)
    if not p.is_file():
        return []
    with open(p, "r", encoding="utf-8", errors="replace") as f:
        return [l.rstrip("\n") for l in deque(f, maxlen=max(0, lines))]
