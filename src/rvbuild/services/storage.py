from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import ConfigurationError
from ..core.models import FailureRecord
from ..core.utils import host_path, tail_file, validate_package_name
from ..isolation.processes import SANDBOX_PREFIX
from .checkpoints import CheckpointStore

ARTIFACT_GLOB = "*.deb"


class BuildLayout:
    """
    One package's sandbox directory:
      <base_dir>/rvbuild-<pkg>/
        ├─ target-rootfs/      foreign root that accumulates installed packages
        ├─ builder-base/       provisioned builder (frozen into builder-base.tar)
        ├─ builder-base.tar
        ├─ builder/            mutable working copy, re-extracted per build
        ├─ out/<pkg>/          artifacts (*.deb)
        ├─ logs/               dispatch.log + NN_<step>.log
        ├─ records/            build_info_<pkg>.json, package lists
        ├─ .state/             checkpoint markers
        └─ failure.json
    """

    def __init__(self, root: Path, package: str):
        self.package = validate_package_name(package)
        self.root = host_path(root)
        self.target_rootfs = self.root / "target-rootfs"
        self.builder_base = self.root / "builder-base"
        self.snapshot = self.root / "builder-base.tar"
        self.builder = self.root / "builder"
        self.out_dir = self.root / "out"
        self.artifact_dir = self.out_dir / self.package
        self.logs_dir = self.root / "logs"
        self.records_dir = self.root / "records"
        self.state_dir = self.root / ".state"
        self.failure_path = self.root / "failure.json"
        self.dispatch_log = self.logs_dir / "dispatch.log"
        self.checkpoints = CheckpointStore(self.state_dir)

    def __repr__(self) -> str:
        return f"BuildLayout({str(self.root)!r}, {self.package!r})"

    def prepare(self) -> "BuildLayout":
        for d in (self.root, self.out_dir, self.logs_dir, self.records_dir, self.state_dir):
            d.mkdir(parents=True, exist_ok=True)
        return self

    # ----- logs -----

    def step_log(self, step: str) -> Path:
        return self.logs_dir / f"{step}.log"

    @property
    def rootfs_log(self) -> Path:
        return self.step_log("01_rootfs")

    @property
    def builder_log(self) -> Path:
        return self.step_log("02_builder")

    @property
    def build_log(self) -> Path:
        return self.step_log(f"20_build_{self.package}")

    @property
    def install_log(self) -> Path:
        return self.step_log(f"30_install_{self.package}")

    def log_files(self) -> List[Path]:
        """Log files, most recently written first."""
        if not self.logs_dir.is_dir():
            return []
        files = [p for p in self.logs_dir.glob("*.log") if p.is_file()]
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)

    def tail_logs(self, lines: int = 20, max_files: int = 5) -> List[Tuple[Path, List[str]]]:
        return [(p, tail_file(p, lines)) for p in self.log_files()[:max_files]]

    # ----- artifacts -----

    def artifacts(self) -> List[Path]:
        if not self.artifact_dir.is_dir():
            return []
        return sorted(p for p in self.artifact_dir.glob(ARTIFACT_GLOB) if p.is_file())

    # ----- records -----

    def save_failure(self, record: FailureRecord) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        self.failure_path.write_text(
            json.dumps(record.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        return self.failure_path

    def load_failure(self) -> Optional[FailureRecord]:
        try:
            data = json.loads(self.failure_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return FailureRecord.from_dict(data) if isinstance(data, dict) else None

    def clear_failure(self) -> None:
        self.failure_path.unlink(missing_ok=True)

    def save_meta(self, name: str, meta: Dict[str, Any]) -> Path:
        self.records_dir.mkdir(parents=True, exist_ok=True)
        p = self.records_dir / name
        p.write_text(json.dumps(meta, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        return p


class BuildStorage:
    """Maps package names to sandbox directories under base_dir."""

    def __init__(self, base_dir: Path):
        self.base_dir = host_path(base_dir)

    def path_for(self, package: str) -> Path:
        return self.base_dir / f"{SANDBOX_PREFIX}{validate_package_name(package)}"

    def layout(self, package: str, root: Optional[Path] = None) -> BuildLayout:
        return BuildLayout(Path(root) if root else self.path_for(package), package)

    def build_dirs(self) -> List[BuildLayout]:
        if not self.base_dir.is_dir():
            return []
        out = []
        for d in sorted(self.base_dir.glob(f"{SANDBOX_PREFIX}*")):
            pkg = d.name[len(SANDBOX_PREFIX):]
            if d.is_dir() and pkg:
                try:
                    out.append(BuildLayout(d, pkg))
                except ConfigurationError:
                    continue
        return out
