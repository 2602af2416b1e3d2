from __future__ import annotations
import shutil
from pathlib import Path
from typing import List

from ..core.utils import validate_package_name
from ..logging import get_logger

ROOTFS_READY = "rootfs-ready"
BUILDER_READY = "builder-ready"


def built_marker(package: str) -> str:
    return f"built-{validate_package_name(package)}"


def installed_marker(package: str) -> str:
    return f"installed-{validate_package_name(package)}"


class CheckpointStore:
    """
    Zero-byte marker files under <sandbox>/.state/.
    Markers are created once and never rewritten; they are only removed by an
    explicit force-rebuild.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.log = get_logger("checkpoints", state_dir=str(self.state_dir))

    def path(self, name: str) -> Path:
        if not name or "/" in name or name.startswith("."):
            raise ValueError(f"bad marker name: {name!r}")
        return self.state_dir / name

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def mark(self, name: str) -> bool:
        """Create the marker. Returns False when it already existed."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.path(name), "x"):
                pass
        except FileExistsError:
            return False
        self.log.info("checkpoint_marked", marker=name)
        return True

    def clear(self, name: str) -> bool:
        try:
            self.path(name).unlink()
        except FileNotFoundError:
            return False
        self.log.info("checkpoint_cleared", marker=name)
        return True

    def list(self) -> List[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(p.name for p in self.state_dir.iterdir() if p.is_file())

    # ----- per-package helpers -----

    def is_built(self, package: str) -> bool:
        return self.exists(built_marker(package))

    def invalidate_package(self, package: str, artifact_dir: Path) -> None:
        """Force-rebuild: drop both package markers and purge its artifacts."""
        self.clear(built_marker(package))
        self.clear(installed_marker(package))
        if Path(artifact_dir).exists():
            shutil.rmtree(artifact_dir)
            self.log.info("artifacts_purged", package=package, path=str(artifact_dir))
