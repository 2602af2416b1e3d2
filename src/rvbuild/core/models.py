from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

# process exit codes shared by the supervisor and the per-package job
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SKIPPED = 2


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.SKIPPED, JobStatus.FAILED)


def status_from_exit_code(rc: int) -> JobStatus:
    if rc == EXIT_SUCCESS:
        return JobStatus.SUCCESS
    if rc == EXIT_SKIPPED:
        return JobStatus.SKIPPED
    return JobStatus.FAILED


class SandboxState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    ROOTFS_READY = "ROOTFS_READY"
    BUILDER_READY = "BUILDER_READY"
    RESET = "RESET"
    MOUNTED = "MOUNTED"
    BUILT = "BUILT"
    INSTALLED = "INSTALLED"
    TORN_DOWN = "TORN_DOWN"


class FailurePolicy(str, Enum):
    STOP = "stop"
    SKIP = "skip"
    ASK = "ask"


class FailureReason(str, Enum):
    CONFIGURATION = "configuration"
    SANDBOX_SETUP = "sandbox_setup"
    DEPENDENCIES = "dependencies"
    SOURCE_FETCH = "source_fetch"
    COMPILE = "compile"
    NO_ARTIFACTS = "no_artifacts"
    INSTALL = "install"
    INTERRUPTED = "interrupted"
    VANISHED = "vanished"
    UNKNOWN = "unknown"


class MountKind(str, Enum):
    ORDINARY = "ordinary"
    DEVTMPFS = "devtmpfs"
    DANGEROUS_BIND = "dangerous_bind"


@dataclass(frozen=True)
class MountPoint:
    target: Path
    fstype: str
    source: str = ""
    options: str = ""
    bind: bool = False

    @property
    def depth(self) -> int:
        return len(Path(self.target).parts)


@dataclass
class BuildJob:
    package: str
    sandbox: Path
    status: JobStatus = JobStatus.PENDING
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    record_id: Optional[int] = None

    @property
    def duration_s(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.finished_at if self.finished_at is not None else self.started_at
        return max(0.0, end - self.started_at)


@dataclass
class FailureRecord:
    package: str
    reason: FailureReason
    detail: str = ""
    preserved: bool = True
    log_path: Optional[str] = None
    ts: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> dict:
        return {
            "package": self.package,
            "reason": self.reason.value,
            "detail": self.detail,
            "preserved": self.preserved,
            "log_path": self.log_path,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailureRecord":
        try:
            reason = FailureReason(data.get("reason", "unknown"))
        except ValueError:
            reason = FailureReason.UNKNOWN
        return cls(
            package=str(data.get("package", "")),
            reason=reason,
            detail=str(data.get("detail", "")),
            preserved=bool(data.get("preserved", True)),
            log_path=data.get("log_path"),
            ts=str(data.get("ts", "")),
        )


class CleanupStatus(str, Enum):
    COMPLETED = "COMPLETED"
    DEGRADED = "DEGRADED"


@dataclass
class CleanupOutcome:
    """Result of a best-effort cleanup. Never raised, only inspected."""
    warnings: List[str] = field(default_factory=list)

    @property
    def status(self) -> CleanupStatus:
        return CleanupStatus.DEGRADED if self.warnings else CleanupStatus.COMPLETED

    @property
    def completed(self) -> bool:
        return not self.warnings

    def warn(self, message: str) -> "CleanupOutcome":
        self.warnings.append(message)
        return self

    def merge(self, other: "CleanupOutcome") -> "CleanupOutcome":
        self.warnings.extend(other.warnings)
        return self
