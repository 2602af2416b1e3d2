from __future__ import annotations

from .models import FailureReason


class RvbuildError(Exception):
    pass


class ConfigurationError(RvbuildError):
    """Invalid input detected before any job starts."""


class SandboxSetupError(RvbuildError):
    reason = FailureReason.SANDBOX_SETUP


class MountError(SandboxSetupError):
    pass


class BuildError(RvbuildError):
    def __init__(self, reason: FailureReason, detail: str = "", log_path=None):
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail
        self.log_path = log_path


class BuildInterrupted(RvbuildError):
    """Raised inside a job when SIGINT/SIGTERM arrives."""

    def __init__(self, signum: int):
        super().__init__(f"interrupted by signal {signum}")
        self.signum = signum


class QueueInterrupted(RvbuildError):
    """Raised inside the supervisor when SIGINT/SIGTERM arrives."""

    def __init__(self, signum: int):
        super().__init__(f"queue interrupted by signal {signum}")
        self.signum = signum
