from __future__ import annotations
import signal, time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from ..core.errors import ConfigurationError, QueueInterrupted
from ..core.models import (
    EXIT_FAILURE, EXIT_SUCCESS, BuildJob, FailureReason, FailureRecord, JobStatus,
    status_from_exit_code,
)
from ..core.utils import format_duration, normalize_packages
from ..executor.launcher import JobHandle, Reaped, try_reap, wait_for_any
from ..logging import get_logger
from .job_store import JobStore
from .policy import Decision, FailurePolicyController
from .storage import BuildStorage

EXIT_INTERRUPTED = 130


class Launcher(Protocol):
    def launch(self, package: str, sandbox: Path) -> JobHandle: ...


def build_order(packages: Iterable[str]) -> List[str]:
    """
    Build order is the input order. Dependency ordering is a known gap: no
    build graph is computed, the list is copied verbatim.
    """
    return list(packages)


@dataclass
class BuildSummary:
    jobs: List[BuildJob]
    stopped: bool = False
    interrupted: bool = False
    peak_running: int = 0
    reasons: Dict[str, str] = field(default_factory=dict)

    def count(self, status: JobStatus) -> int:
        return sum(1 for j in self.jobs if j.status is status)

    @property
    def failed(self) -> List[str]:
        return [j.package for j in self.jobs if j.status is JobStatus.FAILED]

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return EXIT_INTERRUPTED
        if self.failed or self.stopped:
            return EXIT_FAILURE
        return EXIT_SUCCESS

    def render(self) -> str:
        fmt = "%-20s %-10s %-12s %-30s"
        lines = [fmt % ("Package", "Status", "Duration", "Build Dir"), "-" * 75]
        for j in self.jobs:
            lines.append(fmt % (j.package, j.status.value, format_duration(j.duration_s), j.sandbox))
        lines.append("-" * 75)
        lines.append(
            f"Total: {len(self.jobs)}  Success: {self.count(JobStatus.SUCCESS)}  "
            f"Skipped: {self.count(JobStatus.SKIPPED)}  Failed: {self.count(JobStatus.FAILED)}  "
            f"Pending: {self.count(JobStatus.PENDING)}"
        )
        if self.stopped:
            lines.append("Queue stopped after a failure.")
        if self.interrupted:
            lines.append("Queue interrupted.")
        return "\n".join(lines)


class JobScheduler:
    """
    Supervisor: launches one child per package, keeps at most `max_jobs` alive,
    reaps whichever finishes first. It never does build work itself.
    """

    def __init__(
        self,
        packages: Iterable[str],
        max_jobs: int,
        *,
        storage: BuildStorage,
        launcher: Launcher,
        policy: Optional[FailurePolicyController] = None,
        store: Optional[JobStore] = None,
        handle_signals: bool = True,
    ):
        if not isinstance(max_jobs, int) or max_jobs <= 0:
            raise ConfigurationError(f"max_jobs must be a positive integer, got {max_jobs!r}")
        self.packages = build_order(normalize_packages(packages))
        self.max_jobs = max_jobs
        self.storage = storage
        self.launcher = launcher
        self.policy = policy
        self.store = store
        self.handle_signals = handle_signals

        self.jobs: Dict[str, BuildJob] = {
            p: BuildJob(package=p, sandbox=storage.path_for(p)) for p in self.packages
        }
        self.running: Dict[str, JobHandle] = {}
        self.reasons: Dict[str, str] = {}
        self.peak_running = 0
        self.stopped = False
        self.interrupted = False
        self.log = get_logger("scheduler", max_jobs=max_jobs)
        self._saved_handlers: Dict[int, object] = {}
        self._launching = False
        self._pending_signal: Optional[int] = None

    # ------------ signals ------------

    def _on_signal(self, signum, frame):
        for s in (signal.SIGINT, signal.SIGTERM):
            signal.signal(s, signal.SIG_IGN)
        if self._launching:
            # raised by _launch once the new child is registered
            self._pending_signal = signum
            return
        raise QueueInterrupted(signum)

    def _install_signal_handlers(self):
        for s in (signal.SIGINT, signal.SIGTERM):
            self._saved_handlers[s] = signal.signal(s, self._on_signal)

    def _restore_signal_handlers(self):
        for s, h in self._saved_handlers.items():
            signal.signal(s, h)
        self._saved_handlers.clear()

    # ------------ accounting ------------

    def live_count(self) -> int:
        """Running jobs whose process is still alive; finished ones are completed on the way."""
        for h in list(self.running.values()):
            r = try_reap(h)
            if r is not None:
                self._complete(r)
        return len(self.running)

    def _failure_record(self, job: BuildJob, reaped: Reaped) -> FailureRecord:
        layout = self.storage.layout(job.package, job.sandbox)
        record = None if reaped.vanished else layout.load_failure()
        if record is None:
            record = FailureRecord(
                package=job.package,
                reason=FailureReason.VANISHED if reaped.vanished else FailureReason.UNKNOWN,
                detail="process disappeared without an exit status" if reaped.vanished
                else f"exit {reaped.rc} without a failure record",
                preserved=layout.builder.exists(),
                log_path=str(layout.dispatch_log),
            )
            layout.save_failure(record)
        return record

    def _complete(self, reaped: Reaped) -> None:
        h = reaped.handle
        job = self.jobs[h.package]
        if job.status.terminal:
            self.running.pop(h.package, None)
            return

        job.finished_at = time.time()
        job.exit_code = reaped.rc
        status = JobStatus.FAILED if reaped.vanished else status_from_exit_code(reaped.rc)
        record = self._failure_record(job, reaped) if status is JobStatus.FAILED else None
        if record is not None:
            self.reasons[job.package] = record.reason.value

        job.status = status
        self.running.pop(h.package, None)

        if status is JobStatus.FAILED:
            self.log.error("job_failed", package=job.package, rc=reaped.rc,
                           vanished=reaped.vanished, reason=self.reasons.get(job.package))
        else:
            self.log.info("job_done", package=job.package, status=status.value,
                          duration=format_duration(job.duration_s))
        if self.store is not None:
            self.store.finish(job, self.reasons.get(job.package))

        if self.policy is not None and not (self.stopped or self.interrupted):
            if self.policy.decide(job, record) is Decision.STOP:
                self.stopped = True

    def _launch(self, package: str) -> None:
        job = self.jobs[package]
        self._launching = True
        try:
            h = self.launcher.launch(package, job.sandbox)
            self.running[package] = h
        finally:
            self._launching = False
        job.pid = h.pid
        job.started_at = h.started_at
        job.status = JobStatus.RUNNING
        self.peak_running = max(self.peak_running, len(self.running))
        if self.store is not None:
            self.store.start(job)
        if self._pending_signal is not None:
            raise QueueInterrupted(self._pending_signal)

    def _wait_one(self) -> None:
        r = wait_for_any(list(self.running.values()))
        if r is not None:
            self._complete(r)

    # ------------ main loop ------------

    def run(self) -> BuildSummary:
        if self.handle_signals:
            self._install_signal_handlers()
        try:
            self.log.info("queue_start", packages=len(self.packages))
            try:
                self._dispatch()
                # running siblings are always reaped, never abandoned
                while self.running:
                    self._wait_one()
            except QueueInterrupted as e:
                self.interrupted = True
                self.log.error("queue_interrupted", signal=e.signum, running=len(self.running))
                for h in self.running.values():
                    h.signal(signal.SIGTERM)
                while self.running:
                    self._wait_one()
        finally:
            if self.handle_signals:
                self._restore_signal_handlers()

        summary = self.summary()
        self.log.info("queue_done", exit_code=summary.exit_code, peak_running=self.peak_running,
                      failed=summary.failed)
        return summary

    def _dispatch(self) -> None:
        for package in self.packages:
            while not self.stopped and self.live_count() >= self.max_jobs:
                self._wait_one()
            if self.stopped:
                self.log.warning("dispatch_halted", next_package=package)
                return
            self._launch(package)

    def summary(self) -> BuildSummary:
        return BuildSummary(
            jobs=[self.jobs[p] for p in self.packages],
            stopped=self.stopped,
            interrupted=self.interrupted,
            peak_running=self.peak_running,
            reasons=dict(self.reasons),
        )
