from __future__ import annotations
import shutil, sys
from enum import Enum
from typing import Callable, Optional, TextIO

from ..core.models import BuildJob, CleanupOutcome, FailurePolicy, FailureRecord, JobStatus
from ..isolation.mounts import MountSafety
from ..isolation.processes import ProcessReaper
from ..logging import get_logger
from .storage import BuildStorage


class Decision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


class FailurePolicyController:
    """
    Decides what a FAILED job means for the rest of the queue.
      stop -> keep the sandbox, print diagnostics, halt the queue
      skip -> clean the sandbox, carry on
      ask  -> diagnostics, then the operator chooses continue (like skip) or abort (like stop)
    """

    def __init__(
        self,
        policy: FailurePolicy,
        storage: BuildStorage,
        mounts: MountSafety,
        *,
        reaper: Optional[ProcessReaper] = None,
        prompt: Callable[[str], str] = input,
        out: Optional[TextIO] = None,
        tail_lines: int = 20,
        max_logs: int = 5,
    ):
        self.policy = FailurePolicy(policy)
        self.storage = storage
        self.mounts = mounts
        self.reaper = reaper
        self.prompt = prompt
        self.out = out or sys.stdout
        self.tail_lines = tail_lines
        self.max_logs = max_logs
        self.log = get_logger("policy", policy=self.policy.value)

    def decide(self, job: BuildJob, record: Optional[FailureRecord] = None) -> Decision:
        if job.status is not JobStatus.FAILED:
            return Decision.CONTINUE

        if self.policy is FailurePolicy.SKIP:
            self.log.warning("failure_skipped", package=job.package)
            self._report_cleanup(job.package, self.cleanup(job.package, job.sandbox))
            return Decision.CONTINUE

        self.print_diagnostics(job, record)
        if self.policy is FailurePolicy.STOP:
            self.log.error("queue_stopped", package=job.package)
            return Decision.STOP

        if self.ask(job.package):
            self.log.warning("operator_continue", package=job.package)
            self._report_cleanup(job.package, self.cleanup(job.package, job.sandbox))
            return Decision.CONTINUE
        self.log.error("operator_abort", package=job.package)
        return Decision.STOP

    def ask(self, package: str) -> bool:
        while True:
            try:
                answer = self.prompt(f"Build of {package} failed. [c]ontinue or [a]bort? ")
            except EOFError:
                return False
            answer = (answer or "").strip().lower()
            if answer in ("c", "continue", "y", "yes"):
                return True
            if answer in ("a", "abort", "n", "no", "q", "quit"):
                return False
            print("Please answer 'c' or 'a'.", file=self.out)

    def print_diagnostics(self, job: BuildJob, record: Optional[FailureRecord]) -> None:
        layout = self.storage.layout(job.package, job.sandbox)

        def p(*a):
            print(*a, file=self.out)

        p(f"==== {job.package} FAILED (exit {job.exit_code}) ====")
        if record is not None:
            p(f"reason : {record.reason.value}")
            if record.detail:
                p(f"detail : {record.detail}")
            if record.log_path:
                p(f"log    : {record.log_path}")
        p(f"sandbox: {layout.root} (preserved for inspection)")
        for path, lines in layout.tail_logs(self.tail_lines, self.max_logs):
            p(f"---- tail -n {self.tail_lines} {path} ----")
            for line in lines:
                p(line)
        self.out.flush()

    def cleanup(self, package: str, sandbox=None) -> CleanupOutcome:
        """Best-effort: stray processes, mounts, then the working copy."""
        layout = self.storage.layout(package, sandbox)
        outcome = CleanupOutcome()
        if self.reaper is not None:
            report = self.reaper.reap(package)
            for pid, reason in report.skipped:
                outcome.warn(f"process {pid} left running: {reason}")
        outcome.merge(self.mounts.release_under(layout.root))

        if layout.builder.exists():
            if self.mounts.table.under(layout.builder):
                outcome.warn(f"working copy kept, mounts remain under {layout.builder}")
            else:
                try:
                    shutil.rmtree(layout.builder)
                except OSError as e:
                    outcome.warn(f"could not remove {layout.builder}: {e}")

        record = layout.load_failure()
        if record is not None and record.preserved and not layout.builder.exists():
            record.preserved = False
            layout.save_failure(record)
        return outcome

    def _report_cleanup(self, package: str, outcome: CleanupOutcome) -> None:
        for w in outcome.warnings:
            self.log.warning("cleanup_degraded", package=package, detail=w)
