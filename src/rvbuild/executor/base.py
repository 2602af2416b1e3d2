from __future__ import annotations
import os, shlex, signal, subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class ExecSpec:
    cmd: List[str]
    workdir: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout_s: Optional[int] = None


@dataclass
class CommandResult:
    rc: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.rc == 0


class CommandRunner:
    """
    Runs external tools (debootstrap, chroot, mount, umount, mknod).
    With a log path, output is appended to that file; otherwise it is captured.
    """

    def run(self, spec: ExecSpec, log_path: Optional[Path] = None) -> CommandResult:
        env = {**os.environ, **spec.env} if spec.env else None
        cwd = str(spec.workdir) if spec.workdir else None
        try:
            if log_path is None:
                p = subprocess.run(
                    spec.cmd, capture_output=True, text=True, cwd=cwd, env=env,
                    timeout=spec.timeout_s,
                )
                return CommandResult(p.returncode, (p.stdout or "") + (p.stderr or ""))
            return self._run_logged(spec, Path(log_path), cwd, env)
        except FileNotFoundError as e:
            return CommandResult(127, str(e))
        except subprocess.TimeoutExpired:
            return CommandResult(124, f"TIMEOUT after {spec.timeout_s}s")

    @staticmethod
    def _run_logged(spec: ExecSpec, log_path: Path, cwd, env) -> CommandResult:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as fh:
            fh.write(f"[{datetime.utcnow().isoformat()}] $ {shlex.join(spec.cmd)}\n")
            fh.flush()
            p = subprocess.Popen(spec.cmd, stdout=fh, stderr=subprocess.STDOUT, cwd=cwd, env=env)
            try:
                rc = p.wait(timeout=spec.timeout_s)
            except subprocess.TimeoutExpired:
                _stop(p)
                fh.write("TIMEOUT\n")
                return CommandResult(124, "TIMEOUT")
            except BaseException:
                # interrupted while a tool is running: do not leave it behind
                _stop(p)
                raise
            fh.write(f"[exit {rc}]\n")
        return CommandResult(rc, "")


def _stop(p: subprocess.Popen, grace: float = 10.0) -> None:
    if p.poll() is not None:
        return
    try:
        p.send_signal(signal.SIGTERM)
        p.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        p.kill()
        p.wait()
    except ProcessLookupError:
        pass


def chroot_spec(root: Path, script: str, env: Optional[Dict[str, str]] = None) -> ExecSpec:
    return ExecSpec(cmd=["chroot", str(root), "bash", "-lc", script], env=dict(env or {}))
