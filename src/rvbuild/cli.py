from __future__ import annotations
import argparse, sys
from pathlib import Path
from typing import List, Optional

from .core.errors import ConfigurationError
from .core.models import EXIT_FAILURE, FailurePolicy, JobStatus
from .core.utils import load_package_list, validate_package_name
from .isolation.mounts import MountSafety
from .isolation.processes import ProcessReaper
from .logging import get_logger, setup_logging
from .settings import Settings, load_settings

EXIT_CONFIG = 2
DEFAULT_PACKAGE_LIST = Path("conf/packages.list")


def _settings(args) -> Settings:
    s = load_settings(args.conf)
    update = {}
    if getattr(args, "base_dir", None):
        update["base_dir"] = args.base_dir
    if getattr(args, "jobs", None) is not None:
        update["max_jobs"] = args.jobs
    if getattr(args, "policy", None):
        update["failure_policy"] = FailurePolicy(args.policy)
    if getattr(args, "force_rebuild", False):
        update["force_rebuild"] = True
    if getattr(args, "log_level", None):
        update["log_level"] = args.log_level
    return s.model_copy(update=update) if update else s


def _mounts(s: Settings) -> MountSafety:
    return MountSafety(retries=s.unmount_retries, retry_delay_s=s.unmount_retry_delay_s)


def _reaper(s: Settings) -> ProcessReaper:
    return ProcessReaper(s.base_dir, kill_grace_s=s.kill_grace_s)


def _packages(args) -> List[str]:
    names: List[str] = []
    if args.file:
        names.extend(load_package_list(args.file))
    names.extend(args.packages or [])
    if not names and DEFAULT_PACKAGE_LIST.is_file():
        names.extend(load_package_list(DEFAULT_PACKAGE_LIST))
    if not names:
        raise ConfigurationError("no packages given (use -f FILE or list them)")
    return names


# ----- commands -----

def cmd_run(args) -> int:
    from .executor.launcher import SubprocessLauncher
    from .services.job_store import JobStore
    from .services.policy import FailurePolicyController
    from .services.scheduler import JobScheduler
    from .services.storage import BuildStorage

    s = _settings(args)
    setup_logging(s.log_level, s.log_json, stream=sys.stderr)
    storage = BuildStorage(s.base_dir)
    mounts = _mounts(s)
    policy = FailurePolicyController(
        s.failure_policy, storage, mounts,
        reaper=_reaper(s), tail_lines=s.log_tail_lines,
    )
    scheduler = JobScheduler(
        _packages(args), s.max_jobs,
        storage=storage,
        launcher=SubprocessLauncher(force_rebuild=s.force_rebuild, conf_path=args.conf),
        policy=policy,
        store=JobStore(s.db_url),
    )
    summary = scheduler.run()
    print(summary.render())
    return summary.exit_code


def cmd_build_one(args) -> int:
    from .executor.chroot import SandboxLifecycleManager
    from .services.storage import BuildStorage

    try:
        s = _settings(args)
        setup_logging(s.log_level, s.log_json)
        layout = BuildStorage(s.base_dir).layout(args.package, args.build_dir)
    except ConfigurationError as e:
        # 2 means "already built" to the supervisor, so bad input is a plain failure here
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    manager = SandboxLifecycleManager.from_settings(s, layout, mounts=_mounts(s))
    return manager.run()


def cmd_check(args) -> int:
    from .services.cleaner import SystemCleaner
    from .services.storage import BuildStorage

    s = _settings(args)
    setup_logging(s.log_level, s.log_json, stream=sys.stderr)
    report = SystemCleaner(BuildStorage(s.base_dir), _mounts(s), _reaper(s)).check()
    print(report.render())
    return 0 if report.clean else 1


def cmd_clean(args) -> int:
    from .services.cleaner import SystemCleaner
    from .services.storage import BuildStorage

    s = _settings(args)
    setup_logging(s.log_level, s.log_json, stream=sys.stderr)
    package = None if args.target in (None, "all") else validate_package_name(args.target)
    cleaner = SystemCleaner(BuildStorage(s.base_dir), _mounts(s), _reaper(s))

    report = cleaner.check(package)
    print(report.render())
    if report.clean:
        return 0
    if not args.yes:
        answer = input("Proceed with cleanup? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("Aborted.")
            return 1
    outcome = cleaner.clean(package)
    for w in outcome.warnings:
        print(f"warning: {w}")
    print(f"Cleanup {outcome.status.value}.")
    return 0 if outcome.completed else 1


def cmd_status(args) -> int:
    from .services.job_store import JobStore
    from .services.monitor import error_lines, inspect_build_dir
    from .services.storage import BuildStorage

    s = _settings(args)
    setup_logging(s.log_level, s.log_json, stream=sys.stderr)
    layouts = BuildStorage(s.base_dir).build_dirs()
    if not layouts:
        print(f"No build directories under {s.base_dir}")
        return 0
    store = JobStore(s.db_url)
    fmt = "%-20s %-10s %-6s %-14s %s"
    print(fmt % ("Package", "Status", "Debs", "Last run", "Last log line"))
    for layout in layouts:
        st = inspect_build_dir(layout)
        rec = store.latest(st.package)
        last = f"{JobStatus(rec.status).value}({rec.exit_code})" if rec and rec.exit_code is not None else "-"
        print(fmt % (st.package, st.status, st.artifacts, last, st.last_line[:60]))
        if args.errors and st.status == "FAILED":
            for line in error_lines(layout.build_log):
                print(f"    {line}")
    return 0


def cmd_serve(args) -> int:
    import uvicorn
    from .api.app import create_app

    s = _settings(args)
    setup_logging(s.log_level, s.log_json, stream=sys.stderr)
    get_logger("api").info("serve", host=args.host, port=args.port)
    uvicorn.run(create_app(s), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="rvbuild", description="Parallel foreign-architecture package builds")
    ap.add_argument("--conf", type=Path, default=None, help="YAML config (default conf/rvbuild.yaml)")
    ap.add_argument("--base-dir", type=Path, default=None, help="directory holding rvbuild-<pkg> sandboxes")
    ap.add_argument("--log-level", default=None)
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="build a package list in parallel")
    p.add_argument("packages", nargs="*")
    p.add_argument("-f", "--file", type=Path, help="package list, one per line")
    p.add_argument("-j", "--jobs", type=int, help="max concurrent builds")
    p.add_argument("--policy", choices=[x.value for x in FailurePolicy])
    p.add_argument("--force-rebuild", action="store_true")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("build-one", help="build one package in its sandbox")
    p.add_argument("package")
    p.add_argument("--build-dir", type=Path, default=None)
    p.add_argument("--force-rebuild", action="store_true")
    p.set_defaults(func=cmd_build_one)

    p = sub.add_parser("check", help="report stray processes, mounts and build dirs")
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("clean", help="kill stray builds, unmount, remove build dirs")
    p.add_argument("target", nargs="?", default="all", help="package name or 'all'")
    p.add_argument("-y", "--yes", action="store_true")
    p.set_defaults(func=cmd_clean)

    p = sub.add_parser("status", help="status of every build dir")
    p.add_argument("--errors", action="store_true", help="show error lines of failed builds")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("serve", help="run the read-only status API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.set_defaults(func=cmd_serve)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ConfigurationError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
