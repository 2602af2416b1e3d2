import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

from rvbuild.core.models import EXIT_FAILURE, FailureReason

from conftest import provisioned_layout

TESTS_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = TESTS_DIR.parent / "src"

# A build-one child whose compile step blocks until it is signalled.
CHILD = """
import json, sys, time
from rvbuild.executor.chroot import SandboxLifecycleManager
from rvbuild.isolation.mounts import MountSafety
from rvbuild.services.storage import BuildStorage
from conftest import FakeMountTable, FakeRunner, no_sleep

class SlowCompile(FakeRunner):
    def _chroot(self, root, script):
        if "dpkg-buildpackage" in script:
            open({ready!r}, "w").close()
            time.sleep(60)
        return super()._chroot(root, script)

layout = BuildStorage({base!r}).layout("hello")
runner = SlowCompile(FakeMountTable())
mounts = MountSafety(runner, runner.table, retries=2, retry_delay_s=0, sleep=no_sleep)
rc = SandboxLifecycleManager(layout, qemu_static={qemu!r}, build_parallel=2,
                             runner=runner, mounts=mounts).run()
print(json.dumps({{"rc": rc, "mounted": len(runner.table.mounted)}}))
sys.exit(rc)
"""


def wait_for(path, timeout=30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists():
            return True
        time.sleep(0.05)
    return False


def test_sigterm_to_build_child_tears_down_and_records_interrupt(tmp_path, storage, qemu_static):
    layout = provisioned_layout(storage)
    ready = tmp_path / "compiling"
    code = CHILD.format(ready=str(ready), base=str(storage.base_dir), qemu=str(qemu_static))
    env = {**os.environ, "PYTHONPATH": os.pathsep.join([str(SRC_DIR), str(TESTS_DIR)])}
    p = subprocess.Popen([sys.executable, "-c", code], stdout=subprocess.PIPE, env=env, text=True)
    try:
        assert wait_for(ready), "child never reached the compile step"
        p.send_signal(signal.SIGTERM)
        # a second signal during teardown is ignored
        p.send_signal(signal.SIGTERM)
        out, _ = p.communicate(timeout=30)
    finally:
        if p.poll() is None:
            p.kill()
            p.wait()

    assert p.returncode == EXIT_FAILURE
    result = json.loads(out.strip().splitlines()[-1])
    assert result == {"rc": EXIT_FAILURE, "mounted": 0}

    record = layout.load_failure()
    assert record.reason is FailureReason.INTERRUPTED
    assert record.preserved is False
    assert not layout.builder.exists()
    assert not layout.artifact_dir.exists()
    assert not (layout.out_dir / "hello.partial").exists()
