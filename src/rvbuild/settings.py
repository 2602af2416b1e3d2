from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import ConfigurationError
from .core.models import FailurePolicy

DEFAULT_CONF = "conf/rvbuild.yaml"


def _default_parallel() -> int:
    return max(1, (os.cpu_count() or 4) // 4)


class Settings(BaseSettings):
    # ---- layout ----
    base_dir: Path = Path("/srv")

    # ---- foreign target ----
    suite: str = "noble"
    arch: str = "riscv64"
    mirror: str = "http://ports.ubuntu.com/ubuntu-ports"
    qemu_static: Path = Path("/usr/bin/qemu-riscv64-static")

    target_packages: List[str] = [
        "systemd-sysv", "openssh-server", "netbase", "iproute2", "iputils-ping",
        "ca-certificates", "sudo", "locales", "tzdata", "vim-tiny", "less",
    ]
    builder_packages: List[str] = [
        "build-essential", "devscripts", "debhelper", "dpkg-dev", "fakeroot",
        "quilt", "ca-certificates", "pkg-config",
    ]
    package_versions: Dict[str, str] = {}

    # ---- queue ----
    max_jobs: int = 2
    build_parallel: int = Field(default_factory=_default_parallel)
    failure_policy: FailurePolicy = FailurePolicy.SKIP
    force_rebuild: bool = False

    # ---- cleanup ----
    unmount_retries: int = 3
    unmount_retry_delay_s: float = 1.0
    kill_grace_s: float = 5.0
    log_tail_lines: int = 20

    # ---- history / logging ----
    db_url: str = "sqlite:///./rvbuild.db"
    log_level: str = "INFO"
    log_json: bool = True

    # env prefix RVB_*
    model_config = SettingsConfigDict(env_prefix="RVB_", extra="ignore")


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def load_settings(conf_path: Optional[Path] = None) -> Settings:
    """Defaults < conf/rvbuild.yaml (or RVBUILD_CONF) < RVB_* environment."""
    try:
        s = Settings()
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e

    path = Path(conf_path or os.environ.get("RVBUILD_CONF", DEFAULT_CONF))
    data = _read_yaml(path)

    # cleanup: {retries, retry_delay_s, kill_grace_s}
    cleanup = data.pop("cleanup", None) or {}
    if isinstance(cleanup, dict):
        for key, field in (("retries", "unmount_retries"),
                           ("retry_delay_s", "unmount_retry_delay_s"),
                           ("kill_grace_s", "kill_grace_s")):
            if key in cleanup:
                data.setdefault(field, cleanup[key])

    update = {k: v for k, v in data.items()
              if k in Settings.model_fields and k not in s.model_fields_set}
    if not update:
        return s
    try:
        return Settings(**{**s.model_dump(), **update})
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration in {path}: {e}") from e
