from pathlib import Path

import pytest

from rvbuild.core.errors import ConfigurationError
from rvbuild.core.models import FailurePolicy
from rvbuild.core.utils import (
    format_duration, load_package_list, normalize_packages, retry_with_backoff, tail_file,
)
from rvbuild.settings import load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("RVB_MAX_JOBS", "RVB_BASE_DIR", "RVB_FAILURE_POLICY", "RVBUILD_CONF"):
        monkeypatch.delenv(key, raising=False)


def test_defaults_when_config_missing(tmp_path):
    s = load_settings(tmp_path / "missing.yaml")
    assert s.max_jobs == 2
    assert s.failure_policy is FailurePolicy.SKIP
    assert s.base_dir == Path("/srv")
    assert s.build_parallel >= 1


def test_yaml_then_env_precedence(tmp_path, monkeypatch):
    conf = tmp_path / "rvbuild.yaml"
    conf.write_text(
        "max_jobs: 4\nfailure_policy: stop\nbase_dir: /data\nunknown_key: 1\n"
        "cleanup:\n  retries: 7\n  kill_grace_s: 2\n"
    )
    monkeypatch.setenv("RVB_MAX_JOBS", "6")

    s = load_settings(conf)

    assert s.max_jobs == 6
    assert s.failure_policy is FailurePolicy.STOP
    assert s.base_dir == Path("/data")
    assert s.unmount_retries == 7
    assert s.kill_grace_s == 2


def test_config_path_from_environment(tmp_path, monkeypatch):
    conf = tmp_path / "other.yaml"
    conf.write_text("suite: jammy\n")
    monkeypatch.setenv("RVBUILD_CONF", str(conf))
    assert load_settings().suite == "jammy"


def test_bad_yaml_and_bad_values_are_configuration_errors(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("max_jobs: [1\n")
    with pytest.raises(ConfigurationError):
        load_settings(bad)
    bad.write_text("failure_policy: sometimes\n")
    with pytest.raises(ConfigurationError):
        load_settings(bad)


def test_normalize_packages_dedupes_in_order():
    assert normalize_packages(["alpha", "beta", "beta", " alpha "]) == ["alpha", "beta"]
    assert normalize_packages(["libc6", "g++-13", "python3.12"]) == ["libc6", "g++-13", "python3.12"]


@pytest.mark.parametrize("bad", ["", "-lead", ".dot", "has space", "semi;colon", "a/b"])
def test_invalid_names_rejected(bad):
    with pytest.raises(ConfigurationError):
        normalize_packages([bad])


def test_load_package_list(tmp_path):
    p = tmp_path / "packages.list"
    p.write_text("# base\nhello\n\n  tree  \nhello\n")
    assert load_package_list(p) == ["hello", "tree"]
    with pytest.raises(ConfigurationError):
        load_package_list(tmp_path / "nope.list")


def test_format_duration():
    assert format_duration(None) == "N/A"
    assert format_duration(5) == "5s"
    assert format_duration(184) == "3m4s"
    assert format_duration(3720) == "1h2m"


def test_retry_with_backoff_counts_and_delays():
    slept, calls = [], []

    def action():
        calls.append(1)
        return len(calls) == 3

    assert retry_with_backoff(action, 5, 0.1, sleep=slept.append) is True
    assert len(calls) == 3
    assert slept == pytest.approx([0.1, 0.2])

    calls.clear()
    slept.clear()
    assert retry_with_backoff(lambda: False, 2, 1.0, sleep=slept.append) is False
    assert slept == [1.0]


def test_tail_file(tmp_path):
    p = tmp_path / "x.log"
    p.write_text("\n".join(str(i) for i in range(100)) + "\n")
    assert tail_file(p, 3) == ["97", "98", "99"]
    assert tail_file(tmp_path / "missing.log") == []
