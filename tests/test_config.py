from __future__ import annotations

from pathlib import Path

import pytest

from src.config.load_config import ConfigError, default_config_path, load_app_config


VALID = """
[heartbeat]
timeout_s = 45
sweep_interval_s = 10

[lease]
timeout_s = 900
max_retries = 3
reap_interval_s = 30

[claim]
poll_interval_s = 10

[limits]
jobs_list_default_limit = 50
jobs_list_max_limit = 200
"""


def _write(tmp_path: Path, text: str) -> Path:
    p = tmp_path / "config.toml"
    p.write_text(text, encoding="utf-8")
    return p


def test_default_config_loads() -> None:
    cfg = load_app_config()
    assert cfg.heartbeat.timeout_s == 45.0
    assert cfg.lease.timeout_s == 900.0
    assert cfg.lease.max_retries == 3
    assert cfg.claim.poll_interval_s == 10.0
    assert cfg.limits.jobs_list_max_limit == 200


def test_config_path_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = _write(tmp_path, VALID.replace("max_retries = 3", "max_retries = 5"))
    monkeypatch.setenv("VOXD_CONFIG_PATH", str(p))
    assert default_config_path() == p.resolve()
    assert load_app_config().lease.max_retries == 5


def test_lease_must_outlast_heartbeat(tmp_path: Path) -> None:
    p = _write(tmp_path, VALID.replace("timeout_s = 900", "timeout_s = 45"))
    with pytest.raises(ConfigError, match="lease.timeout_s"):
        load_app_config(p)


@pytest.mark.parametrize(
    "old,new",
    [
        ("sweep_interval_s = 10", "sweep_interval_s = 0"),
        ("max_retries = 3", "max_retries = -1"),
        ("poll_interval_s = 10", "poll_interval_s = \"soon\""),
        ("jobs_list_default_limit = 50", "jobs_list_default_limit = 500"),
        ("reap_interval_s = 30\n", ""),
    ],
)
def test_invalid_values_raise(tmp_path: Path, old: str, new: str) -> None:
    p = _write(tmp_path, VALID.replace(old, new))
    with pytest.raises(ConfigError):
        load_app_config(p)


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_app_config(tmp_path / "absent.toml")


def test_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_app_config(_write(tmp_path, "[heartbeat\n"))
