from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_float(value: Any, *, key: str) -> float:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _require_positive(value: float, *, key: str) -> float:
    if value <= 0:
        raise ConfigError(f"Invalid {key}: must be > 0, got {value!r}")
    return value


@dataclass(frozen=True)
class HeartbeatConfig:
    timeout_s: float
    sweep_interval_s: float


@dataclass(frozen=True)
class LeaseConfig:
    timeout_s: float
    max_retries: int
    reap_interval_s: float


@dataclass(frozen=True)
class ClaimConfig:
    # Advisory backoff handed to workers when no job is available.
    poll_interval_s: float


@dataclass(frozen=True)
class LimitsConfig:
    jobs_list_default_limit: int
    jobs_list_max_limit: int


@dataclass(frozen=True)
class AppConfig:
    heartbeat: HeartbeatConfig
    lease: LeaseConfig
    claim: ClaimConfig
    limits: LimitsConfig


def default_config_path() -> Path:
    raw = os.getenv("VOXD_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    # `<repo>/config/default.toml`, independent of the current working directory.
    return (Path(__file__).resolve().parents[2] / "config" / "default.toml").resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    heartbeat = raw.get("heartbeat", {})
    lease = raw.get("lease", {})
    claim = raw.get("claim", {})
    limits = raw.get("limits", {})

    heartbeat_cfg = HeartbeatConfig(
        timeout_s=_require_positive(
            _as_float(heartbeat.get("timeout_s"), key="heartbeat.timeout_s"), key="heartbeat.timeout_s"
        ),
        sweep_interval_s=_require_positive(
            _as_float(heartbeat.get("sweep_interval_s"), key="heartbeat.sweep_interval_s"),
            key="heartbeat.sweep_interval_s",
        ),
    )
    lease_cfg = LeaseConfig(
        timeout_s=_require_positive(_as_float(lease.get("timeout_s"), key="lease.timeout_s"), key="lease.timeout_s"),
        max_retries=_as_int(lease.get("max_retries"), key="lease.max_retries"),
        reap_interval_s=_require_positive(
            _as_float(lease.get("reap_interval_s"), key="lease.reap_interval_s"), key="lease.reap_interval_s"
        ),
    )
    if lease_cfg.max_retries < 0:
        raise ConfigError(f"Invalid lease.max_retries: must be >= 0, got {lease_cfg.max_retries}")
    # Execution may legitimately outlive several heartbeat windows.
    if lease_cfg.timeout_s <= heartbeat_cfg.timeout_s:
        raise ConfigError(
            "Invalid lease.timeout_s: must be greater than heartbeat.timeout_s "
            f"({lease_cfg.timeout_s} <= {heartbeat_cfg.timeout_s})"
        )

    limits_cfg = LimitsConfig(
        jobs_list_default_limit=_as_int(
            limits.get("jobs_list_default_limit"), key="limits.jobs_list_default_limit"
        ),
        jobs_list_max_limit=_as_int(limits.get("jobs_list_max_limit"), key="limits.jobs_list_max_limit"),
    )
    if not (1 <= limits_cfg.jobs_list_default_limit <= limits_cfg.jobs_list_max_limit):
        raise ConfigError("Invalid limits: need 1 <= jobs_list_default_limit <= jobs_list_max_limit")

    return AppConfig(
        heartbeat=heartbeat_cfg,
        lease=lease_cfg,
        claim=ClaimConfig(
            poll_interval_s=_require_positive(
                _as_float(claim.get("poll_interval_s"), key="claim.poll_interval_s"), key="claim.poll_interval_s"
            ),
        ),
        limits=limits_cfg,
    )
