from __future__ import annotations

import logging
import threading
import time

import pytest

from src.config.load_config import load_app_config
from src.runtime.sweeper import SweepConfig, SweepLoop, build_sweepers, heartbeat_sweep, lease_sweep
from src.storage.sqlite_store import SQLiteStore


def test_build_sweepers_uses_configured_intervals(db_path: str) -> None:
    cfg = load_app_config()
    loops = build_sweepers(app_config=cfg, db_path=db_path)
    assert [s.name for s in loops] == ["heartbeat-sweep", "lease-reaper"]
    snaps = [s.status_snapshot() for s in loops]
    assert snaps[0]["interval_s"] == cfg.heartbeat.sweep_interval_s
    assert snaps[1]["interval_s"] == cfg.lease.reap_interval_s
    assert all(s["running"] is False for s in snaps)


def test_run_once_demotes_lapsed_workers(store, db_path: str, register_worker) -> None:
    worker_id, _ = register_worker("na", now=1.0)
    loop = SweepLoop(
        config=SweepConfig(name="heartbeat-sweep", interval_s=1.0),
        sweep=heartbeat_sweep,
        app_config=load_app_config(),
        db_path=db_path,
    )
    assert loop.run_once() == [worker_id]
    assert loop.run_once() == []


def test_lease_sweep_with_nothing_to_reap(store, db_path: str) -> None:
    loop = SweepLoop(
        config=SweepConfig(name="lease-reaper", interval_s=1.0),
        sweep=lease_sweep,
        app_config=load_app_config(),
        db_path=db_path,
    )
    assert loop.run_once().total == 0


def test_failing_tick_is_logged_and_loop_continues(db_path: str, caplog: pytest.LogCaptureFixture) -> None:
    calls: list[int] = []
    second_tick = threading.Event()

    def _flaky(ctx) -> None:
        assert isinstance(ctx.store, SQLiteStore)
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        second_tick.set()

    loop = SweepLoop(
        config=SweepConfig(name="flaky", interval_s=0.01),
        sweep=_flaky,
        app_config=load_app_config(),
        db_path=db_path,
    )
    with caplog.at_level(logging.ERROR, logger="src.runtime.sweeper"):
        loop.start()
        try:
            assert second_tick.wait(timeout=5.0)
        finally:
            loop.stop()

    snap = loop.status_snapshot()
    assert snap["failures"] == 1
    assert snap["ticks"] >= 2
    assert snap["last_error"] == "RuntimeError: database is locked"
    assert snap["running"] is False
    assert any("Sweep flaky failed" in r.getMessage() for r in caplog.records)


def test_stop_without_start_is_noop(db_path: str) -> None:
    loop = SweepLoop(
        config=SweepConfig(name="idle", interval_s=60.0),
        sweep=lambda ctx: None,
        app_config=load_app_config(),
        db_path=db_path,
    )
    started = time.time()
    loop.stop()
    assert time.time() - started < 1.0
