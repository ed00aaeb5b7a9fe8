from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from src.config.load_config import AppConfig, load_app_config
from src.dispatch.context import DispatchContext
from src.storage.sqlite_store import SQLiteStore, default_db_path


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepConfig:
    name: str
    interval_s: float


class SweepLoop:
    """Background thread that runs one sweep on a fixed interval.

    Every tick opens its own store. A failing tick is logged and the loop simply
    waits for the next one: a missed sweep only delays recovery.
    """

    def __init__(
        self,
        *,
        config: SweepConfig,
        sweep: Callable[[DispatchContext], Any],
        app_config: AppConfig | None = None,
        db_path: str | None = None,
    ) -> None:
        self._config = config
        self._sweep = sweep
        self._app_config = app_config or load_app_config()
        self._db_path = db_path or default_db_path()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

        self._ticks = 0
        self._failures = 0
        self._last_tick_at: float | None = None
        self._last_error: str | None = None

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "name": self._config.name,
            "running": self.running,
            "interval_s": float(self._config.interval_s),
            "ticks": self._ticks,
            "failures": self._failures,
            "last_tick_at": self._last_tick_at,
            "last_error": self._last_error,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name=f"voxd-{self._config.name}", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def run_once(self) -> Any:
        """Run a single tick in the calling thread; exceptions propagate."""
        store = SQLiteStore(self._db_path)
        try:
            return self._sweep(DispatchContext(store=store, config=self._app_config))
        finally:
            store.close()

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            self._ticks += 1
            self._last_tick_at = time.time()
            try:
                self.run_once()
            except Exception as e:
                self._failures += 1
                self._last_error = f"{type(e).__name__}: {e}"
                LOGGER.exception("Sweep %s failed; retrying on next tick", self._config.name)
            self._stop.wait(self._config.interval_s)


def heartbeat_sweep(ctx: DispatchContext) -> list[str]:
    return ctx.monitor.sweep()


def lease_sweep(ctx: DispatchContext) -> Any:
    return ctx.reaper.reap()


def build_sweepers(*, app_config: AppConfig | None = None, db_path: str | None = None) -> list[SweepLoop]:
    """The two independent periodic sweeps: offline demotion and lease reaping."""
    cfg = app_config or load_app_config()
    return [
        SweepLoop(
            config=SweepConfig(name="heartbeat-sweep", interval_s=cfg.heartbeat.sweep_interval_s),
            sweep=heartbeat_sweep,
            app_config=cfg,
            db_path=db_path,
        ),
        SweepLoop(
            config=SweepConfig(name="lease-reaper", interval_s=cfg.lease.reap_interval_s),
            sweep=lease_sweep,
            app_config=cfg,
            db_path=db_path,
        ),
    ]
