from __future__ import annotations

import logging
import time

from src.dispatch.errors import UnknownWorker
from src.dispatch.types import WorkerRecord, WorkerState
from src.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)


def worker_is_eligible(worker: WorkerRecord, *, now: float, timeout_s: float) -> bool:
    if worker.state == WorkerState.OFFLINE or worker.last_heartbeat is None:
        return False
    return (float(now) - float(worker.last_heartbeat)) <= float(timeout_s)


class HeartbeatMonitor:
    """Liveness bookkeeping; the only authority on whether a worker may get work."""

    def __init__(self, store: SQLiteStore, *, timeout_s: float) -> None:
        self._store = store
        self.timeout_s = float(timeout_s)

    def heartbeat_cutoff(self, now: float) -> float:
        """Oldest heartbeat timestamp that still counts as alive at `now`."""
        return float(now) - self.timeout_s

    def beat(self, worker_id: str, *, now: float | None = None) -> WorkerRecord:
        ts = float(now) if now is not None else time.time()
        before = self._store.get_worker(worker_id=worker_id)
        if before is None:
            raise UnknownWorker("Worker is not registered.", details={"worker_id": worker_id})

        after = self._store.record_heartbeat(worker_id=worker_id, now=ts)
        if after is None:
            raise UnknownWorker("Worker is not registered.", details={"worker_id": worker_id})
        if before.state == WorkerState.OFFLINE:
            LOGGER.info("Worker %s is back online", worker_id)
        return after

    def is_eligible(self, worker_id: str, now: float | None = None) -> bool:
        ts = float(now) if now is not None else time.time()
        worker = self._store.get_worker(worker_id=worker_id)
        if worker is None:
            return False
        return worker_is_eligible(worker, now=ts, timeout_s=self.timeout_s)

    def sweep(self, now: float | None = None) -> list[str]:
        """Demote workers whose heartbeat lapsed. Jobs are the reaper's business."""
        ts = float(now) if now is not None else time.time()
        demoted = self._store.mark_lapsed_workers_offline(heartbeat_cutoff=self.heartbeat_cutoff(ts), now=ts)
        if demoted:
            LOGGER.info("Heartbeat sweep demoted %d worker(s) to offline: %s", len(demoted), ", ".join(demoted))
        return demoted
