from __future__ import annotations

import logging
import time

from src.dispatch.errors import retry_exhausted_message
from src.dispatch.heartbeat import HeartbeatMonitor
from src.dispatch.types import JobStatus, ReapSummary
from src.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)


class LeaseReaper:
    """Returns abandoned running jobs to the pending pool.

    A lease is abandoned when it is older than `lease_timeout_s` and its holder
    is no longer eligible. After `max_retries` requeues the next expiry fails
    the job instead, so a permanently broken test case cannot loop forever.
    """

    def __init__(
        self,
        store: SQLiteStore,
        monitor: HeartbeatMonitor,
        *,
        lease_timeout_s: float,
        max_retries: int,
    ) -> None:
        self._store = store
        self._monitor = monitor
        self.lease_timeout_s = float(lease_timeout_s)
        self.max_retries = int(max_retries)

    def reap(self, now: float | None = None) -> ReapSummary:
        ts = float(now) if now is not None else time.time()
        lease_cutoff = ts - self.lease_timeout_s
        heartbeat_cutoff = self._monitor.heartbeat_cutoff(ts)

        summary = ReapSummary()
        for row in self._store.list_expired_leases(lease_cutoff=lease_cutoff):
            job_id = str(row["job_id"])
            worker_id = str(row["worker_id"])
            attempts = int(row["attempts"]) + 1
            new_status = self._store.release_expired_job(
                job_id=job_id,
                worker_id=worker_id,
                started_at=float(row["started_at"]),
                heartbeat_cutoff=heartbeat_cutoff,
                max_retries=self.max_retries,
                exhausted_error=retry_exhausted_message(attempts),
                now=ts,
            )
            if new_status is None:
                # Holder is still alive, or the job moved on since the scan.
                continue
            if new_status == JobStatus.FAILED:
                LOGGER.warning("Job %s failed: %s (last worker %s)", job_id, retry_exhausted_message(attempts), worker_id)
                summary.exhausted.append(job_id)
            else:
                LOGGER.info("Requeued job %s from worker %s (attempt %d)", job_id, worker_id, attempts)
                summary.requeued.append(job_id)
        return summary
