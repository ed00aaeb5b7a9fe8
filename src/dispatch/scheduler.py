from __future__ import annotations

import json
import logging
import time

from src.dispatch.errors import RegionMismatch, UnknownWorker, WorkerNotEligible
from src.dispatch.heartbeat import HeartbeatMonitor, worker_is_eligible
from src.dispatch.types import ClaimedJob, Region
from src.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)


class AssignmentScheduler:
    """Hands the oldest dispatchable job of a region to an eligible worker."""

    def __init__(self, store: SQLiteStore, monitor: HeartbeatMonitor, *, lease_timeout_s: float) -> None:
        self._store = store
        self._monitor = monitor
        self.lease_timeout_s = float(lease_timeout_s)

    def claim_next(self, worker_id: str, region: Region | str, *, now: float | None = None) -> ClaimedJob | None:
        """Claim one job for `worker_id`, or return None when nothing is available.

        None is the normal "back off and poll again" answer, not an error.
        """
        ts = float(now) if now is not None else time.time()
        requested = Region(region)

        worker = self._store.get_worker(worker_id=worker_id)
        if worker is None:
            raise UnknownWorker("Worker is not registered.", details={"worker_id": worker_id})
        if worker.region != requested:
            raise RegionMismatch(
                "Workers may only claim jobs in their own region.",
                details={"worker_region": worker.region.value, "requested_region": requested.value},
            )
        if not worker_is_eligible(worker, now=ts, timeout_s=self._monitor.timeout_s):
            raise WorkerNotEligible(
                "Worker is offline or its heartbeat has lapsed; send a heartbeat first.",
                details={"worker_id": worker_id, "state": worker.state.value},
            )

        job = self._store.claim_next_pending_job(
            worker_id=worker_id,
            region=requested,
            heartbeat_cutoff=self._monitor.heartbeat_cutoff(ts),
            now=ts,
        )
        if job is None:
            return None

        assert job.started_at is not None
        LOGGER.info("Worker %s claimed job %s (region %s)", worker_id, job.job_id, requested.value)

        tc = self._store.get_test_case(test_case_id=job.test_case_id)
        test_case: dict = {}
        vendor: dict = {}
        if tc is not None:
            test_case = {
                "test_case_id": tc["test_case_id"],
                "workflow_id": tc["workflow_id"],
                "name": tc["name"],
                "region": tc["region"],
                "config": json.loads(str(tc["config_json"] or "{}")),
            }
            vendor = {
                "vendor_id": tc["vendor_id"],
                "name": tc["vendor_name"],
                "type": tc["vendor_type"],
                "config": json.loads(str(tc["vendor_config_json"] or "{}")),
            }

        return ClaimedJob(
            job=job,
            lease_expires_at=float(job.started_at) + self.lease_timeout_s,
            test_case=test_case,
            vendor=vendor,
        )
