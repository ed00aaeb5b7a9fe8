from __future__ import annotations

import logging
import time
from typing import Any

from src.dispatch.errors import LeaseMismatch, UnknownJob
from src.dispatch.types import JobRecord, Outcome
from src.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)

DEFAULT_FAILURE_ERROR = "worker reported failure"


class ResultReporter:
    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def report(
        self,
        worker_id: str,
        job_id: str,
        outcome: Outcome | str,
        *,
        error: str | None = None,
        results: dict[str, Any] | None = None,
        now: float | None = None,
    ) -> JobRecord:
        """Finalize a job held by `worker_id`.

        A report for a job that is not running under this worker (reaped,
        reassigned or already final) raises LeaseMismatch and writes nothing.
        """
        ts = float(now) if now is not None else time.time()
        result = Outcome(outcome)

        if result == Outcome.FAILED:
            error_text: str | None = (error or "").strip() or DEFAULT_FAILURE_ERROR
        else:
            error_text = None

        finished = self._store.finish_job(
            job_id=job_id,
            worker_id=worker_id,
            status=result.status,
            error=error_text,
            results=results,
            now=ts,
        )
        if finished is not None:
            LOGGER.info("Job %s %s by worker %s", job_id, finished.status.value, worker_id)
            return finished

        current = self._store.get_job(job_id=job_id)
        if current is None:
            raise UnknownJob("Job not found.", details={"job_id": job_id})
        LOGGER.warning(
            "Discarding stale report from worker %s for job %s (status=%s)",
            worker_id,
            job_id,
            current.status.value,
        )
        raise LeaseMismatch(
            "Job is not held by this worker.",
            details={"job_id": job_id, "status": current.status.value},
        )
