from __future__ import annotations

import logging
import time
from typing import Any

from src.dispatch.errors import TestCaseDisabled, UnknownTestCase, UnknownWorkflow
from src.dispatch.types import JobRecord, Region
from src.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)


def _dispatchable(row: Any) -> bool:
    return bool(row["test_case_enabled"]) and bool(row["vendor_enabled"]) and bool(row["workflow_enabled"])


class JobEnqueuer:
    """Entry point for evaluation triggers: turns test cases into pending jobs."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def enqueue_test_case(self, test_case_id: str, *, now: float | None = None) -> JobRecord:
        ts = float(now) if now is not None else time.time()
        row = self._store.get_test_case(test_case_id=test_case_id)
        if row is None:
            raise UnknownTestCase("Test case not found.", details={"test_case_id": test_case_id})
        if not _dispatchable(row):
            raise TestCaseDisabled(
                "Test case (or its vendor/workflow) is disabled.",
                details={"test_case_id": test_case_id},
            )
        job = self._store.create_job(
            test_case_id=str(row["test_case_id"]),
            workflow_id=str(row["workflow_id"]),
            region=Region(row["region"]),
            now=ts,
        )
        LOGGER.info("Enqueued job %s for test case %s (region %s)", job.job_id, test_case_id, job.region.value)
        return job

    def enqueue_workflow(
        self,
        workflow_id: str,
        *,
        region: Region | str | None = None,
        now: float | None = None,
    ) -> list[JobRecord]:
        """One job per enabled test case of the workflow, optionally for one region only."""
        ts = float(now) if now is not None else time.time()
        wf = self._store.get_workflow(workflow_id=workflow_id)
        if wf is None:
            raise UnknownWorkflow("Workflow not found.", details={"workflow_id": workflow_id})
        if not bool(wf["enabled"]):
            raise TestCaseDisabled("Workflow is disabled.", details={"workflow_id": workflow_id})

        only_region = Region(region) if region is not None else None
        created: list[JobRecord] = []
        with self._store.transaction(mode="IMMEDIATE"):
            for test_case_id in self._store.list_test_case_ids_for_workflow(workflow_id=workflow_id):
                row = self._store.get_test_case(test_case_id=test_case_id)
                if row is None or not _dispatchable(row):
                    continue
                tc_region = Region(row["region"])
                if only_region is not None and tc_region != only_region:
                    continue
                created.append(
                    self._store.create_job(
                        test_case_id=test_case_id,
                        workflow_id=workflow_id,
                        region=tc_region,
                        now=ts,
                        commit=False,
                    )
                )
        LOGGER.info("Enqueued %d job(s) for workflow %s", len(created), workflow_id)
        return created
