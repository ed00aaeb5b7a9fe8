from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property

from src.config.load_config import AppConfig
from src.dispatch.enqueue import JobEnqueuer
from src.dispatch.heartbeat import HeartbeatMonitor
from src.dispatch.reaper import LeaseReaper
from src.dispatch.registry import WorkerRegistry
from src.dispatch.reporter import ResultReporter
from src.dispatch.scheduler import AssignmentScheduler
from src.storage.sqlite_store import SQLiteStore


@dataclass
class DispatchContext:
    """The dispatch components wired to one store connection and one config.

    Build one per request or sweep tick; it owns nothing beyond the store it
    was given, and closing that store is the caller's job.
    """

    store: SQLiteStore
    config: AppConfig

    @cached_property
    def registry(self) -> WorkerRegistry:
        return WorkerRegistry(self.store)

    @cached_property
    def monitor(self) -> HeartbeatMonitor:
        return HeartbeatMonitor(self.store, timeout_s=self.config.heartbeat.timeout_s)

    @cached_property
    def scheduler(self) -> AssignmentScheduler:
        return AssignmentScheduler(self.store, self.monitor, lease_timeout_s=self.config.lease.timeout_s)

    @cached_property
    def reaper(self) -> LeaseReaper:
        return LeaseReaper(
            self.store,
            self.monitor,
            lease_timeout_s=self.config.lease.timeout_s,
            max_retries=self.config.lease.max_retries,
        )

    @cached_property
    def reporter(self) -> ResultReporter:
        return ResultReporter(self.store)

    @cached_property
    def enqueuer(self) -> JobEnqueuer:
        return JobEnqueuer(self.store)
