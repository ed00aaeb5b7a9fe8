from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Region(str, Enum):
    NA = "na"
    APAC = "apac"
    EU = "eu"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class WorkerState(str, Enum):
    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


class VendorType(str, Enum):
    LIVEKIT_AGENT = "livekit_agent"
    AGORA_CONVOAI = "agora_convoai"


class Outcome(str, Enum):
    """Terminal outcome a worker may report for a job it holds."""

    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def status(self) -> JobStatus:
        return JobStatus(self.value)


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def _json_obj(raw: Any) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    obj = json.loads(str(raw))
    return obj if isinstance(obj, dict) else {}


@dataclass(frozen=True)
class WorkerTokenRecord:
    token_id: str
    name: str
    region: Region
    revoked: bool
    created_at: float
    last_used_at: float | None

    @classmethod
    def from_row(cls, row: Any) -> "WorkerTokenRecord":
        return cls(
            token_id=str(row["token_id"]),
            name=str(row["name"]),
            region=Region(row["region"]),
            revoked=bool(row["revoked"]),
            created_at=float(row["created_at"]),
            last_used_at=_opt_float(row["last_used_at"]),
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "name": self.name,
            "region": self.region.value,
            "revoked": self.revoked,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }


@dataclass(frozen=True)
class WorkerRecord:
    worker_id: str
    token_id: str
    name: str
    region: Region
    state: WorkerState
    last_heartbeat: float | None
    created_at: float
    updated_at: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> "WorkerRecord":
        return cls(
            worker_id=str(row["worker_id"]),
            token_id=str(row["token_id"]),
            name=str(row["name"]),
            region=Region(row["region"]),
            state=WorkerState(row["state"]),
            last_heartbeat=_opt_float(row["last_heartbeat"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
            metadata=_json_obj(row["metadata_json"]),
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "token_id": self.token_id,
            "name": self.name,
            "region": self.region.value,
            "state": self.state.value,
            "last_heartbeat": self.last_heartbeat,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    test_case_id: str
    workflow_id: str
    region: Region
    status: JobStatus
    worker_id: str | None
    attempts: int
    created_at: float
    started_at: float | None
    completed_at: float | None
    error: str | None
    results: dict[str, Any] | None = None

    @classmethod
    def from_row(cls, row: Any) -> "JobRecord":
        raw_results = row["result_json"]
        return cls(
            job_id=str(row["job_id"]),
            test_case_id=str(row["test_case_id"]),
            workflow_id=str(row["workflow_id"]),
            region=Region(row["region"]),
            status=JobStatus(row["status"]),
            worker_id=str(row["worker_id"]) if row["worker_id"] is not None else None,
            attempts=int(row["attempts"]),
            created_at=float(row["created_at"]),
            started_at=_opt_float(row["started_at"]),
            completed_at=_opt_float(row["completed_at"]),
            error=row["error"],
            results=_json_obj(raw_results) if raw_results is not None else None,
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "test_case_id": self.test_case_id,
            "workflow_id": self.workflow_id,
            "region": self.region.value,
            "status": self.status.value,
            "worker_id": self.worker_id,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "results": self.results,
        }


@dataclass(frozen=True)
class WorkerIdentity:
    """What a worker learns about itself at registration."""

    worker_id: str
    name: str
    region: Region
    state: WorkerState
    created: bool


@dataclass(frozen=True)
class ClaimedJob:
    """A job won by `claim_next`, plus what the worker needs to execute it."""

    job: JobRecord
    lease_expires_at: float
    test_case: dict[str, Any]
    vendor: dict[str, Any]

    def to_descriptor(self) -> dict[str, Any]:
        return {
            "job": self.job.to_public(),
            "lease_expires_at": self.lease_expires_at,
            "test_case": self.test_case,
            "vendor": self.vendor,
        }


@dataclass(frozen=True)
class ReapSummary:
    requeued: list[str] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.exhausted)
