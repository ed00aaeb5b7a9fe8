from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

from src.dispatch.types import (
    JobRecord,
    JobStatus,
    Region,
    VendorType,
    WorkerRecord,
    WorkerTokenRecord,
)


SCHEMA_VERSION = 1

# A worker is eligible for new work iff it is not offline and its last heartbeat
# is not older than the cutoff (`now - heartbeat_timeout`). Bound parameter: cutoff.
_ELIGIBLE_WORKER_SQL = "w.state != 'offline' AND w.last_heartbeat IS NOT NULL AND w.last_heartbeat >= ?"


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def default_db_path() -> str:
    return os.getenv("VOXD_SQLITE_PATH", "data/dispatch.db")


class SQLiteStore:
    """SQLite-backed store for worker tokens, workers and jobs.

    Every state change is a single conditional UPDATE (compare-and-set on the
    current status/owner) executed inside a `BEGIN IMMEDIATE` transaction, so
    concurrent connections serialize on the database write lock and never on
    in-process locks. Open one store per request / sweep tick; instances are
    not shared across threads.

    The workflows/vendors/test_cases tables belong to the external CRUD layer.
    Dispatch code only reads them; the `upsert_*` helpers are the seam that
    layer (and the seed script) writes through.
    """

    def __init__(self, db_path: str | Path | None = None, *, busy_timeout_s: float = 30.0) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=float(busy_timeout_s))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so reads inside the
        block see a state no other writer can change before commit.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # External catalog (read-only for dispatch).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
              workflow_id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              enabled INTEGER NOT NULL DEFAULT 1,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS vendors (
              vendor_id TEXT PRIMARY KEY,
              workflow_id TEXT NOT NULL REFERENCES workflows(workflow_id),
              name TEXT NOT NULL,
              type TEXT NOT NULL CHECK (type IN ('livekit_agent', 'agora_convoai')),
              config_json TEXT NOT NULL DEFAULT '{}',
              enabled INTEGER NOT NULL DEFAULT 1,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS test_cases (
              test_case_id TEXT PRIMARY KEY,
              workflow_id TEXT NOT NULL REFERENCES workflows(workflow_id),
              vendor_id TEXT NOT NULL REFERENCES vendors(vendor_id),
              name TEXT NOT NULL,
              region TEXT NOT NULL CHECK (region IN ('na', 'apac', 'eu')),
              config_json TEXT NOT NULL DEFAULT '{}',
              enabled INTEGER NOT NULL DEFAULT 1,
              created_at REAL NOT NULL
            );
            """
        )

        # Dispatch-owned tables.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS worker_tokens (
              token_id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              secret_hash TEXT NOT NULL UNIQUE,
              region TEXT NOT NULL CHECK (region IN ('na', 'apac', 'eu')),
              revoked INTEGER NOT NULL DEFAULT 0,
              created_at REAL NOT NULL,
              last_used_at REAL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workers (
              worker_id TEXT PRIMARY KEY,
              token_id TEXT NOT NULL UNIQUE REFERENCES worker_tokens(token_id),
              name TEXT NOT NULL,
              region TEXT NOT NULL CHECK (region IN ('na', 'apac', 'eu')),
              state TEXT NOT NULL CHECK (state IN ('online', 'busy', 'offline')),
              last_heartbeat REAL,
              metadata_json TEXT NOT NULL DEFAULT '{}',
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              test_case_id TEXT NOT NULL REFERENCES test_cases(test_case_id),
              workflow_id TEXT NOT NULL,
              worker_id TEXT REFERENCES workers(worker_id),
              status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'completed', 'failed')),
              region TEXT NOT NULL CHECK (region IN ('na', 'apac', 'eu')),
              attempts INTEGER NOT NULL DEFAULT 0,
              created_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              error TEXT,
              result_json TEXT,
              CHECK ((worker_id IS NULL) = (status = 'pending'))
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_events (
              event_id TEXT PRIMARY KEY,
              job_id TEXT NOT NULL REFERENCES jobs(job_id),
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL
            );
            """
        )

        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, region, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at, job_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_worker ON jobs(worker_id, status);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_workers_state ON workers(state, last_heartbeat);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events(job_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_test_cases_workflow ON test_cases(workflow_id);")
        self._conn.commit()

        current = self._get_schema_version()
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({SCHEMA_VERSION}).")
        if current < SCHEMA_VERSION:
            self._set_schema_version(SCHEMA_VERSION)
            self._conn.commit()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except Exception:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    # --- Catalog (external CRUD seam)
    def upsert_workflow(self, *, workflow_id: str, name: str, enabled: bool = True) -> None:
        self._conn.execute(
            """
            INSERT INTO workflows(workflow_id, name, enabled, created_at) VALUES(?, ?, ?, ?)
            ON CONFLICT(workflow_id) DO UPDATE SET name = excluded.name, enabled = excluded.enabled;
            """,
            (workflow_id, name, int(bool(enabled)), _utc_ts()),
        )
        self._conn.commit()

    def upsert_vendor(
        self,
        *,
        vendor_id: str,
        workflow_id: str,
        name: str,
        type: str,
        config: dict[str, Any] | None = None,
        enabled: bool = True,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO vendors(vendor_id, workflow_id, name, type, config_json, enabled, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(vendor_id) DO UPDATE SET
              workflow_id = excluded.workflow_id,
              name = excluded.name,
              type = excluded.type,
              config_json = excluded.config_json,
              enabled = excluded.enabled;
            """,
            (
                vendor_id,
                workflow_id,
                name,
                VendorType(type).value,
                _json_dumps(config or {}),
                int(bool(enabled)),
                _utc_ts(),
            ),
        )
        self._conn.commit()

    def upsert_test_case(
        self,
        *,
        test_case_id: str,
        workflow_id: str,
        vendor_id: str,
        name: str,
        region: Region | str,
        config: dict[str, Any] | None = None,
        enabled: bool = True,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO test_cases(test_case_id, workflow_id, vendor_id, name, region, config_json, enabled, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(test_case_id) DO UPDATE SET
              workflow_id = excluded.workflow_id,
              vendor_id = excluded.vendor_id,
              name = excluded.name,
              region = excluded.region,
              config_json = excluded.config_json,
              enabled = excluded.enabled;
            """,
            (
                test_case_id,
                workflow_id,
                vendor_id,
                name,
                Region(region).value,
                _json_dumps(config or {}),
                int(bool(enabled)),
                _utc_ts(),
            ),
        )
        self._conn.commit()

    def get_workflow(self, *, workflow_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT workflow_id, name, enabled, created_at FROM workflows WHERE workflow_id = ? LIMIT 1;",
            (workflow_id,),
        ).fetchone()

    def get_test_case(self, *, test_case_id: str) -> sqlite3.Row | None:
        """Test case joined with its vendor and workflow (including all enable flags)."""
        return self._conn.execute(
            """
            SELECT
              tc.test_case_id, tc.workflow_id, tc.vendor_id, tc.name, tc.region, tc.config_json,
              tc.enabled AS test_case_enabled,
              v.name AS vendor_name, v.type AS vendor_type, v.config_json AS vendor_config_json,
              v.enabled AS vendor_enabled,
              wf.enabled AS workflow_enabled
            FROM test_cases tc
            JOIN vendors v ON v.vendor_id = tc.vendor_id
            JOIN workflows wf ON wf.workflow_id = tc.workflow_id
            WHERE tc.test_case_id = ?
            LIMIT 1;
            """,
            (test_case_id,),
        ).fetchone()

    def list_test_case_ids_for_workflow(self, *, workflow_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT test_case_id FROM test_cases WHERE workflow_id = ? ORDER BY created_at, test_case_id;",
            (workflow_id,),
        ).fetchall()
        return [str(r["test_case_id"]) for r in rows]

    # --- Worker tokens
    def create_worker_token(self, *, name: str, region: Region, secret_hash: str) -> WorkerTokenRecord:
        token_id = _new_id("wtk")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO worker_tokens(token_id, name, secret_hash, region, revoked, created_at)
            VALUES(?, ?, ?, ?, 0, ?);
            """,
            (token_id, name, secret_hash, Region(region).value, created_at),
        )
        self._conn.commit()
        return WorkerTokenRecord(
            token_id=token_id,
            name=name,
            region=Region(region),
            revoked=False,
            created_at=created_at,
            last_used_at=None,
        )

    def get_worker_token(self, *, token_id: str) -> WorkerTokenRecord | None:
        row = self._conn.execute(
            """
            SELECT token_id, name, region, revoked, created_at, last_used_at
            FROM worker_tokens
            WHERE token_id = ?
            LIMIT 1;
            """,
            (token_id,),
        ).fetchone()
        return WorkerTokenRecord.from_row(row) if row is not None else None

    def find_active_token_by_hash(self, *, secret_hash: str) -> WorkerTokenRecord | None:
        row = self._conn.execute(
            """
            SELECT token_id, name, region, revoked, created_at, last_used_at
            FROM worker_tokens
            WHERE secret_hash = ? AND revoked = 0
            LIMIT 1;
            """,
            (secret_hash,),
        ).fetchone()
        return WorkerTokenRecord.from_row(row) if row is not None else None

    def list_worker_tokens(self) -> list[WorkerTokenRecord]:
        rows = self._conn.execute(
            """
            SELECT token_id, name, region, revoked, created_at, last_used_at
            FROM worker_tokens
            ORDER BY created_at DESC, token_id DESC;
            """
        ).fetchall()
        return [WorkerTokenRecord.from_row(r) for r in rows]

    def revoke_worker_token(self, *, token_id: str) -> bool:
        """Returns True when this call flipped the flag (False if already revoked)."""
        updated = self._conn.execute(
            "UPDATE worker_tokens SET revoked = 1 WHERE token_id = ? AND revoked = 0;",
            (token_id,),
        )
        self._conn.commit()
        return updated.rowcount == 1

    # --- Workers
    def register_worker(
        self,
        *,
        token: WorkerTokenRecord,
        name: str,
        metadata: dict[str, Any],
        now: float,
    ) -> tuple[WorkerRecord, bool] | None:
        """Create or reactivate the worker bound to `token` and mark it online.

        Returns `(worker, created)`, or None if the token was revoked before the
        write lock was taken.
        """
        created = False
        with self.transaction(mode="IMMEDIATE"):
            touched = self._conn.execute(
                "UPDATE worker_tokens SET last_used_at = ? WHERE token_id = ? AND revoked = 0;",
                (now, token.token_id),
            )
            if touched.rowcount != 1:
                return None

            row = self._conn.execute(
                "SELECT worker_id FROM workers WHERE token_id = ? LIMIT 1;",
                (token.token_id,),
            ).fetchone()
            if row is None:
                worker_id = _new_id("wkr")
                created = True
                self._conn.execute(
                    """
                    INSERT INTO workers(
                      worker_id, token_id, name, region, state, last_heartbeat, metadata_json, created_at, updated_at
                    ) VALUES(?, ?, ?, ?, 'online', ?, ?, ?, ?);
                    """,
                    (worker_id, token.token_id, name, token.region.value, now, _json_dumps(metadata), now, now),
                )
            else:
                worker_id = str(row["worker_id"])
                # Region is never rewritten: it was fixed by the same token at creation.
                self._conn.execute(
                    """
                    UPDATE workers
                    SET name = ?, metadata_json = ?, state = 'online', last_heartbeat = ?, updated_at = ?
                    WHERE worker_id = ?;
                    """,
                    (name, _json_dumps(metadata), now, now, worker_id),
                )

        worker = self.get_worker(worker_id=worker_id)
        if worker is None:
            raise RuntimeError(f"Worker vanished after registration: {worker_id}")
        return worker, created

    def get_worker(self, *, worker_id: str) -> WorkerRecord | None:
        row = self._conn.execute(
            """
            SELECT worker_id, token_id, name, region, state, last_heartbeat, metadata_json, created_at, updated_at
            FROM workers
            WHERE worker_id = ?
            LIMIT 1;
            """,
            (worker_id,),
        ).fetchone()
        return WorkerRecord.from_row(row) if row is not None else None

    def list_workers(
        self,
        *,
        regions: list[str] | None = None,
        states: list[str] | None = None,
    ) -> list[WorkerRecord]:
        where = ["1=1"]
        params: list[Any] = []
        if regions:
            where.append("region IN (%s)" % ",".join(["?"] * len(regions)))
            params.extend(regions)
        if states:
            where.append("state IN (%s)" % ",".join(["?"] * len(states)))
            params.extend(states)
        rows = self._conn.execute(
            f"""
            SELECT worker_id, token_id, name, region, state, last_heartbeat, metadata_json, created_at, updated_at
            FROM workers
            WHERE {" AND ".join(where)}
            ORDER BY created_at DESC, worker_id DESC;
            """,
            params,
        ).fetchall()
        return [WorkerRecord.from_row(r) for r in rows]

    def record_heartbeat(self, *, worker_id: str, now: float) -> WorkerRecord | None:
        """Stamp a heartbeat. Jobs are untouched.

        An offline worker comes back online, and so does a busy one that no longer
        holds a running job (its job was requeued).
        """
        updated = self._conn.execute(
            """
            UPDATE workers
            SET
              last_heartbeat = ?,
              state = CASE
                WHEN state = 'offline' THEN 'online'
                WHEN state = 'busy'
                  AND NOT EXISTS (SELECT 1 FROM jobs WHERE jobs.worker_id = workers.worker_id AND status = 'running')
                  THEN 'online'
                ELSE state
              END,
              updated_at = ?
            WHERE worker_id = ?;
            """,
            (now, now, worker_id),
        )
        self._conn.commit()
        if updated.rowcount != 1:
            return None
        return self.get_worker(worker_id=worker_id)

    def mark_lapsed_workers_offline(self, *, heartbeat_cutoff: float, now: float) -> list[str]:
        """Demote every non-offline worker whose heartbeat is older than the cutoff.

        Busy workers are demoted too; their jobs are left for the lease reaper.
        """
        with self.transaction(mode="IMMEDIATE"):
            rows = self._conn.execute(
                """
                SELECT worker_id FROM workers
                WHERE state != 'offline' AND (last_heartbeat IS NULL OR last_heartbeat < ?)
                ORDER BY worker_id;
                """,
                (heartbeat_cutoff,),
            ).fetchall()
            worker_ids = [str(r["worker_id"]) for r in rows]
            for worker_id in worker_ids:
                self._conn.execute(
                    """
                    UPDATE workers
                    SET state = 'offline', updated_at = ?
                    WHERE worker_id = ? AND state != 'offline' AND (last_heartbeat IS NULL OR last_heartbeat < ?);
                    """,
                    (now, worker_id, heartbeat_cutoff),
                )
        return worker_ids

    def count_workers_by_state(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT state, COUNT(*) AS n FROM workers GROUP BY state ORDER BY state;",
        ).fetchall()
        return {str(r["state"]): int(r["n"]) for r in rows}

    # --- Jobs
    def create_job(
        self,
        *,
        test_case_id: str,
        workflow_id: str,
        region: Region,
        now: float | None = None,
        commit: bool = True,
    ) -> JobRecord:
        job_id = _new_id("job")
        created_at = float(now) if now is not None else _utc_ts()
        self._conn.execute(
            """
            INSERT INTO jobs(job_id, test_case_id, workflow_id, status, region, attempts, created_at)
            VALUES(?, ?, ?, 'pending', ?, 0, ?);
            """,
            (job_id, test_case_id, workflow_id, Region(region).value, created_at),
        )
        self._append_job_event(
            job_id,
            "job_created",
            {"test_case_id": test_case_id, "workflow_id": workflow_id, "region": Region(region).value},
            now=created_at,
        )
        if commit:
            self._conn.commit()
        return JobRecord(
            job_id=job_id,
            test_case_id=test_case_id,
            workflow_id=workflow_id,
            region=Region(region),
            status=JobStatus.PENDING,
            worker_id=None,
            attempts=0,
            created_at=created_at,
            started_at=None,
            completed_at=None,
            error=None,
        )

    def get_job(self, *, job_id: str) -> JobRecord | None:
        row = self._conn.execute(
            """
            SELECT
              job_id, test_case_id, workflow_id, worker_id, status, region, attempts,
              created_at, started_at, completed_at, error, result_json
            FROM jobs
            WHERE job_id = ?
            LIMIT 1;
            """,
            (job_id,),
        ).fetchone()
        return JobRecord.from_row(row) if row is not None else None

    def claim_next_pending_job(
        self,
        *,
        worker_id: str,
        region: Region,
        heartbeat_cutoff: float,
        now: float,
    ) -> JobRecord | None:
        """Atomically claim the oldest dispatchable pending job of `region`.

        The worker's eligibility is re-checked under the write lock, and the job
        transition is a compare-and-set on `status = 'pending'`, so at most one
        caller can ever win a given job.
        """
        with self.transaction(mode="IMMEDIATE"):
            eligible = self._conn.execute(
                f"""
                SELECT 1 FROM workers w
                WHERE w.worker_id = ? AND w.region = ? AND {_ELIGIBLE_WORKER_SQL}
                LIMIT 1;
                """,
                (worker_id, Region(region).value, heartbeat_cutoff),
            ).fetchone()
            if eligible is None:
                return None

            row = self._conn.execute(
                """
                SELECT j.job_id
                FROM jobs j
                JOIN test_cases tc ON tc.test_case_id = j.test_case_id
                JOIN vendors v ON v.vendor_id = tc.vendor_id
                JOIN workflows wf ON wf.workflow_id = tc.workflow_id
                WHERE j.status = 'pending' AND j.region = ?
                  AND tc.enabled = 1 AND v.enabled = 1 AND wf.enabled = 1
                ORDER BY j.created_at ASC, j.rowid ASC
                LIMIT 1;
                """,
                (Region(region).value,),
            ).fetchone()
            if row is None:
                return None

            job_id = str(row["job_id"])
            updated = self._conn.execute(
                """
                UPDATE jobs
                SET status = 'running', worker_id = ?, started_at = ?
                WHERE job_id = ? AND status = 'pending';
                """,
                (worker_id, now, job_id),
            )
            if updated.rowcount != 1:
                return None

            self._conn.execute(
                "UPDATE workers SET state = 'busy', updated_at = ? WHERE worker_id = ?;",
                (now, worker_id),
            )
            self._append_job_event(job_id, "job_claimed", {"worker_id": worker_id}, now=now)

        return self.get_job(job_id=job_id)

    def finish_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        status: JobStatus,
        error: str | None,
        results: dict[str, Any] | None,
        now: float,
    ) -> JobRecord | None:
        """Write a terminal status if (and only if) `worker_id` holds the running job.

        Returns None on lease mismatch; nothing is written in that case.
        """
        if not JobStatus(status).terminal:
            raise ValueError(f"finish_job requires a terminal status, got {status!r}")

        with self.transaction(mode="IMMEDIATE"):
            updated = self._conn.execute(
                """
                UPDATE jobs
                SET status = ?, completed_at = ?, error = ?, result_json = ?
                WHERE job_id = ? AND status = 'running' AND worker_id = ? AND completed_at IS NULL;
                """,
                (
                    JobStatus(status).value,
                    now,
                    error,
                    _json_dumps(results) if results is not None else None,
                    job_id,
                    worker_id,
                ),
            )
            if updated.rowcount != 1:
                return None

            # Back to online (from busy or offline) unless the worker still holds
            # another running job.
            self._conn.execute(
                """
                UPDATE workers
                SET state = 'online', updated_at = ?
                WHERE worker_id = ? AND state IN ('busy', 'offline')
                  AND NOT EXISTS (SELECT 1 FROM jobs WHERE worker_id = ? AND status = 'running');
                """,
                (now, worker_id, worker_id),
            )
            payload: dict[str, Any] = {"worker_id": worker_id}
            if error:
                payload["error"] = error
            self._append_job_event(
                job_id,
                "job_completed" if JobStatus(status) == JobStatus.COMPLETED else "job_failed",
                payload,
                now=now,
            )

        return self.get_job(job_id=job_id)

    def list_expired_leases(self, *, lease_cutoff: float) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT job_id, worker_id, started_at, attempts
            FROM jobs
            WHERE status = 'running' AND started_at < ?
            ORDER BY started_at ASC, job_id ASC;
            """,
            (lease_cutoff,),
        ).fetchall()

    def release_expired_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        started_at: float,
        heartbeat_cutoff: float,
        max_retries: int,
        exhausted_error: str,
        now: float,
    ) -> JobStatus | None:
        """Requeue (or fail, once retries are exhausted) one expired lease.

        The transition only applies while the job is still held by the same
        worker under the same lease and that worker is not eligible; returns the
        new status, or None when any of that no longer holds.
        """
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                f"""
                SELECT j.attempts
                FROM jobs j
                WHERE j.job_id = ? AND j.status = 'running' AND j.worker_id = ? AND j.started_at = ?
                  AND NOT EXISTS (
                    SELECT 1 FROM workers w WHERE w.worker_id = j.worker_id AND {_ELIGIBLE_WORKER_SQL}
                  )
                LIMIT 1;
                """,
                (job_id, worker_id, started_at, heartbeat_cutoff),
            ).fetchone()
            if row is None:
                return None

            attempts = int(row["attempts"]) + 1
            if attempts > int(max_retries):
                # worker_id stays set: a failed job keeps its last holder.
                self._conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'failed', attempts = ?, completed_at = ?, error = ?
                    WHERE job_id = ? AND status = 'running' AND worker_id = ?;
                    """,
                    (attempts, now, exhausted_error, job_id, worker_id),
                )
                self._append_job_event(
                    job_id,
                    "job_retry_exhausted",
                    {"worker_id": worker_id, "attempts": attempts, "error": exhausted_error},
                    now=now,
                )
                return JobStatus.FAILED

            self._conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', worker_id = NULL, started_at = NULL, attempts = ?
                WHERE job_id = ? AND status = 'running' AND worker_id = ?;
                """,
                (attempts, job_id, worker_id),
            )
            self._append_job_event(
                job_id,
                "job_requeued",
                {"previous_worker_id": worker_id, "attempts": attempts},
                now=now,
            )
            return JobStatus.PENDING

    def list_jobs_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None = None,
        regions: list[str] | None = None,
        workflow_id: str | None = None,
        worker_id: str | None = None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)
        if regions:
            where.append("region IN (%s)" % ",".join(["?"] * len(regions)))
            params.extend(regions)
        if workflow_id:
            where.append("workflow_id = ?")
            params.append(workflow_id)
        if worker_id:
            where.append("worker_id = ?")
            params.append(worker_id)

        if cursor is not None:
            created_at, job_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND job_id < ?))")
            params.extend([float(created_at), float(created_at), str(job_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT
              job_id, test_case_id, workflow_id, worker_id, status, region, attempts,
              created_at, started_at, completed_at, error, result_json
            FROM jobs
            WHERE {where_sql}
            ORDER BY created_at DESC, job_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [JobRecord.from_row(r).to_public() for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["job_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Job events (trace)
    def _append_job_event(self, job_id: str, event_type: str, payload: dict[str, Any], *, now: float) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO job_events(event_id, job_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, job_id, now, event_type, _json_dumps(payload)),
        )
        return event_id

    def list_job_events(self, *, job_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT event_id, job_id, created_at, event_type, payload_json
            FROM job_events
            WHERE job_id = ?
            ORDER BY created_at ASC, rowid ASC;
            """,
            (job_id,),
        ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "job_id": r["job_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }
            for r in rows
        ]
