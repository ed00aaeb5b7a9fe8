from __future__ import annotations

import http.client
import json
import logging
import os
import subprocess
import tempfile
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from src.runtime.report_parser import parse_report_file


LOGGER = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_S = 30.0
DEFAULT_POLL_INTERVAL_S = 10.0

# (method, url, headers, body, timeout_s) -> (status, body)
Transport = Callable[[str, str, dict[str, str], bytes | None, float], tuple[int, bytes]]
Executor = Callable[[dict[str, Any]], dict[str, Any]]


class DispatchClientError(RuntimeError):
    """Non-2xx answer from the dispatch server (status 0: server unreachable)."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"HTTP {status_code} {code}: {message}")
        self.status_code = int(status_code)
        self.code = code
        self.message = message


class ExecutorError(RuntimeError):
    pass


def urllib_transport(
    method: str, url: str, headers: dict[str, str], body: bytes | None, timeout_s: float
) -> tuple[int, bytes]:
    req = urllib.request.Request(url, data=body, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            return int(resp.status), resp.read()
    except urllib.error.HTTPError as e:
        return int(e.code), e.read()
    except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
        raise DispatchClientError(0, "unreachable", f"Network error for {url}: {e}") from e


class DispatchClient:
    """Worker-side client for the `/api/v1/worker` protocol."""

    def __init__(
        self,
        server_url: str,
        token: str,
        *,
        transport: Transport | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self._token = token
        self._transport = transport or urllib_transport
        self._timeout_s = float(timeout_s)

    def _post(self, path: str, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._token}",
        }
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        url = f"{self.server_url}/api/v1{path}"
        try:
            status, raw = self._transport("POST", url, headers, body, self._timeout_s)
        except (http.client.HTTPException, OSError) as e:
            raise DispatchClientError(0, "unreachable", f"Network error for {url}: {e}") from e

        obj: Any = {}
        if raw:
            try:
                obj = json.loads(raw.decode("utf-8", errors="replace"))
            except ValueError:
                obj = {}
        data = obj if isinstance(obj, dict) else {}

        if status >= 400:
            err = data.get("error") if isinstance(data.get("error"), dict) else {}
            raise DispatchClientError(
                status,
                str(err.get("code") or "http_error"),
                str(err.get("message") or raw[:200].decode("utf-8", errors="replace")),
            )
        return status, data

    def register(self, *, name: str | None = None, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"metadata": dict(metadata or {})}
        if name:
            payload["name"] = name
        return self._post("/worker/register", payload)[1]

    def heartbeat(self, worker_id: str) -> dict[str, Any]:
        return self._post("/worker/heartbeat", {"worker_id": worker_id})[1]

    def claim(self, worker_id: str, region: str) -> dict[str, Any] | None:
        status, data = self._post("/worker/jobs/claim", {"worker_id": worker_id, "region": region})
        if status == 204:
            return None
        return data

    def report(
        self,
        job_id: str,
        *,
        worker_id: str,
        outcome: str,
        error: str | None = None,
        results: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"worker_id": worker_id, "outcome": outcome}
        if error is not None:
            payload["error"] = error
        if results is not None:
            payload["results"] = results
        return self._post(f"/worker/jobs/{job_id}/report", payload)[1]


@dataclass
class SubprocessExecutor:
    """Runs the voice-agent tester for one job and parses its CSV report.

    `command` is an argv template; `{application}`, `{scenario}`, `{report}`,
    `{job_file}` and `{job_id}` are substituted per job. Application and scenario
    come from the test case config.
    """

    command: list[str]
    cwd: str | None = None
    timeout_s: float | None = None
    env: dict[str, str] = field(default_factory=dict)

    def __call__(self, descriptor: dict[str, Any]) -> dict[str, Any]:
        job = descriptor.get("job") or {}
        tc_config = (descriptor.get("test_case") or {}).get("config") or {}
        job_id = str(job.get("job_id") or "job")

        with tempfile.TemporaryDirectory(prefix="voxd-") as tmp:
            job_file = Path(tmp) / "job.json"
            job_file.write_text(json.dumps(descriptor, ensure_ascii=False, indent=2), encoding="utf-8")
            report_file = Path(tmp) / "report.csv"
            values = {
                "application": str(tc_config.get("application") or ""),
                "scenario": str(tc_config.get("scenario") or ""),
                "report": str(report_file),
                "job_file": str(job_file),
                "job_id": job_id,
            }
            argv = [part.format(**values) for part in self.command]
            LOGGER.info("Job %s: running %s", job_id, " ".join(argv))
            try:
                proc = subprocess.run(
                    argv,
                    cwd=self.cwd,
                    env={**os.environ, **self.env},
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_s,
                    check=False,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise ExecutorError(f"tester did not run: {e}") from e

            if proc.returncode != 0:
                tail = (proc.stderr or proc.stdout or "").strip()[-500:]
                raise ExecutorError(f"tester exited with code {proc.returncode}: {tail}")
            return parse_report_file(report_file, stdout=proc.stdout or "")


class AgentLoop:
    """Worker daemon: register, heartbeat in the background, poll, execute, report.

    Polling backs off exponentially (capped) while the server answers 204 and
    resets after a claim. A report rejected with `lease_mismatch` is discarded:
    the server already gave the job to someone else. A report that fails with a
    5xx or an unreachable server is retried with backoff until it lands or the
    loop is stopped.
    """

    def __init__(
        self,
        client: DispatchClient,
        executor: Executor,
        *,
        name: str | None = None,
        metadata: dict[str, Any] | None = None,
        heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        max_poll_interval_s: float | None = None,
    ) -> None:
        self._client = client
        self._executor = executor
        self._name = name
        self._metadata = dict(metadata or {})
        self.heartbeat_interval_s = float(heartbeat_interval_s)
        self.poll_interval_s = float(poll_interval_s)
        self.max_poll_interval_s = float(max_poll_interval_s or poll_interval_s * 6)

        self.worker_id: str | None = None
        self.region: str | None = None
        self._backoff_s = self.poll_interval_s
        self._stop = threading.Event()
        self._hb_thread: threading.Thread | None = None

    @property
    def backoff_s(self) -> float:
        return self._backoff_s

    def register(self) -> dict[str, Any]:
        data = self._client.register(name=self._name, metadata=self._metadata)
        worker = data.get("worker") or {}
        self.worker_id = str(worker["worker_id"])
        self.region = str(worker["region"])
        LOGGER.info("Registered as worker %s in region %s", self.worker_id, self.region)
        return data

    def _heartbeat_once(self) -> None:
        if self.worker_id is None:
            return
        try:
            self._client.heartbeat(self.worker_id)
        except DispatchClientError as e:
            if e.code == "unknown_worker":
                LOGGER.warning("Server forgot worker %s; re-registering", self.worker_id)
                self.register()
            else:
                LOGGER.warning("Heartbeat failed: %s", e)

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval_s):
            try:
                self._heartbeat_once()
            except DispatchClientError as e:
                LOGGER.warning("Re-registration failed: %s", e)
            except Exception:
                LOGGER.exception("Heartbeat tick failed; retrying on next tick")

    def start_heartbeat(self) -> None:
        if self._hb_thread is not None and self._hb_thread.is_alive():
            return
        self._hb_thread = threading.Thread(target=self._heartbeat_loop, name="voxd-agent-heartbeat", daemon=True)
        self._hb_thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._hb_thread
        if t is not None:
            t.join(timeout=timeout_s)

    def _idle(self) -> float:
        wait = self._backoff_s
        self._backoff_s = min(self._backoff_s * 2, self.max_poll_interval_s)
        return wait

    def run_once(self) -> tuple[str, float]:
        """One poll cycle. Returns `(what_happened, seconds_to_wait_before_next_poll)`."""
        if self.worker_id is None or self.region is None:
            self.register()
        assert self.worker_id is not None and self.region is not None

        try:
            descriptor = self._client.claim(self.worker_id, self.region)
        except DispatchClientError as e:
            if e.code == "unknown_worker":
                self.register()
                return "reregistered", 0.0
            if e.code == "worker_not_eligible":
                self._heartbeat_once()
                return "not_eligible", self._idle()
            raise
        if descriptor is None:
            return "idle", self._idle()

        self._backoff_s = self.poll_interval_s
        job_id = str(descriptor["job"]["job_id"])
        try:
            results = self._executor(descriptor)
        except Exception as e:
            LOGGER.exception("Job %s failed in executor", job_id)
            return self._report(job_id, outcome="failed", error=f"{type(e).__name__}: {e}"), 0.0
        return self._report(job_id, outcome="completed", results=results), 0.0

    def _report(
        self,
        job_id: str,
        *,
        outcome: str,
        error: str | None = None,
        results: dict[str, Any] | None = None,
    ) -> str:
        assert self.worker_id is not None
        retry_s = self.poll_interval_s
        while True:
            try:
                self._client.report(job_id, worker_id=self.worker_id, outcome=outcome, error=error, results=results)
                break
            except DispatchClientError as e:
                if e.code in ("lease_mismatch", "not_found"):
                    LOGGER.warning("Discarding result for job %s: %s", job_id, e.message)
                    return "discarded"
                if e.status_code != 0 and e.status_code < 500:
                    raise
                LOGGER.warning("Report for job %s failed (%s); retrying in %.1fs", job_id, e, retry_s)
            if self._stop.wait(retry_s):
                LOGGER.warning("Stopping with job %s unreported", job_id)
                return "unreported"
            retry_s = min(retry_s * 2, self.max_poll_interval_s)
        LOGGER.info("Reported job %s as %s", job_id, outcome)
        return outcome

    def run_forever(self) -> None:
        self.start_heartbeat()
        try:
            while not self._stop.is_set():
                try:
                    _, wait_s = self.run_once()
                except DispatchClientError as e:
                    if e.status_code == 401:
                        LOGGER.error("Token rejected by server; stopping: %s", e.message)
                        return
                    LOGGER.warning("Poll failed: %s", e)
                    wait_s = self._idle()
                if wait_s > 0:
                    self._stop.wait(wait_s)
        finally:
            self.stop()
