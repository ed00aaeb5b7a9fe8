from __future__ import annotations

from typing import Any


class DispatchError(RuntimeError):
    """Base class for failures resolved at the dispatch boundary.

    Each subclass knows the HTTP status and envelope code it maps to, so the API
    layer can render any of them without a per-route translation table.
    """

    status_code: int = 400
    code: str = "invalid_argument"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidCredential(DispatchError):
    """Unknown or revoked worker token."""

    status_code = 401
    code = "unauthenticated"


class UnknownWorker(DispatchError):
    """The registry has no record of this worker; it should re-register."""

    status_code = 404
    code = "unknown_worker"


class LeaseMismatch(DispatchError):
    """Report for a job the worker no longer owns. The report is discarded."""

    status_code = 409
    code = "lease_mismatch"


class RegionMismatch(DispatchError):
    status_code = 403
    code = "region_mismatch"


class WorkerNotEligible(DispatchError):
    """Worker is offline or its heartbeat has lapsed; it must heartbeat first."""

    status_code = 409
    code = "worker_not_eligible"


class UnknownJob(DispatchError):
    status_code = 404
    code = "not_found"


class UnknownToken(DispatchError):
    status_code = 404
    code = "not_found"


class UnknownTestCase(DispatchError):
    status_code = 404
    code = "not_found"


class UnknownWorkflow(DispatchError):
    status_code = 404
    code = "not_found"


class TestCaseDisabled(DispatchError):
    __test__ = False  # not a pytest test class

    status_code = 409
    code = "test_case_disabled"


def retry_exhausted_message(attempts: int) -> str:
    """Error text recorded on a job failed by repeated lease expiry."""
    return f"lease expired: retries exhausted after {int(attempts)} attempts"
