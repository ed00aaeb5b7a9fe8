from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Iterator

import pytest


# Ensure `import src...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.dispatch.registry import WorkerRegistry  # noqa: E402
from src.storage.sqlite_store import SQLiteStore  # noqa: E402


def seed_catalog(store: SQLiteStore) -> None:
    """One workflow with a LiveKit vendor and a test case per region, plus a disabled one."""
    store.upsert_workflow(workflow_id="wf_1", name="Latency baseline")
    store.upsert_vendor(
        vendor_id="vnd_lk",
        workflow_id="wf_1",
        name="LiveKit agent",
        type="livekit_agent",
        config={"url": "wss://example.invalid"},
    )
    for region in ("na", "apac", "eu"):
        store.upsert_test_case(
            test_case_id=f"tc_{region}",
            workflow_id="wf_1",
            vendor_id="vnd_lk",
            name=f"Basic conversation ({region})",
            region=region,
            config={"application": "applications/livekit.yaml", "scenario": "scenarios/basic.yaml"},
        )
    store.upsert_test_case(
        test_case_id="tc_off",
        workflow_id="wf_1",
        vendor_id="vnd_lk",
        name="Disabled case",
        region="na",
        enabled=False,
    )


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "dispatch.db")


@pytest.fixture()
def store(db_path: str) -> Iterator[SQLiteStore]:
    s = SQLiteStore(db_path)
    try:
        seed_catalog(s)
        yield s
    finally:
        s.close()


@pytest.fixture()
def register_worker(store: SQLiteStore) -> Callable[..., tuple[str, str]]:
    """Mint a token for `region` and register a worker with it; returns (worker_id, raw_token)."""

    def _register(region: str, *, name: str = "worker", now: float = 1000.0) -> tuple[str, str]:
        registry = WorkerRegistry(store)
        _, raw = registry.mint(name=name, region=region)
        identity = registry.register(raw, now=now)
        return identity.worker_id, raw

    return _register
