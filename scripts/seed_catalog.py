#!/usr/bin/env python3
"""Load workflows, vendors and test cases from a JSON file into the catalog tables.

Expected shape:
  {"workflows": [{"workflow_id", "name", "enabled"?,
                  "vendors": [{"vendor_id", "name", "type", "config"?, "enabled"?}],
                  "test_cases": [{"test_case_id", "vendor_id", "name", "region", "config"?, "enabled"?}]}]}
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Seed the catalog tables (workflows/vendors/test cases).")
    p.add_argument("path", help="JSON file to load.")
    p.add_argument("--db-path", default="", help="SQLite path (default: env VOXD_SQLITE_PATH or data/dispatch.db).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    data = json.loads(Path(args.path).read_text(encoding="utf-8"))

    store = SQLiteStore(args.db_path or None)
    try:
        n_cases = 0
        for wf in data.get("workflows") or []:
            workflow_id = str(wf["workflow_id"])
            store.upsert_workflow(
                workflow_id=workflow_id,
                name=str(wf.get("name") or workflow_id),
                enabled=bool(wf.get("enabled", True)),
            )
            for v in wf.get("vendors") or []:
                store.upsert_vendor(
                    vendor_id=str(v["vendor_id"]),
                    workflow_id=workflow_id,
                    name=str(v.get("name") or v["vendor_id"]),
                    type=str(v["type"]),
                    config=dict(v.get("config") or {}),
                    enabled=bool(v.get("enabled", True)),
                )
            for tc in wf.get("test_cases") or []:
                store.upsert_test_case(
                    test_case_id=str(tc["test_case_id"]),
                    workflow_id=workflow_id,
                    vendor_id=str(tc["vendor_id"]),
                    name=str(tc.get("name") or tc["test_case_id"]),
                    region=str(tc["region"]),
                    config=dict(tc.get("config") or {}),
                    enabled=bool(tc.get("enabled", True)),
                )
                n_cases += 1
        print(f"seeded {n_cases} test case(s)")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
