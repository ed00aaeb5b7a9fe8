#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.dispatch.registry import WorkerRegistry  # noqa: E402
from src.dispatch.types import Region  # noqa: E402
from src.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mint a worker token (the secret is printed once).")
    p.add_argument("--name", default="", help="Token / worker pool name (required when minting).")
    p.add_argument("--region", default="", choices=["", *(r.value for r in Region)], help="Required when minting.")
    p.add_argument("--db-path", default="", help="SQLite path (default: env VOXD_SQLITE_PATH or data/dispatch.db).")
    p.add_argument("--revoke", default="", help="Revoke this token id instead of minting.")
    args = p.parse_args(argv)
    if not args.revoke and not (args.name and args.region):
        p.error("--name and --region are required when minting")
    return args


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        registry = WorkerRegistry(store)
        if args.revoke:
            record = registry.revoke(str(args.revoke))
            print(f"revoked {record.token_id}")
            return 0
        record, raw = registry.mint(name=str(args.name), region=str(args.region))
        print(f"token_id: {record.token_id}")
        print(f"secret:   {raw}")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
