from __future__ import annotations

import hashlib
import logging
import secrets
import time
from typing import Any

from src.dispatch.errors import InvalidCredential, UnknownToken, UnknownWorker
from src.dispatch.types import Region, WorkerIdentity, WorkerRecord, WorkerTokenRecord
from src.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)

TOKEN_PREFIX = "vxw_"


def hash_token(raw_token: str) -> str:
    """One-way hash used to store and look up worker secrets."""
    return hashlib.sha256((raw_token or "").strip().encode("utf-8")).hexdigest()


def new_token_secret() -> str:
    return TOKEN_PREFIX + secrets.token_urlsafe(32)


class WorkerRegistry:
    """Issues worker tokens and turns them into worker identities."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def mint(self, *, name: str, region: Region | str) -> tuple[WorkerTokenRecord, str]:
        """Create a token for a worker pool. The raw secret is returned exactly once."""
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValueError("Token name is required.")
        raw = new_token_secret()
        record = self._store.create_worker_token(name=clean_name, region=Region(region), secret_hash=hash_token(raw))
        LOGGER.info("Minted worker token %s for region %s", record.token_id, record.region.value)
        return record, raw

    def register(
        self,
        raw_token: str,
        *,
        name: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: float | None = None,
    ) -> WorkerIdentity:
        ts = float(now) if now is not None else time.time()
        if not (raw_token or "").strip():
            raise InvalidCredential("Missing worker token.")

        token = self._store.find_active_token_by_hash(secret_hash=hash_token(raw_token))
        if token is None:
            raise InvalidCredential("Invalid or revoked worker token.")

        worker_name = (name or "").strip() or token.name
        registered = self._store.register_worker(token=token, name=worker_name, metadata=dict(metadata or {}), now=ts)
        if registered is None:
            # Revoked between lookup and write.
            raise InvalidCredential("Invalid or revoked worker token.")

        worker, created = registered
        LOGGER.info(
            "%s worker %s (%s) in region %s",
            "Registered" if created else "Re-registered",
            worker.worker_id,
            worker.name,
            worker.region.value,
        )
        return WorkerIdentity(
            worker_id=worker.worker_id,
            name=worker.name,
            region=worker.region,
            state=worker.state,
            created=created,
        )

    def revoke(self, token_id: str) -> WorkerTokenRecord:
        """Revoke a token. Jobs already claimed by its worker are left to the lease reaper."""
        if self._store.get_worker_token(token_id=token_id) is None:
            raise UnknownToken("Worker token not found.", details={"token_id": token_id})
        if self._store.revoke_worker_token(token_id=token_id):
            LOGGER.info("Revoked worker token %s", token_id)
        record = self._store.get_worker_token(token_id=token_id)
        assert record is not None
        return record

    def authenticate(self, raw_token: str, *, worker_id: str) -> WorkerRecord:
        """Check that `raw_token` is live and is the token `worker_id` registered with."""
        if not (raw_token or "").strip():
            raise InvalidCredential("Missing worker token.")
        token = self._store.find_active_token_by_hash(secret_hash=hash_token(raw_token))
        if token is None:
            raise InvalidCredential("Invalid or revoked worker token.")
        worker = self._store.get_worker(worker_id=worker_id)
        if worker is None:
            raise UnknownWorker("Worker is not registered.", details={"worker_id": worker_id})
        if worker.token_id != token.token_id:
            raise InvalidCredential("Token does not belong to this worker.")
        return worker
