"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface for two audiences:
- workers: register, heartbeat, claim a job, report its outcome
- the console: list/inspect jobs and workers, mint/revoke worker tokens, trigger evaluations

The API is intentionally thin: core behavior lives in `src/dispatch` and `src/storage`.
"""
