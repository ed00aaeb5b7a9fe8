"""Dispatch core (worker lifecycle and job leasing).

This layer is responsible for:
- worker registration, token validation and revocation
- heartbeat bookkeeping and offline demotion
- atomic job claims, lease expiry and terminal reports

It never talks to the network: the HTTP layer (`src/api`) and the background
sweeps (`src/runtime`) drive it, and all state lives behind `SQLiteStore`.
"""
