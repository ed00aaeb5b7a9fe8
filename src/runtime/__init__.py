"""Runtime loops (background sweeps, worker agent).

This layer is responsible for:
- running the heartbeat demotion and lease reaping sweeps on fixed intervals
- the worker-side agent: register, heartbeat, poll for jobs, execute, report

It should remain independent from the HTTP layer (`src/api`), so both the server
process and standalone scripts can reuse the same loops.
"""
