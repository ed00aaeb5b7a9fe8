from __future__ import annotations

import argparse
import os
import shlex
import socket
import sys

from src.runtime.agent import (
    DEFAULT_HEARTBEAT_INTERVAL_S,
    DEFAULT_POLL_INTERVAL_S,
    AgentLoop,
    DispatchClient,
    SubprocessExecutor,
)
from src.utils.logging_setup import configure_logging


DEFAULT_TESTER_COMMAND = "npm start -- -a {application} -s {scenario} --report {report} --headless true"


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a vox-dispatch worker agent.")
    parser.add_argument(
        "--server",
        default=os.getenv("VOXD_SERVER", "http://127.0.0.1:8000"),
        help="Dispatch server base URL (default: env VOXD_SERVER).",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("VOXD_AGENT_TOKEN", ""),
        help="Worker token (default: env VOXD_AGENT_TOKEN).",
    )
    parser.add_argument(
        "--name",
        default=os.getenv("VOXD_AGENT_NAME", ""),
        help="Worker display name (default: env VOXD_AGENT_NAME, then the token name).",
    )
    parser.add_argument(
        "--command",
        default=os.getenv("VOXD_TESTER_COMMAND", DEFAULT_TESTER_COMMAND),
        help="Tester command template; {application} {scenario} {report} {job_file} {job_id} are substituted.",
    )
    parser.add_argument("--cwd", default=os.getenv("VOXD_TESTER_PATH", ""), help="Working directory for the tester.")
    parser.add_argument("--job-timeout", type=float, default=0.0, help="Kill the tester after N seconds (0: never).")
    parser.add_argument("--heartbeat-interval", type=float, default=DEFAULT_HEARTBEAT_INTERVAL_S)
    parser.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL_S)
    parser.add_argument("--log-level", default=os.getenv("VOXD_LOG_LEVEL", "info"))
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging(args.log_level)

    token = (args.token or "").strip()
    if not token:
        print("Missing worker token: pass --token or set VOXD_AGENT_TOKEN.", file=sys.stderr)
        return 2
    if args.heartbeat_interval <= 0 or args.poll_interval <= 0:
        raise SystemExit("--heartbeat-interval and --poll-interval must be > 0")

    executor = SubprocessExecutor(
        command=shlex.split(args.command),
        cwd=args.cwd or None,
        timeout_s=args.job_timeout or None,
    )
    loop = AgentLoop(
        DispatchClient(args.server, token),
        executor,
        name=(args.name or "").strip() or None,
        metadata={"hostname": socket.gethostname()},
        heartbeat_interval_s=args.heartbeat_interval,
        poll_interval_s=args.poll_interval,
    )
    try:
        loop.run_forever()
    except KeyboardInterrupt:
        loop.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
