"""
tco_scheduler/cli.py
────────────────────
tco-scheduler: a test client that drives an in-process scheduler.

There is no server to connect to. Each invocation builds a fresh
SchedulerService, replays a JSON cluster file into it (nodes, then any
jobs), runs one command through the same RPC handler a transport would
use, and prints the JSON response.

Cluster file:
    {
      "nodes": [{"node_id": "n1", "cpu_cores": 8, "memory_gb": 32,
                 "price_per_hour": 0.10}, ...],
      "jobs":  [{"job_id": "j0", "cpu": 1, "memory_gb": 1,
                 "max_latency_ms": 500}, ...]
    }
Node entries are RegisterNode payloads; job entries are SubmitJob payloads.

Commands:
    submit-job --job-id ID --cpu N --memory GB --latency MS [--gpu N]
               [--budget USD] [--duration H] [--data-gb GB]
    get-status JOB_ID
    cluster-status
    list-nodes

Exit status:
    0  success
    1  job infeasible / rejected, or unknown job
    2  bad input (arguments, cluster file, malformed request)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from tco_scheduler.shared.config import SchedulerConfig
from tco_scheduler.control_plane.scheduler_service import SchedulerService
from tco_scheduler.wire.handlers import RpcCode, RpcError, SchedulerRpcHandler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_INPUT = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tco-scheduler",
        description="Submit jobs to an in-process TCO scheduler and inspect it.",
    )
    parser.add_argument(
        "--cluster", metavar="FILE",
        help="JSON file with 'nodes' (and optional 'jobs') to load first",
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    submit = commands.add_parser("submit-job", help="Submit a job and place it")
    submit.add_argument("--job-id", required=True)
    submit.add_argument("--cpu", type=float, required=True, help="CPU cores")
    submit.add_argument("--memory", type=float, required=True, help="Memory in GB")
    submit.add_argument("--gpu", type=int, default=0, help="GPU count")
    submit.add_argument("--budget", type=float, default=None, help="Budget ceiling in USD")
    submit.add_argument("--latency", type=float, required=True, help="Max latency in ms")
    submit.add_argument("--duration", type=float, default=1.0, help="Estimated hours")
    submit.add_argument("--data-gb", type=float, default=0.0, help="Data to transfer in GB")

    status = commands.add_parser("get-status", help="Show a job's status")
    status.add_argument("job_id")

    commands.add_parser("cluster-status", help="Node and job counts")
    commands.add_parser("list-nodes", help="Registered nodes")
    return parser


def load_cluster(handler: SchedulerRpcHandler, path: str) -> None:
    """
    Replay a cluster file through handler.

    Raises:
        OSError, ValueError: unreadable file or not a JSON object.
        RpcError:            a node or job entry is malformed.
    """
    with open(path, encoding="utf-8") as fh:
        document = json.load(fh)
    if not isinstance(document, dict):
        raise ValueError(f"{path}: expected a JSON object with a 'nodes' list")

    for node in document.get("nodes", []):
        handler.dispatch("RegisterNode", node)
    for job in document.get("jobs", []):
        result = handler.dispatch("SubmitJob", job)
        logger.info("Replayed job %s: %s", result["job_id"], result["outcome"])


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    service = SchedulerService(config=SchedulerConfig.from_env())
    handler = SchedulerRpcHandler(service)

    if args.cluster:
        try:
            load_cluster(handler, args.cluster)
        except (OSError, ValueError, RpcError) as exc:
            print(f"tco-scheduler: cannot load cluster file: {exc}", file=sys.stderr)
            return EXIT_BAD_INPUT

    try:
        return _run_command(handler, args)
    except RpcError as exc:
        _emit({"error": exc.to_dict()}, stream=sys.stderr)
        if exc.code == RpcCode.NOT_FOUND:
            return EXIT_FAILED
        return EXIT_BAD_INPUT


def _run_command(handler: SchedulerRpcHandler, args: argparse.Namespace) -> int:
    if args.command == "submit-job":
        payload: Dict[str, Any] = {
            "job_id": args.job_id,
            "cpu": args.cpu,
            "memory_gb": args.memory,
            "gpu_count": args.gpu,
            "budget_usd": args.budget,
            "max_latency_ms": args.latency,
            "estimated_duration_hours": args.duration,
            "estimated_data_gb": args.data_gb,
        }
        response = handler.dispatch("SubmitJob", payload)
        _emit(response)
        return EXIT_OK if response["success"] else EXIT_FAILED

    if args.command == "get-status":
        _emit(handler.dispatch("GetJobStatus", {"job_id": args.job_id}))
        return EXIT_OK

    if args.command == "cluster-status":
        _emit(handler.dispatch("ClusterStatus"))
        return EXIT_OK

    _emit(handler.dispatch("ListNodes"))
    return EXIT_OK


def _emit(document: Dict[str, Any], stream=None) -> None:
    print(json.dumps(document, indent=2, sort_keys=True), file=stream or sys.stdout)


if __name__ == "__main__":
    sys.exit(main())
