"""Entry point for `python -m kuberun` / `kuberun`.

Subcommands:
    kuberun run WORKLOAD.yaml       Submit the job, stream its logs, wait for it
    kuberun validate WORKLOAD.yaml  Check the workload file without submitting
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130


async def _run_async(args: argparse.Namespace) -> int:
    from kuberun.cancel import CancelToken
    from kuberun.config import get_settings
    from kuberun.logger import logger, set_level
    from kuberun.runner import (
        GatewayError,
        KubernetesGateway,
        LoggerSink,
        RunOrchestrator,
        StreamSink,
    )
    from kuberun.types import RunStatus, WorkloadSpecError
    from kuberun.workload_file import load_workload_spec

    s = get_settings()
    set_level(s.logging.level)
    if args.kubeconfig:
        s.kube.config_file = args.kubeconfig
        s.kube.mode = "kubeconfig"
    if args.context:
        s.kube.context = args.context

    try:
        spec = load_workload_spec(Path(args.workload))
    except (WorkloadSpecError, OSError) as exc:
        logger.error("Invalid workload file", path=args.workload, error=str(exc))
        return EXIT_INVALID
    if args.namespace:
        spec.namespace = args.namespace

    try:
        gateway = KubernetesGateway.from_config(s.kube)
    except GatewayError as exc:
        logger.error("Cannot connect to the cluster", error=str(exc))
        return EXIT_FAILED

    cancel = CancelToken("caller")
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel.cancel)

    sink = LoggerSink(job=spec.name) if args.log_format == "log" else StreamSink()
    try:
        outcome = await RunOrchestrator(gateway, s, sink=sink).run(spec, cancel)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    match outcome.status:
        case RunStatus.SUCCESS:
            return EXIT_OK
        case RunStatus.CANCELLED:
            return EXIT_CANCELLED
        case _:
            print(f"Error: {outcome.reason}", file=sys.stderr)
            return EXIT_FAILED


def _validate(path: str) -> int:
    from kuberun.types import WorkloadSpecError
    from kuberun.workload_file import load_workload_spec

    try:
        spec = load_workload_spec(Path(path))
    except (WorkloadSpecError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID
    print(f"ok: job {spec.namespace}/{spec.name} ({len(spec.containers)} containers)")
    return EXIT_OK


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="kuberun",
        description="Run a Kubernetes Job to completion while streaming its logs",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Submit a workload and follow it to completion")
    run.add_argument("workload", help="Path to the workload YAML file")
    run.add_argument("--namespace", help="Override the workload namespace")
    run.add_argument("--context", help="kubeconfig context to use")
    run.add_argument("--kubeconfig", help="Path to a kubeconfig file")
    run.add_argument(
        "--log-format",
        choices=("raw", "log"),
        default="raw",
        help="raw: copy container output to stdout; log: emit it as log events",
    )

    validate = sub.add_parser("validate", help="Validate a workload file without submitting")
    validate.add_argument("workload", help="Path to the workload YAML file")

    args = parser.parse_args()

    match args.command:
        case "validate":
            sys.exit(_validate(args.workload))
        case "run":
            sys.exit(asyncio.run(_run_async(args)))


if __name__ == "__main__":
    main()
