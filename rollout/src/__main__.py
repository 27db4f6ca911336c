from __future__ import annotations

import argparse
import logging
import os
import signal
import sys

from prometheus_client import REGISTRY, write_to_textfile

from rollout.src.config import ConfigError, load_settings
from rollout.src.context import OperationContext
from rollout.src.controller import new_controller
from rollout.src.errors import RolloutError
from rollout.src.kube import build_clients, load_kube_configuration
from rollout.src.logs import configure_logging
from rollout.src.metrics import METRICS
from rollout.src.parse import parse_resource_header
from rollout.src.resources import ALL_KINDS

RUNTIME_VERSION = "0.3.0"

LOGGER = logging.getLogger("rollout")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rollout",
        description="Create, track and tear down Kubernetes resources.",
    )
    parser.add_argument("command", choices=("upsert", "status", "delete"))
    parser.add_argument(
        "-f",
        "--filename",
        required=True,
        help="YAML or JSON document describing the resource ('-' reads stdin)",
    )
    parser.add_argument(
        "--kind",
        choices=ALL_KINDS,
        help="resource kind (default: read from the document)",
    )
    parser.add_argument("--attempts", type=int, default=0, help="status attempts (0 = default)")
    parser.add_argument(
        "--period", type=float, default=0, help="seconds between status attempts (0 = default)"
    )
    parser.add_argument("--timeout", type=float, help="overall deadline in seconds")
    parser.add_argument(
        "--wait",
        action="store_true",
        help="after upsert, wait for the rollout to converge",
    )
    parser.add_argument(
        "--no-cascade",
        dest="cascade",
        action="store_false",
        help="log that pods should be orphaned (owned pods are still deleted)",
    )
    parser.add_argument("--context", help="kubeconfig context for out-of-cluster runs")
    parser.add_argument(
        "--metrics-file",
        help="write Prometheus metrics to this textfile-collector path on exit",
    )
    return parser


def _read_document(filename: str) -> str:
    if filename == "-":
        return sys.stdin.read()
    with open(filename, encoding="utf-8") as handle:
        return handle.read()


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint: decode the document, then upsert, poll or delete it."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"rollout: {exc}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        document = _read_document(args.filename)
        kind = args.kind or parse_resource_header(document).kind
    except (OSError, RolloutError) as exc:
        print(f"rollout: cannot read {args.filename}: {exc}", file=sys.stderr)
        return 2
    if kind not in ALL_KINDS:
        print(
            f"rollout: unsupported kind {kind!r}; pass --kind with one of {', '.join(ALL_KINDS)}",
            file=sys.stderr,
        )
        return 2

    load_kube_configuration(context=args.context or settings.kube_context)
    clients = build_clients()

    ctx = OperationContext(timeout_seconds=args.timeout)

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, cancelling", signum)
        ctx.cancel()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        controller = new_controller(
            kind,
            clients,
            reader=document,
            retry_policy=settings.retry,
            namespace=settings.namespace,
        )
        if args.command == "upsert":
            controller.upsert(ctx)
            if args.wait:
                controller.status(ctx, args.attempts, args.period)
        elif args.command == "status":
            controller.status(ctx, args.attempts, args.period)
        else:
            controller.delete(ctx, cascade=args.cascade)
        LOGGER.info(
            "%s %s: done",
            args.command,
            controller.describe(),
            extra={"operation": args.command, "resource": controller.describe()},
        )
    except (RolloutError, ConfigError) as exc:
        LOGGER.error("%s failed: %s", args.command, exc, extra={"operation": args.command})
        exit_code = 1
    finally:
        if args.metrics_file:
            write_to_textfile(args.metrics_file, REGISTRY)

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
