#!/usr/bin/env python3
"""
DeployGate command line.

Usage:
    deploygate run --image registry/app:1.4.2 --revision 9f1c2ab \\
        --environment staging --job app-pipeline --build 118
    deploygate run ... --dry-run --feed-script running,running,success
    deploygate serve --port 8000

Exit Codes (run):
    0 - Attempt succeeded
    1 - Attempt aborted, failed or rolled back
    2 - Invalid arguments or configuration
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from deploygate.config import PipelineConfig
from deploygate.errors import InvalidInput
from deploygate.feeds import ScriptedStatusFeed
from deploygate.logging_config import get_logger, setup_logging
from deploygate.models import BuildResult, ChangeDescriptor

logger = get_logger(__name__)


def _parse_labels(pairs: List[str]) -> dict:
    labels = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise InvalidInput(f"label '{pair}' must look like key=value")
        labels[key] = value
    return labels


def _parse_feed_script(script: str) -> List[BuildResult]:
    try:
        return [BuildResult(part.strip().lower()) for part in script.split(",") if part.strip()]
    except ValueError as e:
        raise InvalidInput(f"invalid --feed-script: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deploygate",
        description="Risk-gated deployment rollout with monitoring and automatic rollback",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--log-format", choices=["json", "text"], default=None)
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run one deployment attempt to completion")
    run.add_argument("--image", dest="content_ref", required=True, help="Image or artifact reference")
    run.add_argument("--revision", required=True)
    run.add_argument("--environment", required=True)
    run.add_argument("--job", dest="job_id", required=True, help="CI job to monitor")
    run.add_argument("--build", dest="build_id", required=True, help="CI build number")
    run.add_argument("--service", default=None)
    run.add_argument("--label", action="append", default=[], metavar="KEY=VALUE")
    run.add_argument("--threshold", type=float, default=None, help="Risk threshold override")
    run.add_argument("--retry-limit", type=int, default=None)
    run.add_argument("--monitoring-timeout", type=float, default=None)
    run.add_argument("--poll-interval", type=float, default=None)
    run.add_argument("--dry-run", action="store_true", help="Use the in-memory backend")
    run.add_argument(
        "--feed-script",
        default=None,
        help="Comma separated build results replayed by the dry-run feed",
    )
    run.add_argument("cmd", nargs=argparse.REMAINDER, help="Container command (after --)")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


async def run_attempt(args) -> int:
    from deploygate.main import build_controller, close_controller

    config = PipelineConfig.from_env(
        risk_threshold=args.threshold,
        scorer_retry_limit=args.retry_limit,
        monitoring_timeout=args.monitoring_timeout,
        monitoring_poll_interval=args.poll_interval,
    )
    command = [part for part in args.cmd if part != "--"]
    change = ChangeDescriptor(
        content_ref=args.content_ref,
        revision=args.revision,
        environment=args.environment,
        job_id=args.job_id,
        build_id=args.build_id,
        service=args.service,
        command=tuple(command),
        labels=_parse_labels(args.label),
    )

    feed = None
    if args.feed_script:
        feed = ScriptedStatusFeed(_parse_feed_script(args.feed_script))

    controller = build_controller(config=config, dry_run=args.dry_run or None, feed=feed)
    try:
        attempt = await controller.run(change)
    finally:
        await close_controller(controller)

    print(json.dumps(attempt.to_dict(), indent=2))
    outcome = attempt.terminal_outcome
    return 0 if outcome is not None and outcome.succeeded else 1


def serve(args) -> int:
    import uvicorn

    from deploygate.main import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    # Logs go to stderr so `run` output stays machine readable
    setup_logging(level=args.log_level, fmt=args.log_format, stream=sys.stderr)

    try:
        if args.command == "serve":
            return serve(args)
        return asyncio.run(run_attempt(args))
    except InvalidInput as e:
        logger.error(f"[GATE] {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
