#!/usr/bin/env python3
"""Operate the training job queue over HTTP."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

import httpx

from training_worker.core.config import get_settings
from training_worker.core.telemetry import setup_client_telemetry, shutdown_client_telemetry
from training_worker.jobs.types import JobType
from training_worker.services.control_client import ControlClient


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="training-jobs", description=__doc__)
    parser.add_argument(
        "--base-url",
        default=None,
        help="Service base URL (defaults to TW_API_BASE_URL)",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("start", help="Start the service's worker loop")
    subcommands.add_parser("stop", help="Stop the service's worker loop")
    subcommands.add_parser("status", help="Show queue counts and active workers")

    enqueue = subcommands.add_parser("enqueue", help="Queue a training job")
    enqueue.add_argument("--type", dest="job_type", choices=[job_type.value for job_type in JobType], required=True)
    enqueue.add_argument("--payload", default="{}", help="Job payload as a JSON object")
    enqueue.add_argument("--priority", type=int, default=0)
    enqueue.add_argument("--session-id", default=None)
    enqueue.add_argument("--model-version", default=None)

    reap = subcommands.add_parser("reap", help="Requeue jobs whose lease has expired")
    reap.add_argument("--limit", type=int, default=100)
    return parser


def parse_payload(raw: str) -> dict[str, Any]:
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"--payload is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise argparse.ArgumentTypeError("--payload must be a JSON object")
    return decoded


async def run_command(args: argparse.Namespace, client: ControlClient) -> Any:
    if args.command == "start":
        return await client.start()
    if args.command == "stop":
        return await client.stop()
    if args.command == "status":
        return await client.status()
    if args.command == "enqueue":
        return await client.enqueue(
            args.job_type,
            parse_payload(args.payload),
            priority=args.priority,
            session_id=args.session_id,
            model_version=args.model_version,
        )
    return await client.reap_expired(limit=args.limit)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    telemetry_runtime = setup_client_telemetry(settings)
    client = ControlClient(args.base_url or settings.api_base_url)
    try:
        result = asyncio.run(run_command(args, client))
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except httpx.HTTPStatusError as exc:
        print(f"request failed: {exc.response.status_code} {exc.response.text}", file=sys.stderr)
        return 1
    except httpx.HTTPError as exc:
        print(f"request failed: {exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_client_telemetry(telemetry_runtime)

    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
