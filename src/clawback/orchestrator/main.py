"""CLI entrypoint for the clawback engine.

Operates directly on the local state directory; no server needs to be
running. Events emitted here are dispatched synchronously.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from clawback import __version__
from clawback.errors import ClawbackError
from clawback.orchestrator.config import EngineSettings
from clawback.orchestrator.logging import configure_logging
from clawback.orchestrator.runtime import Runtime
from clawback.orchestrator.scheduling import (
    InvalidScheduleError,
    get_next_runs,
    validate_schedule,
)

logger = logging.getLogger(__name__)


def _load_payload(raw: str | None, path: str | None) -> dict[str, Any]:
    if path is not None:
        raw = Path(path).read_text(encoding="utf-8")
    if raw is None:
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Event payload must be a JSON object")
    return payload


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clawback",
        description="Event-driven automation engine: skills, workflows, schedules",
    )
    parser.add_argument("--version", action="version", version=f"clawback {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    emit = subparsers.add_parser("emit", help="Persist an event and dispatch it synchronously")
    emit.add_argument("--source", required=True, help="Event source, e.g. 'github'")
    emit.add_argument("--type", required=True, help="Event type, e.g. 'pull_request.opened'")
    payload_group = emit.add_mutually_exclusive_group()
    payload_group.add_argument("--payload", default=None, help="Event payload as a JSON object")
    payload_group.add_argument(
        "--payload-file", default=None, help="Path to a file holding the JSON payload"
    )

    subparsers.add_parser(
        "sync-jobs", help="Reconcile scheduled jobs with the scheduled triggers of all definitions"
    )
    subparsers.add_parser("tick", help="Fire every due scheduled job once and wait for dispatch")

    subparsers.add_parser("hitl-list", help="List pending human-in-the-loop requests")

    hitl_respond = subparsers.add_parser("hitl-respond", help="Answer a pending HITL request")
    hitl_respond.add_argument("hitl_id", help="HITL request id")
    hitl_respond.add_argument("--response", required=True, help="The human's answer")
    hitl_respond.add_argument(
        "--resume",
        action="store_true",
        help="Resume the paused workflow run immediately (in the foreground)",
    )

    resume = subparsers.add_parser("resume", help="Resume a workflow run from an answered HITL request")
    resume.add_argument("hitl_id", help="HITL request id")

    validate = subparsers.add_parser("validate-schedule", help="Validate a 5-field cron expression")
    validate.add_argument("expression", help="Cron expression, e.g. '0 9 * * 1-5'")

    next_runs = subparsers.add_parser("next-runs", help="Show upcoming fire times for a schedule")
    next_runs.add_argument("expression", help="Cron expression")
    next_runs.add_argument("--count", type=int, default=5, help="How many fire times to show")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    # These two never touch the state directory.
    if args.command == "validate-schedule":
        result = validate_schedule(args.expression)
        if result.valid:
            print("valid")
            return 0
        print(f"invalid: {result.error}", file=sys.stderr)
        return 1

    if args.command == "next-runs":
        try:
            runs = get_next_runs(args.expression, args.count)
        except InvalidScheduleError as e:
            print(str(e), file=sys.stderr)
            return 1
        for run_at in runs:
            print(run_at.isoformat())
        return 0

    runtime = Runtime(settings)
    try:
        if args.command == "emit":
            payload = _load_payload(args.payload, args.payload_file)
            event, report = runtime.queue.dispatch_now(args.source, args.type, payload)
            _print_json(
                {
                    "eventId": event.id,
                    "workflowRuns": [
                        {"id": r.id, "status": r.status} for r in (report.workflow_runs if report else [])
                    ],
                    "runs": [{"id": r.id, "status": r.status} for r in (report.runs if report else [])],
                    "failures": [
                        {"kind": f.kind, "ownerId": f.owner_id, "error": f.error}
                        for f in (report.failures if report else [])
                    ],
                }
            )
            return 0 if report is not None and not report.failures else 1

        if args.command == "sync-jobs":
            runtime.scheduler.sync_jobs()
            jobs = runtime.stores.scheduled_jobs.all()
            logger.info("Scheduled jobs synced", extra={"jobs": len(jobs)})
            for job in jobs:
                state = "enabled" if job.enabled else "disabled"
                print(f"{job.id}\t{job.owner_kind}:{job.owner_id}#{job.trigger_index}\t{job.schedule}\t{state}")
            return 0

        if args.command == "tick":
            events = runtime.scheduler.tick()
            print(f"Fired {len(events)} scheduled job(s)")
            return 0

        if args.command == "hitl-list":
            _print_json(
                [r.model_dump(mode="json", by_alias=True) for r in runtime.hitl.list_pending()]
            )
            return 0

        if args.command == "hitl-respond":
            responded = runtime.hitl.respond(args.hitl_id, args.response)
            if responded is None:
                print(f"HITL request {args.hitl_id} is no longer pending", file=sys.stderr)
                return 1
            if args.resume:
                run = runtime.engine.resume_from_checkpoint(args.hitl_id)
                print(f"Workflow run {run.id}: {run.status}")
            else:
                print(f"Responded to {args.hitl_id}; run `clawback resume {args.hitl_id}` to continue")
            return 0

        if args.command == "resume":
            run = runtime.engine.resume_from_checkpoint(args.hitl_id)
            print(f"Workflow run {run.id}: {run.status}")
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except ClawbackError as e:
        logger.error(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return 1

    except Exception:
        logger.exception("Command failed")
        return 1

    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
