#!/usr/bin/env python3
"""
Queue Monitor — Inspect and maintain the notification job queue.

Usage:
    python scripts/queue_monitor.py stats                   # Per-kind counts
    python scripts/queue_monitor.py failed --limit 20       # Failed jobs and their errors
    python scripts/queue_monitor.py clean --older-than 86400
    python scripts/queue_monitor.py requeue <job_id>
    python scripts/queue_monitor.py init-db                 # Create tables for the sql backends

The queue backend and its connection come from config/settings.yaml
(or COURSE_NOTIFY_CONFIG). The in-memory backend has nothing to inspect
from a separate process.
"""
import argparse
import asyncio
import os
import sys
from dataclasses import asdict

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import load_settings
from database.session import create_engine_for, create_session_factory, init_db
from job_queue.message_queue import (
    TERMINAL_STATES, InvalidTransition, JobNotFound, JobQueue, create_message_queue,
)
from models.schemas import JobState


def print_stats(stats: dict[str, dict[str, int]]) -> None:
    states = [s.value for s in JobState]
    print(f"{'KIND':<20}" + "".join(f"{s:>11}" for s in states))
    print("─" * (20 + 11 * len(states)))
    for kind, counts in stats.items():
        print(f"{kind:<20}" + "".join(f"{counts.get(s, 0):>11}" for s in states))


async def cmd_stats(queue: JobQueue, args) -> int:
    print(f"Queue: {queue.name}")
    print_stats(await queue.stats())
    return 0


async def cmd_failed(queue: JobQueue, args) -> int:
    jobs = await queue.list_jobs(state=JobState.FAILED, limit=args.limit)
    if not jobs:
        print("No failed jobs.")
        return 0
    for job in jobs:
        to = job.payload.get("facilitatorEmail", "")
        print(f"{job.job_id}  {job.kind.value:<18} attempts={job.attempts}  to={to}")
        print(f"    {job.updated_at:%Y-%m-%d %H:%M:%S}  {job.last_error}")
    return 0


async def cmd_clean(queue: JobQueue, args) -> int:
    states = [JobState(s) for s in args.state] if args.state else list(TERMINAL_STATES)
    removed = await queue.clean(args.older_than, states)
    print(f"Removed {removed} job(s) older than {args.older_than}s "
          f"({', '.join(s.value for s in states)})")
    return 0


async def cmd_requeue(queue: JobQueue, args) -> int:
    try:
        new_id = await queue.requeue(args.job_id)
    except JobNotFound:
        print(f"Job {args.job_id} not found", file=sys.stderr)
        return 1
    except InvalidTransition as e:
        print(f"Job {args.job_id} is {e.from_state.value}; only failed jobs can be requeued", file=sys.stderr)
        return 1
    print(f"Requeued {args.job_id} as {new_id}")
    return 0


COMMANDS = {
    "stats": cmd_stats,
    "failed": cmd_failed,
    "clean": cmd_clean,
    "requeue": cmd_requeue,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Notification queue monitor")
    parser.add_argument("--config", help="Path to settings YAML")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Show job counts per kind and state")

    failed = sub.add_parser("failed", help="List failed jobs with their last error")
    failed.add_argument("--limit", type=int, default=50)

    clean = sub.add_parser("clean", help="Remove old completed/failed jobs")
    clean.add_argument("--older-than", type=int, default=86400, help="Age in seconds")
    clean.add_argument("--state", action="append", choices=[s.value for s in TERMINAL_STATES],
                       help="Restrict to a state (repeatable)")

    requeue = sub.add_parser("requeue", help="Enqueue a fresh copy of a failed job")
    requeue.add_argument("job_id")

    sub.add_parser("init-db", help="Create the course and notification tables")
    return parser


async def run(args) -> int:
    settings = load_settings(args.config)

    if args.command == "init-db":
        engine = create_engine_for(settings.database.url)
        await init_db(engine)
        await engine.dispose()
        print("Tables created/verified. ✓")
        return 0

    session_factory = None
    if settings.queue.backend == "sql":
        session_factory = create_session_factory(settings.database.url)
    queue = create_message_queue(asdict(settings.queue), session_factory=session_factory)
    await queue.connect()
    try:
        return await COMMANDS[args.command](queue, args)
    finally:
        await queue.close()


def main(argv=None):
    args = build_parser().parse_args(argv)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
