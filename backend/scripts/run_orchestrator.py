#!/usr/bin/env python3
"""
Run one orchestration pass for a user from the command line.
Run from backend/:
    python -m scripts.run_orchestrator <user_id> [--dry-run]
    python -m scripts.run_orchestrator --all        # same as the cron batch
"""
import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


async def main(args: argparse.Namespace) -> int:
    from adsengine.database import get_session_factory
    from adsengine.errors import OrchestratorError
    from adsengine.services.orchestrator import AdsOrchestrator

    orchestrator = AdsOrchestrator(get_session_factory())

    if args.all:
        result = await orchestrator.run_scheduled_batch()
        print(json.dumps(result, indent=2, default=str))
        return 0

    try:
        user_id = uuid.UUID(args.user_id)
    except ValueError:
        print(f"Error: {args.user_id!r} is not a valid user id")
        return 2

    try:
        result = await orchestrator.run(user_id, dry_run=args.dry_run)
    except OrchestratorError as e:
        print(f"Error: {e}")
        return 1

    response = result.to_response()
    if args.json:
        print(json.dumps(response, indent=2, default=str))
    else:
        label = "DRY RUN" if result.dry_run else "LIVE"
        print(f"[{label}] run {response['run_id']}: {response['status']}")
        for key, value in response["summary"].items():
            print(f"  {key}: {value}")
        for action in response["actions"]:
            print(f"  #{action['seq']} {action['type']}/{action['status']} [{action['goal_key'] or '-'}] {action['message']}")
    return 0 if result.status != "failed" else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the ads orchestrator")
    parser.add_argument("user_id", nargs="?", help="User UUID")
    parser.add_argument("--dry-run", action="store_true", help="Simulate without touching the ad platform")
    parser.add_argument("--all", action="store_true", help="Scheduled run for every eligible user")
    parser.add_argument("--json", action="store_true", help="Print the full JSON response")
    parsed = parser.parse_args()
    if not parsed.all and not parsed.user_id:
        parser.error("user_id is required unless --all is given")

    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(main(parsed)))
