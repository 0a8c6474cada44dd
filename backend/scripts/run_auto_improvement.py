#!/usr/bin/env python3
"""
Auto-Improvement Runner
=======================

Runs one pass of the prompt-improvement loop outside the API, e.g. from cron.

Usage:
    python -m backend.scripts.run_auto_improvement

    # Evaluate experiments
    python -m backend.scripts.run_auto_improvement --action run_ab_tests

    # Machine-readable output
    python -m backend.scripts.run_auto_improvement --action optimize_prompts --json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(project_root))

import structlog

from backend.api.errors import AppException
from backend.core.config import validate_required_settings
from backend.db.database import async_session_context, close_db
from backend.services.auto_improvement import AutoImprovementEngine, EngineAction

logger = structlog.get_logger(__name__)


async def run(action: str) -> dict:
    validate_required_settings()

    try:
        async with async_session_context() as db:
            engine = AutoImprovementEngine(db)
            return await engine.run(action)
    finally:
        await close_db()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run one pass of the prompt-improvement loop"
    )
    parser.add_argument(
        "--action",
        choices=[a.value for a in EngineAction],
        default=EngineAction.ANALYZE_AND_IMPROVE.value,
        help="Loop action to run",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the raw result as JSON",
    )

    args = parser.parse_args()

    try:
        result = asyncio.run(run(args.action))
    except AppException as e:
        logger.error("Auto-improvement run failed", error_code=e.error_code, error=e.message)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result, indent=2, default=str))
        return 0

    print("=" * 60)
    print(f"Auto-improvement: {args.action}")
    print("=" * 60)

    for key, items in result.items():
        print(f"\n{key}: {len(items)}")
        for item in items:
            label = item.get("agent_name") or item.get("test_name") or item.get("agent_id")
            confidence = item.get("confidence")
            status = (
                item.get("outcome")
                or ("applied" if item.get("applied") else None)
                or ("queued for review" if "review_id" in item else None)
                or ("experiment created" if "test_id" in item else "")
            )
            print(f"  - {label}: confidence={confidence:.2f} {status}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
