#!/usr/bin/env python3
"""
Run maintenance sweeps once against the configured data directory.

Usage:
    python scripts/maintenance.py backup
    python scripts/maintenance.py all --json
"""

import asyncio
import json
import logging
import sys
from typing import Dict, List

from app.config import settings
from app.context import build_context
from app.services.reclaimer import SWEEP_NAMES


async def run_sweeps(names: List[str]) -> Dict[str, dict]:
    """Run ``names`` in order through the scheduler and collect results."""
    context = build_context(settings)
    await context.start(run_workers=False)
    results = {}
    try:
        for name in names:
            result = await context.scheduler.run_now(name)
            status = context.scheduler.get_status()[name]
            results[name] = {
                "result": result.to_dict() if result is not None else None,
                "error": status["last_error"],
            }
    finally:
        await context.stop()
    return results


def print_summary(results: Dict[str, dict]):
    for name, outcome in results.items():
        if outcome["error"]:
            print(f"✗ {name}: {outcome['error']}")
            continue
        result = outcome["result"] or {}
        print(
            f"✓ {name}: scanned={result.get('scanned', 0)} removed={result.get('removed', 0)} "
            f"archived={result.get('archived', 0)} skipped={result.get('skipped', 0)} "
            f"errors={result.get('errors', 0)}"
        )


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(
        description="Run clip service maintenance sweeps once"
    )
    parser.add_argument(
        "sweep",
        choices=list(SWEEP_NAMES) + ["all"],
        help="Sweep to run, or 'all' for every sweep"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print raw results as JSON"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    names = list(SWEEP_NAMES) if args.sweep == "all" else [args.sweep]
    try:
        results = asyncio.run(run_sweeps(names))
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        sys.exit(1)

    if args.json:
        print(json.dumps(results, indent=2, default=str))
    else:
        print_summary(results)

    if any(outcome["error"] for outcome in results.values()):
        sys.exit(1)
