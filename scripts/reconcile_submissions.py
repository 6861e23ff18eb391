#!/usr/bin/env python3
"""
Run one reconciliation sweep from the command line.

Run: python scripts/reconcile_submissions.py [--json] [--no-connect]

Re-dispatches lost submissions, re-polls stale submitted records, archives
terminal records, repairs stale cache entries and purges expired records.
Prints a summary and the current submission backlog.

Exit codes:
  0 - Sweep completed, no submitted records older than the stale window
  1 - Sweep completed but submitted records are still waiting
  2 - Sweep failed (configuration, database or chain connection error)
"""

import argparse
import json
import sys

from tradechain.config import settings
from tradechain.runtime import build_runtime
from tradechain.services.monitoring import setup_logging


def format_summary(result: dict, counts: dict) -> str:
    """
    Format reconciliation summary as human-readable text

    Args:
        result: Summary dict from ReconciliationService.run_reconciliation
        counts: Record counts by status

    Returns:
        Formatted report string
    """
    lines = []
    lines.append("=" * 60)
    lines.append("SUBMISSION RECONCILIATION")
    lines.append("=" * 60)
    lines.append(f"Run ID:                 {result['run_id']}")
    lines.append(f"Re-dispatched pending:  {result['redispatched']}")
    lines.append(f"Re-polled submitted:    {result['repolled']}")
    lines.append(f"Archived terminal:      {result['archived']}")
    lines.append(f"Cache entries repaired: {result['cache_repaired']}")
    lines.append(f"Purged archived:        {result['purged']}")
    lines.append("")
    lines.append("BACKLOG")
    lines.append("-" * 60)
    for status, count in counts.items():
        lines.append(f"{status:<23} {count}")
    lines.append("=" * 60)
    return "\n".join(lines)


def main():
    """Reconciliation script entry point"""
    parser = argparse.ArgumentParser(
        description="Run one reconciliation sweep over submission records and the read cache"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the summary as JSON"
    )
    parser.add_argument(
        "--no-connect",
        action="store_true",
        help="Skip the startup connectivity and contract code check"
    )
    args = parser.parse_args()

    setup_logging("WARNING")

    try:
        runtime = build_runtime(settings, connect=not args.no_connect)
    except Exception as e:
        print(f"ERROR: Failed to initialize: {e}")
        sys.exit(2)

    try:
        result = runtime.reconciliation.run_reconciliation()
        counts = runtime.store.count_by_status()
    except Exception as e:
        print(f"ERROR: Reconciliation failed: {e}")
        sys.exit(2)
    finally:
        runtime.close()

    if args.json:
        print(json.dumps({"result": result, "counts": counts}, indent=2, default=str))
    else:
        print(format_summary(result, counts))

    if counts.get("submitted", 0) > result["repolled"]:
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
