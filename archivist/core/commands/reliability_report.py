#!/usr/bin/env python3
"""
Reliability report command for Archivist.

Prints database health and the reliability metrics (integrity, MTTR, recovery
success, ticket escalation) as JSON, optionally after running an auto-recovery sweep.

Usage:
    python -m archivist.core.commands.reliability_report
    python -m archivist.core.commands.reliability_report --recover --limit 50
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from archivist.core.reliability.metrics_service import reliability_metrics_service
from archivist.core.reliability.reliability_engine import reliability_engine
from archivist.core.shared.database_service import database_service

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s"
)
logger = logging.getLogger(__name__)


async def build_report(recover: bool = False, limit: Optional[int] = None) -> Dict[str, Any]:
    report: Dict[str, Any] = {"database": await database_service.health_check()}
    if recover:
        report["recovery"] = await reliability_engine.auto_recover(limit)
    report["metrics"] = await reliability_metrics_service.get_all()
    return report


def main():
    parser = argparse.ArgumentParser(description="Print Archivist reliability metrics")
    parser.add_argument("--recover", action="store_true", help="Run an auto-recovery sweep first")
    parser.add_argument("--limit", type=int, default=None, help="Incidents to process in the sweep")
    args = parser.parse_args()

    try:
        report = asyncio.run(build_report(args.recover, args.limit))
    except Exception as e:
        logger.error(f"ERROR: Failed to build reliability report: {e}")
        sys.exit(1)

    print(json.dumps(report, indent=2, default=str))
    sys.exit(0)


if __name__ == "__main__":
    main()
