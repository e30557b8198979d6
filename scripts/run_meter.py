#!/usr/bin/env python3
############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# run_meter.py: One-shot usage metering pass for cron
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Run one usage metering pass and exit.

For deployments that meter from an external scheduler (cron, a platform
cron job) instead of the in-process loop. Safe to run alongside the loop:
each bot is metered at most once per window.

Usage:
  python scripts/run_meter.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.client import PhalaClient
from backend.app.db.session import create_schema, create_session_factory
from backend.app.logging_config import setup_logging
from backend.app.services.meter import UsageMeter
from backend.app.settings import get_settings


async def main() -> int:
    settings = get_settings()
    setup_logging(settings)

    engine, session_factory = create_session_factory(settings)
    if settings.database_auto_create:
        await create_schema(engine)
    client = PhalaClient.from_settings(settings)

    try:
        meter = UsageMeter(
            session_factory,
            client,
            KeyedLockManager(),
            interval_seconds=settings.meter_interval_seconds,
        )
        report = await meter.run_once()
    finally:
        await client.close()
        await engine.dispose()

    print(
        f"Metered {report.metered} bots "
        f"({report.duplicates} already metered, {report.stopped} not running, "
        f"{report.errors} errors)"
    )
    return 1 if report.errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
