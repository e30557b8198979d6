############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# health.py: Health check and Prometheus metrics endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Health check and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest
from sqlalchemy import func, select, text

from backend.app.db.models import Bot, BotStatus
from backend.app.logging_config import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["health"])

# Prometheus metrics
BOTS_BY_STATUS = Gauge(
    "clawster_bots",
    "Number of bots by lifecycle status",
    ["status"],
)


@router.get("/healthz")
async def liveness_probe() -> Dict[str, str]:
    """
    Liveness probe - checks if the application is running.

    Returns 200 if the application is alive.
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_probe(request: Request) -> Dict[str, Any]:
    """
    Readiness probe - checks database connectivity and provider config.
    """
    checks = {
        "database": False,
        "provider_configured": bool(request.app.state.settings.phala_api_key),
    }

    try:
        async with request.app.state.session_factory() as db:
            await db.execute(text("SELECT 1"))
            checks["database"] = True
    except Exception as e:
        logger.warning("readiness_database_failed", error=str(e))

    all_ready = all(checks.values())

    return {
        "status": "ready" if all_ready else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/metrics")
async def prometheus_metrics(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    async with request.app.state.session_factory() as db:
        result = await db.execute(select(Bot.status, func.count(Bot.id)).group_by(Bot.status))
        counts = dict(result.all())
    # Every status is reported so emptied ones drop to zero
    for bot_status in BotStatus:
        BOTS_BY_STATUS.labels(status=bot_status.value).set(counts.get(bot_status, 0))

    metrics = generate_latest()
    return Response(content=metrics, media_type=CONTENT_TYPE_LATEST)
