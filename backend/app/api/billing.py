############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# billing.py: Billing API endpoints and Stripe webhook
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Billing API endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.auth import get_current_user
from backend.app.db.models import User
from backend.app.db.session import get_async_db
from backend.app.logging_config import get_logger
from backend.app.services.billing import (
    BillingEventHandler,
    StripeBillingGateway,
    usage_summary,
)

logger = get_logger(__name__)
router = APIRouter()


def _billing_components(request: Request):
    gateway = getattr(request.app.state, "billing_gateway", None)
    handler = getattr(request.app.state, "billing_events", None)
    if gateway is None or handler is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Billing is not enabled",
        )
    return gateway, handler


@router.get("/usage")
async def get_usage(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
) -> Dict[str, Any]:
    """Running bots, hourly burn, and this month's metered usage."""
    summary = await usage_summary(db, user.id)
    return summary.to_dict()


@router.post("/webhook")
async def stripe_webhook(request: Request) -> Dict[str, Any]:
    """
    Stripe webhook receiver.

    The signature is verified against the raw body before anything is
    acted on. Payment completion deploys the bot; subscription
    cancellation terminates it.
    """
    gateway: StripeBillingGateway
    handler: BillingEventHandler
    gateway, handler = _billing_components(request)

    payload = await request.body()
    event = gateway.construct_event(payload, request.headers.get("stripe-signature"))

    logger.info("stripe_event_received", event_type=event.get("type"), event_id=event.get("id"))
    action = await handler.handle(event)
    return {"received": True, "action": action}
