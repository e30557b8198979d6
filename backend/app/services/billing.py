############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# billing.py: Stripe checkout, webhook events, and usage summaries
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Billing integration.

Each bot is paid for by its own Stripe subscription. Spawning in billed
mode stages the bot at pending_payment and hands back a checkout URL; the
checkout webhook then triggers the same deploy path a direct spawn uses.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.errors import BillingError
from backend.app.core.provisioning.sizes import HOURS_PER_MONTH, get_size
from backend.app.db import crud
from backend.app.db.base import utcnow
from backend.app.db.models import BotStatus, User
from backend.app.db.session import SessionFactory, session_scope
from backend.app.logging_config import get_logger
from backend.app.services.deployment import DeploymentOrchestrator, DeployResult
from backend.app.services.termination import TerminationCoordinator
from backend.app.settings import Settings

logger = get_logger(__name__)

BOT_ID_METADATA_KEY = "clawster_bot_id"
USER_ID_METADATA_KEY = "clawster_user_id"


class StripeBillingGateway:
    """Thin async wrapper over the Stripe SDK."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        price_ids: Mapping[str, Optional[str]],
        public_base_url: str,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.price_ids = dict(price_ids)
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeBillingGateway":
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            price_ids={
                "small": settings.get_price_id("small"),
                "medium": settings.get_price_id("medium"),
            },
            public_base_url=settings.public_base_url,
        )

    def _api_key(self) -> str:
        if not self.secret_key:
            raise BillingError("STRIPE_SECRET_KEY not configured")
        return self.secret_key

    async def ensure_customer(self, user: User) -> str:
        """Find or create the Stripe customer for a user."""
        if user.stripe_customer_id:
            return user.stripe_customer_id

        api_key = self._api_key()
        try:
            existing = await asyncio.to_thread(
                stripe.Customer.search,
                query=f'metadata["{USER_ID_METADATA_KEY}"]:"{user.id}"',
                api_key=api_key,
            )
            if existing.data:
                return existing.data[0].id

            customer = await asyncio.to_thread(
                stripe.Customer.create,
                name=user.display_name or f"clawster-{user.id}",
                email=user.email,
                metadata={USER_ID_METADATA_KEY: str(user.id)},
                api_key=api_key,
            )
        except stripe.StripeError as e:
            raise BillingError("Failed to create Stripe customer", detail=str(e)) from e

        logger.info("stripe_customer_created", user_id=user.id, customer_id=customer.id)
        return customer.id

    async def create_bot_checkout(self, customer_id: str, bot_id: str, size: str) -> str:
        """Create a subscription checkout session for one bot; returns its URL."""
        price_id = self.price_ids.get(size)
        if not price_id:
            raise BillingError(f"No Stripe price configured for size '{size}'")

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                subscription_data={
                    "metadata": {BOT_ID_METADATA_KEY: bot_id, "instance_size": size},
                },
                metadata={BOT_ID_METADATA_KEY: bot_id},
                success_url=f"{self.public_base_url}/dashboard?billing=success&bot={bot_id}",
                cancel_url=f"{self.public_base_url}/dashboard?billing=cancelled&bot={bot_id}",
                api_key=self._api_key(),
            )
        except stripe.StripeError as e:
            raise BillingError("Failed to create checkout session", detail=str(e)) from e

        logger.info("checkout_created", bot_id=bot_id, size=size)
        return session.url

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook payload's signature and parse it.

        Returns the event as a plain dict.

        Raises:
            BillingError: Missing or invalid signature, or a malformed body
        """
        if not signature:
            raise BillingError("Missing Stripe signature")
        if not self.webhook_secret:
            raise BillingError("STRIPE_WEBHOOK_SECRET not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
            )
            return json.loads(payload)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise BillingError("Invalid Stripe webhook", detail=str(e)) from e


class BillingEventHandler:
    """Applies verified Stripe events to bots."""

    def __init__(
        self,
        session_factory: SessionFactory,
        deployer: DeploymentOrchestrator,
        terminator: TerminationCoordinator,
    ):
        self.session_factory = session_factory
        self.deployer = deployer
        self.terminator = terminator

    async def handle(self, event: Mapping[str, Any]) -> str:
        """Dispatch an event; returns a short description of what was done."""
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        bot_id = metadata.get(BOT_ID_METADATA_KEY)

        if event_type == "checkout.session.completed":
            if not bot_id:
                logger.info("checkout_without_bot", event_id=event.get("id"))
                return "ignored"
            result = await self.handle_payment_completed(bot_id, obj.get("subscription"))
            return "deployed" if result is not None else "duplicate"

        if event_type == "customer.subscription.deleted":
            if not bot_id:
                async with session_scope(self.session_factory) as db:
                    bot = await crud.get_bot_by_subscription(db, obj.get("id", ""))
                    bot_id = bot.id if bot else None
            if not bot_id:
                logger.info("subscription_without_bot", subscription_id=obj.get("id"))
                return "ignored"
            terminated = await self.handle_subscription_cancelled(bot_id)
            return "terminated" if terminated else "noop"

        logger.info("stripe_event_ignored", event_type=event_type, event_id=event.get("id"))
        return "ignored"

    async def handle_payment_completed(
        self, bot_id: str, subscription_id: Optional[str] = None
    ) -> Optional[DeployResult]:
        """
        Deploy a bot whose checkout completed.

        Returns None when the bot has already left pending_payment, so a
        redelivered event never deploys twice.
        """
        async with session_scope(self.session_factory) as db:
            bot = await crud.get_bot(db, bot_id)
            if bot is None:
                logger.warning("payment_for_unknown_bot", bot_id=bot_id)
                return None
            if bot.status != BotStatus.PENDING_PAYMENT:
                logger.info("payment_already_handled", bot_id=bot_id, status=bot.status.value)
                return None
            if subscription_id and not bot.stripe_subscription_id:
                await crud.update_bot_fields(db, bot_id, stripe_subscription_id=subscription_id)

        result = await self.deployer.deploy(bot_id, expected_status=BotStatus.PENDING_PAYMENT)
        if result.skipped:
            return None
        logger.info("payment_triggered_deploy", bot_id=bot_id, ok=result.ok)
        return result

    async def handle_subscription_cancelled(self, bot_id: str) -> bool:
        """Terminate a bot whose subscription ended. False if already terminal."""
        async with session_scope(self.session_factory) as db:
            bot = await crud.get_bot(db, bot_id)
            if bot is None or bot.status == BotStatus.TERMINATED:
                return False

        await self.terminator.terminate(bot_id)
        logger.info("subscription_cancel_terminated", bot_id=bot_id)
        return True


@dataclass
class UsageSummary:
    running_bots: int
    hourly_burn: float
    month_hours: float
    month_cost: float
    estimated_monthly: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running_bots": self.running_bots,
            "hourly_burn": round(self.hourly_burn, 4),
            "this_month": {
                "hours": round(self.month_hours, 2),
                "cost": round(self.month_cost, 2),
            },
            "estimated_monthly": round(self.estimated_monthly, 2),
        }


def start_of_month(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def usage_summary(db: AsyncSession, user_id: int, now: Optional[datetime] = None) -> UsageSummary:
    """Current burn rate and this month's metered usage for a user."""
    running = await crud.list_bots_by_status(db, [BotStatus.RUNNING], user_id=user_id)
    hourly_burn = sum(get_size(bot.instance_size).price_per_hour for bot in running)
    hours, cost = await crud.get_user_usage_since(db, user_id, start_of_month(now))
    return UsageSummary(
        running_bots=len(running),
        hourly_burn=hourly_burn,
        month_hours=hours,
        month_cost=cost,
        estimated_monthly=hourly_burn * HOURS_PER_MONTH,
    )
