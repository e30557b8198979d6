############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# crud.py: Database CRUD operations for all entities
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database CRUD operations for Clawster."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.base import utcnow
from backend.app.db.models import Bot, BotStatus, UsageRecord, User

# Column values that erase every staged secret on a bot
CLEARED_SECRETS: Dict[str, Any] = {
    "pending_telegram_token": None,
    "pending_api_key": None,
    "pending_owner_id": None,
    "pending_soul": None,
    "pending_config": None,
    "pending_custom_env": None,
}


# User CRUD
async def get_user_by_id(db: AsyncSession, user_id: int) -> Optional[User]:
    """Get user by ID."""
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> Optional[User]:
    """Get user by the auth service's identifier."""
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def get_or_create_user(
    db: AsyncSession,
    external_id: str,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
) -> User:
    """Get a user by external ID, creating the row on first sight."""
    user = await get_user_by_external_id(db, external_id)
    if user:
        return user
    user = User(external_id=external_id, display_name=display_name, email=email)
    db.add(user)
    await db.flush()
    return user


async def set_user_stripe_customer(
    db: AsyncSession, user_id: int, customer_id: str
) -> Optional[User]:
    """Record the Stripe customer ID for a user."""
    user = await get_user_by_id(db, user_id)
    if user:
        user.stripe_customer_id = customer_id
        await db.flush()
    return user


# Bot CRUD
async def get_bot(db: AsyncSession, bot_id: str) -> Optional[Bot]:
    """Get bot by ID."""
    result = await db.execute(select(Bot).where(Bot.id == bot_id))
    return result.scalar_one_or_none()


async def get_bot_for_owner(db: AsyncSession, bot_id: str, user_id: int) -> Optional[Bot]:
    """Get a bot only if it belongs to the given user."""
    result = await db.execute(
        select(Bot).where(and_(Bot.id == bot_id, Bot.user_id == user_id))
    )
    return result.scalar_one_or_none()


async def get_live_bot_by_owner_and_name(
    db: AsyncSession, user_id: int, name: str
) -> Optional[Bot]:
    """Get a user's non-terminated bot by name."""
    result = await db.execute(
        select(Bot).where(
            and_(
                Bot.user_id == user_id,
                Bot.name == name,
                Bot.status != BotStatus.TERMINATED,
            )
        )
    )
    return result.scalar_one_or_none()


async def get_bot_by_subscription(db: AsyncSession, subscription_id: str) -> Optional[Bot]:
    """Get the bot a Stripe subscription pays for."""
    result = await db.execute(
        select(Bot).where(Bot.stripe_subscription_id == subscription_id)
    )
    return result.scalars().first()


async def create_bot(
    db: AsyncSession,
    user_id: int,
    name: str,
    model: str,
    instance_size: str,
    status: BotStatus,
    pending: Optional[Dict[str, Any]] = None,
) -> Bot:
    """Create a new bot record, optionally with staged secrets."""
    bot = Bot(
        user_id=user_id,
        name=name,
        model=model,
        instance_size=instance_size,
        status=status,
        status_changed_at=utcnow(),
        **(pending or {}),
    )
    db.add(bot)
    await db.flush()
    return bot


async def update_bot_fields(db: AsyncSession, bot_id: str, **fields: Any) -> Optional[Bot]:
    """
    Update columns on a bot.

    A change of ``status`` also stamps ``status_changed_at``.
    """
    bot = await get_bot(db, bot_id)
    if bot is None:
        return None

    new_status = fields.get("status")
    if new_status is not None and new_status != bot.status:
        fields.setdefault("status_changed_at", utcnow())

    for key, value in fields.items():
        if not hasattr(Bot, key):
            raise AttributeError(f"Bot has no column {key!r}")
        setattr(bot, key, value)
    await db.flush()
    return bot


async def list_bots_for_owner(db: AsyncSession, user_id: int) -> List[Bot]:
    """A user's bots, newest first, excluding terminated ones."""
    result = await db.execute(
        select(Bot)
        .where(and_(Bot.user_id == user_id, Bot.status != BotStatus.TERMINATED))
        .order_by(Bot.created_at.desc())
    )
    return list(result.scalars().all())


async def list_bots_by_status(
    db: AsyncSession,
    statuses: Iterable[BotStatus],
    user_id: Optional[int] = None,
    with_instance: bool = False,
) -> List[Bot]:
    """Bots in any of the given statuses."""
    query = select(Bot).where(Bot.status.in_(list(statuses)))
    if user_id is not None:
        query = query.where(Bot.user_id == user_id)
    if with_instance:
        query = query.where(Bot.phala_cvm_id.is_not(None))
    result = await db.execute(query)
    return list(result.scalars().all())


# Usage CRUD
async def get_usage_record(
    db: AsyncSession, bot_id: str, period_start: datetime
) -> Optional[UsageRecord]:
    """Get the usage record for a bot's metering window."""
    result = await db.execute(
        select(UsageRecord).where(
            and_(UsageRecord.bot_id == bot_id, UsageRecord.period_start == period_start)
        )
    )
    return result.scalar_one_or_none()


async def create_usage_record(
    db: AsyncSession,
    bot_id: str,
    period_start: datetime,
    period_end: datetime,
    hours: float,
    cost_usd: float,
    instance_size: str,
) -> Optional[UsageRecord]:
    """
    Append a usage record.

    Returns None when the window was already metered for this bot.
    """
    if await get_usage_record(db, bot_id, period_start) is not None:
        return None

    record = UsageRecord(
        bot_id=bot_id,
        period_start=period_start,
        period_end=period_end,
        hours=hours,
        cost_usd=cost_usd,
        instance_size=instance_size,
    )
    db.add(record)
    await db.flush()
    return record


async def get_usage_records_for_bot(db: AsyncSession, bot_id: str) -> List[UsageRecord]:
    """All usage records for a bot, oldest first."""
    result = await db.execute(
        select(UsageRecord)
        .where(UsageRecord.bot_id == bot_id)
        .order_by(UsageRecord.period_start)
    )
    return list(result.scalars().all())


async def get_user_usage_since(
    db: AsyncSession, user_id: int, since: datetime
) -> Tuple[float, float]:
    """Total (hours, cost) metered for a user's bots since a point in time."""
    result = await db.execute(
        select(func.sum(UsageRecord.hours), func.sum(UsageRecord.cost_usd))
        .join(Bot, UsageRecord.bot_id == Bot.id)
        .where(and_(Bot.user_id == user_id, UsageRecord.period_start >= since))
    )
    hours, cost = result.one()
    return float(hours or 0.0), float(cost or 0.0)
