############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# models.py: SQLAlchemy ORM models for all database entities
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""SQLAlchemy database models for Clawster."""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.enclave.secrets import PendingSecrets
from backend.app.db.base import Base, TimestampMixin, utcnow

# Use enum values (lowercase) for database storage, not enum names (uppercase)
_enum_values = lambda obj: [e.value for e in obj]


def generate_bot_id() -> str:
    """Opaque 16-char bot identifier."""
    return uuid.uuid4().hex[:16]


# Enums
class BotStatus(str, PyEnum):
    """Bot lifecycle status."""
    PENDING_PAYMENT = "pending_payment"
    PROVISIONING = "provisioning"
    STARTING = "starting"
    BOOTING = "booting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


# Statuses during which plaintext secrets may be staged on the record
SECRET_STAGING_STATUSES = frozenset({BotStatus.PENDING_PAYMENT, BotStatus.PROVISIONING})

# Statuses the reconciler folds remote state into
RECONCILABLE_STATUSES = frozenset({
    BotStatus.PROVISIONING,
    BotStatus.STARTING,
    BotStatus.BOOTING,
    BotStatus.RUNNING,
})

# Pre-run statuses; remote "running" from these requires a liveness probe
PRE_RUN_STATUSES = frozenset({BotStatus.PROVISIONING, BotStatus.STARTING, BotStatus.BOOTING})


class User(Base, TimestampMixin):
    """Platform user. Identity is established by the auth service."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Relationships
    bots: Mapped[List["Bot"]] = relationship("Bot", back_populates="user")


class Bot(Base, TimestampMixin):
    """A bot workload and its confidential VM."""

    __tablename__ = "bots"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_bot_id)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(24), nullable=False)

    # Configuration
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    instance_size: Mapped[str] = mapped_column(String(16), nullable=False, default="small")

    status: Mapped[BotStatus] = mapped_column(
        Enum(BotStatus, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=BotStatus.PROVISIONING,
    )
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, default=utcnow
    )
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Provider linkage
    phala_app_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    phala_cvm_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    tee_pubkey: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    cvm_endpoint: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Billing linkage
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Staged secrets: only while pending_payment/provisioning, cleared on delivery
    pending_telegram_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pending_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pending_owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pending_soul: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pending_config: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    pending_custom_env: Mapped[Optional[Dict[str, str]]] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )

    terminated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="bots")
    usage_records: Mapped[List["UsageRecord"]] = relationship("UsageRecord", back_populates="bot")

    __table_args__ = (
        # Names are unique per owner among live bots; terminated rows keep theirs
        Index(
            "uq_bots_user_live_name",
            "user_id",
            "name",
            unique=True,
            sqlite_where=text("status != 'terminated'"),
            postgresql_where=text("status != 'terminated'"),
        ),
        Index("ix_bots_status", "status"),
        Index("ix_bots_user_status", "user_id", "status"),
    )

    @property
    def has_pending_secrets(self) -> bool:
        return any(
            value is not None
            for value in (
                self.pending_telegram_token,
                self.pending_api_key,
                self.pending_owner_id,
                self.pending_soul,
                self.pending_config,
                self.pending_custom_env,
            )
        )

    def pending_secrets(self) -> PendingSecrets:
        """Staged secrets as a PendingSecrets value."""
        return PendingSecrets(
            token=self.pending_telegram_token,
            api_key=self.pending_api_key,
            owner_id=self.pending_owner_id,
            personality=self.pending_soul,
            config=self.pending_config,
            custom=dict(self.pending_custom_env or {}),
        )


class UsageRecord(Base):
    """Immutable bot-hour metering record."""

    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bot_id: Mapped[str] = mapped_column(String(32), ForeignKey("bots.id"), nullable=False, index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hours: Mapped[float] = mapped_column(Float, nullable=False)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False)
    instance_size: Mapped[str] = mapped_column(String(16), nullable=False)
    stripe_usage_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationships
    bot: Mapped["Bot"] = relationship("Bot", back_populates="usage_records")

    __table_args__ = (
        # One record per bot per metering window, even if the meter double-fires
        UniqueConstraint("bot_id", "period_start", name="uq_usage_bot_period"),
    )
