############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# bots.py: Bot operations exposed to the API layer
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Bot service - the operations a user can perform on their bots."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from backend.app.core.enclave.secrets import (
    PendingSecrets,
    validate_bot_name,
    validate_custom_keys,
)
from backend.app.core.errors import (
    BillingError,
    Conflict,
    NotFoundError,
    PaymentRequired,
    ValidationError,
)
from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.client import PhalaClient
from backend.app.core.provisioning.sizes import DEFAULT_SIZE, get_size
from backend.app.db import crud
from backend.app.db.models import Bot, BotStatus, User
from backend.app.db.session import SessionFactory, session_scope
from backend.app.logging_config import get_logger
from backend.app.services.billing import StripeBillingGateway
from backend.app.services.deployment import DeploymentOrchestrator
from backend.app.services.reconciler import StatusReconciler
from backend.app.services.termination import TerminationCoordinator

logger = get_logger(__name__)

MAX_LOG_TAIL = 500

# Log lines containing any of these are withheld from users
SECRET_LOG_MARKERS = ("api_key=", "bot_token=", "token=", "sk-ant-", "sk-")

TRUST_CENTER_URL = "https://trust.phala.com/verify/{app_id}"


@dataclass
class SpawnOutcome:
    """Result of a spawn request."""

    bot_id: str
    name: str
    status: BotStatus
    checkout_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "bot_id": self.bot_id,
            "name": self.name,
            "status": self.status.value,
        }
        if self.checkout_url:
            data["checkout_url"] = self.checkout_url
        if self.error:
            data["error"] = self.error
        return data


def filter_log_lines(logs: str) -> List[str]:
    """Drop log lines that look like they carry credentials."""
    lines = []
    for line in logs.splitlines():
        lower = line.lower()
        if any(marker in lower for marker in SECRET_LOG_MARKERS):
            continue
        lines.append(line)
    return lines


class BotService:
    """
    Entry point for bot operations.

    Owns no state of its own: the session factory, provider client, and
    lifecycle components are injected at startup.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        client: PhalaClient,
        locks: KeyedLockManager,
        deployer: DeploymentOrchestrator,
        reconciler: StatusReconciler,
        terminator: TerminationCoordinator,
        billing: Optional[StripeBillingGateway] = None,
        default_model: str = "anthropic/claude-sonnet-4-20250514",
        bot_image: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.locks = locks
        self.deployer = deployer
        self.reconciler = reconciler
        self.terminator = terminator
        self.billing = billing
        self.default_model = default_model
        self.bot_image = bot_image

    async def _owned_bot(self, user: User, bot_id: str) -> Bot:
        async with session_scope(self.session_factory) as db:
            bot = await crud.get_bot_for_owner(db, bot_id, user.id)
        if bot is None:
            raise NotFoundError("Bot not found")
        return bot

    # ── Spawn ──

    async def spawn(
        self,
        user: User,
        name: str,
        secrets: PendingSecrets,
        model: Optional[str] = None,
        size: Optional[str] = None,
    ) -> SpawnOutcome:
        """
        Create a bot and either deploy it or gate it on payment.

        Raises:
            ValidationError: Bad name, size, custom keys, or missing secrets
            Conflict: The user already has a live bot with this name
        """
        validate_bot_name(name)
        tier = get_size(size or DEFAULT_SIZE)
        secrets.custom = validate_custom_keys(secrets.custom)
        missing = secrets.missing_required()
        if missing:
            raise ValidationError(f"Missing required secrets: {', '.join(missing)}")
        model = model or self.default_model
        billed = self.billing is not None

        try:
            async with session_scope(self.session_factory) as db:
                # Terminated bots keep their rows (and usage) but not their names
                existing = await crud.get_live_bot_by_owner_and_name(db, user.id, name)
                if existing is not None:
                    raise Conflict("Bot name already in use")

                bot = await crud.create_bot(
                    db,
                    user_id=user.id,
                    name=name,
                    model=model,
                    instance_size=tier.name,
                    status=BotStatus.PENDING_PAYMENT if billed else BotStatus.PROVISIONING,
                    pending={
                        "pending_telegram_token": secrets.token,
                        "pending_api_key": secrets.api_key,
                        "pending_owner_id": str(secrets.owner_id),
                        "pending_soul": secrets.personality,
                        "pending_config": secrets.config,
                        "pending_custom_env": secrets.custom or None,
                    },
                )
                bot_id = bot.id
        except IntegrityError:
            # Lost a race with a concurrent spawn of the same name
            raise Conflict("Bot name already in use")

        logger.info("bot_spawn_requested", bot_id=bot_id, name=name, size=tier.name, billed=billed)

        if billed:
            return await self._start_checkout(user, bot_id, name, tier.name)

        result = await self.deployer.deploy(bot_id)
        return SpawnOutcome(bot_id=bot_id, name=name, status=result.status, error=result.error)

    async def _start_checkout(self, user: User, bot_id: str, name: str, size: str) -> SpawnOutcome:
        try:
            customer_id = await self.billing.ensure_customer(user)
            if customer_id != user.stripe_customer_id:
                async with session_scope(self.session_factory) as db:
                    await crud.set_user_stripe_customer(db, user.id, customer_id)
                user.stripe_customer_id = customer_id
            checkout_url = await self.billing.create_bot_checkout(customer_id, bot_id, size)
        except BillingError as e:
            # No payment can arrive for this bot; drop the staged secrets
            async with session_scope(self.session_factory) as db:
                await crud.update_bot_fields(
                    db,
                    bot_id,
                    status=BotStatus.ERROR,
                    error_detail=f"Checkout failed: {e.message}",
                    **crud.CLEARED_SECRETS,
                )
            raise

        return SpawnOutcome(
            bot_id=bot_id,
            name=name,
            status=BotStatus.PENDING_PAYMENT,
            checkout_url=checkout_url,
        )

    # ── Lifecycle ──

    async def get_status(self, user: User, bot_id: str) -> Bot:
        """Current bot record, reconciled against the provider."""
        await self._owned_bot(user, bot_id)
        bot = await self.reconciler.reconcile(bot_id)
        if bot is None:
            raise NotFoundError("Bot not found")
        return bot

    async def restart(
        self, user: User, bot_id: str, secrets: Optional[PendingSecrets] = None
    ) -> Bot:
        """
        Restart a bot.

        Bots with an instance are restarted at the provider. Bots without
        one (a failed deploy) are deployed again, which needs the secrets
        re-supplied since they are erased when a deploy fails.
        """
        bot = await self._owned_bot(user, bot_id)
        if bot.status in (BotStatus.TERMINATED, BotStatus.TERMINATING):
            raise ValidationError(f"Bot is {bot.status.value}")
        if bot.status == BotStatus.PENDING_PAYMENT:
            raise PaymentRequired("Bot is awaiting payment")

        if not bot.phala_cvm_id:
            if secrets is None and not bot.has_pending_secrets:
                raise ValidationError("Bot has no instance; secrets are required to redeploy")
            if secrets is not None:
                secrets.custom = validate_custom_keys(secrets.custom)
            result = await self.deployer.deploy(bot_id, secrets=secrets)
            logger.info("bot_redeployed", bot_id=bot_id, ok=result.ok)
            return await self._owned_bot(user, bot_id)

        async with self.locks.lock(bot_id):
            await self.client.restart(bot.phala_cvm_id)
            async with session_scope(self.session_factory) as db:
                bot = await crud.update_bot_fields(db, bot_id, status=BotStatus.PROVISIONING)
        logger.info("bot_restarted", bot_id=bot_id)
        return bot

    async def terminate(self, user: User, bot_id: str) -> Bot:
        """Terminate a bot. TerminationFailed propagates to the caller."""
        await self._owned_bot(user, bot_id)
        return await self.terminator.terminate(bot_id)

    async def list_bots(self, user: User) -> List[Bot]:
        """A user's non-terminated bots."""
        async with session_scope(self.session_factory) as db:
            return await crud.list_bots_for_owner(db, user.id)

    # ── Observability ──

    async def attestation(self, user: User, bot_id: str) -> Dict[str, Any]:
        """How to verify that a bot runs unmodified code in a genuine TEE."""
        bot = await self._owned_bot(user, bot_id)
        report: Dict[str, Any] = {
            "bot_id": bot.id,
            "bot_name": bot.name,
            "tee_platform": "Intel TDX (via Phala Network / dstack)",
            "encryption": {
                "algorithm": "x25519 + AES-256-GCM",
                "tee_pubkey": bot.tee_pubkey,
                "description": "Secrets are encrypted to the enclave's public key before leaving the platform.",
            },
            "phala": {
                "app_id": bot.phala_app_id,
                "cvm_id": bot.phala_cvm_id,
                "cvm_endpoint": bot.cvm_endpoint,
            },
            "verification": {
                "trust_center": TRUST_CENTER_URL.format(app_id=bot.phala_app_id) if bot.phala_app_id else None,
                "docker_image": self.bot_image,
            },
        }
        if bot.phala_cvm_id and bot.status == BotStatus.RUNNING:
            quote = await self.client.get_attestation(bot.phala_cvm_id)
            if quote:
                report["tee_quote"] = quote
        return report

    async def logs(self, user: User, bot_id: str, tail: int = 100) -> List[str]:
        """Recent container log lines with credential-looking lines removed."""
        bot = await self._owned_bot(user, bot_id)
        if not bot.phala_cvm_id:
            raise ValidationError("Bot has no instance")
        tail = max(1, min(tail, MAX_LOG_TAIL))
        raw = await self.client.get_logs(bot.phala_cvm_id, tail=tail)
        return filter_log_lines(raw)
