############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# bots.py: Bot lifecycle API endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Bot API endpoints."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from backend.app.api.auth import get_current_user
from backend.app.core.enclave.secrets import PendingSecrets
from backend.app.db.models import User
from backend.app.services.bots import MAX_LOG_TAIL, BotService

router = APIRouter()


def get_bot_service(request: Request) -> BotService:
    """The BotService built at startup."""
    return request.app.state.bot_service


# Request/Response models
class BotSecrets(BaseModel):
    """Secrets delivered into the bot's enclave. Never returned by the API."""
    telegram_token: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    personality: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    custom_env: Dict[str, str] = Field(default_factory=dict)

    def to_pending(self) -> PendingSecrets:
        return PendingSecrets(
            token=self.telegram_token,
            api_key=self.api_key,
            owner_id=self.owner_id,
            personality=self.personality,
            config=self.config,
            custom=dict(self.custom_env),
        )


class SpawnRequest(BaseModel):
    """Request to spawn a new bot."""
    name: str
    model: Optional[str] = None
    size: Optional[str] = None
    secrets: BotSecrets


class RestartRequest(BaseModel):
    """Optional secrets for redeploying a bot that has no instance."""
    secrets: Optional[BotSecrets] = None


class BotResponse(BaseModel):
    """Bot information response."""
    id: str
    name: str
    status: str
    model: str
    instance_size: str
    cvm_endpoint: Optional[str] = None
    tee_pubkey: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None

    @classmethod
    def from_bot(cls, bot) -> "BotResponse":
        return cls(
            id=bot.id,
            name=bot.name,
            status=bot.status.value,
            model=bot.model,
            instance_size=bot.instance_size,
            cvm_endpoint=bot.cvm_endpoint,
            tee_pubkey=bot.tee_pubkey,
            error_detail=bot.error_detail,
            created_at=bot.created_at,
            updated_at=bot.updated_at,
            terminated_at=bot.terminated_at,
        )


@router.get("", response_model=List[BotResponse])
async def list_bots(
    user: User = Depends(get_current_user),
    service: BotService = Depends(get_bot_service),
):
    """List the caller's bots, excluding terminated ones."""
    bots = await service.list_bots(user)
    return [BotResponse.from_bot(bot) for bot in bots]


@router.post("/spawn")
async def spawn_bot(
    body: SpawnRequest,
    user: User = Depends(get_current_user),
    service: BotService = Depends(get_bot_service),
) -> Dict[str, Any]:
    """
    Spawn a bot.

    With billing enabled the response carries a checkout_url and the bot
    waits in pending_payment until the checkout completes.
    """
    outcome = await service.spawn(
        user,
        name=body.name,
        secrets=body.secrets.to_pending(),
        model=body.model,
        size=body.size,
    )
    return outcome.to_dict()


@router.get("/{bot_id}/status", response_model=BotResponse)
async def bot_status(
    bot_id: str,
    user: User = Depends(get_current_user),
    service: BotService = Depends(get_bot_service),
):
    """Live bot status, reconciled against the provider."""
    bot = await service.get_status(user, bot_id)
    return BotResponse.from_bot(bot)


@router.post("/{bot_id}/restart", response_model=BotResponse)
async def restart_bot(
    bot_id: str,
    body: Optional[RestartRequest] = None,
    user: User = Depends(get_current_user),
    service: BotService = Depends(get_bot_service),
):
    """Restart a bot, redeploying it if it has no instance."""
    secrets = body.secrets.to_pending() if body and body.secrets else None
    bot = await service.restart(user, bot_id, secrets=secrets)
    return BotResponse.from_bot(bot)


@router.delete("/{bot_id}", response_model=BotResponse)
async def terminate_bot(
    bot_id: str,
    user: User = Depends(get_current_user),
    service: BotService = Depends(get_bot_service),
):
    """Terminate a bot and delete its CVM."""
    bot = await service.terminate(user, bot_id)
    return BotResponse.from_bot(bot)


@router.get("/{bot_id}/attestation")
async def bot_attestation(
    bot_id: str,
    user: User = Depends(get_current_user),
    service: BotService = Depends(get_bot_service),
) -> Dict[str, Any]:
    """Attestation details for independent verification."""
    return await service.attestation(user, bot_id)


@router.get("/{bot_id}/logs")
async def bot_logs(
    bot_id: str,
    tail: int = Query(100, ge=1, le=MAX_LOG_TAIL),
    user: User = Depends(get_current_user),
    service: BotService = Depends(get_bot_service),
) -> Dict[str, Any]:
    """Recent container logs, with credential-looking lines removed."""
    lines = await service.logs(user, bot_id, tail=tail)
    return {"logs": "\n".join(lines), "line_count": len(lines)}
