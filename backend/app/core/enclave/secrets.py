############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# secrets.py: Secret staging, reserved keys, and env assembly
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Assembly of the enclave environment from staged secrets."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from backend.app.core.errors import ValidationError
from backend.app.logging_config import get_logger

logger = get_logger(__name__)

BOT_NAME_PATTERN = re.compile(r"^[a-z0-9-]{2,24}$")
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

TOKEN_KEY = "TELEGRAM_BOT_TOKEN"
OWNER_ID_KEY = "TELEGRAM_OWNER_ID"
MODEL_KEY = "DEFAULT_MODEL"
PERSONALITY_KEY = "SOUL_MD"
CONFIG_KEY = "OPENCLAW_CONFIG"
GATEWAY_KEY = "OPENCLAW_GATEWAY_TOKEN"
NODE_OPTIONS_KEY = "NODE_OPTIONS"

# Model provider prefix -> env var the runtime reads its API key from
API_KEY_BY_PROVIDER = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}
DEFAULT_API_KEY_NAME = "ANTHROPIC_API_KEY"

# Keys only the platform may set. User-supplied custom keys never shadow these.
RESERVED_KEYS = frozenset({
    TOKEN_KEY,
    OWNER_ID_KEY,
    MODEL_KEY,
    PERSONALITY_KEY,
    CONFIG_KEY,
    GATEWAY_KEY,
    NODE_OPTIONS_KEY,
    "BOT_NAME",
    *API_KEY_BY_PROVIDER.values(),
})


@dataclass
class PendingSecrets:
    """Plaintext secrets staged on a bot until delivered into the enclave."""

    token: Optional[str] = None
    api_key: Optional[str] = None
    owner_id: Optional[str] = None
    personality: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    custom: Dict[str, str] = field(default_factory=dict)

    def missing_required(self) -> List[str]:
        """Names of required secrets that are absent or blank."""
        missing = []
        for name in ("token", "api_key", "owner_id"):
            value = getattr(self, name)
            if value is None or not str(value).strip():
                missing.append(name)
        return missing


def validate_bot_name(name: Optional[str]) -> str:
    """Bot names: 2-24 chars, lowercase alphanumeric and hyphens."""
    if not name or not BOT_NAME_PATTERN.match(name):
        raise ValidationError(
            "Bot name must be 2-24 chars, lowercase alphanumeric + hyphens"
        )
    return name


def api_key_name_for_model(model: str) -> str:
    """Pick the API key env var from the model's provider prefix."""
    provider = model.split("/", 1)[0].lower() if "/" in model else ""
    return API_KEY_BY_PROVIDER.get(provider, DEFAULT_API_KEY_NAME)


def validate_custom_keys(custom: Optional[Dict[str, str]]) -> Dict[str, str]:
    """
    Validate user-supplied custom env vars.

    Raises:
        ValidationError: On a reserved or malformed key
    """
    if not custom:
        return {}

    reserved = sorted(k for k in custom if k.upper() in RESERVED_KEYS)
    if reserved:
        raise ValidationError(
            f"Custom secret keys may not use reserved names: {', '.join(reserved)}"
        )

    malformed = sorted(k for k in custom if not ENV_KEY_PATTERN.match(k))
    if malformed:
        raise ValidationError(
            f"Invalid custom secret key names: {', '.join(malformed)}"
        )

    return {str(k): str(v) for k, v in custom.items()}


def build_env_vars(
    model: Optional[str],
    secrets: PendingSecrets,
    node_options: Optional[str] = None,
) -> List[Tuple[str, str]]:
    """
    Build the ordered env var list delivered into the enclave.

    Required entries come first, then optional ones, then custom keys.
    Reserved names in the custom set are dropped here as well, so a
    record staged before validation can never override platform keys.

    Raises:
        ValidationError: If a required secret or the model is missing
    """
    missing = secrets.missing_required()
    if not model:
        missing.append("model")
    if missing:
        raise ValidationError(f"Missing required secrets: {', '.join(missing)}")

    env_vars: List[Tuple[str, str]] = [
        (TOKEN_KEY, secrets.token),
        (api_key_name_for_model(model), secrets.api_key),
        (OWNER_ID_KEY, str(secrets.owner_id)),
        (MODEL_KEY, model),
    ]
    if node_options:
        env_vars.append((NODE_OPTIONS_KEY, node_options))
    if secrets.personality:
        env_vars.append((PERSONALITY_KEY, secrets.personality))
    if secrets.config:
        env_vars.append((CONFIG_KEY, json.dumps(secrets.config, separators=(",", ":"))))

    for key, value in (secrets.custom or {}).items():
        if key.upper() in RESERVED_KEYS:
            logger.warning("reserved_custom_key_dropped", key=key)
            continue
        env_vars.append((key, str(value)))

    return env_vars
