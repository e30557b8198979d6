############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# __init__.py: Enclave secret handling package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Enclave secret assembly and envelope encryption."""

from backend.app.core.enclave.encryption import decrypt_env_vars, encrypt_env_vars
from backend.app.core.enclave.secrets import (
    RESERVED_KEYS,
    PendingSecrets,
    build_env_vars,
    validate_bot_name,
)

__all__ = [
    "RESERVED_KEYS",
    "PendingSecrets",
    "build_env_vars",
    "decrypt_env_vars",
    "encrypt_env_vars",
    "validate_bot_name",
]
