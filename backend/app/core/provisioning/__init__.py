############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# __init__.py: CVM provisioning package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""CVM provisioning against Phala Cloud."""

from backend.app.core.provisioning.client import PhalaClient
from backend.app.core.provisioning.models import CvmInfo, ProvisionResult, SpawnResult
from backend.app.core.provisioning.retry import RetryPolicy
from backend.app.core.provisioning.sizes import SIZES, SizeTier, get_size

__all__ = [
    "PhalaClient",
    "CvmInfo",
    "ProvisionResult",
    "SpawnResult",
    "RetryPolicy",
    "SIZES",
    "SizeTier",
    "get_size",
]
