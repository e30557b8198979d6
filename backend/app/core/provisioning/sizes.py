############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# sizes.py: Instance size tier catalog
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Instance size catalog (tier -> CVM resources and pricing)."""

from dataclasses import dataclass
from typing import Dict, List

from backend.app.core.errors import ValidationError


@dataclass(frozen=True)
class SizeTier:
    """Resources and pricing for one instance size."""

    name: str
    instance_type: str
    vcpu: int
    memory_mb: int
    disk_gb: int
    cost_per_hour: float  # what the provider charges us
    price_per_hour: float  # what the user is billed per bot-hour


SIZES: Dict[str, SizeTier] = {
    "small": SizeTier(
        name="small",
        instance_type="tdx.small",
        vcpu=1,
        memory_mb=2048,
        disk_gb=20,
        cost_per_hour=0.058,
        price_per_hour=0.12,
    ),
    "medium": SizeTier(
        name="medium",
        instance_type="tdx.medium",
        vcpu=2,
        memory_mb=4096,
        disk_gb=40,
        cost_per_hour=0.116,
        price_per_hour=0.24,
    ),
}

DEFAULT_SIZE = "small"

# Hours in a 30-day month, used for monthly estimates
HOURS_PER_MONTH = 720


def get_size(size: str) -> SizeTier:
    """Look up a size tier, raising on unknown names."""
    tier = SIZES.get((size or "").lower())
    if tier is None:
        raise ValidationError(
            f"Invalid size '{size}'. Valid sizes: {', '.join(SIZES)}"
        )
    return tier


def list_sizes() -> List[SizeTier]:
    """All size tiers in catalog order."""
    return list(SIZES.values())
