############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# __init__.py: Services package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Services for Clawster."""

from backend.app.services.billing import BillingEventHandler, StripeBillingGateway
from backend.app.services.bots import BotService, SpawnOutcome
from backend.app.services.deployment import DeploymentOrchestrator, DeployResult
from backend.app.services.meter import UsageMeter
from backend.app.services.reconciler import LivenessProbe, StatusReconciler
from backend.app.services.termination import TerminationCoordinator

__all__ = [
    "BillingEventHandler",
    "BotService",
    "DeployResult",
    "DeploymentOrchestrator",
    "LivenessProbe",
    "SpawnOutcome",
    "StatusReconciler",
    "StripeBillingGateway",
    "TerminationCoordinator",
    "UsageMeter",
]
