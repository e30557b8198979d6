############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# __init__.py: API endpoints package and router configuration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""API endpoints for Clawster."""

from fastapi import APIRouter

from backend.app.api.billing import router as billing_router
from backend.app.api.bots import router as bots_router
from backend.app.api.health import router as health_router

# Create main API router
api_router = APIRouter()

# Include all sub-routers
api_router.include_router(health_router)
api_router.include_router(bots_router, prefix="/bots", tags=["bots"])
api_router.include_router(billing_router, prefix="/billing", tags=["billing"])

__all__ = ["api_router"]
