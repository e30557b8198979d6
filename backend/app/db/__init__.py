############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# __init__.py: Database package initialization and exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database package for Clawster."""

from backend.app.db.base import Base
from backend.app.db.session import (
    create_schema,
    create_session_factory,
    get_async_db,
    session_scope,
)

__all__ = [
    "Base",
    "create_schema",
    "create_session_factory",
    "get_async_db",
    "session_scope",
]
