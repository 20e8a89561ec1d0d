"""
Dependency Injection Configuration

FastAPI dependencies resolving the process-wide registry and scheduler
(created by the application lifespan) and the session addressed by a route.
"""
import logging
from typing import Annotated

from fastapi import Depends, Request

from iptv_catalog.services.scheduler_service import JobScheduler
from iptv_catalog.services.session_registry import Session, SessionRegistry


logger = logging.getLogger(__name__)


def get_registry(request: Request) -> SessionRegistry:
    """Session registry stored on the application state"""
    return request.app.state.registry


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


async def get_session(key: str, registry: Annotated[SessionRegistry, Depends(get_registry)]) -> Session:
    """
    Session for the `key` path parameter

    Unknown keys get a fresh session, so a restart reattaches to its files.
    """
    return await registry.resolve(key)


RegistryDep = Annotated[SessionRegistry, Depends(get_registry)]
SchedulerDep = Annotated[JobScheduler, Depends(get_scheduler)]
SessionDep = Annotated[Session, Depends(get_session)]
