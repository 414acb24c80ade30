"""FastAPI dependencies for Berth API.

Provides dependency injection for:
- Database sessions
- The cluster driver
- Managers (Namespace, Instance, Access)
- Principal authentication
"""

from __future__ import annotations

import hmac
from typing import Annotated

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from berth.auth import Principal, Role
from berth.config import get_settings
from berth.db.session import get_session_dependency
from berth.drivers.base import ClusterDriver
from berth.errors import InfrastructureTransientError, UnauthorizedError
from berth.managers.access import AccessBroker
from berth.managers.instance import InstanceManager
from berth.managers.namespace import NamespaceProvisioner

logger = structlog.get_logger()

ANONYMOUS_OWNER = "default"


def get_driver(request: Request) -> ClusterDriver:
    """The driver created in the application lifespan."""
    driver = getattr(request.app.state, "driver", None)
    if driver is None:
        raise InfrastructureTransientError("Cluster driver is not initialized")
    return driver


DriverDep = Annotated[ClusterDriver, Depends(get_driver)]
SessionDep = Annotated[AsyncSession, Depends(get_session_dependency)]


async def get_namespace_provisioner(
    driver: DriverDep,
    session: SessionDep,
) -> NamespaceProvisioner:
    return NamespaceProvisioner(driver=driver, db_session=session)


async def get_instance_manager(
    driver: DriverDep,
    session: SessionDep,
) -> InstanceManager:
    return InstanceManager(driver=driver, db_session=session)


async def get_access_broker(
    driver: DriverDep,
    session: SessionDep,
) -> AccessBroker:
    return AccessBroker(driver=driver, db_session=session)


def authenticate(request: Request) -> Principal:
    """Build the caller's Principal from the fronting auth layer's headers.

    Authentication flow:
    1. If security.api_key is set, require ``Authorization: Bearer <api_key>``
    2. If X-Owner-Id is present, use X-Owner-Id / X-Owner-Handle / X-Role
    3. Otherwise, in anonymous mode, use the default student principal
    4. Otherwise → 401 Unauthorized

    Raises:
        UnauthorizedError: If authentication fails
        ValidationError: If X-Role names an unknown role
    """
    settings = get_settings()
    security = settings.security

    if security.api_key:
        auth_header = request.headers.get("Authorization") or ""
        if not auth_header.startswith("Bearer "):
            raise UnauthorizedError("Authentication required")
        token = auth_header[7:]
        if not hmac.compare_digest(token.encode(), security.api_key.encode()):
            logger.warning("auth.invalid_api_key")
            raise UnauthorizedError("Invalid API key")

    owner_id = request.headers.get("X-Owner-Id")
    if owner_id:
        handle = request.headers.get("X-Owner-Handle") or owner_id
        role_claim = request.headers.get("X-Role")
        role = Role.parse(role_claim) if role_claim else Role.STUDENT
        logger.debug("auth.success", source="headers", owner_id=owner_id, role=role.value)
        return Principal(owner_id=owner_id, handle=handle, role=role)

    if security.allow_anonymous:
        logger.debug("auth.success", source="anonymous")
        return Principal(owner_id=ANONYMOUS_OWNER, handle=ANONYMOUS_OWNER, role=Role.STUDENT)

    raise UnauthorizedError("Authentication required")


# Type aliases for cleaner dependency injection
NamespaceProvisionerDep = Annotated[NamespaceProvisioner, Depends(get_namespace_provisioner)]
InstanceManagerDep = Annotated[InstanceManager, Depends(get_instance_manager)]
AccessBrokerDep = Annotated[AccessBroker, Depends(get_access_broker)]
AuthDep = Annotated[Principal, Depends(authenticate)]
