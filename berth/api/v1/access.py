"""SSH access API endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from berth.api.dependencies import AccessBrokerDep, AuthDep
from berth.models.connection import SshConnection

router = APIRouter()


# Request/Response Models


class IssueAccessRequest(BaseModel):
    instance_id: str
    duration_hours: int | None = Field(default=None, description="Default from configuration")


class IssueAccessResponse(BaseModel):
    """Issued grant, including its secret."""

    connection_id: str
    login: str
    secret: str
    port: int
    expires_at: datetime
    instructions: dict[str, Any]


class ConnectionResponse(BaseModel):
    """Grant without its secret."""

    id: str
    instance_id: str
    owner_id: str
    login: str
    port: int
    status: str
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime | None


class ConnectionListResponse(BaseModel):
    items: list[ConnectionResponse]


class AuthenticateRequest(BaseModel):
    login: str
    secret: str


class AuthenticateResponse(BaseModel):
    authenticated: bool


def connection_to_response(grant: SshConnection) -> ConnectionResponse:
    return ConnectionResponse(
        id=grant.id,
        instance_id=grant.instance_id,
        owner_id=grant.owner_id,
        login=grant.login,
        port=grant.port,
        status=grant.status.value,
        created_at=grant.created_at,
        expires_at=grant.expires_at,
        last_accessed_at=grant.last_accessed_at,
    )


# Endpoints


@router.post("", response_model=IssueAccessResponse, status_code=201)
async def issue_access(
    request: IssueAccessRequest,
    broker: AccessBrokerDep,
    principal: AuthDep,
) -> IssueAccessResponse:
    """Issue an SSH grant, or return the caller's active grant for the instance."""
    grant = await broker.issue(principal, request.instance_id, request.duration_hours)
    return IssueAccessResponse(
        connection_id=grant.id,
        login=grant.login,
        secret=grant.secret,
        port=grant.port,
        expires_at=grant.expires_at,
        instructions=broker.instructions(grant),
    )


@router.get("", response_model=ConnectionListResponse)
async def list_access(
    broker: AccessBrokerDep,
    principal: AuthDep,
) -> ConnectionListResponse:
    grants = await broker.list_active(principal)
    return ConnectionListResponse(items=[connection_to_response(g) for g in grants])


@router.post("/authenticate", response_model=AuthenticateResponse)
async def authenticate_access(
    request: AuthenticateRequest,
    broker: AccessBrokerDep,
    _principal: AuthDep,
) -> AuthenticateResponse:
    """Credential check for the SSH server."""
    return AuthenticateResponse(
        authenticated=await broker.authenticate(request.login, request.secret)
    )


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_access(
    connection_id: str,
    broker: AccessBrokerDep,
    principal: AuthDep,
) -> ConnectionResponse:
    grant = await broker.get(connection_id, principal)
    return connection_to_response(grant)


@router.delete("/{connection_id}", response_model=ConnectionResponse)
async def revoke_access(
    connection_id: str,
    broker: AccessBrokerDep,
    principal: AuthDep,
) -> ConnectionResponse:
    grant = await broker.revoke(connection_id, principal)
    return connection_to_response(grant)
