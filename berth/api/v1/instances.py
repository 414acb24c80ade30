"""Container instance API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel

from berth.api.dependencies import AuthDep, InstanceManagerDep
from berth.auth import Owner
from berth.models.instance import ContainerInstance

router = APIRouter()


# Request/Response Models


class CreateInstanceRequest(BaseModel):
    """Request to create an instance.

    owner_id/owner_handle create on behalf of another owner (elevated roles).
    """

    template_id: str
    owner_id: str | None = None
    owner_handle: str | None = None


class InstanceResponse(BaseModel):
    """Instance response model."""

    id: str
    name: str
    namespace: str
    workload_ref: str
    status: str
    owner_id: str
    owner_handle: str
    template_id: str
    image: str
    ssh_enabled: bool
    ssh_port: int | None
    created_at: datetime
    last_observed_at: datetime | None


class InstanceListResponse(BaseModel):
    items: list[InstanceResponse]


class InstanceLogsResponse(BaseModel):
    instance_id: str
    logs: str


def _instance_to_response(instance: ContainerInstance) -> InstanceResponse:
    return InstanceResponse(
        id=instance.id,
        name=instance.name,
        namespace=instance.namespace,
        workload_ref=instance.workload_ref,
        status=instance.status,
        owner_id=instance.owner_id,
        owner_handle=instance.owner_handle,
        template_id=instance.template_id,
        image=instance.image,
        ssh_enabled=instance.ssh_enabled,
        ssh_port=instance.ssh_port,
        created_at=instance.created_at,
        last_observed_at=instance.last_observed_at,
    )


# Endpoints


@router.post("", response_model=InstanceResponse, status_code=201)
async def create_instance(
    request: CreateInstanceRequest,
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
) -> InstanceResponse:
    """Create an instance, provisioning the owner's namespace on first use."""
    owner = None
    if request.owner_id:
        owner = Owner(id=request.owner_id, handle=request.owner_handle or request.owner_id)

    instance = await instance_mgr.create(principal, request.template_id, owner=owner)
    return _instance_to_response(instance)


@router.get("", response_model=InstanceListResponse)
async def list_instances(
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
    owner_id: str | None = Query(None),
    all_owners: bool = Query(False, alias="all"),
) -> InstanceListResponse:
    """List the caller's instances, another owner's, or (all=true) everyone's."""
    if all_owners:
        instances = await instance_mgr.list_all(principal)
    else:
        instances = await instance_mgr.list_for_owner(principal, owner_id)
    return InstanceListResponse(items=[_instance_to_response(i) for i in instances])


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: str,
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
) -> InstanceResponse:
    instance = await instance_mgr.get(instance_id, principal)
    return _instance_to_response(instance)


@router.post("/{instance_id}/refresh", response_model=InstanceResponse)
async def refresh_instance(
    instance_id: str,
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
) -> InstanceResponse:
    """Reconcile one instance against the cluster now."""
    instance = await instance_mgr.get(instance_id, principal)
    await instance_mgr.reconcile(instance)
    return _instance_to_response(instance)


@router.post("/{instance_id}/stop", response_model=InstanceResponse)
async def stop_instance(
    instance_id: str,
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
) -> InstanceResponse:
    instance = await instance_mgr.stop(instance_id, principal)
    return _instance_to_response(instance)


@router.post("/{instance_id}/start", response_model=InstanceResponse)
async def start_instance(
    instance_id: str,
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
) -> InstanceResponse:
    instance = await instance_mgr.start(instance_id, principal)
    return _instance_to_response(instance)


@router.delete("/{instance_id}", status_code=204)
async def delete_instance(
    instance_id: str,
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
) -> Response:
    await instance_mgr.delete(instance_id, principal)
    return Response(status_code=204)


@router.get("/{instance_id}/logs", response_model=InstanceLogsResponse)
async def get_instance_logs(
    instance_id: str,
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
    tail: int = Query(100, ge=1, le=10000),
) -> InstanceLogsResponse:
    logs = await instance_mgr.get_logs(instance_id, principal, tail=tail)
    return InstanceLogsResponse(instance_id=instance_id, logs=logs)
