"""Admin API endpoints.

Batch reconciliation, grant sweeps, cross-owner views and owner
deactivation. Every endpoint checks the caller's role in the manager.
"""

from __future__ import annotations

import time
from datetime import datetime

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel

from berth.api.dependencies import (
    AccessBrokerDep,
    AuthDep,
    InstanceManagerDep,
    NamespaceProvisionerDep,
)
from berth.api.v1.access import ConnectionListResponse, connection_to_response
from berth.auth import Operation, require
from berth.config import get_settings
from berth.models.tenant import NamespaceState
from berth.services.maintenance.lifecycle import get_maintenance_scheduler

# Prefix is applied by the parent v1 router.
router = APIRouter()


# ---- Request/Response Models ----


class ReconcileResponse(BaseModel):
    total: int
    updated: int
    errors: int


class SweepResponse(BaseModel):
    expired: int
    errors: int


class NamespaceResponse(BaseModel):
    name: str
    owner_id: str
    owner_handle: str
    state: str
    labels: dict[str, str]
    created_at: datetime
    updated_at: datetime


class NamespaceListResponse(BaseModel):
    items: list[NamespaceResponse]


class OwnerDeactivationResponse(BaseModel):
    owner_id: str
    revoked: int
    instances: int


class MaintenanceTaskResult(BaseModel):
    task_name: str
    processed_count: int
    updated_count: int
    errors: list[str]


class MaintenanceRunResponse(BaseModel):
    results: list[MaintenanceTaskResult]
    duration_ms: int


class MaintenanceStatusResponse(BaseModel):
    enabled: bool
    is_running: bool
    interval_seconds: int
    jitter_seconds: int
    tasks: dict[str, bool]


# ---- Endpoints ----


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_all(
    instance_mgr: InstanceManagerDep,
    principal: AuthDep,
) -> ReconcileResponse:
    """Reconcile every instance against the cluster now."""
    return ReconcileResponse(**await instance_mgr.reconcile_all(principal))


@router.post("/sweep", response_model=SweepResponse)
async def sweep_expired(
    broker: AccessBrokerDep,
    principal: AuthDep,
) -> SweepResponse:
    """Expire every grant past its expiry."""
    return SweepResponse(**await broker.sweep_expired(principal))


@router.get("/connections", response_model=ConnectionListResponse)
async def list_all_connections(
    broker: AccessBrokerDep,
    principal: AuthDep,
) -> ConnectionListResponse:
    grants = await broker.list_all(principal)
    return ConnectionListResponse(items=[connection_to_response(g) for g in grants])


@router.get("/namespaces", response_model=NamespaceListResponse)
async def list_namespaces(
    provisioner: NamespaceProvisionerDep,
    principal: AuthDep,
) -> NamespaceListResponse:
    require(principal, Operation.VIEW_ALL)
    rows = await provisioner.list()
    return NamespaceListResponse(
        items=[
            NamespaceResponse(
                name=row.name,
                owner_id=row.owner_id,
                owner_handle=row.owner_handle,
                state=NamespaceState(row.state).value,
                labels=row.labels or {},
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
            for row in rows
        ]
    )


@router.delete("/namespaces/{name}", status_code=204)
async def delete_namespace(
    name: str,
    provisioner: NamespaceProvisionerDep,
    principal: AuthDep,
) -> Response:
    await provisioner.delete(name, principal=principal)
    return Response(status_code=204)


@router.delete("/owners/{owner_id}", response_model=OwnerDeactivationResponse)
async def deactivate_owner(
    owner_id: str,
    provisioner: NamespaceProvisionerDep,
    principal: AuthDep,
) -> OwnerDeactivationResponse:
    """Revoke an owner's grants, drop their instances and delete their namespace."""
    counts = await provisioner.delete_for_owner(owner_id, principal=principal)
    return OwnerDeactivationResponse(owner_id=owner_id, **counts)


@router.post("/maintenance/run", response_model=MaintenanceRunResponse)
async def run_maintenance(principal: AuthDep) -> MaintenanceRunResponse:
    """Run one maintenance cycle synchronously.

    Works even when maintenance.enabled=false.

    **Status Codes**:
    - 200: cycle executed (even if some items had errors)
    - 423: a cycle is already running
    - 503: scheduler unavailable
    """
    require(principal, Operation.RECONCILE_ALL)
    scheduler = get_maintenance_scheduler()

    if scheduler is None:
        raise HTTPException(status_code=503, detail="Maintenance scheduler is not available")

    if scheduler.is_busy:
        raise HTTPException(status_code=423, detail="A maintenance cycle is already running")

    start = time.monotonic()
    results = await scheduler.run_once()
    duration_ms = int((time.monotonic() - start) * 1000)

    return MaintenanceRunResponse(
        results=[
            MaintenanceTaskResult(
                task_name=r.task_name,
                processed_count=r.processed_count,
                updated_count=r.updated_count,
                errors=r.errors,
            )
            for r in results
        ],
        duration_ms=duration_ms,
    )


@router.get("/maintenance/status", response_model=MaintenanceStatusResponse)
async def maintenance_status(principal: AuthDep) -> MaintenanceStatusResponse:
    require(principal, Operation.VIEW_ALL)
    config = get_settings().maintenance
    scheduler = get_maintenance_scheduler()

    return MaintenanceStatusResponse(
        enabled=config.enabled,
        is_running=scheduler.is_running if scheduler else False,
        interval_seconds=config.interval_seconds,
        jitter_seconds=config.jitter_seconds,
        tasks={
            "reconcile_instances": config.reconcile_instances.enabled,
            "expired_grants": config.expired_grants.enabled,
        },
    )
