"""Tenant namespace bookkeeping model.

The row mirrors what Berth provisioned for one owner. It is never used to
decide whether the namespace exists; that is always a direct cluster lookup.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from berth.utils.datetime import utcnow


class NamespaceState(str, Enum):
    """Provisioning state of a tenant namespace."""

    ABSENT = "absent"
    PROVISIONING = "provisioning"
    READY = "ready"
    DELETING = "deleting"


class TenantNamespace(SQLModel, table=True):
    """One owner's isolation boundary."""

    __tablename__ = "tenant_namespaces"

    name: str = Field(primary_key=True)
    owner_id: str = Field(unique=True, index=True)
    owner_handle: str

    labels: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, default=dict),
    )

    state: NamespaceState = Field(default=NamespaceState.PROVISIONING)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
