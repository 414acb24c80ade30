"""Container instance data model.

Status is a projection of the last observed cluster state. It may lag
reality and is only mutated by reconciliation and explicit stop/start/delete.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from berth.utils.datetime import utcnow


class InstanceStatus:
    """Known instance statuses.

    Any other value is a platform pod phase passed through verbatim
    (Pending, Failed, Succeeded, Unknown).
    """

    CREATING = "Creating"
    RUNNING = "Running"
    STOPPED = "Stopped"
    DELETED = "Deleted"

    TERMINAL = frozenset({STOPPED, DELETED})


class ContainerInstance(SQLModel, table=True):
    """One sandboxed workload in an owner's namespace."""

    __tablename__ = "container_instances"

    id: str = Field(primary_key=True)
    name: str = Field(index=True)

    # Pod name in the cluster. Re-pointed once when a companion SSH pod
    # is provisioned for a workload without port 22.
    workload_ref: str = Field(unique=True, index=True)
    namespace: str = Field(index=True)

    status: str = Field(default=InstanceStatus.CREATING, index=True)

    owner_id: str = Field(index=True)
    owner_handle: str

    template_id: str
    image: str
    ssh_enabled: bool = Field(default=True)

    # NodePort of the instance service
    ssh_port: Optional[int] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    last_observed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in InstanceStatus.TERMINAL
