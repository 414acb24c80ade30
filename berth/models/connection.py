"""SSH connection (grant) data model.

Lifecycle: ``Active --[expiry | revoke]--> Expired | Inactive``. Both
outcomes are terminal; a new grant is issued instead of reviving one.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from berth.utils.datetime import utcnow


class ConnectionStatus(str, Enum):
    """Grant status."""

    ACTIVE = "Active"
    INACTIVE = "Inactive"  # Revoked
    EXPIRED = "Expired"


class SshConnection(SQLModel, table=True):
    """Time-bounded SSH credential bound to one (owner, instance) pair."""

    __tablename__ = "ssh_connections"

    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    instance_id: str = Field(index=True)

    login: str = Field(index=True)
    secret: str
    port: int

    # Where the exposing service lives
    namespace: str
    service_name: str

    status: ConnectionStatus = Field(default=ConnectionStatus.ACTIVE, index=True)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime)
    last_accessed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    def is_expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at
