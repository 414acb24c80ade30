"""Principal and role-based authorization."""

from berth.auth.roles import (
    CAPABILITIES,
    ELEVATED_ROLES,
    Operation,
    Owner,
    Principal,
    Role,
    allows,
    can_access,
    require,
    require_access,
)

__all__ = [
    "CAPABILITIES",
    "ELEVATED_ROLES",
    "Operation",
    "Owner",
    "Principal",
    "Role",
    "allows",
    "can_access",
    "require",
    "require_access",
]
