"""Roles, capabilities and the authorization predicate.

Authorization is decided at the manager boundary: every operation names
the ``Operation`` it needs and calls ``require()``. Ownership-scoped
operations additionally call ``can_access()``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from berth.errors import AccessDeniedError, ValidationError


class Role(str, Enum):
    """Closed set of principal roles."""

    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a role claim.

        Accepts ``teacher``, ``TEACHER``, ``ROLE_TEACHER``, ``super-admin``
        and ``SuperAdmin`` style spellings.
        """
        raw = value.strip()
        if raw.upper().startswith("ROLE_"):
            raw = raw[5:]
        normalized = raw.replace("-", "_").lower()
        if normalized == "superadmin":
            normalized = "super_admin"
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(f"Unknown role: {value}") from None


class Operation(str, Enum):
    """Operations subject to authorization."""

    CREATE_INSTANCE = "create_instance"
    VIEW_INSTANCE = "view_instance"
    MANAGE_INSTANCE = "manage_instance"
    ISSUE_ACCESS = "issue_access"
    REVOKE_ACCESS = "revoke_access"

    # Elevated
    VIEW_ALL = "view_all"
    CROSS_OWNER = "cross_owner"
    RECONCILE_ALL = "reconcile_all"
    SWEEP_ACCESS = "sweep_access"
    DELETE_NAMESPACE = "delete_namespace"
    DEACTIVATE_OWNER = "deactivate_owner"


_OWNER_OPERATIONS = frozenset(
    {
        Operation.CREATE_INSTANCE,
        Operation.VIEW_INSTANCE,
        Operation.MANAGE_INSTANCE,
        Operation.ISSUE_ACCESS,
        Operation.REVOKE_ACCESS,
    }
)

_ELEVATED_OPERATIONS = _OWNER_OPERATIONS | {
    Operation.VIEW_ALL,
    Operation.CROSS_OWNER,
    Operation.RECONCILE_ALL,
    Operation.SWEEP_ACCESS,
}

CAPABILITIES: dict[Role, frozenset[Operation]] = {
    Role.STUDENT: _OWNER_OPERATIONS,
    Role.TEACHER: _ELEVATED_OPERATIONS,
    Role.ADMIN: _ELEVATED_OPERATIONS | {Operation.DELETE_NAMESPACE, Operation.DEACTIVATE_OWNER},
    Role.SUPER_ADMIN: frozenset(Operation),
}

ELEVATED_ROLES = frozenset({Role.TEACHER, Role.ADMIN, Role.SUPER_ADMIN})


@dataclass(frozen=True, slots=True)
class Owner:
    """The user a namespace, instance or grant belongs to."""

    id: str
    handle: str


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller supplied by the fronting auth layer."""

    owner_id: str
    handle: str
    role: Role = Role.STUDENT

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    def as_owner(self) -> Owner:
        return Owner(id=self.owner_id, handle=self.handle)


def allows(principal: Principal, operation: Operation) -> bool:
    return operation in CAPABILITIES.get(principal.role, frozenset())


def require(principal: Principal, operation: Operation) -> None:
    """Raise AccessDeniedError unless the principal's role grants ``operation``."""
    if not allows(principal, operation):
        raise AccessDeniedError(
            f"Role '{principal.role.value}' may not perform '{operation.value}'",
            details={"operation": operation.value, "role": principal.role.value},
        )


def can_access(owner_id: str, principal: Principal) -> bool:
    """Owner of the resource, or an elevated role."""
    return principal.owner_id == owner_id or principal.is_elevated


def require_access(owner_id: str, principal: Principal, operation: Operation) -> None:
    """``require()`` plus the ownership predicate."""
    require(principal, operation)
    if not can_access(owner_id, principal):
        raise AccessDeniedError(
            "Resource belongs to another owner",
            details={"operation": operation.value},
        )
