"""NamespaceProvisioner - manages the per-owner isolation boundary.

One namespace per owner, holding:
- a service account, a namespace-scoped role and its binding
- a resource quota
- a network policy admitting ingress only from the same namespace

Existence is always decided by a direct cluster lookup. The
``tenant_namespaces`` row is bookkeeping for listing and name collisions.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, or_, select

from berth.auth import Operation, Owner, Principal, require
from berth.config import get_settings
from berth.drivers.base import PolicyRule
from berth.errors import (
    AccessDeniedError,
    InfrastructureFatalError,
    InfrastructureTransientError,
    NotFoundError,
)
from berth.managers.steps import ProvisioningPlan, ProvisioningReport, Severity
from berth.models.connection import ConnectionStatus, SshConnection
from berth.models.instance import ContainerInstance
from berth.models.tenant import NamespaceState, TenantNamespace
from berth.utils.datetime import utcnow
from berth.utils.naming import namespace_name, sanitize_handle

if TYPE_CHECKING:
    from berth.drivers.base import ClusterDriver

logger = structlog.get_logger()

# Never deleted, whatever the configured prefix
PROTECTED_NAMESPACES = frozenset({"default", "kube-system", "kube-public", "kube-node-lease"})

NETWORK_POLICY_NAME = "student-isolation"

STUDENT_RULES: list[PolicyRule] = [
    PolicyRule(
        api_groups=("",),
        resources=("pods", "pods/log", "pods/status", "pods/exec", "pods/portforward"),
        verbs=("get", "list", "watch", "create", "update", "patch", "delete"),
    ),
    PolicyRule(
        api_groups=("",),
        resources=("services", "endpoints"),
        verbs=("get", "list", "watch", "create", "update", "patch", "delete"),
    ),
    PolicyRule(
        api_groups=("",),
        resources=("configmaps",),
        verbs=("get", "list", "watch", "create", "update", "patch", "delete"),
    ),
    PolicyRule(
        api_groups=("",),
        resources=("secrets",),
        verbs=("get", "list", "create", "update", "patch", "delete"),
    ),
    PolicyRule(
        api_groups=("",),
        resources=("persistentvolumeclaims",),
        verbs=("get", "list", "watch", "create", "update", "patch", "delete"),
    ),
    PolicyRule(
        api_groups=("apps",),
        resources=("deployments", "replicasets"),
        verbs=("get", "list", "watch", "create", "update", "patch", "delete"),
    ),
    PolicyRule(
        api_groups=("",),
        resources=("resourcequotas",),
        verbs=("get", "list"),
    ),
    PolicyRule(
        api_groups=("",),
        resources=("events",),
        verbs=("get", "list", "watch"),
    ),
]

_LABEL_VALUE_INVALID = re.compile(r"[^A-Za-z0-9_.-]")


def label_value(value: str) -> str:
    """Coerce an arbitrary string into a valid label value."""
    return _LABEL_VALUE_INVALID.sub("", value)[:63].strip("-_.")


class NamespaceProvisioner:
    """Creates and destroys tenant namespaces."""

    def __init__(
        self,
        driver: "ClusterDriver",
        db_session: AsyncSession,
    ) -> None:
        self._driver = driver
        self._db = db_session
        self._log = logger.bind(manager="namespace")
        self._settings = get_settings()
        self._cluster = self._settings.cluster

    def _label(self, key: str) -> str:
        return f"{self._cluster.label_prefix}.{key}"

    def owner_labels(self, owner: Owner) -> dict[str, str]:
        """Labels identifying the owner on every tenant object."""
        return {
            self._label("owner_id"): label_value(owner.id),
            self._label("owner_handle"): label_value(owner.handle),
        }

    def is_protected(self, name: str) -> bool:
        return name in PROTECTED_NAMESPACES or not name.startswith(
            self._cluster.namespace_prefix
        )

    async def _get_row_by_owner(self, owner_id: str) -> TenantNamespace | None:
        result = await self._db.execute(
            select(TenantNamespace).where(TenantNamespace.owner_id == owner_id)
        )
        return result.scalars().first()

    async def resolve_name(self, owner: Owner) -> str:
        """Namespace name for an owner.

        An owner keeps the name recorded for it. A fresh owner gets
        ``prefix + sanitize(handle)``, suffixed with its owner id when the
        handle sanitizes to nothing or the name is already recorded for
        another owner.
        """
        row = await self._get_row_by_owner(owner.id)
        if row is not None:
            return row.name

        prefix = self._cluster.namespace_prefix
        if not sanitize_handle(owner.handle):
            return namespace_name(prefix, owner.handle, owner.id)

        name = namespace_name(prefix, owner.handle)
        taken = await self._db.get(TenantNamespace, name)
        if taken is not None and taken.owner_id != owner.id:
            self._log.info(
                "namespace.name_collision",
                namespace=name,
                owner_id=owner.id,
                holder_owner_id=taken.owner_id,
            )
            return namespace_name(prefix, owner.handle, owner.id)
        return name

    async def _record(self, owner: Owner, name: str, state: NamespaceState) -> TenantNamespace:
        row = await self._db.get(TenantNamespace, name)
        if row is None:
            row = TenantNamespace(
                name=name,
                owner_id=owner.id,
                owner_handle=owner.handle,
                labels=self.owner_labels(owner),
                state=state,
            )
            self._db.add(row)
        elif row.state != state:
            row.state = state
            row.updated_at = utcnow()
            self._db.add(row)
        await self._db.commit()
        return row

    def _build_plan(self, owner: Owner, name: str) -> ProvisioningPlan:
        labels = self.owner_labels(owner)
        plan = ProvisioningPlan(namespace=name, owner_id=owner.id)

        plan.add(
            "namespace",
            Severity.FATAL,
            lambda: self._driver.create_namespace(name, labels),
        )

        if self._cluster.rbac_enabled:
            account = name
            binding = f"{name}-binding"
            plan.add(
                "service_account",
                Severity.TRANSIENT,
                lambda: self._driver.create_service_account(name, account, labels),
            )
            plan.add(
                "role",
                Severity.TRANSIENT,
                lambda: self._driver.create_role(name, account, STUDENT_RULES, labels),
            )
            plan.add(
                "role_binding",
                Severity.TRANSIENT,
                lambda: self._driver.create_role_binding(
                    name,
                    binding,
                    role_name=account,
                    service_account=account,
                    labels=labels,
                ),
            )

        quota = self._settings.quota
        plan.add(
            "resource_quota",
            Severity.TRANSIENT,
            lambda: self._driver.create_resource_quota(name, quota.name, quota.hard, labels),
        )
        plan.add(
            "network_policy",
            Severity.TRANSIENT,
            lambda: self._driver.create_network_policy(name, NETWORK_POLICY_NAME, labels),
        )
        return plan

    async def get_or_create(self, owner: Owner) -> str:
        """Return the owner's namespace, provisioning it when missing.

        Idempotent: an existing namespace is returned without any create call.

        Raises:
            InfrastructureFatalError: if existence cannot be checked or the
                namespace itself cannot be created
        """
        name = await self.resolve_name(owner)

        try:
            exists = await self._driver.namespace_exists(name)
        except InfrastructureTransientError as e:
            self._log.error("namespace.lookup_failed", namespace=name, error=str(e))
            raise InfrastructureFatalError(
                f"Cannot determine whether namespace {name} exists",
                details={"namespace": name, "cause": e.message},
            ) from e

        if exists:
            await self._record(owner, name, NamespaceState.READY)
            self._log.debug("namespace.exists", namespace=name, owner_id=owner.id)
            return name

        self._log.info("namespace.create", namespace=name, owner_id=owner.id)
        await self._record(owner, name, NamespaceState.PROVISIONING)

        try:
            report: ProvisioningReport = await self._build_plan(owner, name).execute()
        except InfrastructureFatalError:
            await self._record(owner, name, NamespaceState.ABSENT)
            raise

        await self._record(owner, name, NamespaceState.READY)
        if report.degraded:
            self._log.warning(
                "namespace.create.degraded",
                namespace=name,
                owner_id=owner.id,
                failed_steps=report.degraded,
            )
        else:
            self._log.info("namespace.create.complete", namespace=name, owner_id=owner.id)
        return name

    async def exists(self, owner: Owner) -> bool:
        """Direct cluster lookup for the owner's namespace."""
        return await self._driver.namespace_exists(await self.resolve_name(owner))

    async def list(self) -> list[TenantNamespace]:
        """Bookkeeping rows, oldest first."""
        result = await self._db.execute(
            select(TenantNamespace).order_by(TenantNamespace.created_at)
        )
        return list(result.scalars().all())

    async def delete(self, name: str, *, principal: Principal) -> None:
        """Delete a tenant namespace and everything inside it.

        Raises:
            AccessDeniedError: for system namespaces, names without the
                tenant prefix, or a principal lacking the capability
        """
        require(principal, Operation.DELETE_NAMESPACE)
        await self._delete(name)

    async def _delete(self, name: str) -> None:
        if self.is_protected(name):
            self._log.warning("namespace.delete.refused", namespace=name)
            raise AccessDeniedError(
                f"Refusing to delete protected namespace: {name}",
                details={"namespace": name},
            )

        row = await self._db.get(TenantNamespace, name)
        if row is not None:
            row.state = NamespaceState.DELETING
            row.updated_at = utcnow()
            self._db.add(row)
            await self._db.commit()

        self._log.info("namespace.delete", namespace=name)
        await self._driver.delete_namespace(name)

        if row is not None:
            await self._db.delete(row)
            await self._db.commit()

    async def delete_for_owner(self, owner_id: str, *, principal: Principal) -> dict[str, int]:
        """Owner deactivation cascade.

        Every Active grant on the owner's instances (whoever holds it) and
        every grant the owner holds is revoked and its service removed. Then
        the instance records and their grants are deleted, and finally the
        namespace (which removes every pod and service left in it).

        Returns:
            Counts of revoked grants and removed instances
        """
        require(principal, Operation.DEACTIVATE_OWNER)

        row = await self._get_row_by_owner(owner_id)
        if row is None:
            raise NotFoundError(f"No namespace recorded for owner: {owner_id}")

        self._log.info("namespace.deactivate_owner", owner_id=owner_id, namespace=row.name)

        result = await self._db.execute(
            select(ContainerInstance).where(ContainerInstance.owner_id == owner_id)
        )
        instances = list(result.scalars().all())
        instance_ids = [instance.id for instance in instances]

        result = await self._db.execute(
            select(SshConnection).where(
                or_(
                    col(SshConnection.instance_id).in_(instance_ids),
                    SshConnection.owner_id == owner_id,
                ),
                SshConnection.status == ConnectionStatus.ACTIVE,
            )
        )
        grants = list(result.scalars().all())
        for grant in grants:
            grant.status = ConnectionStatus.INACTIVE
            self._db.add(grant)
        await self._db.commit()

        for grant in grants:
            try:
                await self._driver.delete_service(grant.namespace, grant.service_name)
            except Exception as e:
                self._log.warning(
                    "namespace.deactivate_owner.service_teardown_failed",
                    connection_id=grant.id,
                    error=str(e),
                )

        result = await self._db.execute(
            select(SshConnection).where(col(SshConnection.instance_id).in_(instance_ids))
        )
        for connection in result.scalars().all():
            await self._db.delete(connection)
        for instance in instances:
            await self._db.delete(instance)
        await self._db.commit()

        await self._delete(row.name)

        return {"revoked": len(grants), "instances": len(instances)}
