"""InstanceManager - manages container instance lifecycle.

Create is optimistic: the pod is submitted, the record is persisted as
Creating, and status is then driven by reconciliation against what the
cluster reports. Teardown is best-effort on the cluster side and always
completes on the record side.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from berth.auth import Operation, Owner, Principal, require, require_access
from berth.config import get_settings
from berth.drivers.base import ServiceSpec, WorkloadInfo, WorkloadObservation, WorkloadSpec
from berth.errors import InfrastructureFatalError, NotFoundError, ValidationError
from berth.managers.namespace import NamespaceProvisioner
from berth.managers.namespace.namespace import label_value
from berth.models.connection import ConnectionStatus, SshConnection
from berth.models.instance import ContainerInstance, InstanceStatus
from berth.services.catalog import Catalog, ConfigCatalog
from berth.utils.datetime import utcnow
from berth.utils.naming import hashed_node_port, instance_name, ssh_resource_name

if TYPE_CHECKING:
    from berth.drivers.base import ClusterDriver

logger = structlog.get_logger()

NO_LOGS_PLACEHOLDER = "No logs available yet."


class InstanceManager:
    """Manages container instance lifecycle."""

    def __init__(
        self,
        driver: "ClusterDriver",
        db_session: AsyncSession,
        catalog: Catalog | None = None,
    ) -> None:
        self._driver = driver
        self._db = db_session
        self._log = logger.bind(manager="instance")
        self._settings = get_settings()
        self._catalog = catalog or ConfigCatalog(self._settings.templates)

        self._namespaces = NamespaceProvisioner(driver, db_session)

    @property
    def namespaces(self) -> NamespaceProvisioner:
        return self._namespaces

    def _label(self, key: str) -> str:
        return f"{self._settings.cluster.label_prefix}.{key}"

    def _workload_labels(self, app_name: str, instance: ContainerInstance) -> dict[str, str]:
        return {
            self._label("owner_id"): label_value(instance.owner_id),
            self._label("owner_handle"): label_value(instance.owner_handle),
            self._label("instance"): label_value(instance.name),
            "app": app_name,
        }

    def _workload_spec(self, instance: ContainerInstance) -> WorkloadSpec:
        workload = self._settings.workload
        ssh_port = self._settings.access.ssh_container_port
        return WorkloadSpec(
            name=instance.name,
            namespace=instance.namespace,
            image=instance.image,
            container_name=workload.container_name,
            labels=self._workload_labels(instance.name, instance),
            env={
                "SSH_ENABLED": "true" if instance.ssh_enabled else "false",
                "WORKSPACE_USER": instance.owner_handle,
            },
            ports=[ssh_port] if instance.ssh_enabled else [],
            cpu_request=workload.cpu_request,
            memory_request=workload.memory_request,
            cpu_limit=workload.cpu_limit,
            memory_limit=workload.memory_limit,
            restart_policy=workload.restart_policy,
            image_pull_policy=workload.image_pull_policy,
        )

    async def _submit(self, instance: ContainerInstance) -> None:
        """Submit the pod; failures leave the record for reconciliation."""
        try:
            await self._driver.create_workload(self._workload_spec(instance))
        except Exception as e:
            self._log.warning(
                "instance.submit_failed",
                instance_id=instance.id,
                workload_ref=instance.workload_ref,
                error=str(e),
            )

    async def _expose(self, instance: ContainerInstance) -> None:
        """Create the instance's NodePort service (best-effort)."""
        access = self._settings.access
        service = ServiceSpec(
            name=ssh_resource_name(instance.name),
            namespace=instance.namespace,
            selector={"app": instance.name},
            port=access.ssh_container_port,
            target_port=access.ssh_container_port,
            node_port=instance.ssh_port,
            labels={self._label("instance"): label_value(instance.name)},
        )
        try:
            await self._driver.create_service(service)
        except Exception as e:
            self._log.warning(
                "instance.expose_failed",
                instance_id=instance.id,
                service=service.name,
                node_port=instance.ssh_port,
                error=str(e),
            )

    async def create(
        self,
        principal: Principal,
        template_id: str,
        *,
        owner: Owner | None = None,
    ) -> ContainerInstance:
        """Create a container instance for an owner.

        Args:
            principal: Caller
            template_id: Catalog template id
            owner: Owner of the instance; defaults to the caller. Creating for
                another owner requires an elevated role.

        Raises:
            NotFoundError: unknown template
            InfrastructureFatalError: the owner's namespace could not be
                provisioned (a Creating record is still persisted)
        """
        require(principal, Operation.CREATE_INSTANCE)
        owner = owner or principal.as_owner()
        if owner.id != principal.owner_id:
            require(principal, Operation.CROSS_OWNER)

        template = self._catalog.resolve_template(template_id)
        image = template.base_image
        if not image:
            if not template.ssh_capable:
                raise ValidationError(f"Template {template_id} has no image")
            image = self._settings.workload.ssh_image

        now = utcnow()
        name = instance_name(owner.handle, now)
        access = self._settings.access

        instance = ContainerInstance(
            id=f"inst-{uuid.uuid4().hex[:12]}",
            name=name,
            workload_ref=name,
            namespace="",
            status=InstanceStatus.CREATING,
            owner_id=owner.id,
            owner_handle=owner.handle,
            template_id=template.id,
            image=image,
            ssh_enabled=template.ssh_capable,
            ssh_port=hashed_node_port(name, access.service_port_base, access.service_port_range),
            created_at=now,
        )

        self._log.info(
            "instance.create",
            instance_id=instance.id,
            owner_id=owner.id,
            template_id=template.id,
            name=name,
        )

        try:
            instance.namespace = await self._namespaces.get_or_create(owner)
        except InfrastructureFatalError:
            instance.namespace = await self._namespaces.resolve_name(owner)
            self._db.add(instance)
            await self._db.commit()
            self._log.error(
                "instance.create.namespace_failed",
                instance_id=instance.id,
                namespace=instance.namespace,
            )
            raise

        await self._submit(instance)

        self._db.add(instance)
        await self._db.commit()
        await self._db.refresh(instance)

        if instance.ssh_enabled:
            await self._expose(instance)

        await self.reconcile(instance)
        return instance

    async def _observe(self, instance: ContainerInstance) -> WorkloadInfo:
        try:
            return await self._driver.get_workload(instance.namespace, instance.workload_ref)
        except Exception as e:
            return WorkloadInfo(
                name=instance.workload_ref,
                namespace=instance.namespace,
                observation=WorkloadObservation.UNREACHABLE,
                error=str(e),
            )

    async def reconcile(self, instance: ContainerInstance) -> bool:
        """Refresh persisted status from the cluster.

        - found: persist the pod phase if it differs
        - confirmed absent: Stopped, unless already Stopped/Deleted
        - unreachable: no change

        A Stopped instance stays Stopped while a leftover pod terminates.

        Returns:
            Whether the record changed
        """
        info = await self._observe(instance)

        if info.observation == WorkloadObservation.UNREACHABLE:
            self._log.warning(
                "instance.reconcile.unreachable",
                instance_id=instance.id,
                workload_ref=instance.workload_ref,
                error=info.error,
            )
            return False

        if info.observation == WorkloadObservation.ABSENT:
            new_status = instance.status if instance.is_terminal else InstanceStatus.STOPPED
        elif instance.is_terminal:
            new_status = instance.status
        else:
            new_status = info.phase or instance.status

        if new_status == instance.status:
            return False

        self._log.info(
            "instance.reconcile.updated",
            instance_id=instance.id,
            old_status=instance.status,
            new_status=new_status,
            observation=info.observation.value,
        )
        instance.status = new_status
        instance.last_observed_at = utcnow()
        self._db.add(instance)
        await self._db.commit()
        return True

    async def reconcile_all(self, principal: Principal | None = None) -> dict[str, int]:
        """Reconcile every non-Deleted instance.

        Args:
            principal: Caller; None for the maintenance scheduler

        Returns:
            {"total", "updated", "errors"}
        """
        if principal is not None:
            require(principal, Operation.RECONCILE_ALL)

        result = await self._db.execute(
            select(ContainerInstance).where(ContainerInstance.status != InstanceStatus.DELETED)
        )
        instances = list(result.scalars().all())

        updated = 0
        errors = 0
        for instance in instances:
            try:
                if await self.reconcile(instance):
                    updated += 1
            except Exception as e:
                errors += 1
                self._log.exception(
                    "instance.reconcile.failed", instance_id=instance.id, error=str(e)
                )

        summary = {"total": len(instances), "updated": updated, "errors": errors}
        self._log.info("instance.reconcile_all", **summary)
        return summary

    async def _load(self, instance_id: str) -> ContainerInstance:
        instance = await self._db.get(ContainerInstance, instance_id)
        if instance is None or instance.status == InstanceStatus.DELETED:
            raise NotFoundError(
                f"Instance not found: {instance_id}",
                details={"instance_id": instance_id},
            )
        return instance

    async def get(self, instance_id: str, principal: Principal) -> ContainerInstance:
        """Get an instance the principal may view.

        Raises:
            NotFoundError: unknown instance
            AccessDeniedError: instance belongs to another owner
        """
        instance = await self._load(instance_id)
        require_access(instance.owner_id, principal, Operation.VIEW_INSTANCE)
        return instance

    async def list_for_owner(
        self, principal: Principal, owner_id: str | None = None
    ) -> list[ContainerInstance]:
        """Instances of one owner (the caller by default), newest first."""
        owner_id = owner_id or principal.owner_id
        require_access(owner_id, principal, Operation.VIEW_INSTANCE)

        result = await self._db.execute(
            select(ContainerInstance)
            .where(
                ContainerInstance.owner_id == owner_id,
                ContainerInstance.status != InstanceStatus.DELETED,
            )
            .order_by(ContainerInstance.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_all(self, principal: Principal) -> list[ContainerInstance]:
        """Every instance (elevated roles only)."""
        require(principal, Operation.VIEW_ALL)
        result = await self._db.execute(
            select(ContainerInstance)
            .where(ContainerInstance.status != InstanceStatus.DELETED)
            .order_by(ContainerInstance.created_at.desc())
        )
        return list(result.scalars().all())

    async def _revoke_grants(self, instance: ContainerInstance) -> list[SshConnection]:
        """Mark the instance's active grants Inactive."""
        result = await self._db.execute(
            select(SshConnection).where(
                SshConnection.instance_id == instance.id,
                SshConnection.status == ConnectionStatus.ACTIVE,
            )
        )
        grants = list(result.scalars().all())
        for grant in grants:
            grant.status = ConnectionStatus.INACTIVE
            self._db.add(grant)
        if grants:
            await self._db.commit()
            self._log.info(
                "instance.grants_revoked", instance_id=instance.id, count=len(grants)
            )
        return grants

    async def _teardown(
        self, instance: ContainerInstance, grants: list[SshConnection]
    ) -> None:
        """Remove pods and services (best-effort)."""
        services = {ssh_resource_name(instance.name)}
        services.update(g.service_name for g in grants)
        workloads = {instance.name, instance.workload_ref}

        for service in sorted(services):
            try:
                await self._driver.delete_service(instance.namespace, service)
            except Exception as e:
                self._log.warning(
                    "instance.teardown.service_failed",
                    instance_id=instance.id,
                    service=service,
                    error=str(e),
                )

        for workload in sorted(workloads):
            try:
                await self._driver.delete_workload(instance.namespace, workload)
            except Exception as e:
                self._log.warning(
                    "instance.teardown.workload_failed",
                    instance_id=instance.id,
                    workload_ref=workload,
                    error=str(e),
                )

    async def stop(self, instance_id: str, principal: Principal) -> ContainerInstance:
        """Stop an instance: revoke its grants and remove its pod and service."""
        instance = await self._load(instance_id)
        require_access(instance.owner_id, principal, Operation.MANAGE_INSTANCE)

        self._log.info("instance.stop", instance_id=instance.id, status=instance.status)

        grants = await self._revoke_grants(instance)
        await self._teardown(instance, grants)

        instance.status = InstanceStatus.STOPPED
        instance.last_observed_at = utcnow()
        self._db.add(instance)
        await self._db.commit()
        return instance

    async def start(self, instance_id: str, principal: Principal) -> ContainerInstance:
        """Resubmit a Stopped instance's pod under the same name.

        Starting an instance that is not Stopped changes nothing.
        """
        instance = await self._load(instance_id)
        require_access(instance.owner_id, principal, Operation.MANAGE_INSTANCE)

        if instance.status != InstanceStatus.STOPPED:
            self._log.info(
                "instance.start.skipped", instance_id=instance.id, status=instance.status
            )
            return instance

        self._log.info("instance.start", instance_id=instance.id)

        # A companion SSH pod from an earlier grant is gone with the rest
        instance.workload_ref = instance.name
        await self._submit(instance)

        instance.status = InstanceStatus.CREATING
        self._db.add(instance)
        await self._db.commit()

        if instance.ssh_enabled:
            await self._expose(instance)

        await self.reconcile(instance)
        return instance

    async def delete(self, instance_id: str, principal: Principal) -> None:
        """Delete an instance.

        Grants are revoked first, then the pod and service are removed
        (best-effort) and finally the record and its grants are deleted.
        """
        instance = await self._load(instance_id)
        require_access(instance.owner_id, principal, Operation.MANAGE_INSTANCE)

        self._log.info("instance.delete", instance_id=instance.id, status=instance.status)

        grants = await self._revoke_grants(instance)
        await self._teardown(instance, grants)

        result = await self._db.execute(
            select(SshConnection).where(SshConnection.instance_id == instance.id)
        )
        for connection in result.scalars().all():
            await self._db.delete(connection)

        await self._db.delete(instance)
        await self._db.commit()

    async def get_logs(
        self, instance_id: str, principal: Principal, *, tail: int = 100
    ) -> str:
        """Pod logs, or a placeholder/failure message."""
        instance = await self._load(instance_id)
        require_access(instance.owner_id, principal, Operation.VIEW_INSTANCE)

        try:
            logs = await self._driver.workload_logs(
                instance.namespace,
                instance.workload_ref,
                container=self._settings.workload.container_name,
                tail=tail,
            )
        except Exception as e:
            self._log.warning("instance.logs_failed", instance_id=instance.id, error=str(e))
            return f"Failed to retrieve logs: {e}"

        return logs or NO_LOGS_PLACEHOLDER

    async def ensure_ssh_workload(
        self, instance: ContainerInstance, *, ssh_users: str
    ) -> ContainerInstance:
        """Make sure the instance has a pod listening on the SSH port.

        A pod without the SSH container port gets a companion pod running the
        SSH image, and the instance is re-pointed at it. If the pod cannot
        be read this step is skipped.

        Args:
            instance: Instance to upgrade
            ssh_users: ``login:secret`` pairs for the SSH image entrypoint
        """
        ssh_port = self._settings.access.ssh_container_port
        info = await self._observe(instance)

        if info.observation != WorkloadObservation.FOUND:
            self._log.warning(
                "instance.ssh_surface.skipped",
                instance_id=instance.id,
                observation=info.observation.value,
                error=info.error,
            )
            return instance

        if info.exposes(ssh_port):
            return instance

        workload = self._settings.workload
        companion = ssh_resource_name(instance.workload_ref)
        spec = WorkloadSpec(
            name=companion,
            namespace=instance.namespace,
            image=workload.ssh_image,
            container_name=workload.container_name,
            labels=self._workload_labels(companion, instance),
            env={
                "SSH_ENABLED": "true",
                "WORKSPACE_USER": instance.owner_handle,
                "SSH_USERS": ssh_users,
            },
            ports=[ssh_port],
            cpu_request=workload.cpu_request,
            memory_request=workload.memory_request,
            cpu_limit=workload.cpu_limit,
            memory_limit=workload.memory_limit,
            restart_policy=workload.restart_policy,
            image_pull_policy=workload.image_pull_policy,
        )

        self._log.info(
            "instance.ssh_surface.companion",
            instance_id=instance.id,
            workload_ref=instance.workload_ref,
            companion=companion,
        )
        try:
            await self._driver.create_workload(spec)
        except Exception as e:
            self._log.warning(
                "instance.ssh_surface.companion_failed",
                instance_id=instance.id,
                companion=companion,
                error=str(e),
            )
            return instance

        instance.workload_ref = companion
        self._db.add(instance)
        await self._db.commit()
        return instance
