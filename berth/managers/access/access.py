"""AccessBroker - issues, authenticates and revokes SSH grants.

A grant binds generated credentials and an external port to one
(owner, instance) pair. At most one grant per pair is Active; asking
again returns it. Expiry is enforced lazily at authentication and
eagerly by ``sweep_expired``.
"""

from __future__ import annotations

import hmac
import shlex
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from berth.auth import Operation, Principal, require, require_access
from berth.config import get_settings
from berth.drivers.base import ServiceSpec
from berth.errors import NotFoundError, ValidationError
from berth.managers.instance import InstanceManager
from berth.managers.namespace.namespace import label_value
from berth.models.connection import ConnectionStatus, SshConnection
from berth.models.instance import ContainerInstance
from berth.utils.credentials import allocate_port, generate_secret, login_identity
from berth.utils.datetime import utcnow
from berth.utils.naming import grant_service_name

if TYPE_CHECKING:
    from berth.drivers.base import ClusterDriver

logger = structlog.get_logger()


def account_script(login: str, secret: str) -> str:
    """Shell script creating a sudo-capable user with a workspace directory."""
    user = shlex.quote(login)
    pair = shlex.quote(f"{login}:{secret}")
    home = shlex.quote(f"/home/{login}")
    return (
        f"id -u {user} >/dev/null 2>&1 || useradd -m -s /bin/bash {user}; "
        f"echo {pair} | chpasswd; "
        f"usermod -aG sudo {user} || true; "
        f"mkdir -p {home}/workspace; "
        f"chown -R {user}:{user} {home}/workspace"
    )


class AccessBroker:
    """Manages SSH grants."""

    def __init__(
        self,
        driver: "ClusterDriver",
        db_session: AsyncSession,
        instance_manager: InstanceManager | None = None,
    ) -> None:
        self._driver = driver
        self._db = db_session
        self._log = logger.bind(manager="access")
        self._settings = get_settings()
        self._instances = instance_manager or InstanceManager(driver, db_session)

    async def _find_active(self, owner_id: str, instance_id: str) -> SshConnection | None:
        result = await self._db.execute(
            select(SshConnection)
            .where(
                SshConnection.owner_id == owner_id,
                SshConnection.instance_id == instance_id,
                SshConnection.status == ConnectionStatus.ACTIVE,
            )
            .order_by(SshConnection.created_at.desc())
        )
        return result.scalars().first()

    async def _unexpose(self, grant: SshConnection) -> bool:
        """Delete the grant's service (best-effort). Returns success."""
        try:
            await self._driver.delete_service(grant.namespace, grant.service_name)
        except Exception as e:
            self._log.warning(
                "access.unexpose_failed",
                connection_id=grant.id,
                service=grant.service_name,
                error=str(e),
            )
            return False
        return True

    async def _expire(self, grant: SshConnection) -> bool:
        """Move an Active grant to Expired and remove its exposure."""
        grant.status = ConnectionStatus.EXPIRED
        self._db.add(grant)
        await self._db.commit()
        self._log.info("access.expired", connection_id=grant.id, expires_at=grant.expires_at)
        return await self._unexpose(grant)

    async def _inject_account(
        self, instance: ContainerInstance, login: str, secret: str
    ) -> None:
        """Create the login inside the running container (advisory).

        The SSH image entrypoint also reads SSH_USERS, so failure here is
        logged and ignored.
        """
        try:
            await self._driver.exec_in_workload(
                instance.namespace,
                instance.workload_ref,
                container=self._settings.workload.container_name,
                command=["/bin/sh", "-c", account_script(login, secret)],
            )
        except Exception as e:
            self._log.warning(
                "access.issue.inject_failed",
                instance_id=instance.id,
                workload_ref=instance.workload_ref,
                login=login,
                error=str(e),
            )

    async def _expose(self, grant: SshConnection, instance: ContainerInstance) -> None:
        """Create the grant's own NodePort service (best-effort)."""
        ssh_port = self._settings.access.ssh_container_port
        spec = ServiceSpec(
            name=grant.service_name,
            namespace=grant.namespace,
            selector={"app": instance.workload_ref},
            port=ssh_port,
            target_port=ssh_port,
            node_port=grant.port,
            labels={
                f"{self._settings.cluster.label_prefix}.connection": label_value(grant.id),
            },
        )
        try:
            await self._driver.create_service(spec)
        except Exception as e:
            self._log.warning(
                "access.issue.expose_failed",
                connection_id=grant.id,
                service=spec.name,
                node_port=grant.port,
                error=str(e),
            )

    async def issue(
        self,
        principal: Principal,
        instance_id: str,
        duration_hours: int | None = None,
    ) -> SshConnection:
        """Issue (or return the existing) SSH grant for an instance.

        Args:
            principal: Caller; the grant belongs to them
            instance_id: Target instance
            duration_hours: Lifetime, default from configuration

        Raises:
            ValidationError: non-positive duration
            NotFoundError: unknown instance
            AccessDeniedError: instance belongs to another owner
        """
        access = self._settings.access
        duration = access.default_duration_hours if duration_hours is None else duration_hours
        if duration <= 0:
            raise ValidationError(
                "duration_hours must be positive", details={"duration_hours": duration}
            )

        instance = await self._instances.get(instance_id, principal)
        require_access(instance.owner_id, principal, Operation.ISSUE_ACCESS)

        now = utcnow()
        existing = await self._find_active(principal.owner_id, instance.id)
        if existing is not None:
            if not existing.is_expired_at(now):
                self._log.info(
                    "access.issue.reused", connection_id=existing.id, instance_id=instance.id
                )
                return existing
            await self._expire(existing)

        login = login_identity(principal.handle, now)
        secret = generate_secret(access.secret_length)
        port = allocate_port(access.base_port, access.port_range)

        instance = await self._instances.ensure_ssh_workload(
            instance, ssh_users=f"{login}:{secret}"
        )

        connection_id = f"conn-{uuid.uuid4().hex[:12]}"
        grant = SshConnection(
            id=connection_id,
            owner_id=principal.owner_id,
            instance_id=instance.id,
            login=login,
            secret=secret,
            port=port,
            namespace=instance.namespace,
            service_name=grant_service_name(instance.workload_ref, connection_id),
            status=ConnectionStatus.ACTIVE,
            created_at=now,
            expires_at=now + timedelta(hours=duration),
        )
        self._db.add(grant)
        await self._db.commit()
        await self._db.refresh(grant)

        self._log.info(
            "access.issue",
            connection_id=grant.id,
            instance_id=instance.id,
            owner_id=principal.owner_id,
            login=login,
            port=port,
            expires_at=grant.expires_at,
        )

        await self._inject_account(instance, login, secret)
        await self._expose(grant, instance)
        return grant

    async def authenticate(self, login: str, secret: str) -> bool:
        """Check credentials presented to the SSH server.

        An expired grant is moved to Expired here and rejected.
        """
        result = await self._db.execute(
            select(SshConnection)
            .where(
                SshConnection.login == login,
                SshConnection.status == ConnectionStatus.ACTIVE,
            )
            .order_by(SshConnection.created_at.desc())
        )
        grant = result.scalars().first()
        if grant is None:
            self._log.info("access.authenticate.unknown", login=login)
            return False

        now = utcnow()
        if grant.is_expired_at(now):
            await self._expire(grant)
            return False

        if not hmac.compare_digest(grant.secret.encode(), secret.encode()):
            self._log.warning("access.authenticate.rejected", connection_id=grant.id)
            return False

        grant.last_accessed_at = now
        self._db.add(grant)
        await self._db.commit()
        self._log.info("access.authenticate.ok", connection_id=grant.id)
        return True

    async def _load(self, connection_id: str) -> SshConnection:
        grant = await self._db.get(SshConnection, connection_id)
        if grant is None:
            raise NotFoundError(
                f"Connection not found: {connection_id}",
                details={"connection_id": connection_id},
            )
        return grant

    async def get(self, connection_id: str, principal: Principal) -> SshConnection:
        grant = await self._load(connection_id)
        require_access(grant.owner_id, principal, Operation.VIEW_INSTANCE)
        return grant

    async def revoke(self, connection_id: str, principal: Principal) -> SshConnection:
        """Revoke a grant. Revoking a grant that is not Active changes nothing."""
        grant = await self._load(connection_id)
        require_access(grant.owner_id, principal, Operation.REVOKE_ACCESS)

        if grant.status != ConnectionStatus.ACTIVE:
            self._log.info(
                "access.revoke.noop", connection_id=grant.id, status=grant.status.value
            )
            return grant

        grant.status = ConnectionStatus.INACTIVE
        self._db.add(grant)
        await self._db.commit()
        self._log.info("access.revoke", connection_id=grant.id)

        await self._unexpose(grant)
        return grant

    async def sweep_expired(self, principal: Principal | None = None) -> dict[str, int]:
        """Expire every Active grant past its expiry and remove its service.

        Args:
            principal: Caller; None for the maintenance scheduler

        Returns:
            {"expired", "errors"}
        """
        if principal is not None:
            require(principal, Operation.SWEEP_ACCESS)

        now = utcnow()
        result = await self._db.execute(
            select(SshConnection).where(
                SshConnection.status == ConnectionStatus.ACTIVE,
                SshConnection.expires_at <= now,
            )
        )
        grants = list(result.scalars().all())

        errors = 0
        for grant in grants:
            try:
                if not await self._expire(grant):
                    errors += 1
            except Exception as e:
                errors += 1
                self._log.exception("access.sweep.failed", connection_id=grant.id, error=str(e))

        summary = {"expired": len(grants), "errors": errors}
        self._log.info("access.sweep", **summary)
        return summary

    async def list_active(self, principal: Principal) -> list[SshConnection]:
        """The caller's Active, unexpired grants, newest first."""
        now = utcnow()
        result = await self._db.execute(
            select(SshConnection)
            .where(
                SshConnection.owner_id == principal.owner_id,
                SshConnection.status == ConnectionStatus.ACTIVE,
            )
            .order_by(SshConnection.created_at.desc())
        )
        return [g for g in result.scalars().all() if not g.is_expired_at(now)]

    async def list_all(self, principal: Principal) -> list[SshConnection]:
        """Every grant (elevated roles only)."""
        require(principal, Operation.VIEW_ALL)
        result = await self._db.execute(
            select(SshConnection).order_by(SshConnection.created_at.desc())
        )
        return list(result.scalars().all())

    def instructions(self, grant: SshConnection, host: str | None = None) -> dict[str, Any]:
        """How to connect with a grant."""
        host = host or self._settings.cluster.ssh_host
        ssh_port = self._settings.access.ssh_container_port
        return {
            "host": host,
            "port": grant.port,
            "login": grant.login,
            "ssh_command": f"ssh {grant.login}@{host} -p {grant.port}",
            "port_forward_command": (
                f"kubectl port-forward -n {grant.namespace} "
                f"svc/{grant.service_name} {grant.port}:{ssh_port}"
            ),
            "expires_at": grant.expires_at.isoformat(),
        }
