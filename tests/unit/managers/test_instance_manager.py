"""Unit tests for InstanceManager.

Uses FakeClusterDriver and in-memory SQLite to test lifecycle and
reconciliation without a real cluster.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from berth.drivers.base import WorkloadInfo, WorkloadObservation
from berth.errors import (
    AccessDeniedError,
    InfrastructureFatalError,
    NotFoundError,
)
from berth.managers.instance import NO_LOGS_PLACEHOLDER, InstanceManager
from berth.models.connection import ConnectionStatus, SshConnection
from berth.models.instance import ContainerInstance, InstanceStatus
from berth.utils.datetime import utcnow
from berth.utils.naming import grant_service_name


@pytest.fixture
def manager(db_session, fake_driver, patched_settings) -> InstanceManager:
    return InstanceManager(driver=fake_driver, db_session=db_session)


async def _add_grant(db_session, instance: ContainerInstance, grant_id: str = "conn-1"):
    now = utcnow()
    grant = SshConnection(
        id=grant_id,
        owner_id=instance.owner_id,
        instance_id=instance.id,
        login=f"student_{grant_id}",
        secret="s3cret",
        port=31500,
        namespace=instance.namespace,
        service_name=grant_service_name(instance.workload_ref, grant_id),
        created_at=now,
        expires_at=now + timedelta(hours=1),
    )
    db_session.add(grant)
    await db_session.commit()
    return grant


class TestCreate:
    """Creating instances."""

    async def test_new_owner_scenario(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")

        assert instance.id.startswith("inst-")
        assert instance.namespace == "student-alice"
        assert instance.owner_id == alice.owner_id
        assert instance.status == InstanceStatus.RUNNING
        assert instance.ssh_enabled is True
        assert instance.workload_ref == instance.name
        assert instance.name.startswith("alice-")

        assert len(fake_driver.create_namespace_calls) == 1
        assert len(fake_driver.create_workload_calls) == 1
        spec = fake_driver.create_workload_calls[0]
        assert spec.namespace == "student-alice"
        assert spec.image == "berth-ssh:latest"
        assert spec.container_name == "main-container"
        assert spec.ports == [22]
        assert spec.labels["app"] == instance.name
        assert spec.labels["berth.owner_id"] == alice.owner_id
        assert spec.env["SSH_ENABLED"] == "true"
        assert (spec.cpu_request, spec.memory_limit) == ("100m", "512Mi")

        assert len(fake_driver.create_service_calls) == 1
        service = fake_driver.create_service_calls[0]
        assert service.name == f"{instance.name}-ssh"
        assert service.selector == {"app": instance.name}
        assert service.node_port == instance.ssh_port
        assert 30000 <= instance.ssh_port < 31384

    async def test_second_instance_reuses_namespace(self, manager, fake_driver, alice):
        first = await manager.create(alice, "ubuntu-ssh")
        second = await manager.create(alice, "python")

        assert first.namespace == second.namespace
        assert len(fake_driver.create_namespace_calls) == 1

    async def test_non_ssh_template(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "python")

        assert instance.ssh_enabled is False
        assert instance.image == "python:3.12-slim"
        assert fake_driver.create_workload_calls[0].ports == []
        assert fake_driver.create_workload_calls[0].env["SSH_ENABLED"] == "false"
        assert fake_driver.create_service_calls == []

    async def test_template_without_image_uses_ssh_image(self, manager, alice):
        instance = await manager.create(alice, "bare-ssh")
        assert instance.image == "berth-ssh:latest"

    async def test_pending_phase_is_persisted(self, manager, fake_driver, alice):
        fake_driver.default_phase = "Pending"
        instance = await manager.create(alice, "ubuntu-ssh")
        assert instance.status == "Pending"

    async def test_unknown_template(self, manager, fake_driver, alice):
        with pytest.raises(NotFoundError):
            await manager.create(alice, "cobol")
        assert fake_driver.cluster_calls == 0

    async def test_student_cannot_create_for_other_owner(
        self, manager, fake_driver, alice, bob
    ):
        with pytest.raises(AccessDeniedError):
            await manager.create(alice, "ubuntu-ssh", owner=bob.as_owner())
        assert fake_driver.cluster_calls == 0

    async def test_teacher_creates_for_student(self, manager, teacher, alice):
        instance = await manager.create(teacher, "ubuntu-ssh", owner=alice.as_owner())

        assert instance.owner_id == alice.owner_id
        assert instance.namespace == "student-alice"

    async def test_namespace_failure_persists_creating_record(
        self, manager, fake_driver, db_session, alice
    ):
        fake_driver.set_exception("create_namespace", RuntimeError("forbidden"))

        with pytest.raises(InfrastructureFatalError):
            await manager.create(alice, "ubuntu-ssh")

        assert fake_driver.create_workload_calls == []
        instances = await manager.list_for_owner(alice)
        assert len(instances) == 1
        assert instances[0].status == InstanceStatus.CREATING
        assert instances[0].namespace == "student-alice"

        # Later reconciliation sees no pod
        assert await manager.reconcile(instances[0]) is True
        assert instances[0].status == InstanceStatus.STOPPED

    async def test_submit_failure_is_reconciled(self, manager, fake_driver, alice):
        fake_driver.set_exception("create_workload", RuntimeError("quota exceeded"))

        instance = await manager.create(alice, "ubuntu-ssh")

        assert instance.status == InstanceStatus.STOPPED


class TestReconcile:
    """Status projection from observed cluster state."""

    async def test_idempotent(self, manager, fake_driver, db_session, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        fake_driver.workloads[(instance.namespace, instance.name)].phase = "Failed"

        assert await manager.reconcile(instance) is True
        observed_at = instance.last_observed_at
        assert instance.status == "Failed"

        assert await manager.reconcile(instance) is False
        assert instance.last_observed_at == observed_at

    async def test_absent_pod_means_stopped(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        fake_driver.workloads.pop((instance.namespace, instance.name))

        assert await manager.reconcile(instance) is True
        assert instance.status == InstanceStatus.STOPPED

    async def test_unreachable_cluster_changes_nothing(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        fake_driver.set_exception("get_workload", RuntimeError("timeout"))

        assert await manager.reconcile(instance) is False
        assert instance.status == InstanceStatus.RUNNING

    async def test_unreachable_observation_changes_nothing(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        fake_driver.set_workload_override(
            instance.namespace,
            instance.workload_ref,
            WorkloadInfo(
                name=instance.workload_ref,
                namespace=instance.namespace,
                observation=WorkloadObservation.UNREACHABLE,
                error="503",
            ),
        )

        assert await manager.reconcile(instance) is False
        assert instance.status == InstanceStatus.RUNNING

    async def test_stopped_instance_ignores_leftover_pod(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        await manager.stop(instance.id, alice)
        await fake_driver.create_workload(fake_driver.create_workload_calls[0])

        assert await manager.reconcile(instance) is False
        assert instance.status == InstanceStatus.STOPPED

    async def test_reconcile_all(self, manager, fake_driver, alice, bob, teacher):
        first = await manager.create(alice, "ubuntu-ssh")
        await manager.create(bob, "ubuntu-ssh")
        fake_driver.workloads.pop((first.namespace, first.name))

        summary = await manager.reconcile_all(teacher)

        assert summary == {"total": 2, "updated": 1, "errors": 0}

    async def test_reconcile_all_requires_elevated_role(self, manager, alice):
        with pytest.raises(AccessDeniedError):
            await manager.reconcile_all(alice)


class TestAccessControl:
    async def test_other_student_cannot_view(self, manager, alice, bob):
        instance = await manager.create(alice, "ubuntu-ssh")
        with pytest.raises(AccessDeniedError):
            await manager.get(instance.id, bob)

    async def test_other_student_cannot_stop(self, manager, fake_driver, alice, bob):
        instance = await manager.create(alice, "ubuntu-ssh")
        before = fake_driver.cluster_calls

        with pytest.raises(AccessDeniedError):
            await manager.stop(instance.id, bob)

        assert fake_driver.cluster_calls == before

    async def test_other_student_cannot_delete(self, manager, fake_driver, alice, bob):
        instance = await manager.create(alice, "ubuntu-ssh")
        before = fake_driver.cluster_calls

        with pytest.raises(AccessDeniedError):
            await manager.delete(instance.id, bob)

        assert fake_driver.cluster_calls == before
        assert (await manager.get(instance.id, alice)).id == instance.id

    async def test_teacher_can_view(self, manager, alice, teacher):
        instance = await manager.create(alice, "ubuntu-ssh")
        assert (await manager.get(instance.id, teacher)).id == instance.id

    async def test_list_for_owner(self, manager, alice, bob, teacher):
        await manager.create(alice, "ubuntu-ssh")
        await manager.create(bob, "ubuntu-ssh")

        assert len(await manager.list_for_owner(alice)) == 1
        assert len(await manager.list_for_owner(teacher, owner_id=bob.owner_id)) == 1
        with pytest.raises(AccessDeniedError):
            await manager.list_for_owner(alice, owner_id=bob.owner_id)

    async def test_list_all(self, manager, alice, bob, teacher):
        await manager.create(alice, "ubuntu-ssh")
        await manager.create(bob, "ubuntu-ssh")

        assert len(await manager.list_all(teacher)) == 2
        with pytest.raises(AccessDeniedError):
            await manager.list_all(alice)

    async def test_unknown_instance(self, manager, alice):
        with pytest.raises(NotFoundError):
            await manager.get("inst-missing", alice)


class TestLifecycle:
    async def test_stop_revokes_and_tears_down(
        self, manager, fake_driver, db_session, alice
    ):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await _add_grant(db_session, instance)

        stopped = await manager.stop(instance.id, alice)

        assert stopped.status == InstanceStatus.STOPPED
        assert (instance.namespace, instance.name) not in fake_driver.workloads
        assert (instance.namespace, f"{instance.name}-ssh") not in fake_driver.services
        assert grant.status == ConnectionStatus.INACTIVE

    async def test_stop_tolerates_cluster_errors(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        fake_driver.set_exception("delete_workload", RuntimeError("timeout"))

        stopped = await manager.stop(instance.id, alice)

        assert stopped.status == InstanceStatus.STOPPED

    async def test_start_resubmits_stopped_instance(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        await manager.stop(instance.id, alice)

        started = await manager.start(instance.id, alice)

        assert started.status == InstanceStatus.RUNNING
        assert len(fake_driver.create_workload_calls) == 2
        assert fake_driver.create_workload_calls[1].name == instance.name
        assert (instance.namespace, f"{instance.name}-ssh") in fake_driver.services

    async def test_start_running_instance_is_noop(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")

        await manager.start(instance.id, alice)

        assert len(fake_driver.create_workload_calls) == 1

    async def test_delete(self, manager, fake_driver, db_session, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        await _add_grant(db_session, instance)

        await manager.delete(instance.id, alice)

        assert await db_session.get(ContainerInstance, instance.id) is None
        assert await db_session.get(SshConnection, "conn-1") is None
        assert (instance.namespace, instance.name) not in fake_driver.workloads
        with pytest.raises(NotFoundError):
            await manager.get(instance.id, alice)


class TestLogs:
    async def test_placeholder_when_empty(self, manager, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        assert await manager.get_logs(instance.id, alice) == NO_LOGS_PLACEHOLDER

    async def test_returns_logs(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        fake_driver.logs[(instance.namespace, instance.name)] = "sshd started\n"

        assert await manager.get_logs(instance.id, alice) == "sshd started\n"

    async def test_failure_message(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        fake_driver.set_exception("workload_logs", RuntimeError("pod gone"))

        logs = await manager.get_logs(instance.id, alice)

        assert logs == "Failed to retrieve logs: pod gone"


class TestEnsureSshWorkload:
    async def test_pod_with_ssh_port_is_kept(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")

        result = await manager.ensure_ssh_workload(instance, ssh_users="u:p")

        assert result.workload_ref == instance.name
        assert len(fake_driver.create_workload_calls) == 1

    async def test_companion_pod_for_non_ssh_workload(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "python")

        result = await manager.ensure_ssh_workload(instance, ssh_users="u:p")

        companion = f"{instance.name}-ssh"
        assert result.workload_ref == companion
        spec = fake_driver.create_workload_calls[-1]
        assert spec.name == companion
        assert spec.image == "berth-ssh:latest"
        assert spec.ports == [22]
        assert spec.env["SSH_USERS"] == "u:p"
        assert spec.labels["app"] == companion

    async def test_skipped_when_pod_missing(self, manager, fake_driver, alice):
        instance = await manager.create(alice, "python")
        fake_driver.workloads.clear()

        result = await manager.ensure_ssh_workload(instance, ssh_users="u:p")

        assert result.workload_ref == instance.name
        assert len(fake_driver.create_workload_calls) == 1
