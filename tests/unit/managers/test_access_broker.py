"""Unit tests for AccessBroker.

Covers grant issuance, authentication, expiry and revocation using
FakeClusterDriver and in-memory SQLite.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from berth.errors import AccessDeniedError, NotFoundError, ValidationError
from berth.managers.access import AccessBroker
from berth.managers.access.access import account_script
from berth.managers.instance import InstanceManager
from berth.models.connection import ConnectionStatus
from berth.utils.datetime import utcnow


@pytest.fixture
def manager(db_session, fake_driver, patched_settings) -> InstanceManager:
    return InstanceManager(driver=fake_driver, db_session=db_session)


@pytest.fixture
def broker(db_session, fake_driver, manager) -> AccessBroker:
    return AccessBroker(driver=fake_driver, db_session=db_session, instance_manager=manager)


async def _backdate(db_session, grant, **delta):
    grant.expires_at = utcnow() - timedelta(**delta)
    db_session.add(grant)
    await db_session.commit()


class TestIssue:
    """Issuing SSH grants."""

    async def test_issue_grant(self, broker, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")

        grant = await broker.issue(alice, instance.id)

        assert grant.id.startswith("conn-")
        assert grant.status == ConnectionStatus.ACTIVE
        assert grant.owner_id == alice.owner_id
        assert grant.login.startswith("student_alice_")
        assert len(grant.secret) == 12
        assert 31384 <= grant.port < 32768
        assert grant.expires_at - grant.created_at == timedelta(hours=24)
        assert grant.namespace == instance.namespace
        assert grant.service_name == f"{instance.name}-ssh-{grant.id.removeprefix('conn-')}"

        service = fake_driver.services[(instance.namespace, grant.service_name)]
        assert service.node_port == grant.port
        assert service.selector == {"app": instance.name}

        assert len(fake_driver.exec_calls) == 1
        command = fake_driver.exec_calls[0]["command"]
        assert command[:2] == ["/bin/sh", "-c"]
        assert grant.login in command[2]

    async def test_custom_duration(self, broker, manager, alice):
        instance = await manager.create(alice, "ubuntu-ssh")

        grant = await broker.issue(alice, instance.id, duration_hours=2)

        assert grant.expires_at - grant.created_at == timedelta(hours=2)

    @pytest.mark.parametrize("duration", [0, -3])
    async def test_non_positive_duration(self, broker, manager, alice, duration):
        instance = await manager.create(alice, "ubuntu-ssh")
        with pytest.raises(ValidationError):
            await broker.issue(alice, instance.id, duration_hours=duration)

    async def test_idempotent(self, broker, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")

        first = await broker.issue(alice, instance.id)
        second = await broker.issue(alice, instance.id)

        assert second.id == first.id
        assert (second.login, second.secret, second.port) == (
            first.login,
            first.secret,
            first.port,
        )
        assert len(fake_driver.exec_calls) == 1

    async def test_expired_grant_is_replaced(self, broker, manager, db_session, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        first = await broker.issue(alice, instance.id)
        await _backdate(db_session, first, minutes=1)

        second = await broker.issue(alice, instance.id)

        assert second.id != first.id
        assert first.status == ConnectionStatus.EXPIRED
        assert second.status == ConnectionStatus.ACTIVE

    async def test_other_student_denied_without_cluster_calls(
        self, broker, manager, fake_driver, alice, bob
    ):
        instance = await manager.create(alice, "ubuntu-ssh")
        before = fake_driver.cluster_calls

        with pytest.raises(AccessDeniedError):
            await broker.issue(bob, instance.id)

        assert fake_driver.cluster_calls == before

    async def test_unknown_instance(self, broker, alice):
        with pytest.raises(NotFoundError):
            await broker.issue(alice, "inst-missing")

    async def test_teacher_gets_own_grant(self, broker, manager, alice, teacher):
        instance = await manager.create(alice, "ubuntu-ssh")

        student_grant = await broker.issue(alice, instance.id)
        teacher_grant = await broker.issue(teacher, instance.id)

        assert teacher_grant.id != student_grant.id
        assert teacher_grant.owner_id == teacher.owner_id
        assert teacher_grant.login.startswith("student_prof_")

    async def test_each_grant_has_its_own_service(
        self, broker, manager, fake_driver, alice, teacher
    ):
        instance = await manager.create(alice, "ubuntu-ssh")

        student_grant = await broker.issue(alice, instance.id)
        teacher_grant = await broker.issue(teacher, instance.id)

        assert student_grant.service_name != teacher_grant.service_name
        for grant in (student_grant, teacher_grant):
            service = fake_driver.services[(instance.namespace, grant.service_name)]
            assert service.node_port == grant.port
            assert service.selector == {"app": instance.name}

        again = await broker.issue(alice, instance.id)
        assert again.id == student_grant.id
        assert (
            fake_driver.services[(instance.namespace, again.service_name)].node_port
            == student_grant.port
        )

    async def test_instance_service_keeps_its_port(self, broker, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")

        await broker.issue(alice, instance.id)

        service = fake_driver.services[(instance.namespace, f"{instance.name}-ssh")]
        assert service.node_port == instance.ssh_port
        assert (await manager.get(instance.id, alice)).ssh_port == instance.ssh_port

    async def test_companion_pod_for_non_ssh_instance(
        self, broker, manager, fake_driver, alice
    ):
        instance = await manager.create(alice, "python")

        grant = await broker.issue(alice, instance.id)

        companion = f"{instance.name}-ssh"
        assert instance.workload_ref == companion
        assert grant.service_name.startswith(f"{companion}-ssh-")
        spec = fake_driver.create_workload_calls[-1]
        assert spec.env["SSH_USERS"] == f"{grant.login}:{grant.secret}"
        service = fake_driver.services[(instance.namespace, grant.service_name)]
        assert service.selector == {"app": companion}
        assert fake_driver.exec_calls[0]["name"] == companion

    async def test_inject_failure_is_tolerated(self, broker, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        fake_driver.set_exception("exec_in_workload", RuntimeError("no shell"))

        grant = await broker.issue(alice, instance.id)

        assert grant.status == ConnectionStatus.ACTIVE
        assert (instance.namespace, grant.service_name) in fake_driver.services


class TestAuthenticate:
    async def test_valid_credentials(self, broker, manager, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)

        assert await broker.authenticate(grant.login, grant.secret) is True
        assert grant.last_accessed_at is not None

    async def test_wrong_secret(self, broker, manager, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)

        assert await broker.authenticate(grant.login, grant.secret + "x") is False
        assert grant.last_accessed_at is None

    async def test_unknown_login(self, broker):
        assert await broker.authenticate("student_nobody_1", "secret") is False

    async def test_lazy_expiry(self, broker, manager, fake_driver, db_session, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)
        await _backdate(db_session, grant, seconds=1)

        assert await broker.authenticate(grant.login, grant.secret) is False
        assert grant.status == ConnectionStatus.EXPIRED
        assert (grant.namespace, grant.service_name) not in fake_driver.services

    async def test_revoked_grant_rejected(self, broker, manager, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)

        await broker.revoke(grant.id, alice)

        assert await broker.authenticate(grant.login, grant.secret) is False


class TestRevoke:
    async def test_revoke(self, broker, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)

        revoked = await broker.revoke(grant.id, alice)

        assert revoked.status == ConnectionStatus.INACTIVE
        assert (grant.namespace, grant.service_name) not in fake_driver.services

    async def test_revoke_twice_is_noop(self, broker, manager, fake_driver, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)
        await broker.revoke(grant.id, alice)
        deletes = len(fake_driver.delete_service_calls)

        again = await broker.revoke(grant.id, alice)

        assert again.status == ConnectionStatus.INACTIVE
        assert len(fake_driver.delete_service_calls) == deletes

    async def test_other_student_cannot_revoke(self, broker, manager, alice, bob):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)

        with pytest.raises(AccessDeniedError):
            await broker.revoke(grant.id, bob)

    async def test_unknown_grant(self, broker, alice):
        with pytest.raises(NotFoundError):
            await broker.revoke("conn-missing", alice)


class TestSweep:
    async def test_mixed_expiry(
        self, broker, manager, fake_driver, db_session, alice, bob, teacher
    ):
        alice_instance = await manager.create(alice, "ubuntu-ssh")
        bob_instance = await manager.create(bob, "ubuntu-ssh")
        stale = await broker.issue(alice, alice_instance.id)
        fresh = await broker.issue(bob, bob_instance.id)
        await _backdate(db_session, stale, hours=1)
        fake_driver.delete_service_calls.clear()

        summary = await broker.sweep_expired(teacher)

        assert summary == {"expired": 1, "errors": 0}
        assert stale.status == ConnectionStatus.EXPIRED
        assert fresh.status == ConnectionStatus.ACTIVE
        assert fake_driver.delete_service_calls == [(stale.namespace, stale.service_name)]
        assert (stale.namespace, stale.service_name) not in fake_driver.services
        assert (fresh.namespace, fresh.service_name) in fake_driver.services

    async def test_sweep_leaves_other_grants_on_same_instance(
        self, broker, manager, fake_driver, db_session, alice, teacher
    ):
        instance = await manager.create(alice, "ubuntu-ssh")
        student_grant = await broker.issue(alice, instance.id)
        teacher_grant = await broker.issue(teacher, instance.id)
        await _backdate(db_session, teacher_grant, hours=1)

        summary = await broker.sweep_expired()

        assert summary == {"expired": 1, "errors": 0}
        assert teacher_grant.status == ConnectionStatus.EXPIRED
        assert student_grant.status == ConnectionStatus.ACTIVE
        assert (instance.namespace, teacher_grant.service_name) not in fake_driver.services
        service = fake_driver.services[(instance.namespace, student_grant.service_name)]
        assert service.node_port == student_grant.port
        assert (instance.namespace, f"{instance.name}-ssh") in fake_driver.services
        assert await broker.authenticate(student_grant.login, student_grant.secret) is True

    async def test_revoke_leaves_other_grants_on_same_instance(
        self, broker, manager, fake_driver, alice, teacher
    ):
        instance = await manager.create(alice, "ubuntu-ssh")
        student_grant = await broker.issue(alice, instance.id)
        teacher_grant = await broker.issue(teacher, instance.id)

        await broker.revoke(student_grant.id, alice)

        assert teacher_grant.status == ConnectionStatus.ACTIVE
        assert (instance.namespace, student_grant.service_name) not in fake_driver.services
        assert (instance.namespace, teacher_grant.service_name) in fake_driver.services

    async def test_unexpose_failure_counts_as_error(
        self, broker, manager, fake_driver, db_session, alice
    ):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)
        await _backdate(db_session, grant, hours=1)
        fake_driver.set_exception("delete_service", RuntimeError("timeout"))

        summary = await broker.sweep_expired()

        assert summary == {"expired": 1, "errors": 1}
        assert grant.status == ConnectionStatus.EXPIRED

    async def test_student_cannot_sweep(self, broker, alice):
        with pytest.raises(AccessDeniedError):
            await broker.sweep_expired(alice)


class TestListing:
    async def test_list_active_excludes_expired(self, broker, manager, db_session, alice):
        first = await manager.create(alice, "ubuntu-ssh")
        second = await manager.create(alice, "python")
        live = await broker.issue(alice, first.id)
        stale = await broker.issue(alice, second.id)
        await _backdate(db_session, stale, minutes=5)

        grants = await broker.list_active(alice)

        assert [g.id for g in grants] == [live.id]

    async def test_list_all(self, broker, manager, alice, teacher):
        instance = await manager.create(alice, "ubuntu-ssh")
        await broker.issue(alice, instance.id)

        assert len(await broker.list_all(teacher)) == 1
        with pytest.raises(AccessDeniedError):
            await broker.list_all(alice)


class TestInstructions:
    async def test_instructions(self, broker, manager, alice):
        instance = await manager.create(alice, "ubuntu-ssh")
        grant = await broker.issue(alice, instance.id)

        info = broker.instructions(grant)

        assert info["host"] == "localhost"
        assert info["ssh_command"] == f"ssh {grant.login}@localhost -p {grant.port}"
        assert info["port_forward_command"] == (
            f"kubectl port-forward -n {grant.namespace} "
            f"svc/{grant.service_name} {grant.port}:22"
        )
        assert info["expires_at"] == grant.expires_at.isoformat()

    def test_account_script_quotes_values(self):
        script = account_script("student_a_1", "p'w")
        assert "useradd -m -s /bin/bash student_a_1" in script
        assert "'student_a_1:p'\"'\"'w'" in script
        assert "/home/student_a_1/workspace" in script
