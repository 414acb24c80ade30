"""Unit tests for cluster object naming helpers."""

from __future__ import annotations

import re
from datetime import datetime

import pytest

from berth.utils.naming import (
    DNS_LABEL_MAX,
    grant_service_name,
    hashed_node_port,
    instance_name,
    namespace_name,
    sanitize_handle,
    ssh_resource_name,
)

DNS_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


class TestSanitizeHandle:
    def test_lowercases_and_strips_invalid_characters(self):
        assert sanitize_handle("Alice.Smith_01") == "alicesmith01"

    def test_keeps_dashes(self):
        assert sanitize_handle("mary-jane") == "mary-jane"

    @pytest.mark.parametrize("value", [None, "", "___", "@@.."])
    def test_empty_results(self, value):
        assert sanitize_handle(value) == ""


class TestNamespaceName:
    def test_prefix_plus_sanitized_handle(self):
        assert namespace_name("student-", "Alice") == "student-alice"

    def test_owner_id_suffix(self):
        assert namespace_name("student-", "alice", "42") == "student-alice-42"

    def test_empty_handle_falls_back_to_owner_id(self):
        assert namespace_name("student-", "___", "u7") == "student-u7"

    def test_empty_identity_rejected(self):
        with pytest.raises(ValueError):
            namespace_name("student-", "", None)

    def test_long_handle_truncated_to_dns_label(self):
        name = namespace_name("student-", "x" * 200)
        assert len(name) == DNS_LABEL_MAX
        assert DNS_LABEL.match(name)

    def test_truncation_keeps_owner_suffix(self):
        name = namespace_name("student-", "y" * 200, "owner99")
        assert len(name) <= DNS_LABEL_MAX
        assert name.endswith("-owner99")

    def test_no_trailing_dash(self):
        name = namespace_name("student-", "a" * 54 + "-" + "b" * 20)
        assert not name.endswith("-")

    def test_deterministic(self):
        assert namespace_name("student-", "Bob!") == namespace_name("student-", "Bob!")


class TestInstanceName:
    def test_handle_and_timestamp(self):
        now = datetime(2024, 3, 5, 14, 7, 9, 12)
        assert instance_name("Alice", now) == "alice-20240305140709000012"

    def test_empty_handle_uses_sandbox(self):
        now = datetime(2024, 1, 1)
        assert instance_name("!!!", now).startswith("sandbox-")

    def test_ssh_companion_name_fits_label(self):
        name = instance_name("z" * 100, datetime(2024, 1, 1))
        assert len(ssh_resource_name(name)) <= DNS_LABEL_MAX
        assert DNS_LABEL.match(ssh_resource_name(name))


class TestGrantServiceName:
    def test_connection_suffix(self):
        assert grant_service_name("alice-1", "conn-0a1b2c3d4e5f") == "alice-1-ssh-0a1b2c3d4e5f"

    def test_distinct_per_connection(self):
        first = grant_service_name("alice-1", "conn-aaa")
        assert first != grant_service_name("alice-1", "conn-bbb")

    def test_long_companion_ref_keeps_suffix(self):
        companion = ssh_resource_name(instance_name("z" * 100, datetime(2024, 1, 1)))

        name = grant_service_name(companion, "conn-0a1b2c3d4e5f")

        assert len(name) <= DNS_LABEL_MAX
        assert DNS_LABEL.match(name)
        assert name.endswith("-0a1b2c3d4e5f")


class TestHashedNodePort:
    def test_within_window(self):
        for name in ("a", "alice-20240101", "bob-20240101000000000001"):
            port = hashed_node_port(name, 30000, 1384)
            assert 30000 <= port < 31384

    def test_stable_across_calls(self):
        assert hashed_node_port("alice", 30000, 1384) == hashed_node_port("alice", 30000, 1384)
