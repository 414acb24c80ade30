"""Cluster object naming helpers.

All functions here are pure: the same input always yields the same name,
and every produced name is a valid DNS-1123 label (``[a-z0-9-]``, at most
63 characters, no trailing dash).
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime

DNS_LABEL_MAX = 63

# Room for "-<14 digit timestamp><6 digit micros>" plus a "-ssh" suffix
_INSTANCE_HANDLE_MAX = DNS_LABEL_MAX - 21 - 4

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")


def sanitize_handle(value: str | None) -> str:
    """Lower-case and strip everything outside ``[a-z0-9-]``."""
    if not value:
        return ""
    return _INVALID_CHARS.sub("", value.lower())


def _fit_label(name: str) -> str:
    return name[:DNS_LABEL_MAX].rstrip("-")


def namespace_name(prefix: str, handle: str | None, owner_id: str | None = None) -> str:
    """Derive the tenant namespace name.

    Args:
        prefix: Configured namespace prefix (e.g. "student-")
        handle: Owner handle, sanitized here
        owner_id: When given, appended as ``-<owner_id>`` to disambiguate
            owners whose handles collide. Also used when the handle
            sanitizes to nothing.
    """
    base = sanitize_handle(handle)
    suffix = sanitize_handle(owner_id)

    if not base and not suffix:
        raise ValueError("Cannot derive a namespace name from an empty owner identity")

    if suffix:
        # Keep the suffix intact when truncating
        head = f"{prefix}{base}"[: DNS_LABEL_MAX - len(suffix) - 1].rstrip("-")
        return _fit_label(f"{head}-{suffix}")

    return _fit_label(f"{prefix}{base}")


def instance_name(handle: str | None, now: datetime) -> str:
    """Generate a workload name: ``<handle>-<YYYYmmddHHMMSS><microseconds>``."""
    base = sanitize_handle(handle).strip("-")[:_INSTANCE_HANDLE_MAX].rstrip("-") or "sandbox"
    return f"{base}-{now:%Y%m%d%H%M%S}{now.microsecond:06d}"


def ssh_resource_name(workload_ref: str) -> str:
    """Name of the instance SSH service (and companion pod) for a workload."""
    return _fit_label(f"{workload_ref}-ssh")


def grant_service_name(workload_ref: str, connection_id: str) -> str:
    """Name of one grant's SSH service: ``<workload>-ssh-<connection suffix>``.

    Unique per grant. The connection suffix survives truncation.
    """
    suffix = sanitize_handle(connection_id.removeprefix("conn-")).strip("-")
    head = f"{workload_ref}-ssh"[: DNS_LABEL_MAX - len(suffix) - 1].rstrip("-")
    return _fit_label(f"{head}-{suffix}")


def hashed_node_port(name: str, base: int, port_range: int) -> int:
    """Deterministic port in ``[base, base + port_range)`` derived from a name.

    Uses a stable digest rather than ``hash()``, which is salted per process.
    """
    digest = hashlib.sha256(name.encode()).digest()
    return base + int.from_bytes(digest[:4], "big") % port_range
