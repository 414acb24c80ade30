"""Credential generation for SSH grants.

Secrets and port offsets come from the ``secrets`` module (CSPRNG).
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime

from berth.utils.datetime import epoch_millis
from berth.utils.naming import sanitize_handle

SECRET_ALPHABET = string.ascii_letters + string.digits


def generate_secret(length: int = 12) -> str:
    """Random secret of ``length`` characters from ``[A-Za-z0-9]``."""
    if length <= 0:
        raise ValueError("Secret length must be positive")
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def login_identity(handle: str | None, now: datetime) -> str:
    """Generated login: ``student_<handle>_<epoch millis>``.

    Dashes are not valid in every useradd configuration, so they become
    underscores.
    """
    base = sanitize_handle(handle).replace("-", "_") or "user"
    return f"student_{base}_{epoch_millis(now)}"


def allocate_port(base: int, port_range: int) -> int:
    """Random port in ``[base, base + port_range)``.

    Allocation is not coordinated with ports already in use; the cluster
    rejects a duplicate NodePort when the service is created.
    """
    return base + secrets.randbelow(port_range)
