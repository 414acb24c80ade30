"""Berth configuration management.

Configuration sources (in priority order):
1. Environment variables (BERTH_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str = "sqlite+aiosqlite:///./berth.db"
    echo: bool = False


class ClusterConfig(BaseModel):
    """Kubernetes cluster configuration.

    Every tenant gets its own namespace named ``namespace_prefix + handle``.
    """

    kubeconfig: str | None = None  # None = in-cluster config

    namespace_prefix: str = "student-"

    # Label key prefix (e.g. "berth.owner_id")
    label_prefix: str = "berth"

    # Value of the managed-by label on everything Berth creates
    management_tag: str = "berth"

    # Create service account + role + role binding per tenant namespace
    rbac_enabled: bool = True

    # Image pull secrets (for private registries)
    image_pull_secrets: list[str] = Field(default_factory=list)

    # Host shown in SSH connection instructions
    ssh_host: str = "localhost"


class QuotaConfig(BaseModel):
    """Hard resource ceiling applied to every tenant namespace."""

    name: str = "student-quota"
    hard: dict[str, str] = Field(
        default_factory=lambda: {
            "pods": "10",
            "requests.cpu": "4",
            "requests.memory": "8Gi",
            "limits.cpu": "8",
            "limits.memory": "16Gi",
            "persistentvolumeclaims": "5",
            "requests.storage": "20Gi",
            "services": "10",
            "configmaps": "20",
            "secrets": "20",
        }
    )


class WorkloadConfig(BaseModel):
    """Sandbox pod specification constants."""

    container_name: str = "main-container"

    cpu_request: str = "100m"
    memory_request: str = "256Mi"
    cpu_limit: str = "500m"
    memory_limit: str = "512Mi"

    # Image used for SSH-capable templates without an image and for
    # companion SSH pods created by the access broker.
    ssh_image: str = "berth-ssh:latest"

    restart_policy: Literal["Always", "OnFailure", "Never"] = "Always"
    image_pull_policy: Literal["Always", "IfNotPresent", "Never"] = "IfNotPresent"


class AccessConfig(BaseModel):
    """SSH access broker configuration.

    Instance services and access grants draw NodePorts from two disjoint
    windows inside the default Kubernetes NodePort range (30000-32767).
    """

    # Instance service ports: service_port_base + hash(name) % service_port_range
    service_port_base: int = 30000
    service_port_range: int = 1384

    # Grant ports: base_port + random offset in [0, port_range)
    base_port: int = 31384
    port_range: int = 1384

    default_duration_hours: int = 24
    secret_length: int = 12

    ssh_container_port: int = 22


class MaintenanceTaskConfig(BaseModel):
    """Maintenance task toggle."""

    enabled: bool = True


class MaintenanceConfig(BaseModel):
    """Scheduled reconciliation configuration.

    Disabled by default: reconciliation and expiry sweeps are caller-triggered,
    so observed state is as fresh as the last explicit refresh. Enabling it
    runs the same operations every ``interval_seconds`` plus up to
    ``jitter_seconds`` of random delay.
    """

    enabled: bool = False
    run_on_startup: bool = False
    interval_seconds: int = 300
    jitter_seconds: int = 30

    reconcile_instances: MaintenanceTaskConfig = Field(default_factory=MaintenanceTaskConfig)
    expired_grants: MaintenanceTaskConfig = Field(default_factory=MaintenanceTaskConfig)


class SecurityConfig(BaseModel):
    """Security configuration for the fronting auth layer."""

    # Shared key the fronting layer presents as a Bearer token.
    # None = no API key validation (check allow_anonymous only)
    api_key: str | None = None

    # Allow requests without principal headers (development only)
    allow_anonymous: bool = True


class TemplateConfig(BaseModel):
    """Image template served by the configuration-backed catalog."""

    id: str
    base_image: str | None = None
    technology: str = "generic"
    ssh_capable: bool = True
    description: str | None = None


class Settings(BaseSettings):
    """Berth application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BERTH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    workload: WorkloadConfig = Field(default_factory=WorkloadConfig)
    access: AccessConfig = Field(default_factory=AccessConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    templates: list[TemplateConfig] = Field(
        default_factory=lambda: [
            TemplateConfig(
                id="ubuntu-ssh",
                base_image="berth-ssh:latest",
                technology="linux",
                ssh_capable=True,
            ),
            TemplateConfig(
                id="python",
                base_image="python:3.12-slim",
                technology="python",
                ssh_capable=False,
            ),
        ]
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML file values arrive as init kwargs; environment wins over them
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def get_template(self, template_id: str) -> TemplateConfig | None:
        """Get template by ID."""
        for template in self.templates:
            if template.id == template_id:
                return template
        return None


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. BERTH_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/berth/config.yaml
    """
    config_paths = [
        os.environ.get("BERTH_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/berth/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Environment variables override values from the YAML file.
    """
    file_config = _load_config_file()
    return Settings(**file_config)
