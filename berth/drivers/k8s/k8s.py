"""Kubernetes driver implementation using kubernetes-asyncio.

One K8sDriver owns one ApiClient. It is created at application startup,
shared by every request and closed on shutdown.

Every object it creates carries ``<label_prefix>.managed=true`` and
``app.kubernetes.io/managed-by=<management_tag>``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiClient, ApiException
from kubernetes_asyncio.config import ConfigException
from kubernetes_asyncio.stream import WsApiClient

from berth.config import get_settings
from berth.drivers.base import (
    ClusterDriver,
    PolicyRule,
    ServiceSpec,
    WorkloadInfo,
    WorkloadObservation,
    WorkloadSpec,
)
from berth.errors import InfrastructureTransientError

if TYPE_CHECKING:
    from berth.config import ClusterConfig

logger = structlog.get_logger()

_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError)


def _transient(action: str, exc: BaseException) -> InfrastructureTransientError:
    """Wrap a platform or transport failure."""
    details: dict[str, Any] = {"action": action}
    if isinstance(exc, ApiException):
        details["status"] = exc.status
        reason = exc.reason or str(exc.status)
    else:
        reason = str(exc) or type(exc).__name__
    return InfrastructureTransientError(f"{action} failed: {reason}", details=details)


class K8sDriver(ClusterDriver):
    """Kubernetes driver implementation using kubernetes-asyncio."""

    def __init__(self, cluster_config: "ClusterConfig | None" = None) -> None:
        cfg = cluster_config or get_settings().cluster

        self._kubeconfig = cfg.kubeconfig
        self._image_pull_secrets = cfg.image_pull_secrets
        self._label_prefix = cfg.label_prefix
        self._management_tag = cfg.management_tag

        self._log = logger.bind(driver="k8s")
        self._api_client: ApiClient | None = None
        self._config_loaded = False

    def _label(self, key: str) -> str:
        """Build label key with prefix (e.g., 'berth.owner_id')."""
        return f"{self._label_prefix}.{key}"

    def _managed_labels(self, labels: dict[str, str] | None = None) -> dict[str, str]:
        result = {
            self._label("managed"): "true",
            "app.kubernetes.io/managed-by": self._management_tag,
        }
        if labels:
            result.update(labels)
        return result

    def _metadata(
        self, name: str, namespace: str | None, labels: dict[str, str] | None
    ) -> client.V1ObjectMeta:
        return client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=self._managed_labels(labels),
        )

    async def _ensure_config(self) -> None:
        """Load Kubernetes configuration once."""
        if self._config_loaded:
            return

        try:
            if self._kubeconfig:
                await config.load_kube_config(config_file=self._kubeconfig)
                self._log.info("k8s.config.loaded", source="kubeconfig", path=self._kubeconfig)
            else:
                config.load_incluster_config()
                self._log.info("k8s.config.loaded", source="incluster")
        except (ConfigException, OSError) as e:
            self._log.error("k8s.config.failed", error=str(e))
            raise _transient("load cluster config", e) from e

        self._config_loaded = True

    async def _get_api_client(self) -> ApiClient:
        """Get or create the API client."""
        await self._ensure_config()
        if self._api_client is None:
            self._api_client = ApiClient()
        return self._api_client

    async def close(self) -> None:
        """Close the API client."""
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None

    async def _create(self, event: str, call: Awaitable[Any], **ctx: Any) -> None:
        """Await a create call; "already exists" counts as success."""
        self._log.info(event, **ctx)
        try:
            await call
        except ApiException as e:
            if e.status == 409:
                self._log.warning(f"{event}.already_exists", **ctx)
                return
            raise _transient(event, e) from e
        except _TRANSPORT_ERRORS as e:
            raise _transient(event, e) from e

    async def _delete(self, event: str, call: Awaitable[Any], **ctx: Any) -> None:
        """Await a delete call; "not found" counts as success."""
        self._log.info(event, **ctx)
        try:
            await call
        except ApiException as e:
            if e.status == 404:
                self._log.warning(f"{event}.not_found", **ctx)
                return
            raise _transient(event, e) from e
        except _TRANSPORT_ERRORS as e:
            raise _transient(event, e) from e

    # Namespace boundary

    async def namespace_exists(self, name: str) -> bool:
        """Check if a namespace exists."""
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        try:
            await v1.read_namespace(name=name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise _transient("k8s.read_namespace", e) from e
        except _TRANSPORT_ERRORS as e:
            raise _transient("k8s.read_namespace", e) from e

    async def create_namespace(self, name: str, labels: dict[str, str]) -> None:
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        body = client.V1Namespace(metadata=self._metadata(name, None, labels))
        await self._create("k8s.create_namespace", v1.create_namespace(body=body), namespace=name)

    async def delete_namespace(self, name: str) -> None:
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        await self._delete(
            "k8s.delete_namespace",
            v1.delete_namespace(
                name=name,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            ),
            namespace=name,
        )

    async def create_service_account(
        self, namespace: str, name: str, labels: dict[str, str]
    ) -> None:
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        body = client.V1ServiceAccount(metadata=self._metadata(name, namespace, labels))
        await self._create(
            "k8s.create_service_account",
            v1.create_namespaced_service_account(namespace=namespace, body=body),
            namespace=namespace,
            name=name,
        )

    async def create_role(
        self,
        namespace: str,
        name: str,
        rules: list[PolicyRule],
        labels: dict[str, str],
    ) -> None:
        api_client = await self._get_api_client()
        rbac = client.RbacAuthorizationV1Api(api_client)

        body = client.V1Role(
            metadata=self._metadata(name, namespace, labels),
            rules=[
                client.V1PolicyRule(
                    api_groups=list(rule.api_groups),
                    resources=list(rule.resources),
                    verbs=list(rule.verbs),
                )
                for rule in rules
            ],
        )
        await self._create(
            "k8s.create_role",
            rbac.create_namespaced_role(namespace=namespace, body=body),
            namespace=namespace,
            name=name,
            rules=len(rules),
        )

    async def create_role_binding(
        self,
        namespace: str,
        name: str,
        *,
        role_name: str,
        service_account: str,
        labels: dict[str, str],
    ) -> None:
        api_client = await self._get_api_client()
        rbac = client.RbacAuthorizationV1Api(api_client)

        body = client.V1RoleBinding(
            metadata=self._metadata(name, namespace, labels),
            role_ref=client.V1RoleRef(
                api_group="rbac.authorization.k8s.io",
                kind="Role",
                name=role_name,
            ),
            subjects=[
                client.RbacV1Subject(
                    kind="ServiceAccount",
                    name=service_account,
                    namespace=namespace,
                )
            ],
        )
        await self._create(
            "k8s.create_role_binding",
            rbac.create_namespaced_role_binding(namespace=namespace, body=body),
            namespace=namespace,
            name=name,
            role=role_name,
        )

    async def create_resource_quota(
        self,
        namespace: str,
        name: str,
        hard: dict[str, str],
        labels: dict[str, str],
    ) -> None:
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        body = client.V1ResourceQuota(
            metadata=self._metadata(name, namespace, labels),
            spec=client.V1ResourceQuotaSpec(hard=dict(hard)),
        )
        await self._create(
            "k8s.create_resource_quota",
            v1.create_namespaced_resource_quota(namespace=namespace, body=body),
            namespace=namespace,
            name=name,
        )

    async def create_network_policy(
        self, namespace: str, name: str, labels: dict[str, str]
    ) -> None:
        api_client = await self._get_api_client()
        networking = client.NetworkingV1Api(api_client)

        # Empty pod selector = every pod in the policy's own namespace
        same_namespace = client.V1NetworkPolicyPeer(pod_selector=client.V1LabelSelector())
        body = client.V1NetworkPolicy(
            metadata=self._metadata(name, namespace, labels),
            spec=client.V1NetworkPolicySpec(
                pod_selector=client.V1LabelSelector(),
                policy_types=["Ingress", "Egress"],
                ingress=[client.V1NetworkPolicyIngressRule(_from=[same_namespace])],
                egress=[client.V1NetworkPolicyEgressRule()],
            ),
        )
        await self._create(
            "k8s.create_network_policy",
            networking.create_namespaced_network_policy(namespace=namespace, body=body),
            namespace=namespace,
            name=name,
        )

    # Workloads

    async def create_workload(self, spec: WorkloadSpec) -> str:
        """Create a Pod without waiting for it to start.

        Returns:
            Pod name (used as workload_ref)
        """
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        container = client.V1Container(
            name=spec.container_name,
            image=spec.image,
            image_pull_policy=spec.image_pull_policy,
            ports=[client.V1ContainerPort(container_port=port) for port in spec.ports] or None,
            env=[client.V1EnvVar(name=k, value=v) for k, v in spec.env.items()],
            resources=client.V1ResourceRequirements(
                requests={"cpu": spec.cpu_request, "memory": spec.memory_request},
                limits={"cpu": spec.cpu_limit, "memory": spec.memory_limit},
            ),
        )

        image_pull_secrets = None
        if self._image_pull_secrets:
            image_pull_secrets = [
                client.V1LocalObjectReference(name=secret)
                for secret in self._image_pull_secrets
            ]

        pod = client.V1Pod(
            metadata=self._metadata(spec.name, spec.namespace, spec.labels),
            spec=client.V1PodSpec(
                containers=[container],
                image_pull_secrets=image_pull_secrets,
                restart_policy=spec.restart_policy,
            ),
        )

        await self._create(
            "k8s.create_pod",
            v1.create_namespaced_pod(namespace=spec.namespace, body=pod),
            namespace=spec.namespace,
            pod_name=spec.name,
            image=spec.image,
            ports=spec.ports,
        )
        return spec.name

    async def get_workload(self, namespace: str, name: str) -> WorkloadInfo:
        """Get Pod state as a tri-state observation."""
        try:
            api_client = await self._get_api_client()
            v1 = client.CoreV1Api(api_client)
            pod = await v1.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return WorkloadInfo(
                    name=name,
                    namespace=namespace,
                    observation=WorkloadObservation.ABSENT,
                )
            self._log.warning(
                "k8s.get_pod.unreachable", namespace=namespace, pod_name=name, status=e.status
            )
            return WorkloadInfo(
                name=name,
                namespace=namespace,
                observation=WorkloadObservation.UNREACHABLE,
                error=f"HTTP {e.status}: {e.reason}",
            )
        except (InfrastructureTransientError, *_TRANSPORT_ERRORS) as e:
            self._log.warning(
                "k8s.get_pod.unreachable", namespace=namespace, pod_name=name, error=str(e)
            )
            return WorkloadInfo(
                name=name,
                namespace=namespace,
                observation=WorkloadObservation.UNREACHABLE,
                error=str(e),
            )

        ports: list[int] = []
        for container in (pod.spec.containers if pod.spec else None) or []:
            for port in container.ports or []:
                ports.append(port.container_port)

        exit_code = None
        container_statuses = (pod.status.container_statuses if pod.status else None) or []
        if container_statuses:
            cs = container_statuses[0]
            if cs.state and cs.state.terminated:
                exit_code = cs.state.terminated.exit_code

        return WorkloadInfo(
            name=name,
            namespace=namespace,
            observation=WorkloadObservation.FOUND,
            phase=(pod.status.phase if pod.status else None) or "Unknown",
            container_ports=ports,
            pod_ip=pod.status.pod_ip if pod.status else None,
            exit_code=exit_code,
        )

    async def delete_workload(self, namespace: str, name: str) -> None:
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        await self._delete(
            "k8s.delete_pod",
            v1.delete_namespaced_pod(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(grace_period_seconds=10),
            ),
            namespace=namespace,
            pod_name=name,
        )

    async def workload_logs(
        self, namespace: str, name: str, *, container: str, tail: int = 100
    ) -> str:
        """Get Pod logs. A missing pod has no logs."""
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        try:
            logs = await v1.read_namespaced_pod_log(
                name=name,
                namespace=namespace,
                container=container,
                tail_lines=tail,
            )
            return logs or ""
        except ApiException as e:
            if e.status == 404:
                return ""
            raise _transient("k8s.read_pod_log", e) from e
        except _TRANSPORT_ERRORS as e:
            raise _transient("k8s.read_pod_log", e) from e

    async def exec_in_workload(
        self, namespace: str, name: str, *, container: str, command: list[str]
    ) -> str:
        """Run a command through the exec websocket and return its output."""
        await self._ensure_config()

        # Command text may carry credentials; log only the executable
        self._log.info(
            "k8s.exec", namespace=namespace, pod_name=name, executable=command[0] if command else None
        )

        try:
            async with WsApiClient() as ws_api:
                v1_ws = client.CoreV1Api(api_client=ws_api)
                output = await v1_ws.connect_get_namespaced_pod_exec(
                    name,
                    namespace,
                    container=container,
                    command=command,
                    stderr=True,
                    stdin=False,
                    stdout=True,
                    tty=False,
                )
        except ApiException as e:
            raise _transient("k8s.exec", e) from e
        except _TRANSPORT_ERRORS as e:
            raise _transient("k8s.exec", e) from e

        return output or ""

    # Services

    async def create_service(self, spec: ServiceSpec) -> None:
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        body = client.V1Service(
            metadata=self._metadata(spec.name, spec.namespace, spec.labels),
            spec=client.V1ServiceSpec(
                type="NodePort",
                selector=dict(spec.selector),
                ports=[
                    client.V1ServicePort(
                        name="ssh",
                        protocol="TCP",
                        port=spec.port,
                        target_port=spec.target_port,
                        node_port=spec.node_port,
                    )
                ],
            ),
        )
        await self._create(
            "k8s.create_service",
            v1.create_namespaced_service(namespace=spec.namespace, body=body),
            namespace=spec.namespace,
            name=spec.name,
            node_port=spec.node_port,
        )

    async def delete_service(self, namespace: str, name: str) -> None:
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)

        await self._delete(
            "k8s.delete_service",
            v1.delete_namespaced_service(name=name, namespace=namespace),
            namespace=namespace,
            name=name,
        )
