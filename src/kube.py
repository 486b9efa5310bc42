"""
Cluster Resource Client - Kubernetes access for Redis instances.

Wraps kubernetes_asyncio behind a small interface: get/list/watch/create/
update/delete of RedisFailover custom resources, lookups of the generated
workloads, and namespace enumeration. Everything is returned as a Document
so callers never deal with generated client models.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from kubernetes_asyncio import client, watch
from kubernetes_asyncio import config as k8s_config
from kubernetes_asyncio.client.exceptions import ApiException

from config import KubeConfig
from document import Document, MalformedResourceError

logger = logging.getLogger(__name__)

# Workload names generated by the Redis operator for an instance
REDIS_WORKLOAD_PREFIX = "rfr-"
SENTINEL_WORKLOAD_PREFIX = "rfs-"

STATEFUL_SET = "StatefulSet"
DEPLOYMENT = "Deployment"

PROTECTED_NAMESPACES = frozenset({"", "default", "kube-system", "kube-public"})

WATCH_ADDED = "ADDED"
WATCH_MODIFIED = "MODIFIED"
WATCH_DELETED = "DELETED"


class ClusterAccessError(Exception):
    """Raised when the Kubernetes API cannot be reached or refuses a call."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


def is_forbidden(exc: BaseException) -> bool:
    """True for authorization failures (HTTP 403 or a 'forbidden' message)."""
    if getattr(exc, "status", None) == 403:
        return True
    return "forbidden" in str(exc).lower()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def _wrap(exc: ApiException, action: str) -> ClusterAccessError:
    return ClusterAccessError(f"{action}: {exc.status} {exc.reason}", status=exc.status)


@dataclass
class InstanceList:
    """Result of listing instances."""

    items: List[Document] = field(default_factory=list)
    resource_version: str = ""


@dataclass
class WatchEvent:
    """A single event from an instance watch stream."""

    type: str
    object: Any


@dataclass
class ManagedInstance:
    """A Redis instance decoded from its RedisFailover resource."""

    name: str
    namespace: str
    redis_replicas: int = 0
    sentinel_replicas: int = 0
    created_at: str = ""
    # Last resolved status; empty until a reconciler has observed the instance
    status: str = ""

    @classmethod
    def from_document(cls, doc: Document) -> "ManagedInstance":
        """
        Decode identity and desired topology.

        Raises:
            MalformedResourceError: If the resource has no name.
        """
        if not doc.name:
            raise MalformedResourceError("Resource has no metadata.name")
        return cls(
            name=doc.name,
            namespace=doc.namespace,
            redis_replicas=doc.get_int("spec.redis.replicas") or 0,
            sentinel_replicas=doc.get_int("spec.sentinel.replicas") or 0,
            created_at=doc.get_str("metadata.creationTimestamp") or "",
        )

    @property
    def redis_workload_name(self) -> str:
        return REDIS_WORKLOAD_PREFIX + self.name

    @property
    def sentinel_workload_name(self) -> str:
        return SENTINEL_WORKLOAD_PREFIX + self.name


def build_instance_manifest(
    name: str,
    namespace: str,
    redis_replicas: int,
    sentinel_replicas: int,
    api_version: str = "databases.spotahome.com/v1",
    kind: str = "RedisFailover",
) -> Dict[str, Any]:
    """Build the custom resource body for a new instance."""
    return {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "redis": {"replicas": int(redis_replicas)},
            "sentinel": {"replicas": int(sentinel_replicas)},
        },
    }


class ClusterClient:
    """
    Async client for RedisFailover resources and their workloads.

    List and get calls are bounded by ``request_timeout``. Opening a watch
    uses the same value as a connect timeout only, so an idle stream is
    never cut off by the client.
    """

    def __init__(
        self,
        api_client: Any,
        kube_config: Optional[KubeConfig] = None,
        custom_api: Any = None,
        apps_api: Any = None,
        core_api: Any = None,
    ):
        self.api_client = api_client
        self.config = kube_config or KubeConfig()
        self._custom = custom_api or client.CustomObjectsApi(api_client)
        self._apps = apps_api or client.AppsV1Api(api_client)
        self._core = core_api or client.CoreV1Api(api_client)

    @classmethod
    async def create(cls, kube_config: KubeConfig) -> "ClusterClient":
        """Load in-cluster config, falling back to a kubeconfig file."""
        try:
            k8s_config.load_incluster_config()
            logger.info("Kubernetes client configured from in-cluster service account")
        except k8s_config.ConfigException:
            await k8s_config.load_kube_config(config_file=kube_config.kubeconfig_path)
            logger.info("Kubernetes client configured from kubeconfig")
        return cls(client.ApiClient(), kube_config)

    async def close(self) -> None:
        await self.api_client.close()

    @property
    def _crd(self) -> Tuple[str, str, str]:
        return (
            self.config.instance_group,
            self.config.instance_version,
            self.config.instance_plural,
        )

    # ==================== Instances ====================

    async def get_instance(self, namespace: str, name: str) -> Optional[Document]:
        """Get one instance, or None if it does not exist."""
        group, version, plural = self._crd
        try:
            obj = await self._custom.get_namespaced_custom_object(
                group,
                version,
                namespace,
                plural,
                name,
                _request_timeout=self.config.request_timeout,
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise _wrap(e, f"get {namespace}/{name}") from e
        return Document.from_object(obj)

    async def list_instances(self, namespace: Optional[str] = None) -> InstanceList:
        """
        List instances cluster-wide, or within one namespace.

        Raises:
            ClusterAccessError: On any API failure, including 403.
        """
        group, version, plural = self._crd
        try:
            if namespace:
                result = await self._custom.list_namespaced_custom_object(
                    group,
                    version,
                    namespace,
                    plural,
                    _request_timeout=self.config.request_timeout,
                )
            else:
                result = await self._custom.list_cluster_custom_object(
                    group,
                    version,
                    plural,
                    _request_timeout=self.config.request_timeout,
                )
        except ApiException as e:
            raise _wrap(e, f"list {plural}") from e

        doc = Document.from_object(result)
        items = [Document(item) for item in doc.get_list("items") or [] if isinstance(item, dict)]
        return InstanceList(items=items, resource_version=doc.resource_version)

    async def watch_instances(self, resource_version: str) -> AsyncIterator[WatchEvent]:
        """
        Stream instance events cluster-wide from a resource version.

        The server closes the stream after watch_timeout seconds, or
        earlier at its own discretion; either way the generator then ends
        normally and the caller decides when to list and watch again.
        Closing the generator closes the underlying HTTP connection.

        Raises:
            ClusterAccessError: If the watch cannot be opened or the server
                sends an error event (410 Gone included).
        """
        group, version, plural = self._crd
        watcher = watch.Watch()
        try:
            async with watcher.stream(
                self._custom.list_cluster_custom_object,
                group,
                version,
                plural,
                resource_version=resource_version,
                timeout_seconds=self.config.watch_timeout,
                _request_timeout=(self.config.request_timeout, None),
            ) as stream:
                async for event in stream:
                    if not isinstance(event, dict):
                        continue
                    # ERROR events arrive as ApiException from the watcher
                    yield WatchEvent(
                        type=event.get("type", ""),
                        object=event.get("raw_object", event.get("object")),
                    )
        except ApiException as e:
            raise _wrap(e, f"watch {plural}") from e
        finally:
            watcher.stop()

    async def create_instance(
        self,
        name: str,
        namespace: str,
        redis_replicas: int,
        sentinel_replicas: int,
    ) -> Document:
        """Create a new instance resource."""
        group, version, plural = self._crd
        body = build_instance_manifest(
            name,
            namespace,
            redis_replicas,
            sentinel_replicas,
            api_version=self.config.api_version,
            kind=self.config.instance_kind,
        )
        try:
            obj = await self._custom.create_namespaced_custom_object(
                group, version, namespace, plural, body
            )
        except ApiException as e:
            raise _wrap(e, f"create {namespace}/{name}") from e
        logger.info(f"Created {self.config.instance_kind} {namespace}/{name}")
        return Document.from_object(obj)

    async def update_instance(
        self,
        namespace: str,
        name: str,
        redis_replicas: Optional[int] = None,
        sentinel_replicas: Optional[int] = None,
    ) -> Optional[Document]:
        """
        Change the desired replica counts of an instance.

        Returns:
            The updated resource, or None if the instance does not exist.
        """
        current = await self.get_instance(namespace, name)
        if current is None:
            return None

        body = copy.deepcopy(current.raw)
        spec = body.setdefault("spec", {})
        if redis_replicas is not None:
            spec.setdefault("redis", {})["replicas"] = int(redis_replicas)
        if sentinel_replicas is not None:
            spec.setdefault("sentinel", {})["replicas"] = int(sentinel_replicas)

        group, version, plural = self._crd
        try:
            obj = await self._custom.replace_namespaced_custom_object(
                group, version, namespace, plural, name, body
            )
        except ApiException as e:
            raise _wrap(e, f"update {namespace}/{name}") from e
        logger.info(f"Updated {self.config.instance_kind} {namespace}/{name}")
        return Document.from_object(obj)

    async def delete_instance(self, namespace: str, name: str) -> bool:
        """
        Delete an instance resource.

        Returns:
            True if deleted, False if it did not exist.
        """
        group, version, plural = self._crd
        try:
            await self._custom.delete_namespaced_custom_object(
                group, version, namespace, plural, name
            )
        except ApiException as e:
            if is_not_found(e):
                return False
            raise _wrap(e, f"delete {namespace}/{name}") from e
        logger.info(f"Deleted {self.config.instance_kind} {namespace}/{name}")
        return True

    # ==================== Workloads ====================

    async def get_workload(self, kind: str, namespace: str, name: str) -> Optional[Document]:
        """
        Get a StatefulSet or Deployment.

        Returns:
            The workload, or None if it does not exist.
        """
        try:
            if kind == STATEFUL_SET:
                obj = await self._apps.read_namespaced_stateful_set(
                    name, namespace, _request_timeout=self.config.request_timeout
                )
            elif kind == DEPLOYMENT:
                obj = await self._apps.read_namespaced_deployment(
                    name, namespace, _request_timeout=self.config.request_timeout
                )
            else:
                raise ValueError(f"Unsupported workload kind: {kind}")
        except ApiException as e:
            if is_not_found(e):
                return None
            raise _wrap(e, f"get {kind} {namespace}/{name}") from e

        if isinstance(obj, dict):
            return Document(obj)
        return Document(self.api_client.sanitize_for_serialization(obj))

    async def get_instance_workloads(
        self, instance: ManagedInstance
    ) -> Tuple[Optional[Document], Optional[Document]]:
        """Return the (redis, sentinel) workloads of an instance."""
        redis = await self.get_workload(
            STATEFUL_SET, instance.namespace, instance.redis_workload_name
        )
        sentinel = await self.get_workload(
            DEPLOYMENT, instance.namespace, instance.sentinel_workload_name
        )
        return redis, sentinel

    # ==================== Namespaces ====================

    async def list_namespace_names(self) -> List[str]:
        """Names of all namespaces visible to the controller."""
        try:
            result = await self._core.list_namespace(
                _request_timeout=self.config.request_timeout
            )
        except ApiException as e:
            raise _wrap(e, "list namespaces") from e

        names = []
        for item in getattr(result, "items", None) or []:
            metadata = getattr(item, "metadata", None)
            name = getattr(metadata, "name", None)
            if name:
                names.append(name)
        return names

    async def ensure_namespace(self, name: str) -> None:
        """Create a namespace if it does not exist yet."""
        if name in PROTECTED_NAMESPACES:
            return
        try:
            await self._core.read_namespace(
                name, _request_timeout=self.config.request_timeout
            )
            return
        except ApiException as e:
            if not is_not_found(e):
                raise _wrap(e, f"get namespace {name}") from e

        body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}
        try:
            await self._core.create_namespace(body)
        except ApiException as e:
            # Lost a race with another creator
            if e.status == 409:
                return
            raise _wrap(e, f"create namespace {name}") from e
        logger.info(f"Created namespace {name}")
