"""Pytest configuration and fixtures."""

import asyncio
import copy
from typing import Dict, List, Optional, Tuple

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import ReconcilerConfig
from controller import StatusReconciler
from document import Document
from kube import (
    DEPLOYMENT,
    STATEFUL_SET,
    ClusterAccessError,
    InstanceList,
    ManagedInstance,
)


def make_instance(
    name: str,
    namespace: str = "team-a",
    redis_replicas: int = 3,
    sentinel_replicas: int = 3,
    status: Optional[dict] = None,
) -> dict:
    """Build a RedisFailover object as the API server returns it."""
    obj = {
        "apiVersion": "databases.spotahome.com/v1",
        "kind": "RedisFailover",
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": "1"},
        "spec": {
            "redis": {"replicas": redis_replicas},
            "sentinel": {"replicas": sentinel_replicas},
        },
    }
    if status is not None:
        obj["status"] = status
    return obj


def make_workload(replicas: int, ready_replicas: int) -> dict:
    return {"status": {"replicas": replicas, "readyReplicas": ready_replicas}}


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until it holds, failing the test after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


class FakeCluster:
    """In-memory stand-in for ClusterClient."""

    def __init__(self):
        self.instances: Dict[Tuple[str, str], dict] = {}
        self.workloads: Dict[Tuple[str, str, str], dict] = {}
        self.namespaces: List[str] = []
        self.resource_version = "100"

        self.forbid_cluster_list = False
        self.forbidden_namespaces = set()
        self.list_error: Optional[Exception] = None
        self.workload_error: Optional[Exception] = None
        self.watch_open_errors: List[Exception] = []

        self.list_calls: List[Optional[str]] = []
        self.namespace_list_calls = 0
        self.watch_calls: List[str] = []
        self.watch_queues: List[asyncio.Queue] = []

    # Test helpers

    def add_instance(self, name: str, namespace: str = "team-a", **kwargs) -> dict:
        obj = make_instance(name, namespace, **kwargs)
        self.instances[(namespace, name)] = obj
        return obj

    def set_workloads(
        self,
        name: str,
        namespace: str = "team-a",
        redis: Optional[Tuple[int, int]] = None,
        sentinel: Optional[Tuple[int, int]] = None,
    ) -> None:
        if redis is not None:
            self.workloads[(STATEFUL_SET, namespace, f"rfr-{name}")] = make_workload(*redis)
        if sentinel is not None:
            self.workloads[(DEPLOYMENT, namespace, f"rfs-{name}")] = make_workload(*sentinel)

    def push(self, item) -> None:
        """Deliver an event (or None to close, or an exception) to the open watch."""
        self.watch_queues[-1].put_nowait(item)

    # ClusterClient interface

    async def list_instances(self, namespace: Optional[str] = None) -> InstanceList:
        self.list_calls.append(namespace)
        if namespace is None:
            if self.list_error is not None:
                raise self.list_error
            if self.forbid_cluster_list:
                raise ClusterAccessError("list redisfailovers: 403 Forbidden", status=403)
            objs = list(self.instances.values())
        else:
            if namespace in self.forbidden_namespaces:
                raise ClusterAccessError("list redisfailovers: 403 Forbidden", status=403)
            objs = [o for (ns, _), o in self.instances.items() if ns == namespace]
        return InstanceList(
            items=[Document(copy.deepcopy(o)) for o in objs],
            resource_version=self.resource_version,
        )

    async def list_namespace_names(self) -> List[str]:
        self.namespace_list_calls += 1
        return list(self.namespaces)

    async def get_instance_workloads(self, instance: ManagedInstance):
        if self.workload_error is not None:
            raise self.workload_error
        redis = self.workloads.get((STATEFUL_SET, instance.namespace, instance.redis_workload_name))
        sentinel = self.workloads.get((DEPLOYMENT, instance.namespace, instance.sentinel_workload_name))
        return (
            Document(redis) if redis is not None else None,
            Document(sentinel) if sentinel is not None else None,
        )

    async def watch_instances(self, resource_version: str):
        self.watch_calls.append(resource_version)
        if self.watch_open_errors:
            raise self.watch_open_errors.pop(0)
        queue: asyncio.Queue = asyncio.Queue()
        self.watch_queues.append(queue)
        while True:
            item = await queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class FakeStore:
    """In-memory status cache and service log."""

    def __init__(self):
        self.cache: Dict[Tuple[str, str], str] = {}
        self.logs: list = []
        self.get_error: Optional[Exception] = None
        self.set_error: Optional[Exception] = None
        self.insert_error: Optional[Exception] = None

    async def get_instance_status(self, instance_name: str, namespace: str) -> str:
        if self.get_error is not None:
            raise self.get_error
        return self.cache.get((instance_name, namespace), "")

    async def set_instance_status(self, instance_name: str, namespace: str, status: str) -> None:
        if self.set_error is not None:
            raise self.set_error
        self.cache[(instance_name, namespace)] = status

    async def insert_service_log(self, event) -> int:
        if self.insert_error is not None:
            raise self.insert_error
        self.logs.append(event)
        return len(self.logs)


@pytest.fixture
def fake_cluster():
    return FakeCluster()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def reconciler_config():
    """Fast backoff and a sync interval long enough to stay out of the way."""
    return ReconcilerConfig(sync_interval=60.0, backoff_initial=0.01, backoff_max=0.04)


@pytest.fixture
def reconciler(fake_cluster, fake_store, reconciler_config):
    return StatusReconciler(
        cluster=fake_cluster,
        status_cache=fake_store,
        service_log=fake_store,
        config=reconciler_config,
    )


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn
