"""
Status Reconciler - Keeps the service log in step with live instance status.

Two loops observe RedisFailover resources:

* a watch loop that lists every instance, then streams ADDED/MODIFIED events
  from the list's resource version, reconnecting with exponential backoff;
* a periodic sync loop that re-lists every instance on a fixed interval and
  repairs anything the watch missed.

Both feed each resource through process_instance(), which resolves the
instance's status, compares it with the status cache and appends one
service log event per transition. The loops share nothing but the cache and
the log; a race between them can duplicate an event, and the next pass
converges on the true status.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, List, Optional, Protocol, Tuple

from config import ReconcilerConfig
from document import Document, MalformedResourceError
from events import ServiceLogEvent, utcnow
from kube import (
    WATCH_ADDED,
    WATCH_MODIFIED,
    ClusterClient,
    InstanceList,
    ManagedInstance,
    WatchEvent,
    is_forbidden,
)
from status import (
    FAILED,
    WorkloadState,
    instance_live_status,
    resolve_instance_status,
    status_from_resource_body,
    workload_status_of,
)

logger = logging.getLogger(__name__)


class StatusCache(Protocol):
    async def get_instance_status(self, instance_name: str, namespace: str) -> str: ...

    async def set_instance_status(
        self, instance_name: str, namespace: str, status: str
    ) -> None: ...


class ServiceLogSink(Protocol):
    async def insert_service_log(self, event: ServiceLogEvent) -> object: ...


class Backoff:
    """Exponential reconnect delay: initial, doubled per failure, capped."""

    def __init__(self, initial: float = 0.5, maximum: float = 30.0):
        self.initial = initial
        self.maximum = maximum
        self.current = initial

    def next_delay(self) -> float:
        """Return the delay to wait now and double the following one."""
        delay = self.current
        self.current = min(self.current * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = self.initial


@dataclass
class SyncResult:
    """Outcome of one full sync pass."""

    instances: int = 0
    written: int = 0
    errors: int = 0


@dataclass
class ReconcilerState:
    """Observable state of the reconciler, reported by the probe server."""

    ready: bool = False
    watching: bool = False
    last_sync_at: Optional[datetime] = None
    consecutive_watch_failures: int = 0
    events_written: int = 0


class StatusReconciler:
    """
    Watches and periodically re-syncs RedisFailover resources, recording
    status transitions in the service log.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        status_cache: StatusCache,
        service_log: ServiceLogSink,
        config: Optional[ReconcilerConfig] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.cluster = cluster
        self.status_cache = status_cache
        self.service_log = service_log
        self.config = config or ReconcilerConfig()
        self.state = ReconcilerState()
        self.backoff = Backoff(self.config.backoff_initial, self.config.backoff_max)

        self._shutdown_event = shutdown_event or asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """
        Run one full sync, then start the watch and sync loops.

        Returns once both loops are running; use wait() to block on them.
        """
        logger.info("Starting status reconciler")
        self._shutdown_event.clear()

        await self.sync_once()
        self.state.ready = True

        self._tasks = [
            asyncio.create_task(self.run_watch_loop(), name="status-watch"),
            asyncio.create_task(self.run_sync_loop(), name="status-sync"),
        ]

    async def wait(self) -> None:
        """Block until both loops have exited."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal shutdown and wait for both loops, cancelling stragglers."""
        logger.info("Stopping status reconciler")
        self._shutdown_event.set()
        self.state.ready = False

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} reconciler task(s) after {timeout}s")
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

    async def _sleep_or_shutdown(self, delay: float) -> bool:
        """Sleep for delay seconds; return True early if shutdown is signalled."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    # ==================== Transition detection ====================

    async def resolve_status(self, doc: Document) -> Tuple[ManagedInstance, str]:
        """
        Decode an instance and compute the status to record for it.

        Workload status is used once at least one workload exists; before
        that the resource's own status block decides.
        """
        instance = ManagedInstance.from_document(doc)
        redis, sentinel = await self.cluster.get_instance_workloads(instance)

        live = ""
        if redis is not None or sentinel is not None:
            redis_state = WorkloadState.from_document(redis) if redis is not None else None
            sentinel_state = (
                WorkloadState.from_document(sentinel) if sentinel is not None else None
            )
            live = instance_live_status(
                workload_status_of(redis_state, instance.redis_replicas),
                workload_status_of(sentinel_state, instance.sentinel_replicas),
            )

        instance.status = resolve_instance_status(status_from_resource_body(doc), live)
        return instance, instance.status

    async def process_instance(self, obj) -> bool:
        """
        Record a status transition for one resource snapshot, if any.

        Returns:
            True if a service log event was written.

        Raises:
            MalformedResourceError: If the object cannot be decoded.
            Exception: If the cache read or the log insert fails; nothing
                is recorded for this item in that case.
        """
        doc = Document.from_object(obj)
        instance, current = await self.resolve_status(doc)
        name, namespace = instance.name, instance.namespace

        cached = await self.status_cache.get_instance_status(name, namespace)
        if not cached:
            event = ServiceLogEvent.first_seen(name, namespace, current)
        elif cached == current:
            return False
        else:
            event = ServiceLogEvent.transition(
                name, namespace, cached, current, failure_status=FAILED
            )

        await self.service_log.insert_service_log(event)
        self.state.events_written += 1

        try:
            await self.status_cache.set_instance_status(name, namespace, current)
        except Exception as e:
            logger.warning(f"Failed to update status cache for {namespace}/{name}: {e}")

        logger.info(f"{namespace}/{name}: {event.message}")
        return True

    # ==================== Listing ====================

    async def list_all_instances(self) -> InstanceList:
        """
        List every instance, falling back to per-namespace listing when the
        cluster-wide list is forbidden.
        """
        try:
            return await self.cluster.list_instances()
        except Exception as e:
            if not is_forbidden(e):
                raise
            logger.info("Cluster-wide instance list forbidden, listing per namespace")
            return await self._list_by_namespace(e)

    async def _list_by_namespace(self, original: Exception) -> InstanceList:
        names = await self.cluster.list_namespace_names()
        result = InstanceList()
        failures = 0

        for namespace in names:
            try:
                listing = await self.cluster.list_instances(namespace=namespace)
            except Exception as e:
                failures += 1
                logger.debug(f"Skipping namespace {namespace}: {e}")
                continue
            result.items.extend(listing.items)

        if names and failures == len(names):
            raise original

        logger.info(
            f"Per-namespace list found {len(result.items)} instance(s) "
            f"in {len(names) - failures}/{len(names)} namespace(s)"
        )
        return result

    # ==================== Sync loop ====================

    async def sync_once(self) -> SyncResult:
        """Run a full reconciliation pass over every instance."""
        result = SyncResult()
        try:
            listing = await self.list_all_instances()
        except Exception as e:
            logger.error(f"Status sync failed to list instances: {e}")
            result.errors += 1
            return result

        for item in listing.items:
            if self._shutdown_event.is_set():
                break
            result.instances += 1
            try:
                if await self.process_instance(item):
                    result.written += 1
            except Exception as e:
                result.errors += 1
                logger.error(f"Status sync failed for {item.namespace}/{item.name}: {e}")

        self.state.last_sync_at = utcnow()
        if result.instances or result.written:
            logger.info(
                f"Status sync complete: {result.instances} instances, "
                f"{result.written} logs written"
            )
        return result

    async def run_sync_loop(self) -> None:
        """Run sync_once() every sync_interval seconds until shutdown."""
        while not await self._sleep_or_shutdown(self.config.sync_interval):
            try:
                await self.sync_once()
            except Exception as e:
                logger.error(f"Error in status sync loop: {e}", exc_info=True)
        logger.info("Status sync loop stopped")

    # ==================== Watch loop ====================

    async def _next_event(self, events: AsyncIterator[WatchEvent]) -> Optional[WatchEvent]:
        """
        Wait for the next watch event or for shutdown.

        Returns None when the stream closes or shutdown is signalled.
        """
        if self._shutdown_event.is_set():
            return None

        next_task = asyncio.ensure_future(events.__anext__())
        stop_task = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            await asyncio.wait({next_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (next_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(next_task, stop_task, return_exceptions=True)

        if next_task.cancelled():
            return None
        try:
            return next_task.result()
        except StopAsyncIteration:
            return None

    async def watch_once(self) -> None:
        """
        One list-then-watch session.

        Returns normally when the server closes the stream or on shutdown.

        Raises:
            Exception: If listing, opening the watch, or the stream fails.
        """
        listing = await self.list_all_instances()
        resource_version = listing.resource_version or "0"

        events = self.cluster.watch_instances(resource_version)
        self.state.watching = True
        logger.info(f"Watching instances from resourceVersion={resource_version}")
        try:
            while True:
                event = await self._next_event(events)
                if event is None:
                    return
                if event.type not in (WATCH_ADDED, WATCH_MODIFIED):
                    continue
                try:
                    await self.process_instance(event.object)
                except MalformedResourceError as e:
                    logger.debug(f"Skipping malformed watch object: {e.message}")
                except Exception as e:
                    doc = event.object if isinstance(event.object, dict) else {}
                    ref = Document(doc)
                    logger.error(f"Status watch failed for {ref.namespace}/{ref.name}: {e}")
        finally:
            self.state.watching = False
            await events.aclose()

    async def run_watch_loop(self) -> None:
        """Run watch sessions until shutdown, backing off after failures."""
        while not self._shutdown_event.is_set():
            try:
                await self.watch_once()
            except Exception as e:
                self.state.consecutive_watch_failures += 1
                delay = self.backoff.next_delay()
                logger.warning(f"Instance watch ended: {e}; reconnecting in {delay:.1f}s")
                if await self._sleep_or_shutdown(delay):
                    break
            else:
                self.state.consecutive_watch_failures = 0
                self.backoff.reset()
        logger.info("Instance watch loop stopped")
