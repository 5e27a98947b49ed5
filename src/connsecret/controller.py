"""Controller runtime: watches, work queue, workers and periodic resync.

Watches on AtlasDeployment, AtlasDatabaseUser, AtlasProject and labeled
Secrets feed the resource cache and the fan-out. Fan-out requests land in a
de-duplicating work queue drained by WORKER_COUNT workers. Each reconcile
runs in the default executor and each watch in its own daemon thread,
since the Kubernetes client is blocking.

REQUEUE POLICY:
- Upserted / Deleted / Ignored / Terminated: dropped from the queue
- InProgress: requeued after NOT_READY_REQUEUE seconds
- Retry: exponential backoff with jitter, dropped after MAX_RETRIES in a row

A periodic resync re-lists everything, re-enqueues every known pair and
reaps orphaned secrets project by project.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from .config import Config
from .fanout import EVENT_DELETED, ReconcileRequest, WatchRegistry, fan_out_secret
from .garbage import GarbageCollector
from .identifiers import (
    CLUSTER_LABEL_KEY,
    CREDENTIALS_LABEL_VALUE,
    PROJECT_LABEL_KEY,
    TYPE_LABEL_KEY,
)
from .indexer import ResourceCache
from .models import (
    DATABASE_USER_KIND,
    DATABASE_USER_PLURAL,
    DEPLOYMENT_KIND,
    DEPLOYMENT_PLURAL,
    PROJECT_KIND,
    PROJECT_PLURAL,
    AtlasDatabaseUser,
    AtlasDeployment,
    AtlasProject,
    AtlasResource,
    parse_resource,
)
from .projects import ProjectLookupError, ProjectResolver
from .reconciler import ConnectionSecretReconciler, Outcome, ReconcileResult

logger = logging.getLogger(__name__)

SECRET_KIND = "Secret"
CONNECTION_SECRET_SELECTOR = (
    f"{TYPE_LABEL_KEY}={CREDENTIALS_LABEL_VALUE},{PROJECT_LABEL_KEY},{CLUSTER_LABEL_KEY}"
)

# Server-side timeout of one watch call; the stream is reopened after it
WATCH_TIMEOUT_SECONDS = 300
HTTP_GONE = 410

PLURAL_BY_KIND = {
    DEPLOYMENT_KIND: DEPLOYMENT_PLURAL,
    DATABASE_USER_KIND: DATABASE_USER_PLURAL,
    PROJECT_KIND: PROJECT_PLURAL,
}


def backoff_seconds(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff with up to 20% jitter, capped at maximum."""
    backoff = base * (2 ** (attempt - 1))
    jitter = random.uniform(0, backoff * 0.2)
    return min(backoff + jitter, maximum)


class WorkQueue:
    """Async work queue that ignores requests already waiting to be processed."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ReconcileRequest] = asyncio.Queue()
        self._pending: set[ReconcileRequest] = set()
        self._delayed: dict[ReconcileRequest, asyncio.TimerHandle] = {}

    def add(self, request: ReconcileRequest) -> bool:
        """Enqueue a request. Returns False if it was already queued."""
        timer = self._delayed.pop(request, None)
        if timer is not None:
            timer.cancel()
        if request in self._pending:
            return False
        self._pending.add(request)
        self._queue.put_nowait(request)
        return True

    def add_after(self, request: ReconcileRequest, delay_seconds: float) -> None:
        """Enqueue a request after a delay, unless it is queued sooner."""
        if request in self._pending or request in self._delayed:
            return
        loop = asyncio.get_running_loop()
        self._delayed[request] = loop.call_later(delay_seconds, self._fire, request)

    def _fire(self, request: ReconcileRequest) -> None:
        self._delayed.pop(request, None)
        self.add(request)

    async def get(self) -> ReconcileRequest:
        request = await self._queue.get()
        self._pending.discard(request)
        return request

    def task_done(self) -> None:
        self._queue.task_done()

    def __len__(self) -> int:
        return len(self._pending)

    def close(self) -> None:
        """Cancel every delayed request."""
        for timer in self._delayed.values():
            timer.cancel()
        self._delayed.clear()


class Controller:
    """Runs watches, workers and resync until shutdown."""

    def __init__(
        self,
        config: Config,
        core_api: Any,
        custom_api: Any,
        cache: ResourceCache,
        registry: WatchRegistry,
        reconciler: ConnectionSecretReconciler,
        garbage: GarbageCollector,
        projects: ProjectResolver,
    ) -> None:
        self._config = config
        self._core_api = core_api
        self._custom_api = custom_api
        self._cache = cache
        self._registry = registry
        self._reconciler = reconciler
        self._garbage = garbage
        self._projects = projects

        self._queue = WorkQueue()
        self._attempts: dict[ReconcileRequest, int] = {}
        self._shutdown_event = asyncio.Event()
        self._stop_watches = threading.Event()
        self._watches: list[watch.Watch] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def cache(self) -> ResourceCache:
        return self._cache

    async def run(self) -> None:
        """Run the controller until shutdown() is called."""
        self._loop = asyncio.get_running_loop()
        logger.info(
            "Starting controller",
            extra={
                "namespace": self._config.namespace or "*",
                "workers": self._config.worker_count,
                "resync_interval_seconds": self._config.resync_interval_seconds,
                "remote_lookup": self._projects.remote_enabled,
                "kinds": self._registry.kinds,
            },
        )

        await self.resync()

        self._start_watches()

        tasks = [asyncio.create_task(self._worker(i)) for i in range(self._config.worker_count)]
        tasks.append(asyncio.create_task(self._resync_loop()))

        await self._shutdown_event.wait()

        self._stop_watches.set()
        for w in list(self._watches):
            w.stop()
        self._queue.close()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        loop = asyncio.get_running_loop()
        while not self._shutdown_event.is_set():
            request = await self._queue.get()
            try:
                result = await loop.run_in_executor(None, self._reconciler.reconcile, request)
                self.handle_result(result)
            finally:
                self._queue.task_done()

    def handle_result(self, result: ReconcileResult) -> None:
        """Apply the requeue policy for a finished reconcile."""
        request = result.request
        match result.outcome:
            case Outcome.IN_PROGRESS:
                self._attempts.pop(request, None)
                self._queue.add_after(request, self._config.not_ready_requeue_seconds)

            case Outcome.RETRY:
                attempt = self._attempts.get(request, 0) + 1
                if attempt > self._config.max_retries:
                    self._attempts.pop(request, None)
                    logger.error(
                        "Giving up on request after repeated failures",
                        extra={
                            "request": str(request),
                            "attempts": attempt - 1,
                            "error": result.error,
                        },
                    )
                    return
                self._attempts[request] = attempt
                wait_time = backoff_seconds(
                    attempt,
                    self._config.retry_backoff_base_seconds,
                    self._config.retry_backoff_max_seconds,
                )
                logger.warning(
                    "Requeueing request with backoff",
                    extra={
                        "request": str(request),
                        "attempt": attempt,
                        "max_attempts": self._config.max_retries,
                        "wait_seconds": wait_time,
                    },
                )
                self._queue.add_after(request, wait_time)

            case _:
                self._attempts.pop(request, None)

    def enqueue(self, requests: set[ReconcileRequest]) -> int:
        """Add requests to the queue, returning how many were new."""
        return sum(1 for request in sorted(requests, key=str) if self._queue.add(request))

    # -------------------------------------------------------------------------
    # Watch events
    # -------------------------------------------------------------------------

    def handle_resource_event(self, kind: str, event_type: str, obj: dict[str, Any]) -> int:
        """Update the cache from one custom resource event and fan it out."""
        try:
            resource = parse_resource(kind, obj)
        except ValidationError as e:
            logger.warning(
                "Ignoring invalid resource",
                extra={
                    "kind": kind,
                    "name": obj.get("metadata", {}).get("name"),
                    "error": str(e),
                },
            )
            return 0

        old: AtlasResource | None
        new: AtlasResource | None
        if event_type == EVENT_DELETED:
            old = self._remove_from_cache(kind, resource) or resource
            new = None
        else:
            old = self._store_in_cache(kind, resource)
            new = resource

        return self.enqueue(self._registry.fan_out(kind, event_type, old, new))

    def handle_secret_event(self, event_type: str, namespace: str, name: str) -> int:
        if event_type == EVENT_DELETED:
            return 0
        return self.enqueue(fan_out_secret(namespace, name))

    def _store_in_cache(self, kind: str, resource: AtlasResource) -> AtlasResource | None:
        match resource:
            case AtlasDeployment():
                return self._cache.upsert_deployment(resource)
            case AtlasDatabaseUser():
                return self._cache.upsert_user(resource)
            case AtlasProject():
                return self._cache.upsert_project(resource)
        raise ValueError(f"unsupported kind {kind!r}")

    def _remove_from_cache(self, kind: str, resource: AtlasResource) -> AtlasResource | None:
        match resource:
            case AtlasDeployment():
                return self._cache.remove_deployment(resource.namespace, resource.name)
            case AtlasDatabaseUser():
                return self._cache.remove_user(resource.namespace, resource.name)
            case AtlasProject():
                return self._cache.remove_project(resource.namespace, resource.name)
        raise ValueError(f"unsupported kind {kind!r}")

    def _list_function(self, kind: str) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        group, version = self._config.crd_group, self._config.crd_version
        plural = PLURAL_BY_KIND[kind]
        if self._config.namespace:
            return (
                self._custom_api.list_namespaced_custom_object,
                (group, version, self._config.namespace, plural),
            )
        return self._custom_api.list_cluster_custom_object, (group, version, plural)

    def _start_watches(self) -> None:
        """Start one daemon thread per watched kind plus one for secrets."""
        for kind in self._registry.kinds:
            func, args = self._list_function(kind)
            self._start_thread(
                kind,
                func,
                args,
                {},
                lambda event_type, obj, kind=kind: self.handle_resource_event(
                    kind, event_type, obj
                ),
                lambda obj: obj.get("metadata", {}).get("resourceVersion"),
            )

        if self._config.namespace:
            func = self._core_api.list_namespaced_secret
            args: tuple[Any, ...] = (self._config.namespace,)
        else:
            func = self._core_api.list_secret_for_all_namespaces
            args = ()
        self._start_thread(
            SECRET_KIND,
            func,
            args,
            {"label_selector": CONNECTION_SECRET_SELECTOR},
            lambda event_type, obj: self.handle_secret_event(
                event_type, obj.metadata.namespace, obj.metadata.name
            ),
            lambda obj: obj.metadata.resource_version,
        )

    def _start_thread(
        self,
        kind: str,
        func: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        handler: Callable[[str, Any], int],
        version_of: Callable[[Any], str | None],
    ) -> threading.Thread:
        thread = threading.Thread(
            target=self._stream,
            args=(kind, func, args, kwargs, handler, version_of),
            name=f"watch-{kind}",
            daemon=True,
        )
        thread.start()
        return thread

    def _stream(
        self,
        kind: str,
        func: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        handler: Callable[[str, Any], int],
        version_of: Callable[[Any], str | None],
    ) -> None:
        """Blocking watch loop, run in a daemon thread.

        Events are handed to the event loop thread, which owns the queue.
        """
        loop = self._loop
        if loop is None:
            raise RuntimeError("watch started before the controller loop")
        resource_version: str | None = None

        while not self._stop_watches.is_set():
            w = watch.Watch()
            self._watches.append(w)
            try:
                stream_kwargs = dict(kwargs, timeout_seconds=WATCH_TIMEOUT_SECONDS)
                if resource_version:
                    stream_kwargs["resource_version"] = resource_version
                for event in w.stream(func, *args, **stream_kwargs):
                    event_type = event["type"]
                    obj = event["object"]
                    if event_type == "ERROR":
                        logger.info("Watch expired, restarting", extra={"kind": kind})
                        resource_version = None
                        break
                    resource_version = version_of(obj) or resource_version
                    loop.call_soon_threadsafe(handler, event_type, obj)
            except ApiException as e:
                if e.status == HTTP_GONE:
                    resource_version = None
                    continue
                logger.warning(
                    "Watch failed, restarting",
                    extra={"kind": kind, "status": e.status, "error": str(e.reason)},
                )
                self._stop_watches.wait(self._config.retry_backoff_base_seconds)
            except Exception:
                # Connection resets surface as urllib3 errors
                logger.exception("Watch stream interrupted, restarting", extra={"kind": kind})
                self._stop_watches.wait(self._config.retry_backoff_base_seconds)
            finally:
                w.stop()
                self._watches.remove(w)

    # -------------------------------------------------------------------------
    # Resync and orphan sweep
    # -------------------------------------------------------------------------

    async def _resync_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.resync_interval_seconds,
                )
            except TimeoutError:
                await self.resync_safely()

    async def resync_safely(self) -> bool:
        """Run one resync, logging a failure instead of raising it.

        Returns:
            True if the resync completed.
        """
        try:
            await self.resync()
        except ApiException as e:
            logger.error("Resync failed", extra={"status": e.status, "error": str(e.reason)})
            return False
        except Exception:
            # Connection resets surface as urllib3 errors
            logger.exception("Resync failed")
            return False
        return True

    async def resync(self) -> None:
        """Re-list all resources, enqueue every pair and reap orphans."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._relist)
        added = self.enqueue(self._registry.all_requests())
        reaped = await loop.run_in_executor(None, self.sweep_orphans)
        logger.info(
            "Resync complete",
            extra={"requests_enqueued": added, "orphans_reaped": len(reaped)},
        )

    def _relist(self) -> None:
        self._cache.begin_relist()
        try:
            resources: dict[str, list[AtlasResource]] = {}
            for kind in PLURAL_BY_KIND:
                resources[kind] = self._list_resources(kind)
            self._cache.replace_all(
                resources[DEPLOYMENT_KIND], resources[DATABASE_USER_KIND], resources[PROJECT_KIND]
            )
        finally:
            self._cache.end_relist()

    def _list_resources(self, kind: str) -> list[AtlasResource]:
        func, args = self._list_function(kind)
        parsed = []
        for item in func(*args).get("items", []):
            try:
                parsed.append(parse_resource(kind, item))
            except ValidationError as e:
                logger.warning(
                    "Ignoring invalid resource",
                    extra={
                        "kind": kind,
                        "name": item.get("metadata", {}).get("name"),
                        "error": str(e),
                    },
                )
        return parsed

    def sweep_orphans(self) -> list[str]:
        """Reap orphaned secrets for every project and namespace with users."""
        reaped: list[str] = []
        for project_id in self._cache.project_ids():
            namespaces = sorted({u.namespace for u in self._cache.users_for_project(project_id)})
            if not namespaces:
                continue
            try:
                names = self._projects.deployment_names(project_id)
            except ProjectLookupError as e:
                logger.warning(
                    "Skipping orphan sweep for project",
                    extra={"project_id": project_id, "error": str(e)},
                )
                continue
            for namespace in namespaces:
                reaped += self._garbage.reap_orphans(namespace, project_id, names)
        return reaped
