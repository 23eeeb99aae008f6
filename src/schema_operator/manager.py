"""Controller manager: trigger source and work queue for the reconciler.

The manager decides WHEN a resource is reconciled; the reconciler decides
WHAT happens in a pass.

Triggers:
- Startup: every resource is queued once
- Resync: manifests are re-read periodically; resources whose spec changed
  are queued, and so are the dependents of changed secrets and config entries
- Retry directives: immediate requeue or requeue after a delay

CONCURRENCY:
Up to max_concurrent_reconciles passes run at once, but a key is never
processed by two workers at the same time. A key added while it is being
processed is marked dirty and queued again when the pass finishes.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable
from pathlib import Path

from .config import OperatorConfig
from .dependency import ObjectRef, RefKind
from .models import ResourceKey, SchemaResource
from .reconciler import Reconciler
from .spec_loader import Manifests, SpecLoadError, load_manifests
from .store import InMemoryObjectStore, InMemoryResourceStore

logger = logging.getLogger(__name__)


class WorkQueue:
    """Deduplicating asyncio work queue keyed by resource."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ResourceKey] = asyncio.Queue()
        self._queued: set[ResourceKey] = set()
        self._processing: set[ResourceKey] = set()
        self._dirty: set[ResourceKey] = set()
        self._timers: dict[ResourceKey, asyncio.TimerHandle] = {}

    def add(self, key: ResourceKey) -> None:
        """Queue a key unless it is already queued."""
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: ResourceKey, delay: float) -> None:
        """Queue a key after ``delay`` seconds; an earlier pending timer wins."""
        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None and not existing.cancelled() and existing.when() <= when:
            return
        if existing is not None:
            existing.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> ResourceKey:
        """Wait for the next key and mark it as processing."""
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ResourceKey) -> None:
        """Finish processing a key, queueing it again if it became dirty."""
        self._processing.discard(key)
        self._queue.task_done()
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def is_processing(self, key: ResourceKey) -> bool:
        return key in self._processing

    def pending_timers(self) -> int:
        return len(self._timers)

    async def join(self) -> None:
        await self._queue.join()

    def __len__(self) -> int:
        return self._queue.qsize()

    def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


def _digest(value: object) -> str:
    return hashlib.sha256(json.dumps(value, sort_keys=True).encode("utf-8")).hexdigest()


def spec_hash(res: SchemaResource) -> str:
    """Hash of the resource spec; status changes do not alter it."""
    return _digest(res.spec.model_dump(mode="json", by_alias=True))


class Manager:
    """Run reconcilers for every resource found in the manifests directory."""

    def __init__(
        self,
        config: OperatorConfig,
        reconciler: Reconciler,
        store: InMemoryResourceStore,
        objects: InMemoryObjectStore,
        loader: Callable[[Path], Manifests] = load_manifests,
    ) -> None:
        self._config = config
        self._reconciler = reconciler
        self._store = store
        self._objects = objects
        self._loader = loader
        self._queue = WorkQueue()
        self._shutdown_event = asyncio.Event()
        self._spec_hashes: dict[ResourceKey, str] = {}
        self._object_hashes: dict[ObjectRef, str] = {}

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    def sync(self) -> set[ResourceKey]:
        """Re-read the manifests and update the stores.

        Returns:
            Keys of the resources that must be reconciled because their spec
            or one of the objects they reference changed.

        Raises:
            SpecLoadError: If the manifests cannot be loaded.
        """
        manifests = self._loader(self._config.manifests_dir)
        changed: set[ResourceKey] = set()

        # Referenced objects first, so that a resource never sees stale values
        current_objects: dict[ObjectRef, str] = {}
        for key, data in manifests.secrets.items():
            self._objects.set_secret(key.namespace, key.name, data)
            current_objects[ObjectRef.secret(key.namespace, key.name)] = _digest(data)
        for key, data in manifests.config_maps.items():
            self._objects.set_config_map(key.namespace, key.name, data)
            current_objects[ObjectRef.config_map(key.namespace, key.name)] = _digest(data)

        for ref in set(self._object_hashes) - set(current_objects):
            logger.info("Referenced object removed from manifests", extra={"ref": str(ref)})
            if ref.kind is RefKind.SECRET:
                self._objects.delete_secret(ref.namespace, ref.name)
            else:
                self._objects.delete_config_map(ref.namespace, ref.name)

        for ref in set(current_objects) | set(self._object_hashes):
            if current_objects.get(ref) != self._object_hashes.get(ref):
                dependents = self._reconciler.watch_index.lookup_dependents(ref)
                if dependents:
                    logger.info(
                        "Referenced object changed",
                        extra={"ref": str(ref), "dependents": sorted(str(d) for d in dependents)},
                    )
                changed.update(dependents)
        self._object_hashes = current_objects

        seen: set[ResourceKey] = set()
        for res in manifests.resources:
            seen.add(res.key)
            digest = spec_hash(res)
            if self._spec_hashes.get(res.key) != digest:
                self._store.put(res)
                self._spec_hashes[res.key] = digest
                changed.add(res.key)

        for key in set(self._spec_hashes) - seen:
            logger.info("Resource removed from manifests", extra={"resource": str(key)})
            self._store.delete(key)
            self._spec_hashes.pop(key, None)
            changed.discard(key)

        return changed & seen

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self._queue.get()
            try:
                result = await self._reconciler.reconcile(key)
            except Exception:
                logger.exception(
                    "Reconciler crashed", extra={"resource": str(key), "worker": worker_id}
                )
                self._queue.add_after(key, self._config.transient_requeue_seconds)
            else:
                if result.requeue:
                    self._queue.add(key)
                elif result.requeue_after > 0:
                    self._queue.add_after(key, result.requeue_after)
            finally:
                self._queue.done(key)

    def _resync(self) -> None:
        try:
            changed = self.sync()
        except SpecLoadError as e:
            logger.error("Failed to load manifests", extra={"error": str(e)})
            return
        for key in sorted(changed):
            self._queue.add(key)

    async def run(self) -> None:
        """Reconcile until shutdown is requested."""
        logger.info(
            "Starting controller manager",
            extra={
                "manifests_dir": str(self._config.manifests_dir),
                "workers": self._config.max_concurrent_reconciles,
                "resync_interval_seconds": self._config.resync_interval_seconds,
            },
        )
        workers = [
            asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}")
            for i in range(self._config.max_concurrent_reconciles)
        ]
        try:
            while not self._shutdown_event.is_set():
                self._resync()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._config.resync_interval_seconds,
                    )
                except TimeoutError:
                    pass
        finally:
            self._queue.shutdown()
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        logger.info("Controller manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
