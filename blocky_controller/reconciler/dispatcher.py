"""
Trigger Dispatcher — turns change notifications and requeue hints into
reconcile calls.

Behavioral Contract:
- An identity is queued at most once, however many events arrive for it.
- An identity is never reconciled by two workers of the same controller at
  once; events arriving mid-pass queue it again for after the pass.
- Deployment events are mapped to the owning Blocky's identity. Blocky
  updates that do not change the generation trigger nothing.
- A failing identity is requeued with backoff; nothing one identity does
  stops the loop or affects another identity.
"""

import asyncio
import logging
import threading
from typing import Dict, Optional, Set

from blocky_controller.models.blocky import Blocky
from blocky_controller.models.meta import ObjectKey, ResourceKind
from blocky_controller.models.reconciler import ReconcileResult
from blocky_controller.reconciler.loop import BlockyReconciler
from blocky_controller.store.base import KubeObject, StoreError, WatchEvent

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Deduplicating work queue with delayed adds.
    Must be used from the event loop thread.
    """

    def __init__(self):
        self._queue: "asyncio.Queue[ObjectKey]" = asyncio.Queue()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._timers: Dict[ObjectKey, asyncio.TimerHandle] = {}

    def add(self, key: ObjectKey) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """Queue ``key`` after ``delay`` seconds. An earlier timer wins."""
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        due = loop.time() + delay
        if existing is not None and existing.when() <= due:
            return
        if existing is not None:
            existing.cancel()
        self._timers[key] = loop.call_at(due, self._fire, key)

    def _fire(self, key: ObjectKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> ObjectKey:
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ObjectKey) -> None:
        """Finish processing ``key``; requeue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def pending(self) -> int:
        return self._queue.qsize()

    def scheduled(self) -> int:
        return len(self._timers)

    def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


def owner_key(obj: KubeObject) -> Optional[ObjectKey]:
    """The Blocky identity a changed object should trigger, if any."""
    if isinstance(obj, Blocky):
        return obj.key
    owner = obj.metadata.controller_owner()
    if owner is None or owner.kind != ResourceKind.BLOCKY.value:
        return None
    return ObjectKey(namespace=obj.metadata.namespace, name=owner.name)


class Controller:
    """
    Runs a BlockyReconciler against a stream of triggers.

    Triggers come from the store's change notifications (when it offers
    them), from a periodic resync of every Blocky, and from the requeue
    hints reconcile passes return. Passes run in worker threads so a slow
    store never blocks the event loop.
    """

    def __init__(self, reconciler: BlockyReconciler, workers: Optional[int] = None):
        self.reconciler = reconciler
        self.store = reconciler.store
        self.settings = reconciler.settings
        self.workers = workers or self.settings.workers

        self.queue: Optional[WorkQueue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._failures: Dict[ObjectKey, int] = {}
        # Last generation seen per Blocky; events arrive on store threads
        self._generations: Dict[ObjectKey, int] = {}
        self._generations_lock = threading.Lock()
        self._running = False
        self.reconcile_count = 0

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def failures(self, key: ObjectKey) -> int:
        """Consecutive failed passes for ``key``."""
        return self._failures.get(key, 0)

    def enqueue(self, key: ObjectKey) -> None:
        """Queue an identity. Safe to call from any thread."""
        if self._loop is None or self.queue is None:
            logger.debug("Controller not running, dropping trigger for %s", key)
            return
        self._loop.call_soon_threadsafe(self.queue.add, key)

    def handle_event(self, event: WatchEvent) -> None:
        """
        Queue the Blocky an event concerns. Blocky updates that leave the
        generation unchanged (status writes, including this controller's
        own) are skipped; requeue timers and resync cover them.
        """
        if isinstance(event.object, Blocky) and not self._generation_changed(event):
            logger.debug("%r leaves the generation unchanged, skipping", event)
            return
        key = owner_key(event.object)
        if key is not None:
            logger.debug("%r triggers %s", event, key)
            self.enqueue(key)

    def _generation_changed(self, event: WatchEvent) -> bool:
        blocky = event.object
        with self._generations_lock:
            if event.type == WatchEvent.DELETED:
                self._generations.pop(blocky.key, None)
                return True
            seen = self._generations.get(blocky.key)
            self._generations[blocky.key] = blocky.metadata.generation
        return event.type != WatchEvent.MODIFIED or seen != blocky.metadata.generation

    def resync(self) -> int:
        """Queue every known Blocky. Returns how many were queued."""
        try:
            blockies = self.store.list(ResourceKind.BLOCKY)
        except StoreError as e:
            logger.warning("Resync failed to list Blocky objects: %s", e)
            return 0
        with self._generations_lock:
            for blocky in blockies:
                self._generations[blocky.key] = blocky.metadata.generation
        for blocky in blockies:
            self.enqueue(blocky.key)
        return len(blockies)

    def handle_result(self, result: ReconcileResult) -> None:
        """Schedule follow-up work for a finished pass."""
        key = result.key
        if result.error is not None and result.requeue_after is not None:
            self._failures[key] = self._failures.get(key, 0) + 1
            self.queue.add_after(key, result.requeue_after)
            return

        self._failures.pop(key, None)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
        elif result.error is not None:
            # Not retryable; a change to the Blocky triggers the next pass
            logger.info("Not requeueing %s: %s", key, result.error)

    async def process_next(self) -> None:
        key = await self.queue.get()
        try:
            attempt = self._failures.get(key, 0)
            result = await asyncio.to_thread(self.reconciler.reconcile, key, attempt)
            self.reconcile_count += 1
            self.handle_result(result)
        except Exception:
            attempt = self._failures.get(key, 0)
            delay = self.settings.backoff_for(attempt)
            self._failures[key] = attempt + 1
            logger.exception("Unexpected error reconciling %s, requeue in %.2fs", key, delay)
            self.queue.add_after(key, delay)
        finally:
            self.queue.done(key)

    async def _worker(self) -> None:
        while True:
            await self.process_next()

    async def _resync_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.settings.resync_period_seconds)
            await asyncio.to_thread(self.resync)

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run until ``stop_event`` is set."""
        if stop_event is None:
            stop_event = asyncio.Event()

        self._loop = asyncio.get_running_loop()
        self.queue = WorkQueue()
        self._running = True

        subscribe = getattr(self.store, "subscribe", None)
        unsubscribe = subscribe(self.handle_event) if subscribe else None

        tasks = [asyncio.create_task(self._worker()) for _ in range(self.workers)]
        tasks.append(asyncio.create_task(self._resync_periodically()))
        logger.info("Controller started with %d workers", self.workers)
        try:
            await asyncio.to_thread(self.resync)
            await stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if unsubscribe:
                unsubscribe()
            self.queue.shutdown()
            self._running = False
            self._loop = None
            logger.info("Controller stopped")
