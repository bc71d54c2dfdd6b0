"""
In-memory object store.

Stands in for the API server in tests and in the standalone operator API:
resource versions, optimistic-concurrency conflicts, owner-reference cascade
delete and change notifications behave the way the real server's do.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from blocky_controller.models.blocky import Blocky
from blocky_controller.models.meta import ObjectKey, ResourceKind
from blocky_controller.store.base import (
    ConflictError,
    KubeObject,
    TransientFetchError,
    TransientWriteError,
    WatchEvent,
    check_deadline,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[WatchEvent], None]


class InMemoryStore:
    """
    Thread-safe in-memory store.
    Objects are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._objects: Dict[Tuple[ResourceKind, ObjectKey], KubeObject] = {}
        self._version = 0
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change callback. Returns a function that unsubscribes."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def get(
        self, kind: ResourceKind, key: ObjectKey, timeout: Optional[float] = None
    ) -> Optional[KubeObject]:
        check_deadline(timeout, TransientFetchError, f"get {kind.value} {key}")
        with self._lock:
            obj = self._objects.get((kind, key))
            return obj.model_copy(deep=True) if obj else None

    def list(
        self, kind: ResourceKind, timeout: Optional[float] = None
    ) -> List[KubeObject]:
        check_deadline(timeout, TransientFetchError, f"list {kind.value}")
        with self._lock:
            return [
                obj.model_copy(deep=True)
                for (k, _), obj in sorted(
                    self._objects.items(), key=lambda item: str(item[0][1])
                )
                if k == kind
            ]

    def create(self, obj: KubeObject, timeout: Optional[float] = None) -> KubeObject:
        kind = ResourceKind(obj.kind)
        check_deadline(timeout, TransientWriteError, f"create {kind.value} {obj.key}")
        with self._lock:
            if (kind, obj.key) in self._objects:
                raise ConflictError(f"{kind.value} {obj.key} already exists")

            stored = obj.model_copy(deep=True)
            stored.metadata.uid = str(uuid4())
            stored.metadata.generation = 1
            stored.metadata.resource_version = self._next_version()
            self._objects[(kind, obj.key)] = stored
            created = stored.model_copy(deep=True)

        self._notify(WatchEvent(WatchEvent.ADDED, created))
        return created.model_copy(deep=True)

    def update(
        self,
        obj: KubeObject,
        expected_version: Optional[str],
        timeout: Optional[float] = None,
    ) -> KubeObject:
        """Replace metadata and spec. A Blocky's status is left as stored."""
        return self._replace(obj, expected_version, timeout, status_only=False)

    def update_status(
        self,
        obj: Blocky,
        expected_version: Optional[str],
        timeout: Optional[float] = None,
    ) -> Blocky:
        """Replace a Blocky's status only, like the status subresource."""
        return self._replace(obj, expected_version, timeout, status_only=True)

    def _replace(
        self,
        obj: KubeObject,
        expected_version: Optional[str],
        timeout: Optional[float],
        status_only: bool,
    ) -> KubeObject:
        kind = ResourceKind(obj.kind)
        operation = "update status" if status_only else "update"
        check_deadline(timeout, TransientWriteError, f"{operation} {kind.value} {obj.key}")
        with self._lock:
            current = self._objects.get((kind, obj.key))
            if current is None:
                raise ConflictError(f"{kind.value} {obj.key} no longer exists")
            if current.metadata.resource_version != expected_version:
                raise ConflictError(
                    f"{kind.value} {obj.key} was modified: expected version "
                    f"{expected_version}, found {current.metadata.resource_version}"
                )

            if status_only:
                stored = current.model_copy(deep=True)
                stored.status = obj.status.model_copy(deep=True)
            else:
                stored = obj.model_copy(deep=True)
                stored.metadata.uid = current.metadata.uid
                stored.metadata.generation = current.metadata.generation
                if stored.spec.model_dump() != current.spec.model_dump():
                    stored.metadata.generation += 1
                if isinstance(current, Blocky):
                    stored.status = current.status.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._objects[(kind, obj.key)] = stored
            updated = stored.model_copy(deep=True)

        self._notify(WatchEvent(WatchEvent.MODIFIED, updated))
        return updated.model_copy(deep=True)

    def delete(
        self, kind: ResourceKind, key: ObjectKey, timeout: Optional[float] = None
    ) -> bool:
        """Delete an object and, transitively, everything it owns."""
        check_deadline(timeout, TransientWriteError, f"delete {kind.value} {key}")
        with self._lock:
            obj = self._objects.pop((kind, key), None)
            if obj is None:
                return False
            removed = [obj]
            removed.extend(self._collect_dependents(obj.metadata.uid))

        for gone in removed:
            self._notify(WatchEvent(WatchEvent.DELETED, gone))
        return True

    def _collect_dependents(self, owner_uid: str) -> List[KubeObject]:
        """Pop every object owned (directly or not) by ``owner_uid``."""
        dependents = []
        for store_key, obj in list(self._objects.items()):
            if store_key not in self._objects:
                continue
            if any(o.uid == owner_uid for o in obj.metadata.owner_references):
                del self._objects[store_key]
                dependents.append(obj)
                dependents.extend(self._collect_dependents(obj.metadata.uid))
        return dependents

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _notify(self, event: WatchEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Watch subscriber failed on %r", event)
