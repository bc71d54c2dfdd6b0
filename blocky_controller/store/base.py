"""
Store interface — the controller's only window onto cluster state.

Behavioral Contract:
- ``get`` returns None for a missing object; NotFound is never an error.
- ``create`` raises ConflictError when the object already exists.
- ``update`` is a compare-and-swap on ``resource_version``; a stale version
  (or an object deleted underneath the caller) raises ConflictError. It
  writes metadata and spec; a Blocky's status only changes through
  ``update_status``, which is the same compare-and-swap on the status alone.
- ``delete`` cascades to objects whose owner references point at the
  deleted object.
- Every call accepts ``timeout`` (seconds left before the caller's
  deadline) and fails with a transient error instead of hanging past it.
"""

import time
from typing import Callable, List, Optional, Protocol, Type, Union

from blocky_controller.models.blocky import Blocky
from blocky_controller.models.deployment import Deployment
from blocky_controller.models.meta import ObjectKey, ResourceKind

KubeObject = Union[Blocky, Deployment]


class StoreError(Exception):
    """Base class for store failures."""
    pass


class TransientFetchError(StoreError):
    """A read failed on connectivity or timeout. Retry later."""
    pass


class TransientWriteError(StoreError):
    """A write failed on connectivity or timeout. Retry later."""
    pass


class ConflictError(StoreError):
    """The object changed (or appeared/disappeared) since it was read."""
    pass


class WatchEvent:
    """A change notification emitted by a store."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"

    def __init__(self, event_type: str, obj: KubeObject):
        self.type = event_type
        self.object = obj

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind(self.object.kind)

    def __repr__(self) -> str:
        return f"WatchEvent({self.type}, {self.object.kind} {self.object.key})"


class Store(Protocol):
    """Protocol for the object store: in-memory or a real API server."""

    def get(
        self, kind: ResourceKind, key: ObjectKey, timeout: Optional[float] = None
    ) -> Optional[KubeObject]: ...

    def list(
        self, kind: ResourceKind, timeout: Optional[float] = None
    ) -> List[KubeObject]: ...

    def create(
        self, obj: KubeObject, timeout: Optional[float] = None
    ) -> KubeObject: ...

    def update(
        self,
        obj: KubeObject,
        expected_version: Optional[str],
        timeout: Optional[float] = None,
    ) -> KubeObject: ...

    def update_status(
        self,
        obj: Blocky,
        expected_version: Optional[str],
        timeout: Optional[float] = None,
    ) -> Blocky: ...

    def delete(
        self, kind: ResourceKind, key: ObjectKey, timeout: Optional[float] = None
    ) -> bool: ...


def check_deadline(
    timeout: Optional[float], error_cls: Type[StoreError], operation: str
) -> None:
    """Raise ``error_cls`` if the caller's deadline has already passed."""
    if timeout is not None and timeout <= 0:
        raise error_cls(f"Deadline exceeded before {operation}")


class Deadline:
    """A per-reconcile deadline handed down to store calls as a timeout."""

    def __init__(
        self, seconds: float, clock: Callable[[], float] = time.monotonic
    ):
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0
