"""Tests for the Reconcile Loop."""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from blocky_controller.models.blocky import Blocky, BlockySpec, ConditionStatus
from blocky_controller.models.meta import ObjectKey, ObjectMeta, ResourceKind
from blocky_controller.models.reconciler import ControllerSettings, ReconcileAction
from blocky_controller.reconciler.compiler import InvalidSpecError, compile_deployment
from blocky_controller.reconciler.loop import BlockyReconciler
from blocky_controller.store.base import (
    ConflictError,
    Deadline,
    TransientFetchError,
    TransientWriteError,
)
from blocky_controller.store.memory import InMemoryStore

KEY = ObjectKey(namespace="blocky", name="demo")
IMAGE = "example.com/image:test"
NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

Op = Tuple[str, ResourceKind]


class FaultyStore(InMemoryStore):
    """
    In-memory store that counts writes and lets a test inject failures or
    concurrent writers ahead of specific operations.
    """

    def __init__(self):
        super().__init__()
        self.writes: List[Op] = []
        self._faults: Dict[Op, List[Exception]] = {}
        self._interference: Dict[Op, List[Callable[[], None]]] = {}

    def fail(self, op: str, kind: ResourceKind, *errors: Exception) -> None:
        self._faults.setdefault((op, kind), []).extend(errors)

    def interfere(self, op: str, kind: ResourceKind, action: Callable[[], None]) -> None:
        """Run ``action`` right before the next matching call, as a concurrent writer."""
        self._interference.setdefault((op, kind), []).append(action)

    def count(self, op: str, kind: ResourceKind) -> int:
        return self.writes.count((op, kind))

    def _before(self, op: str, kind: ResourceKind) -> None:
        actions = self._interference.get((op, kind))
        if actions:
            actions.pop(0)()
        faults = self._faults.get((op, kind))
        if faults:
            raise faults.pop(0)

    def get(self, kind, key, timeout=None):
        self._before("get", kind)
        return super().get(kind, key, timeout=timeout)

    def create(self, obj, timeout=None):
        kind = ResourceKind(obj.kind)
        self._before("create", kind)
        created = super().create(obj, timeout=timeout)
        self.writes.append(("create", kind))
        return created

    def update(self, obj, expected_version, timeout=None):
        kind = ResourceKind(obj.kind)
        self._before("update", kind)
        updated = super().update(obj, expected_version, timeout=timeout)
        self.writes.append(("update", kind))
        return updated

    def update_status(self, obj, expected_version, timeout=None):
        self._before("update_status", ResourceKind.BLOCKY)
        updated = super().update_status(obj, expected_version, timeout=timeout)
        self.writes.append(("update_status", ResourceKind.BLOCKY))
        return updated

    # Writes that bypass counting and fault injection, for simulated peers
    def raw_update(self, obj) -> None:
        InMemoryStore.update(self, obj, obj.metadata.resource_version)

    def raw_create(self, obj) -> None:
        InMemoryStore.create(self, obj)

    def raw_get(self, kind, key):
        return InMemoryStore.get(self, kind, key)


def _settings(**overrides) -> ControllerSettings:
    values = dict(
        image=IMAGE,
        creation_requeue_seconds=1.0,
        backoff_base_seconds=0.5,
        backoff_max_seconds=60.0,
        status_retry_attempts=3,
    )
    values.update(overrides)
    return ControllerSettings(**values)


class TestBlockyReconciler:
    def setup_method(self):
        self.store = FaultyStore()
        self.settings = _settings()
        self.reconciler = BlockyReconciler(
            self.store, settings=self.settings, clock=lambda: NOW
        )

    def _create_blocky(self, size: int = 1, port: int = 53) -> Blocky:
        return self.store.create(Blocky(
            metadata=ObjectMeta(name=KEY.name, namespace=KEY.namespace),
            spec=BlockySpec(size=size, container_port=port),
        ))

    def _blocky(self) -> Optional[Blocky]:
        return self.store.raw_get(ResourceKind.BLOCKY, KEY)

    def _deployment(self):
        return self.store.raw_get(ResourceKind.DEPLOYMENT, KEY)

    def _scale(self, size: int) -> None:
        blocky = self._blocky()
        blocky.spec.size = size
        self.store.raw_update(blocky)

    def test_creates_deployment_for_new_blocky(self):
        """demo with 1 replica on port 53 gets its Deployment and an Available condition."""
        self._create_blocky(size=1, port=53)

        result = self.reconciler.reconcile(KEY)

        assert result.ok
        assert result.action == ReconcileAction.CREATED
        assert result.requeue_after == self.settings.creation_requeue_seconds

        deployment = self._deployment()
        assert deployment.metadata.name == "demo"
        assert deployment.replicas == 1
        assert deployment.container_port == 53

        conditions = self._blocky().status.conditions
        assert len(conditions) == 1
        latest = conditions[-1]
        assert latest.type == "Available"
        assert latest.status == ConditionStatus.TRUE
        assert latest.reason == "Reconciling"
        assert latest.message == (
            "Deployment for custom resource (demo) with 1 replicas created successfully"
        )

    def test_creation_passes_through_creating(self):
        """The Creating condition is written before Available turns True."""
        seen = []
        self.store.subscribe(
            lambda e: seen.append(e.object.get_condition("Available"))
            if e.object.kind == "Blocky" else None
        )
        self._create_blocky()

        self.reconciler.reconcile(KEY)

        reasons = [(c.status, c.reason) for c in seen if c is not None]
        assert reasons == [
            (ConditionStatus.UNKNOWN, "Creating"),
            (ConditionStatus.TRUE, "Reconciling"),
        ]

    def test_second_pass_is_idempotent(self):
        self._create_blocky()
        self.reconciler.reconcile(KEY)
        writes_after_first = list(self.store.writes)
        before = self._blocky()

        result = self.reconciler.reconcile(KEY)

        assert result.ok
        assert result.action == ReconcileAction.NONE
        assert result.requeue_after is None
        assert self.store.writes == writes_after_first
        after = self._blocky()
        assert after.status.conditions == before.status.conditions
        assert after.metadata.resource_version == before.metadata.resource_version

    def test_scale_up_updates_once(self):
        """Scaling 1 -> 3 on a converged Blocky issues exactly one Deployment update."""
        self._create_blocky(size=1)
        self.reconciler.reconcile(KEY)
        self._scale(3)

        result = self.reconciler.reconcile(KEY)

        assert result.ok
        assert result.action == ReconcileAction.UPDATED
        assert self.store.count("update", ResourceKind.DEPLOYMENT) == 1
        assert self._deployment().replicas == 3
        condition = self._blocky().get_condition("Available")
        assert condition.message == (
            "Deployment for custom resource (demo) with 3 replicas created successfully"
        )
        assert condition.observed_generation == 2

    @pytest.mark.parametrize("size,port", [(1, 53), (2, 8053), (3, 5353)])
    def test_converges_to_spec(self, size, port):
        self._create_blocky(size=size, port=port)
        self.reconciler.reconcile(KEY)
        deployment = self._deployment()
        assert deployment.replicas == size
        assert deployment.container_port == port

    def test_missing_blocky_is_a_noop(self):
        result = self.reconciler.reconcile(KEY)
        assert result.ok
        assert result.action == ReconcileAction.NONE
        assert result.requeue_after is None
        assert self.store.writes == []

    def test_repairs_drifted_deployment(self):
        self._create_blocky(size=2)
        self.reconciler.reconcile(KEY)
        drifted = self._deployment()
        drifted.spec.replicas = 5
        self.store.raw_update(drifted)

        result = self.reconciler.reconcile(KEY)

        assert result.action == ReconcileAction.UPDATED
        assert self._deployment().replicas == 2

    def test_recreates_deleted_deployment(self):
        self._create_blocky()
        self.reconciler.reconcile(KEY)
        self.store.delete(ResourceKind.DEPLOYMENT, KEY)

        result = self.reconciler.reconcile(KEY)

        assert result.action == ReconcileAction.CREATED
        assert self._deployment() is not None

    def test_update_conflict_is_retried(self):
        """One conflict followed by a clean retry ends in the conflict-free state."""
        self._create_blocky(size=1)
        self.reconciler.reconcile(KEY)
        self._scale(3)

        def concurrent_edit():
            other = self._deployment()
            other.metadata.labels["touched-by"] = "someone-else"
            self.store.raw_update(other)

        self.store.interfere("update", ResourceKind.DEPLOYMENT, concurrent_edit)

        result = self.reconciler.reconcile(KEY)

        assert result.ok
        assert result.action == ReconcileAction.UPDATED
        deployment = self._deployment()
        assert deployment.replicas == 3
        assert deployment.metadata.labels["touched-by"] == "someone-else"
        assert self._blocky().get_condition("Available").status == ConditionStatus.TRUE

    def test_conflict_resolved_by_peer_needs_no_write(self):
        self._create_blocky(size=1)
        self.reconciler.reconcile(KEY)
        self._scale(2)

        def peer_converges():
            other = self._deployment()
            other.spec.replicas = 2
            self.store.raw_update(other)

        self.store.interfere("update", ResourceKind.DEPLOYMENT, peer_converges)

        result = self.reconciler.reconcile(KEY)

        assert result.ok
        assert result.action == ReconcileAction.NONE
        assert self.store.count("update", ResourceKind.DEPLOYMENT) == 0
        assert self._deployment().replicas == 2

    def test_create_conflict_falls_back_to_update(self):
        self._create_blocky(size=2)
        blocky = self._blocky()

        def peer_creates():
            other = compile_deployment(blocky, IMAGE)
            other.spec.replicas = 1
            self.store.raw_create(other)

        self.store.interfere("create", ResourceKind.DEPLOYMENT, peer_creates)

        result = self.reconciler.reconcile(KEY)

        assert result.ok
        assert result.action == ReconcileAction.UPDATED
        assert self._deployment().replicas == 2

    def test_repeated_conflicts_surface_transient_error(self):
        self._create_blocky(size=1)
        self.reconciler.reconcile(KEY)
        self._scale(3)
        self.store.fail(
            "update", ResourceKind.DEPLOYMENT,
            ConflictError("first"), ConflictError("second"),
        )

        result = self.reconciler.reconcile(KEY, attempt=2)

        assert isinstance(result.error, TransientWriteError)
        assert result.action == ReconcileAction.FAILED
        assert result.requeue_after == self.settings.backoff_for(2)
        assert self._deployment().replicas == 1
        condition = self._blocky().get_condition("Available")
        assert condition.status == ConditionStatus.FALSE
        assert condition.reason == "ReconcileFailed"

    def test_repeated_failures_do_not_rewrite_status(self):
        self._create_blocky(size=1)
        self.reconciler.reconcile(KEY)
        self._scale(3)
        for n in range(3):
            self.store.fail(
                "update", ResourceKind.DEPLOYMENT,
                ConflictError(f"modified: version {n}a"),
                ConflictError(f"modified: version {n}b"),
            )
        status_writes = self.store.count("update_status", ResourceKind.BLOCKY)

        for attempt in range(3):
            result = self.reconciler.reconcile(KEY, attempt=attempt)
            assert isinstance(result.error, TransientWriteError)

        assert self.store.count("update_status", ResourceKind.BLOCKY) == status_writes + 1
        condition = self._blocky().get_condition("Available")
        assert condition.message == "Failed to reconcile Deployment for custom resource (demo)"

    def test_recovers_after_failure(self):
        self._create_blocky(size=1)
        self.store.fail("create", ResourceKind.DEPLOYMENT, TransientWriteError("timeout"))

        failed = self.reconciler.reconcile(KEY)
        assert isinstance(failed.error, TransientWriteError)
        assert self._blocky().get_condition("Available").status == ConditionStatus.FALSE

        recovered = self.reconciler.reconcile(KEY, attempt=1)
        assert recovered.ok
        assert self._blocky().get_condition("Available").status == ConditionStatus.TRUE
        assert len(self._blocky().status.conditions) == 1

    def test_fetch_error_requeues_with_backoff(self):
        self._create_blocky()
        self.store.fail("get", ResourceKind.BLOCKY, TransientFetchError("connection reset"))

        result = self.reconciler.reconcile(KEY, attempt=3)

        assert isinstance(result.error, TransientFetchError)
        assert result.requeue_after == self.settings.backoff_for(3)
        assert self.store.writes == [("create", ResourceKind.BLOCKY)]

    def test_observed_read_error_requeues(self):
        self._create_blocky()
        self.store.fail("get", ResourceKind.DEPLOYMENT, TransientFetchError("timeout"))

        result = self.reconciler.reconcile(KEY)

        assert isinstance(result.error, TransientFetchError)
        assert result.requeue_after == self.settings.backoff_for(0)
        assert self._deployment() is None

    def test_expired_deadline_is_transient(self, monkeypatch):
        class ExpiredDeadline(Deadline):
            def remaining(self) -> float:
                return 0.0

        monkeypatch.setattr("blocky_controller.reconciler.loop.Deadline", ExpiredDeadline)
        self._create_blocky()

        result = self.reconciler.reconcile(KEY)

        assert isinstance(result.error, TransientFetchError)
        assert result.requeue_after is not None

    def test_invalid_spec_is_recorded_not_retried(self):
        self._create_blocky(size=0, port=53)

        result = self.reconciler.reconcile(KEY)

        assert isinstance(result.error, InvalidSpecError)
        assert result.action == ReconcileAction.INVALID
        assert result.requeue_after is None
        assert self._deployment() is None
        condition = self._blocky().get_condition("Available")
        assert condition.status == ConditionStatus.FALSE
        assert condition.reason == "InvalidSpec"
        assert "size" in condition.message

    def test_status_conflict_is_retried(self):
        self._create_blocky()

        def peer_touches_blocky():
            other = self._blocky()
            other.metadata.labels["peer"] = "yes"
            self.store.raw_update(other)

        self.store.interfere("update_status", ResourceKind.BLOCKY, peer_touches_blocky)

        result = self.reconciler.reconcile(KEY)

        assert result.ok
        blocky = self._blocky()
        assert blocky.metadata.labels["peer"] == "yes"
        assert blocky.get_condition("Available").status == ConditionStatus.TRUE

    def test_status_failure_keeps_deployment_write(self):
        self._create_blocky()
        self.store.fail(
            "update_status", ResourceKind.BLOCKY,
            *[TransientWriteError("apiserver unavailable") for _ in range(5)],
        )

        result = self.reconciler.reconcile(KEY)

        assert isinstance(result.error, TransientWriteError)
        assert result.action == ReconcileAction.CREATED
        assert result.requeue_after == self.settings.backoff_for(0)
        assert self._deployment() is not None
        assert self._blocky().status.conditions == []

    def test_status_conflicts_are_bounded(self):
        self._create_blocky()
        self.store.fail(
            "update_status", ResourceKind.BLOCKY,
            *[ConflictError("busy") for _ in range(self.settings.status_retry_attempts)],
        )

        result = self.reconciler.reconcile(KEY)

        assert isinstance(result.error, ConflictError)
        assert result.requeue_after is not None

    def test_blocky_deleted_mid_pass(self):
        self._create_blocky()

        def peer_deletes():
            self.store.delete(ResourceKind.BLOCKY, KEY)

        self.store.interfere("update_status", ResourceKind.BLOCKY, peer_deletes)

        result = self.reconciler.reconcile(KEY)

        assert result.ok
        assert self._blocky() is None
        assert self._deployment() is None

    def test_conditions_stay_unique(self):
        self._create_blocky(size=1)
        for size in (1, 2, 3, 3, 1):
            self._scale(size)
            self.reconciler.reconcile(KEY)
            types = [c.type for c in self._blocky().status.conditions]
            assert len(types) == len(set(types))
