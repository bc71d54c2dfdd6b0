"""
Reconcile Loop — drives one Blocky's Deployment toward its spec.

One pass, for one identity:
  load Blocky -> validate -> compile target -> read observed Deployment
  -> create | update | nothing -> record the Available condition

States (per Blocky):
  UNRECONCILED -> CREATING -> AVAILABLE
  AVAILABLE -> RECONCILING -> AVAILABLE      (on drift)
  any -> ERROR -> (requeue with backoff) -> CREATING | RECONCILING

Nothing here blocks or sleeps: retries beyond the bounded in-pass ones are
returned as ``requeue_after`` for the dispatcher to schedule. Store and
settings come in through the constructor; no state survives between passes.
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Tuple

from blocky_controller.models.blocky import (
    CONDITION_AVAILABLE,
    Blocky,
    Condition,
    ConditionStatus,
)
from blocky_controller.models.deployment import Deployment
from blocky_controller.models.meta import ObjectKey, ResourceKind
from blocky_controller.models.reconciler import (
    ControllerSettings,
    ReconcileAction,
    ReconcileResult,
)
from blocky_controller.reconciler.compiler import (
    InvalidSpecError,
    apply_target,
    compile_deployment,
    structural_diff,
    validate_spec,
)
from blocky_controller.reconciler.reader import ObservedStateReader
from blocky_controller.reconciler.status import StatusRecorder, utc_now
from blocky_controller.store.base import (
    ConflictError,
    Deadline,
    Store,
    StoreError,
    TransientFetchError,
    TransientWriteError,
)

logger = logging.getLogger(__name__)

# Re-read and retry a conflicting Deployment write this many times per pass
WRITE_CONFLICT_RETRIES = 1

REASON_CREATING = "Creating"
REASON_RECONCILING = "Reconciling"
REASON_INVALID_SPEC = "InvalidSpec"
REASON_RECONCILE_FAILED = "ReconcileFailed"


def available_message(blocky: Blocky) -> str:
    """Monitoring keys off this exact wording."""
    return (
        f"Deployment for custom resource ({blocky.metadata.name}) "
        f"with {blocky.spec.size} replicas created successfully"
    )


class BlockyReconciler:
    """
    Level-triggered reconciler for Blocky resources.
    Safe to run concurrently, including for the same identity: every write
    is conditional on the version that was read.
    """

    def __init__(
        self,
        store: Store,
        settings: Optional[ControllerSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or ControllerSettings()
        self.reader = ObservedStateReader(store)
        self.recorder = StatusRecorder(store, clock=clock)

    def reconcile(self, key: ObjectKey, attempt: int = 0) -> ReconcileResult:
        """
        Run one pass for ``key``.

        ``attempt`` is the number of consecutive failed passes so far and
        only scales the backoff. Never raises for store failures; they come
        back as ``result.error`` with a ``requeue_after`` hint.
        """
        deadline = Deadline(self.settings.reconcile_timeout_seconds)
        try:
            return self._reconcile(key, deadline, attempt)
        except (TransientFetchError, TransientWriteError, ConflictError) as e:
            delay = self.settings.backoff_for(attempt)
            logger.warning(
                "Reconcile of %s failed (%s: %s), requeue in %.2fs",
                key, type(e).__name__, e, delay,
            )
            return ReconcileResult(
                key, ReconcileAction.FAILED, requeue_after=delay, error=e
            )

    def _reconcile(
        self, key: ObjectKey, deadline: Deadline, attempt: int
    ) -> ReconcileResult:
        blocky = self.store.get(ResourceKind.BLOCKY, key, timeout=deadline.remaining())
        if blocky is None:
            logger.debug("Blocky %s not found, nothing to do", key)
            return ReconcileResult(key)

        try:
            validate_spec(blocky.spec)
        except InvalidSpecError as e:
            logger.warning("Blocky %s has an invalid spec: %s", key, e)
            self._record(blocky, Condition(
                type=CONDITION_AVAILABLE,
                status=ConditionStatus.FALSE,
                reason=REASON_INVALID_SPEC,
                message=f"Invalid spec for custom resource ({blocky.metadata.name}): {e}",
                observed_generation=blocky.metadata.generation,
            ), deadline)
            return ReconcileResult(key, ReconcileAction.INVALID, error=e)

        target = compile_deployment(blocky, self.settings.image)

        try:
            action, deployment = self._converge(key, target, deadline)
        except (TransientWriteError, ConflictError) as e:
            self._record_failure(blocky, deadline)
            raise

        if action is ReconcileAction.CREATED:
            logger.info(
                "Created Deployment %s with %d replicas on port %s",
                key, deployment.replicas, deployment.container_port,
            )
        elif action is ReconcileAction.UPDATED:
            logger.info(
                "Updated Deployment %s to %d replicas on port %s",
                key, deployment.replicas, deployment.container_port,
            )
        else:
            logger.debug("Deployment %s already matches its Blocky", key)

        try:
            if action is ReconcileAction.CREATED:
                blocky = self._record(blocky, Condition(
                    type=CONDITION_AVAILABLE,
                    status=ConditionStatus.UNKNOWN,
                    reason=REASON_CREATING,
                    message=f"Creating Deployment for custom resource ({blocky.metadata.name})",
                    observed_generation=blocky.metadata.generation,
                ), deadline)
            if blocky is not None:
                self._record(blocky, Condition(
                    type=CONDITION_AVAILABLE,
                    status=ConditionStatus.TRUE,
                    reason=REASON_RECONCILING,
                    message=available_message(blocky),
                    observed_generation=blocky.metadata.generation,
                ), deadline)
        except StoreError as e:
            # The Deployment write stands; the next pass re-asserts the condition
            delay = self.settings.backoff_for(attempt)
            logger.error(
                "Deployment %s is %s but recording status failed: %s",
                key, action.value, e,
            )
            return ReconcileResult(key, action, requeue_after=delay, error=e)

        requeue_after = None
        if action is ReconcileAction.CREATED:
            requeue_after = self.settings.creation_requeue_seconds
        return ReconcileResult(key, action, requeue_after=requeue_after)

    def _converge(
        self, key: ObjectKey, target: Deployment, deadline: Deadline
    ) -> Tuple[ReconcileAction, Deployment]:
        """
        Create or update the Deployment until it matches ``target``.
        A conflicting write re-reads the observed state and tries again,
        WRITE_CONFLICT_RETRIES times, before giving up with TransientWriteError.
        """
        observed = self.reader.read(key, timeout=deadline.remaining())
        conflicts = 0
        while True:
            try:
                if observed is None:
                    created = self.store.create(target, timeout=deadline.remaining())
                    return ReconcileAction.CREATED, created

                drift = structural_diff(observed, target)
                if not drift:
                    return ReconcileAction.NONE, observed

                logger.info("Deployment %s drifted on %s", key, ", ".join(drift))
                updated = self.store.update(
                    apply_target(observed, target),
                    expected_version=observed.metadata.resource_version,
                    timeout=deadline.remaining(),
                )
                return ReconcileAction.UPDATED, updated
            except ConflictError as e:
                conflicts += 1
                if conflicts > WRITE_CONFLICT_RETRIES:
                    raise TransientWriteError(
                        f"Deployment {key} kept changing underneath us: {e}"
                    ) from e
                logger.info("Write conflict on Deployment %s, re-reading: %s", key, e)
                observed = self.reader.read(key, timeout=deadline.remaining())

    def _record(
        self, blocky: Blocky, condition: Condition, deadline: Deadline
    ) -> Optional[Blocky]:
        """
        Record a condition, re-reading the Blocky on conflict.
        Returns None if the Blocky was deleted meanwhile.
        """
        attempts = self.settings.status_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self.recorder.record_condition(
                    blocky, condition, timeout=deadline.remaining()
                )
            except ConflictError:
                if attempt == attempts:
                    raise
                logger.debug(
                    "Status conflict on Blocky %s (attempt %d/%d), re-reading",
                    blocky.key, attempt, attempts,
                )
                blocky = self.store.get(
                    ResourceKind.BLOCKY, blocky.key, timeout=deadline.remaining()
                )
                if blocky is None:
                    return None
        return blocky

    def _record_failure(
        self, blocky: Blocky, deadline: Deadline
    ) -> None:
        """
        Best effort: surface a failed Deployment write on the Blocky.
        The message stays the same from one failure to the next so repeated
        failures do not rewrite the status; ``reconcile`` logs the error.
        """
        try:
            self._record(blocky, Condition(
                type=CONDITION_AVAILABLE,
                status=ConditionStatus.FALSE,
                reason=REASON_RECONCILE_FAILED,
                message=(
                    "Failed to reconcile Deployment for custom resource "
                    f"({blocky.metadata.name})"
                ),
                observed_generation=blocky.metadata.generation,
            ), deadline)
        except StoreError as e:
            logger.error("Could not record failure on Blocky %s: %s", blocky.key, e)
