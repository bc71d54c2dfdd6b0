"""
Status Recorder — owns the ``status.conditions`` log of a Blocky.

Behavioral Contract:
- At most one condition per type. New types append, known types update in
  place, so entries keep the order in which they first appeared.
- A write with unchanged status, reason and message is a no-op: no store
  write and no new ``last_transition_time``.
- ``last_transition_time`` moves only when ``status`` changes.
- Concurrent modification surfaces as ConflictError; the caller reloads
  and retries.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from blocky_controller.models.blocky import Blocky, Condition
from blocky_controller.store.base import Store


def utc_now() -> datetime:
    """Condition timestamps are RFC 3339 with second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def set_condition(
    conditions: List[Condition], condition: Condition, now: datetime
) -> Tuple[List[Condition], bool]:
    """
    Merge ``condition`` into a copy of ``conditions``.
    Returns the merged log and whether anything changed.
    """
    merged = [c.model_copy() for c in conditions]
    for i, existing in enumerate(merged):
        if existing.type != condition.type:
            continue

        generation_changed = (
            condition.observed_generation is not None
            and condition.observed_generation != existing.observed_generation
        )
        if existing.same_content(condition) and not generation_changed:
            return merged, False

        transition_time = existing.last_transition_time
        if existing.status != condition.status or transition_time is None:
            transition_time = now
        merged[i] = condition.model_copy(
            update={"last_transition_time": transition_time}
        )
        return merged, True

    merged.append(condition.model_copy(update={"last_transition_time": now}))
    return merged, True


class StatusRecorder:
    """Persists condition changes through the store's conditional update."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    def record_condition(
        self,
        blocky: Blocky,
        condition: Condition,
        timeout: Optional[float] = None,
    ) -> Blocky:
        """
        Apply ``condition`` to ``blocky`` and write it back.
        Returns the stored object, or ``blocky`` itself when nothing changed.
        """
        merged, changed = set_condition(
            blocky.status.conditions, condition, self._clock()
        )
        if not changed:
            return blocky

        updated = blocky.model_copy(deep=True)
        updated.status.conditions = merged
        return self.store.update_status(
            updated,
            expected_version=blocky.metadata.resource_version,
            timeout=timeout,
        )
