"""Blocky — the desired-state custom resource and its status conditions."""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import Field

from blocky_controller.models.meta import KubeModel, ObjectKey, ObjectMeta

API_GROUP = "blocky.unmango.dev"
API_VERSION = "v1alpha1"
PLURAL = "blockies"

CONDITION_AVAILABLE = "Available"
CONDITION_DEGRADED = "Degraded"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(KubeModel):
    """
    One typed entry in a Blocky's status history.

    ``last_transition_time`` is stamped by the StatusRecorder, callers
    leave it unset.
    """

    type: str
    status: ConditionStatus
    reason: str                             # CamelCase machine-readable code
    message: str = ""                       # Human-readable
    last_transition_time: Optional[datetime] = None
    observed_generation: Optional[int] = None

    def same_content(self, other: "Condition") -> bool:
        """True when status, reason and message all match."""
        return (
            self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )


class BlockySpec(KubeModel):
    """
    Desired state. Both fields are range-checked by the CRD schema; a zero
    value means the field was omitted upstream.
    """

    size: int = 0                           # Replica count, 1-3
    container_port: int = 0


class BlockyStatus(KubeModel):
    conditions: List[Condition] = []


class Blocky(KubeModel):
    """The Blocky custom resource."""

    api_version: str = f"{API_GROUP}/{API_VERSION}"
    kind: Literal["Blocky"] = "Blocky"
    metadata: ObjectMeta
    spec: BlockySpec = Field(default_factory=BlockySpec)
    status: BlockyStatus = Field(default_factory=BlockyStatus)

    @property
    def key(self) -> ObjectKey:
        return self.metadata.key

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        """Get the live condition of a type, if present."""
        return next(
            (c for c in self.status.conditions if c.type == condition_type),
            None,
        )
