"""Blocky controller data models."""

from blocky_controller.models.blocky import (
    Blocky,
    BlockySpec,
    BlockyStatus,
    Condition,
    ConditionStatus,
)
from blocky_controller.models.deployment import (
    Container,
    ContainerPort,
    Deployment,
    DeploymentSpec,
    LabelSelector,
    PodSpec,
    PodTemplateSpec,
)
from blocky_controller.models.meta import (
    ObjectKey,
    ObjectMeta,
    OwnerReference,
    ResourceKind,
)
from blocky_controller.models.reconciler import (
    ControllerSettings,
    ReconcileAction,
    ReconcileResult,
)

__all__ = [
    "Blocky",
    "BlockySpec",
    "BlockyStatus",
    "Condition",
    "ConditionStatus",
    "Container",
    "ContainerPort",
    "ControllerSettings",
    "Deployment",
    "DeploymentSpec",
    "LabelSelector",
    "ObjectKey",
    "ObjectMeta",
    "OwnerReference",
    "PodSpec",
    "PodTemplateSpec",
    "ReconcileAction",
    "ReconcileResult",
    "ResourceKind",
]
