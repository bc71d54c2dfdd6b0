"""
Desired-State Compiler — maps a Blocky to the Deployment it should own.

Behavioral Contract:
- Pure and deterministic: same Blocky and image, same Deployment.
- Never performs I/O and never clamps; the CRD schema validates upstream.
- The Deployment shares the Blocky's namespace and name and carries a
  controller owner reference back to it.
"""

from typing import Dict, List

from blocky_controller.models.blocky import Blocky, BlockySpec
from blocky_controller.models.deployment import (
    Container,
    ContainerPort,
    Deployment,
    DeploymentSpec,
    LabelSelector,
    PodSecurityContext,
    PodSpec,
    PodTemplateMeta,
    PodTemplateSpec,
    SecurityContext,
)
from blocky_controller.models.meta import ObjectMeta, OwnerReference

CONTAINER_NAME = "blocky"
MIN_SIZE = 1
MAX_SIZE = 3
MAX_PORT = 65535


class InvalidSpecError(ValueError):
    """The desired state is outside the accepted domain. Retrying cannot help."""
    pass


def validate_spec(spec: BlockySpec) -> None:
    """
    Last-line domain check for specs that slipped past the schema layer
    (e.g. omitted fields). Raises InvalidSpecError listing every problem.
    """
    problems = []
    if not MIN_SIZE <= spec.size <= MAX_SIZE:
        problems.append(f"size must be between {MIN_SIZE} and {MAX_SIZE}, got {spec.size}")
    if not 0 < spec.container_port <= MAX_PORT:
        problems.append(
            f"containerPort must be between 1 and {MAX_PORT}, got {spec.container_port}"
        )
    if problems:
        raise InvalidSpecError("; ".join(problems))


def image_version(image: str) -> str:
    """Tag of an image reference, ``latest`` when untagged."""
    reference = image.split("@", 1)[0]
    last_segment = reference.rsplit("/", 1)[-1]
    if ":" in last_segment:
        return last_segment.rsplit(":", 1)[1]
    return "latest"


def selector_labels(blocky: Blocky) -> Dict[str, str]:
    """Labels that identify the pods of one Blocky. Stable for its lifetime."""
    return {
        "app.kubernetes.io/name": "Blocky",
        "app.kubernetes.io/instance": blocky.metadata.name,
        "app.kubernetes.io/part-of": "blocky-controller",
    }


def labels_for(blocky: Blocky, image: str) -> Dict[str, str]:
    labels = selector_labels(blocky)
    labels["app.kubernetes.io/version"] = image_version(image)
    labels["app.kubernetes.io/created-by"] = "controller-manager"
    return labels


def owner_reference_for(blocky: Blocky) -> OwnerReference:
    return OwnerReference(
        api_version=blocky.api_version,
        kind=blocky.kind,
        name=blocky.metadata.name,
        uid=blocky.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def compile_deployment(blocky: Blocky, image: str) -> Deployment:
    """Build the target Deployment for a Blocky."""
    labels = labels_for(blocky, image)
    return Deployment(
        metadata=ObjectMeta(
            name=blocky.metadata.name,
            namespace=blocky.metadata.namespace,
            labels=labels,
            owner_references=[owner_reference_for(blocky)],
        ),
        spec=DeploymentSpec(
            replicas=blocky.spec.size,
            selector=LabelSelector(match_labels=selector_labels(blocky)),
            template=PodTemplateSpec(
                metadata=PodTemplateMeta(labels=labels),
                spec=PodSpec(
                    security_context=PodSecurityContext(run_as_non_root=True),
                    containers=[
                        Container(
                            name=CONTAINER_NAME,
                            image=image,
                            image_pull_policy="IfNotPresent",
                            ports=[
                                ContainerPort(
                                    container_port=blocky.spec.container_port,
                                    name=CONTAINER_NAME,
                                ),
                            ],
                            security_context=SecurityContext(
                                run_as_non_root=True,
                                allow_privilege_escalation=False,
                            ),
                        ),
                    ],
                ),
            ),
        ),
    )


def _owner_identity(deployment: Deployment):
    owner = deployment.owner
    if owner is None:
        return None
    return (owner.api_version, owner.kind, owner.name, owner.uid)


def structural_diff(observed: Deployment, target: Deployment) -> List[str]:
    """
    Names of the managed fields that differ: replica count, exposed port
    and controller owner reference. Server-populated fields are ignored.
    """
    drift = []
    if observed.replicas != target.replicas:
        drift.append("replicas")
    if observed.container_port != target.container_port:
        drift.append("containerPort")
    if _owner_identity(observed) != _owner_identity(target):
        drift.append("ownerReference")
    return drift


def apply_target(observed: Deployment, target: Deployment) -> Deployment:
    """
    The update to send: the observed object (keeping its resource version
    and server-set fields) with the compiled spec, owner and labels laid on.

    The selector is immutable once a Deployment exists, so the observed one
    is kept and the pod labels still satisfy it after the update.
    """
    updated = observed.model_copy(deep=True)
    updated.spec = target.spec.model_copy(deep=True)
    selector = observed.spec.selector.match_labels
    updated.spec.selector = observed.spec.selector.model_copy(deep=True)
    updated.spec.template.metadata.labels = {
        **target.spec.template.metadata.labels, **selector,
    }
    updated.metadata.owner_references = [
        o for o in observed.metadata.owner_references if not o.controller
    ] + [o.model_copy() for o in target.metadata.owner_references]
    updated.metadata.labels = {**observed.metadata.labels, **target.metadata.labels}
    return updated
