"""Deployment — the managed workload derived from a Blocky."""

from typing import Dict, List, Literal, Optional

from blocky_controller.models.meta import KubeModel, ObjectKey, ObjectMeta, OwnerReference


class ContainerPort(KubeModel):
    container_port: int
    name: Optional[str] = None
    protocol: str = "TCP"


class SecurityContext(KubeModel):
    run_as_non_root: Optional[bool] = None
    allow_privilege_escalation: Optional[bool] = None


class PodSecurityContext(KubeModel):
    run_as_non_root: Optional[bool] = None


class Container(KubeModel):
    name: str
    image: str
    image_pull_policy: str = "IfNotPresent"
    ports: List[ContainerPort] = []
    security_context: Optional[SecurityContext] = None


class PodSpec(KubeModel):
    containers: List[Container]
    security_context: Optional[PodSecurityContext] = None


class PodTemplateMeta(KubeModel):
    labels: Dict[str, str] = {}


class PodTemplateSpec(KubeModel):
    metadata: PodTemplateMeta
    spec: PodSpec


class LabelSelector(KubeModel):
    match_labels: Dict[str, str] = {}


class DeploymentSpec(KubeModel):
    replicas: int
    selector: LabelSelector
    template: PodTemplateSpec


class Deployment(KubeModel):
    """An apps/v1 Deployment, reduced to the fields the controller manages."""

    api_version: str = "apps/v1"
    kind: Literal["Deployment"] = "Deployment"
    metadata: ObjectMeta
    spec: DeploymentSpec

    @property
    def key(self) -> ObjectKey:
        return self.metadata.key

    @property
    def replicas(self) -> int:
        return self.spec.replicas

    @property
    def container_port(self) -> Optional[int]:
        """The port exposed by the first container, if any."""
        containers = self.spec.template.spec.containers
        if not containers or not containers[0].ports:
            return None
        return containers[0].ports[0].container_port

    @property
    def owner(self) -> Optional[OwnerReference]:
        return self.metadata.controller_owner()
