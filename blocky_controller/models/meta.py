"""Object identity and metadata shared by every resource the controller touches."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class KubeModel(BaseModel):
    """
    Base for wire-facing models.

    Fields are snake_case in Python and camelCase on the wire. Unknown fields
    returned by the API server are kept so a read-modify-write round trip
    does not drop them.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> dict:
        """Serialize the way the API server expects to receive it."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ResourceKind(str, Enum):
    """The two kinds this controller knows about."""
    BLOCKY = "Blocky"
    DEPLOYMENT = "Deployment"


class ObjectKey(BaseModel):
    """Namespace-qualified name. Blocky and its Deployment share one key."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "ObjectKey":
        """Parse ``namespace/name``."""
        namespace, _, name = value.partition("/")
        if not namespace or not name:
            raise ValueError(f"Expected 'namespace/name', got {value!r}")
        return cls(namespace=namespace, name=name)


class OwnerReference(KubeModel):
    """Back-link from a managed object to the object that owns it."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True


class ObjectMeta(KubeModel):
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: Optional[str] = None  # Optimistic-concurrency token
    generation: int = 0
    labels: Dict[str, str] = {}
    owner_references: List[OwnerReference] = []

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)

    def controller_owner(self) -> Optional[OwnerReference]:
        """The owner reference flagged as controller, if any."""
        return next((o for o in self.owner_references if o.controller), None)
