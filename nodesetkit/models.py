"""Plain data types describing NodeSets, Pods and their volume claims."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime

NODESET_KIND = "NodeSet"
NODESET_GROUP = "slinky.slurm.net"
NODESET_VERSION = "v1alpha1"
NODESET_API_VERSION = f"{NODESET_GROUP}/{NODESET_VERSION}"

LABEL_NODESET_POD_NAME = "slinky.slurm.net/pod-name"
LABEL_NODESET_POD_INDEX = "slinky.slurm.net/pod-index"
LABEL_REVISION_HASH = "controller-revision-hash"

ANNOTATION_POD_CORDON = "slinky.slurm.net/pod-cordon"
ANNOTATION_POD_DEADLINE = "slinky.slurm.net/pod-deadline"
ANNOTATION_POD_DELETION_COST = "slinky.slurm.net/pod-deletion-cost"

PHASE_PENDING = "Pending"
PHASE_RUNNING = "Running"
PHASE_UNKNOWN = "Unknown"

CONDITION_READY = "Ready"
CONDITION_TRUE = "True"


@dataclass(frozen=True)
class GroupVersionKind:
    """Identifies a kind of API object."""

    group: str
    version: str
    kind: str

    def api_version(self) -> str:
        """Return the apiVersion string, omitting an empty group."""
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


POD_GVK = GroupVersionKind("", "v1", "Pod")
NODESET_GVK = GroupVersionKind(NODESET_GROUP, NODESET_VERSION, NODESET_KIND)


@dataclass
class OwnerReference:
    """A reference from an object to one of its owners."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: bool | None = None
    block_owner_deletion: bool | None = None


class RetentionPolicyType(str, enum.Enum):
    """What happens to a claim when its owner goes away."""

    RETAIN = "Retain"
    DELETE = "Delete"


@dataclass
class RetentionPolicy:
    """Claim retention on NodeSet deletion and on scale down."""

    when_deleted: RetentionPolicyType = RetentionPolicyType.RETAIN
    when_scaled: RetentionPolicyType = RetentionPolicyType.RETAIN


@dataclass
class Volume:
    """A pod volume, either backed by a claim or by a host path."""

    name: str
    claim_name: str | None = None
    read_only: bool = False
    host_path: str | None = None


@dataclass
class PersistentVolumeClaim:
    """A persistent volume claim or a claim template."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    storage: str | None = None
    deletion_timestamp: datetime | None = None
    finalizers: list[str] = field(default_factory=list)

    def copy(self) -> PersistentVolumeClaim:
        """Return a deep copy."""
        return copy.deepcopy(self)


@dataclass
class PodCondition:
    """One entry of a pod's status conditions."""

    type: str
    status: str
    last_transition_time: datetime | None = None


@dataclass
class Pod:
    """A pod, or a pod template when held by a NodeSet."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None
    node_name: str = ""
    hostname: str = ""
    subdomain: str = ""
    host_network: bool = False
    volumes: list[Volume] = field(default_factory=list)
    tolerations: list[dict[str, str]] = field(default_factory=list)
    phase: str = ""
    conditions: list[PodCondition] = field(default_factory=list)

    def copy(self) -> Pod:
        """Return a deep copy."""
        return copy.deepcopy(self)

    def is_ready(self) -> bool:
        """Return True when the pod's Ready condition is True."""
        for condition in self.conditions:
            if condition.type == CONDITION_READY:
                return condition.status == CONDITION_TRUE
        return False


@dataclass
class NodeSet:
    """A set of Slurm worker pods created from one template."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    cluster_name: str = ""
    replicas: int | None = None
    selector: dict[str, str] = field(default_factory=dict)
    template: Pod = field(default_factory=Pod)
    volume_claim_templates: list[PersistentVolumeClaim] = field(default_factory=list)
    service_name: str = ""
    retention_policy: RetentionPolicy | None = None
    revision_history_limit: int | None = None

    def copy(self) -> NodeSet:
        """Return a deep copy."""
        return copy.deepcopy(self)


def new_controller_ref(owner, gvk: GroupVersionKind) -> OwnerReference:
    """Build a controller owner reference pointing at owner."""
    return OwnerReference(
        api_version=gvk.api_version(),
        kind=gvk.kind,
        name=owner.name,
        uid=owner.uid,
        controller=True,
        block_owner_deletion=True,
    )