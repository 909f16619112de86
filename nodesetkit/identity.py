"""Naming, identity and storage rules for the pods of a NodeSet."""

from __future__ import annotations

import re

from .models import (
    LABEL_NODESET_POD_INDEX,
    LABEL_NODESET_POD_NAME,
    LABEL_REVISION_HASH,
    NODESET_GVK,
    NodeSet,
    PersistentVolumeClaim,
    Pod,
    Volume,
    new_controller_ref,
)

_POD_NAME_RE = re.compile(r"(.*)-([0-9]+)\Z")
_INT32_MAX = 2**31 - 1

_TAINT_NOT_READY = "node.kubernetes.io/not-ready"
_TAINT_UNREACHABLE = "node.kubernetes.io/unreachable"
_TAINT_DISK_PRESSURE = "node.kubernetes.io/disk-pressure"
_TAINT_MEMORY_PRESSURE = "node.kubernetes.io/memory-pressure"
_TAINT_PID_PRESSURE = "node.kubernetes.io/pid-pressure"
_TAINT_UNSCHEDULABLE = "node.kubernetes.io/unschedulable"
_TAINT_NETWORK_UNAVAILABLE = "node.kubernetes.io/network-unavailable"


def _add_or_update_toleration(pod: Pod, key: str, effect: str) -> None:
    toleration = {"key": key, "operator": "Exists", "effect": effect}
    for index, existing in enumerate(pod.tolerations):
        if existing.get("key") == key and existing.get("effect") == effect:
            pod.tolerations[index] = toleration
            return
    pod.tolerations.append(toleration)


def _add_daemon_tolerations(pod: Pod) -> None:
    _add_or_update_toleration(pod, _TAINT_NOT_READY, "NoExecute")
    _add_or_update_toleration(pod, _TAINT_UNREACHABLE, "NoExecute")
    _add_or_update_toleration(pod, _TAINT_DISK_PRESSURE, "NoSchedule")
    _add_or_update_toleration(pod, _TAINT_MEMORY_PRESSURE, "NoSchedule")
    _add_or_update_toleration(pod, _TAINT_PID_PRESSURE, "NoSchedule")
    _add_or_update_toleration(pod, _TAINT_UNSCHEDULABLE, "NoSchedule")
    if pod.host_network:
        _add_or_update_toleration(pod, _TAINT_NETWORK_UNAVAILABLE, "NoSchedule")


def new_nodeset_pod(nodeset: NodeSet, ordinal: int, revision_hash: str) -> Pod:
    """Create a pod from the NodeSet's template with the identity of ordinal."""
    template = nodeset.template
    pod = Pod(
        namespace=nodeset.namespace,
        labels=dict(template.labels),
        annotations=dict(template.annotations),
        owner_references=[new_controller_ref(nodeset, NODESET_GVK)],
        hostname=template.hostname,
        subdomain=template.subdomain,
        host_network=template.host_network,
        volumes=[volume for volume in template.copy().volumes],
        tolerations=[dict(t) for t in template.tolerations],
    )
    pod.name = get_pod_name(nodeset, ordinal)
    _init_identity(nodeset, pod)
    update_storage(nodeset, pod)

    if revision_hash:
        pod.labels[LABEL_REVISION_HASH] = revision_hash

    # Leave scheduling to the scheduler so that priority classes are honoured.
    pod.node_name = ""

    _add_daemon_tolerations(pod)
    return pod


def _init_identity(nodeset: NodeSet, pod: Pod) -> None:
    update_identity(nodeset, pod)
    if pod.hostname:
        pod.hostname = f"{pod.hostname}{get_ordinal(pod)}"
    else:
        pod.hostname = pod.name
    pod.subdomain = nodeset.service_name


def update_identity(nodeset: NodeSet, pod: Pod) -> None:
    """Make the pod's name, namespace and identity labels match the NodeSet."""
    ordinal = get_ordinal(pod)
    pod.name = get_pod_name(nodeset, ordinal)
    pod.namespace = nodeset.namespace
    pod.labels[LABEL_NODESET_POD_NAME] = pod.name
    pod.labels[LABEL_NODESET_POD_INDEX] = str(ordinal)


def update_storage(nodeset: NodeSet, pod: Pod) -> None:
    """Replace the pod's volumes so they use the NodeSet's claims."""
    claims = get_persistent_volume_claims(nodeset, pod)
    new_volumes = [
        Volume(name=name, claim_name=claim.name, read_only=False)
        for name, claim in claims.items()
    ]
    new_volumes.extend(volume for volume in pod.volumes if volume.name not in claims)
    pod.volumes = new_volumes


def is_pod_from_nodeset(nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if the pod's name starts with the NodeSet's name and a dash."""
    try:
        return re.search(f"^{nodeset.name}-", pod.name) is not None
    except re.error:
        return False


def get_parent_name(pod: Pod) -> str:
    """Return the name of the pod's parent NodeSet, or an empty string."""
    return get_parent_name_and_ordinal(pod)[0]


def get_ordinal(pod: Pod) -> int:
    """Return the pod's ordinal, or -1 when it has none."""
    return get_parent_name_and_ordinal(pod)[1]


def get_parent_name_and_ordinal(pod: Pod) -> tuple[str, int]:
    """Split a pod name into the parent NodeSet's name and the ordinal."""
    match = _POD_NAME_RE.search(pod.name)
    if match is None:
        return "", -1
    parent, digits = match.group(1), match.group(2)
    value = int(digits)
    ordinal = value if value <= _INT32_MAX else -1
    return parent, ordinal


def get_pod_name(nodeset: NodeSet, ordinal: int) -> str:
    """Return the name of the NodeSet's pod with the given ordinal."""
    return f"{nodeset.name}-{ordinal}"


def get_node_name(pod: Pod) -> str:
    """Return the Slurm node name of a pod: its hostname, else its name."""
    return pod.hostname or pod.name


def is_identity_match(nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if the pod carries a valid identity for the NodeSet."""
    parent, ordinal = get_parent_name_and_ordinal(pod)
    return (
        ordinal >= 0
        and nodeset.name == parent
        and pod.name == get_pod_name(nodeset, ordinal)
        and pod.namespace == nodeset.namespace
        and pod.labels.get(LABEL_NODESET_POD_NAME, "") == pod.name
    )


def is_storage_match(nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if the pod's volumes cover all of the NodeSet's claims."""
    ordinal = get_ordinal(pod)
    if ordinal < 0:
        return False
    volumes = {volume.name: volume for volume in pod.volumes}
    for claim in nodeset.volume_claim_templates:
        volume = volumes.get(claim.name)
        if (
            volume is None
            or volume.claim_name is None
            or volume.claim_name != get_persistent_volume_claim_name(nodeset, claim, ordinal)
        ):
            return False
    return True


def get_persistent_volume_claims(
    nodeset: NodeSet, pod: Pod
) -> dict[str, PersistentVolumeClaim]:
    """Return the pod's claims keyed by the name of their template."""
    ordinal = get_ordinal(pod)
    claims: dict[str, PersistentVolumeClaim] = {}
    for template in nodeset.volume_claim_templates:
        claim = template.copy()
        claim.name = get_persistent_volume_claim_name(nodeset, claim, ordinal)
        claim.namespace = nodeset.namespace
        claim.labels.update(nodeset.selector)
        claims[template.name] = claim
    return claims


def get_persistent_volume_claim_name(
    nodeset: NodeSet, claim: PersistentVolumeClaim, ordinal: int
) -> str:
    """Return the claim name for the pod with the given ordinal."""
    return f"{claim.name}-{nodeset.name}-{ordinal}"