"""Creation, deletion and update of NodeSet pods and their volume claims."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from .identity import (
    get_ordinal,
    get_persistent_volume_claim_name,
    get_persistent_volume_claims,
    is_identity_match,
    is_storage_match,
    update_identity,
    update_storage,
)
from .kube import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    AlreadyExistsError,
    ApiError,
    ConflictError,
    EventRecorder,
    InMemoryClient,
    NotFoundError,
)
from .models import (
    ANNOTATION_POD_CORDON,
    NODESET_GVK,
    POD_GVK,
    GroupVersionKind,
    NodeSet,
    OwnerReference,
    PersistentVolumeClaim,
    Pod,
    RetentionPolicy,
    RetentionPolicyType,
    new_controller_ref,
)

_log = logging.getLogger(__name__)

_EVENT_CREATE = "Create"
_EVENT_DELETE = "Delete"
_EVENT_UPDATE = "Update"

_UPDATE_ATTEMPTS = 4
_CLAIM_KIND = "PersistentVolumeClaim"
_POD_KIND = "Pod"

_RETAIN = RetentionPolicyType.RETAIN
_DELETE = RetentionPolicyType.DELETE

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})


def _is_pod_cordon(pod: Pod) -> bool:
    return pod.annotations.get(ANNOTATION_POD_CORDON, "") in _TRUE_WORDS


def _aggregate(messages: list[str]) -> ApiError:
    if len(messages) == 1:
        return ApiError(messages[0])
    return ApiError("[" + ", ".join(messages) + "]")


class PodControl:
    """Manages the pods of a NodeSet and keeps their claims consistent."""

    def __init__(self, client: InMemoryClient, recorder: EventRecorder) -> None:
        self._client = client
        self._recorder = recorder

    def create_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Create the pod's claims, then the pod itself."""
        try:
            self.create_persistent_volume_claims(nodeset, pod)
        except ApiError as err:
            self._record_pod_event(_EVENT_CREATE, nodeset, pod, err)
            raise

        create_error: ApiError | None = None
        try:
            self._client.create(pod)
        except AlreadyExistsError:
            raise
        except ApiError as err:
            create_error = err

        try:
            self.update_pod_pvcs_for_retention_policy(nodeset, pod)
        except ApiError as err:
            self._record_pod_event(_EVENT_UPDATE, nodeset, pod, err)
            raise

        self._record_pod_event(_EVENT_CREATE, nodeset, pod, create_error)
        if create_error is not None:
            raise create_error

    def delete_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Delete the pod."""
        try:
            self._client.delete(_POD_KIND, pod.namespace, pod.name)
        except ApiError as err:
            self._record_pod_event(_EVENT_DELETE, nodeset, pod, err)
            raise
        self._record_pod_event(_EVENT_DELETE, nodeset, pod, None)

    def update_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Bring the pod's identity, storage and claim owners in line with the NodeSet."""
        attempted = False
        current = pod
        try:
            for attempt in range(1, _UPDATE_ATTEMPTS + 1):
                if self._make_consistent(nodeset, current):
                    break
                attempted = True
                try:
                    self._client.update(current)
                    break
                except ApiError as update_error:
                    try:
                        current = self._client.get(_POD_KIND, nodeset.namespace, current.name)
                    except ApiError as get_error:
                        _log.error(
                            "error getting updated Pod %s/%s: %s",
                            nodeset.namespace,
                            current.name,
                            get_error,
                        )
                    if not isinstance(update_error, ConflictError) or attempt == _UPDATE_ATTEMPTS:
                        raise update_error
        except ApiError as err:
            if attempted:
                self._record_pod_event(_EVENT_UPDATE, nodeset, current, err)
            raise
        if attempted:
            self._record_pod_event(_EVENT_UPDATE, nodeset, current, None)

    def _make_consistent(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Fix the pod in place; return True when nothing had to change."""
        consistent = True
        if not is_identity_match(nodeset, pod):
            update_identity(nodeset, pod)
            consistent = False
        if not is_storage_match(nodeset, pod):
            update_storage(nodeset, pod)
            consistent = False
            try:
                self.create_persistent_volume_claims(nodeset, pod)
            except ApiError as err:
                self._record_pod_event(_EVENT_UPDATE, nodeset, pod, err)
                raise
        try:
            match = self.pod_pvcs_match_retention_policy(nodeset, pod)
        except ApiError as err:
            self._record_pod_event(_EVENT_UPDATE, nodeset, pod, err)
            raise
        if not match:
            try:
                self.update_pod_pvcs_for_retention_policy(nodeset, pod)
            except ApiError as err:
                self._record_pod_event(_EVENT_UPDATE, nodeset, pod, err)
                raise
            consistent = False
        return consistent

    def _template_claims(self, nodeset: NodeSet, pod: Pod) -> Iterable[str]:
        ordinal = get_ordinal(pod)
        for template in nodeset.volume_claim_templates:
            yield get_persistent_volume_claim_name(nodeset, template, ordinal)

    def pod_pvcs_match_retention_policy(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Return False if any of the pod's claims has owners that break the policy."""
        for claim_name in self._template_claims(nodeset, pod):
            try:
                claim = self._client.get(_CLAIM_KIND, nodeset.namespace, claim_name)
            except NotFoundError:
                _log.debug("Expected claim %s missing, continuing", claim_name)
                continue
            except ApiError as err:
                raise ApiError(
                    f"could not retrieve claim {claim_name} for {pod.name} "
                    "when checking PVC deletion policy"
                ) from err
            if not is_claim_owner_up_to_date(claim, nodeset, pod):
                return False
        return True

    def update_pod_pvcs_for_retention_policy(self, nodeset: NodeSet, pod: Pod) -> None:
        """Rewrite the owner references of the pod's claims to follow the policy."""
        for claim_name in self._template_claims(nodeset, pod):
            try:
                claim = self._client.get(_CLAIM_KIND, nodeset.namespace, claim_name)
            except NotFoundError:
                _log.debug("Expected claim %s missing, continuing", claim_name)
                continue
            except ApiError as err:
                raise ApiError(
                    f"could not retrieve claim {claim_name} not found for {pod.name} "
                    f"when checking PVC deletion policy: {err}"
                ) from err
            if has_unexpected_controller(claim, nodeset, pod):
                self._recorder.event(
                    nodeset,
                    EVENT_TYPE_WARNING,
                    "ConflictingController",
                    f"PersistentVolumeClaim {claim_name} has a conflicting OwnerReference "
                    "that acts as a manging controller, the retention policy is ignored "
                    "for this claim",
                )
            if not is_claim_owner_up_to_date(claim, nodeset, pod):
                claim = claim.copy()
                update_claim_owner_ref_for_set_and_pod(claim, nodeset, pod)
                try:
                    self._client.update(claim)
                except ApiError as err:
                    raise ApiError(
                        f"could not update claim {claim_name} for delete policy ownerRefs: {err}"
                    ) from err

    def is_pod_pvcs_stale(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Return True if a claim carries a stale pod reference that should block creation."""
        policy = get_persistent_volume_claim_retention_policy(nodeset)
        if policy.when_scaled == _RETAIN:
            return False
        for claim in get_persistent_volume_claims(nodeset, pod).values():
            try:
                existing = self._client.get(_CLAIM_KIND, claim.namespace, claim.name)
            except NotFoundError:
                continue
            if has_stale_owner_ref(existing, pod, POD_GVK):
                return True
        return False

    def create_persistent_volume_claims(self, nodeset: NodeSet, pod: Pod) -> None:
        """Create every missing claim of the pod; raise if any could not be ensured."""
        errors: list[str] = []
        for claim in get_persistent_volume_claims(nodeset, pod).values():
            try:
                existing = self._client.get(_CLAIM_KIND, nodeset.namespace, claim.name)
            except NotFoundError:
                try:
                    self._client.create(claim)
                except AlreadyExistsError as err:
                    errors.append(f"failed to create PVC {claim.name}: {err}")
                except ApiError as err:
                    errors.append(f"failed to create PVC {claim.name}: {err}")
                    self._record_claim_event(_EVENT_CREATE, nodeset, pod, claim, err)
                else:
                    self._record_claim_event(_EVENT_CREATE, nodeset, pod, claim, None)
                continue
            except ApiError as err:
                errors.append(f"failed to retrieve PVC {claim.name}: {err}")
                self._record_claim_event(_EVENT_CREATE, nodeset, pod, claim, err)
                continue
            if existing.deletion_timestamp is not None:
                errors.append(f"pvc {claim.name} is being deleted")
        if errors:
            raise _aggregate(errors)

    def _record_pod_event(
        self, verb: str, nodeset: NodeSet, pod: Pod, err: Exception | None
    ) -> None:
        if err is None:
            self._recorder.event(
                nodeset,
                EVENT_TYPE_NORMAL,
                f"Successful{verb.title()}",
                f"{verb.lower()} Pod {pod.name} in NodeSet {nodeset.name} successful",
            )
        else:
            self._recorder.event(
                nodeset,
                EVENT_TYPE_WARNING,
                f"Failed{verb.title()}",
                f"{verb.lower()} Pod {pod.name} in NodeSet {nodeset.name} failed error: {err}",
            )

    def _record_claim_event(
        self,
        verb: str,
        nodeset: NodeSet,
        pod: Pod,
        claim: PersistentVolumeClaim,
        err: Exception | None,
    ) -> None:
        if err is None:
            self._recorder.event(
                nodeset,
                EVENT_TYPE_NORMAL,
                f"Successful{verb.title()}",
                f"{verb.lower()} Claim {claim.name} Pod {pod.name} "
                f"in NodeSet {nodeset.name} successful",
            )
        else:
            self._recorder.event(
                nodeset,
                EVENT_TYPE_WARNING,
                f"Failed{verb.title()}",
                f"{verb.lower()} Claim {claim.name} for Pod {pod.name} "
                f"in NodeSet {nodeset.name} failed error: {err}",
            )


def is_claim_owner_up_to_date(claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod) -> bool:
    """Return False if the claim's owners do not follow the NodeSet's retention policy.

    Claims with stale references or with another controller are left alone
    and reported as up to date.
    """
    if has_stale_owner_ref(claim, nodeset, NODESET_GVK) or has_stale_owner_ref(claim, pod, POD_GVK):
        return True

    if has_unexpected_controller(claim, nodeset, pod):
        return not (has_owner_ref(claim, nodeset) or has_owner_ref(claim, pod))

    if has_non_controller_owner(claim, nodeset, pod):
        return False

    policy = get_persistent_volume_claim_retention_policy(nodeset)
    deleted, scaled = policy.when_deleted, policy.when_scaled
    set_ref = has_owner_ref(claim, nodeset)
    pod_ref = has_owner_ref(claim, pod)

    if deleted == _DELETE and scaled == _RETAIN:
        return set_ref and not pod_ref
    if deleted == _RETAIN and scaled == _DELETE:
        return not set_ref and _is_pod_cordon(pod) == pod_ref
    if deleted == _DELETE and scaled == _DELETE:
        scaled_down = _is_pod_cordon(pod)
        return scaled_down != set_ref and scaled_down == pod_ref
    if not (deleted == _RETAIN and scaled == _RETAIN):
        _log.error("Unknown policy, treating as Retain: %s", nodeset.retention_policy)
    return not (set_ref or pod_ref)


def has_unexpected_controller(claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if a controller other than the NodeSet or pod manages the claim."""
    policy = get_persistent_volume_claim_retention_policy(nodeset)
    if policy.when_scaled == _RETAIN and policy.when_deleted == _RETAIN:
        return False
    for ref in claim.owner_references:
        if matches_ref(ref, nodeset, NODESET_GVK):
            if ref.uid != nodeset.uid:
                return True
            continue
        if matches_ref(ref, pod, POD_GVK):
            if ref.uid != pod.uid:
                return True
            continue
        if ref.controller:
            return True
    return False


def has_non_controller_owner(claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod) -> bool:
    """Return True if the NodeSet or pod owns the claim without being its controller."""
    return any(
        (ref.uid == nodeset.uid or ref.uid == pod.uid) and not ref.controller
        for ref in claim.owner_references
    )


def remove_refs(
    refs: Iterable[OwnerReference], predicate: Callable[[OwnerReference], bool]
) -> list[OwnerReference]:
    """Return the references that do not satisfy predicate."""
    return [ref for ref in refs if not predicate(ref)]


def update_claim_owner_ref_for_set_and_pod(
    claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod
) -> None:
    """Rewrite the claim's owner references according to the retention policy."""
    unexpected = has_unexpected_controller(claim, nodeset, pod)
    refs = remove_refs(
        claim.owner_references,
        lambda ref: matches_ref(ref, nodeset, NODESET_GVK) or matches_ref(ref, pod, POD_GVK),
    )
    if unexpected:
        claim.owner_references = refs
        return

    policy = get_persistent_volume_claim_retention_policy(nodeset)
    scaled, deleted = policy.when_scaled, policy.when_deleted
    if scaled == _RETAIN and deleted == _DELETE:
        refs = add_controller_ref(refs, nodeset, NODESET_GVK)
    elif scaled == _DELETE and deleted == _RETAIN:
        if _is_pod_cordon(pod):
            refs = add_controller_ref(refs, pod, POD_GVK)
    elif scaled == _DELETE and deleted == _DELETE:
        if _is_pod_cordon(pod):
            refs = add_controller_ref(refs, pod, POD_GVK)
        else:
            refs = add_controller_ref(refs, nodeset, NODESET_GVK)
    elif not (scaled == _RETAIN and deleted == _RETAIN):
        _log.error("Unknown policy, treating as Retain: %s", nodeset.retention_policy)
    claim.owner_references = refs


def get_persistent_volume_claim_retention_policy(nodeset: NodeSet) -> RetentionPolicy:
    """Return the NodeSet's claim retention policy, defaulting to retain."""
    if nodeset.retention_policy is None:
        return RetentionPolicy(when_deleted=_RETAIN, when_scaled=_RETAIN)
    return RetentionPolicy(
        when_deleted=nodeset.retention_policy.when_deleted,
        when_scaled=nodeset.retention_policy.when_scaled,
    )


def has_owner_ref(target, owner) -> bool:
    """Return True if target has any owner reference with owner's UID."""
    return any(ref.uid == owner.uid for ref in target.owner_references)


def has_stale_owner_ref(target, obj, gvk: GroupVersionKind) -> bool:
    """Return True if target refers to obj by name and kind but with another UID."""
    for ref in target.owner_references:
        if matches_ref(ref, obj, gvk):
            return ref.uid != obj.uid
    return False


def matches_ref(ref: OwnerReference, obj, gvk: GroupVersionKind) -> bool:
    """Return True if the reference names obj with the given kind, ignoring UIDs."""
    return gvk.api_version() == ref.api_version and gvk.kind == ref.kind and ref.name == obj.name


def add_controller_ref(
    refs: Iterable[OwnerReference], owner, gvk: GroupVersionKind
) -> list[OwnerReference]:
    """Return refs with a controller reference to owner added when it is missing."""
    refs = list(refs)
    if any(ref.uid == owner.uid for ref in refs):
        return refs
    return [*refs, new_controller_ref(owner, gvk)]