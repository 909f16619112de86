# nodesetkit

`nodesetkit` holds the rules for managing the pods of a NodeSet. A NodeSet is a set of
Slurm compute nodes that run as pods, all created from one pod template. The package
uses only the standard library. It is split into these modules:

- `nodesetkit.models`: dataclasses for `NodeSet`, `Pod`, `PersistentVolumeClaim`,
  `Volume`, `OwnerReference`, `RetentionPolicy` and `GroupVersionKind`.
- `nodesetkit.identity`: pod names, ordinals, hostnames and volume claims.
- `nodesetkit.ordering`: the order in which pods are preferred for deletion.
- `nodesetkit.kube`: an in-memory object store (`InMemoryClient`), an `EventRecorder`
  and the `ApiError` family of exceptions.
- `nodesetkit.podcontrol`: `PodControl`, which creates, updates and deletes pods and
  keeps the owner references of their claims in line with the NodeSet's retention
  policy.
- `nodesetkit.hostlist`: expands and compresses Slurm hostlist expressions.
- `nodesetkit.slurmcontrol`: `SlurmControl`, which drains and undrains Slurm nodes,
  counts node states and works out job deadlines for each node.

## Installation

```
pip install nodesetkit
```

To work on the package and run its tests:

```
pip install -e ".[test]"
pytest
```

## Pod identity

```python
from nodesetkit.models import NodeSet
from nodesetkit.identity import (
    new_nodeset_pod,
    get_ordinal,
    get_parent_name,
    is_identity_match,
)

nodeset = NodeSet(name="foo", namespace="default")
pod = new_nodeset_pod(nodeset, 0, "")

pod.name                            # "foo-0"
get_parent_name(pod)                # "foo"
get_ordinal(pod)                    # 0
is_identity_match(nodeset, pod)     # True
```

`new_nodeset_pod` does the following:

- copies the NodeSet's template;
- adds a controller owner reference to the NodeSet;
- sets the pod's name, namespace and identity labels;
- sets the hostname and subdomain;
- replaces the claim volumes so that they point at the pod's own claims;
- clears `node_name`;
- adds the standard daemon tolerations.

If `revision_hash` is not empty, it is stored in the `controller-revision-hash` label.

Each pod gets its own claim for every claim template. The claim name joins the template
name, the NodeSet name and the ordinal (`get_persistent_volume_claim_name`). For
example, template `datadir` on NodeSet `foo` gives `datadir-foo-0` for pod 0.
`get_persistent_volume_claims` returns these claims keyed by template name. Each claim
carries the NodeSet's selector labels.

## Choosing pods to delete

```python
from nodesetkit.ordering import sort_active_pods, split_active_pods

ordered = sort_active_pods(pods)
to_delete, to_keep = split_active_pods(pods, 2)
```

Pods are compared on the tests below, in order. The first test that tells two pods
apart decides which comes first:

1. Unscheduled before scheduled.
2. Phase: Pending, then Unknown, then Running.
3. Not ready before ready.
4. Lower deletion cost first (`slinky.slurm.net/pod-deletion-cost`).
5. Earlier deadline first (`slinky.slurm.net/pod-deadline`).
6. Cordoned before not cordoned (`slinky.slurm.net/pod-cordon`).
7. Higher ordinal first.
8. If both pods are ready: the one that became ready more recently first. A pod with no
   ready time counts as most recent.
9. Newer creation time first. A pod with no creation time counts as newest.

`split_active_pods` clamps the partition to the range of the list.

## Pods and claim ownership

`PodControl` takes a client and an event recorder. `nodesetkit.kube` provides
`InMemoryClient` and `EventRecorder`.

`InMemoryClient` stores objects by kind (the class name), namespace and name. It copies
objects on the way in and on the way out. Its `failures` argument maps an operation
(`"get"`, `"create"`, `"update"` or `"delete"`) to an error that the operation raises.
This is useful for testing error handling.

```python
from nodesetkit.kube import InMemoryClient, EventRecorder
from nodesetkit.podcontrol import PodControl

client = InMemoryClient()
recorder = EventRecorder()
control = PodControl(client, recorder)

control.create_nodeset_pod(nodeset, pod)   # creates missing claims, then the pod
control.update_nodeset_pod(nodeset, pod)   # fixes identity, storage and claim owners
control.is_pod_pvcs_stale(nodeset, pod)
control.delete_nodeset_pod(nodeset, pod)

recorder.events                             # e.g. Event(reason="SuccessfulCreate", ...)
```

Failures raise `ApiError` or one of its subclasses: `NotFoundError`,
`AlreadyExistsError` or `ConflictError`. `update_nodeset_pod` retries on
`ConflictError`.

The owner references a claim should carry depend on the retention policy:

| when scaled | when deleted | owner references |
|---|---|---|
| Retain | Retain | none |
| Retain | Delete | the NodeSet |
| Delete | Retain | the pod, once the pod is cordoned |
| Delete | Delete | the pod if it is cordoned, otherwise the NodeSet |

A claim is left alone if it has a stale reference, or if it has another controller.
`is_claim_owner_up_to_date`, `update_claim_owner_ref_for_set_and_pod` and the helper
functions in `nodesetkit.podcontrol` implement these rules.

## Slurm control

`SlurmControl` takes a mapping from `(namespace, cluster_name)` to a Slurm client.
Operations on a NodeSet whose cluster has no client do nothing.

A client is any object that has these methods:

- `get_node(name) -> SlurmNode`
- `list_nodes(refresh=False) -> list[SlurmNode]`
- `list_jobs() -> list[SlurmJob]`
- `update_node(name, update: NodeUpdate) -> None`

The client reports problems by raising `SlurmError`. Errors whose message is
`"Not Found"` or `"No Content"` are tolerated (see `tolerate_error`).

```python
from nodesetkit.slurmcontrol import SlurmControl

control = SlurmControl({("default", "slurm"): my_client})

control.update_node_with_pod_info(nodeset, pod)  # stores pod namespace/name in the node comment
control.make_node_drain(nodeset, pod, "scaling down")
control.is_node_drained(nodeset, pod)            # IDLE+DRAIN or DOWN+DRAIN
control.make_node_undrain(nodeset, pod, "back")  # only if drained by this operator
status = control.calculate_node_status(nodeset, pods)   # SlurmNodeStatus counts
deadlines = control.get_node_deadlines(nodeset, pods)   # {node name: UTC datetime}
```

`get_node_deadlines` looks only at running jobs. For each node, it gives the latest end
time (start time plus time limit) among those jobs.

`nodesetkit.hostlist` expands hostlist expressions and compresses names back into one:

```python
from nodesetkit.hostlist import expand, compress

expand("node[1-3]")                  # ["node1", "node2", "node3"]
compress(["node1", "node2"])         # "node[1-2]"
```

## What the package does not do

This is a library with no command and no controller loop. Its pieces are:

- The only object store is `InMemoryClient`. The package does not talk to a Kubernetes
  API server.
- There is no Slurm client. You supply one that talks to your Slurm cluster, using the
  methods listed above.