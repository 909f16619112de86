import time
from datetime import datetime, timedelta, timezone

import pytest

from nodesetkit.hostlist import compress
from nodesetkit.identity import get_node_name, new_nodeset_pod
from nodesetkit.models import NodeSet
from nodesetkit.slurmcontrol import (
    NodeState,
    NodeUpdate,
    SlurmControl,
    SlurmError,
    SlurmJob,
    SlurmNode,
    SlurmNodeStatus,
    tolerate_error,
)

CLUSTER = "slurm"


class FakeSlurmClient:
    def __init__(self, nodes=(), jobs=(), fail_with=None):
        self.nodes = {node.name: node for node in nodes}
        self.jobs = list(jobs)
        self.fail_with = fail_with
        self.updates = []
        self.refreshed = False

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def get_node(self, name):
        self._check()
        try:
            node = self.nodes[name]
        except KeyError:
            raise SlurmError("Not Found") from None
        return SlurmNode(node.name, node.state, node.comment, node.reason)

    def list_nodes(self, refresh=False):
        self._check()
        self.refreshed = refresh
        return list(self.nodes.values())

    def list_jobs(self):
        self._check()
        return list(self.jobs)

    def update_node(self, name, update: NodeUpdate):
        self._check()
        node = self.nodes[name]
        states = set(node.state)
        for requested in update.state or ():
            if requested == NodeState.UNDRAIN:
                states.discard(NodeState.DRAIN)
            else:
                states.add(requested)
        node.state = frozenset(states)
        node.comment = update.comment
        node.reason = update.reason
        self.updates.append(update)


def new_nodeset(name="foo", cluster_name=CLUSTER, replicas=1):
    return NodeSet(name=name, namespace="default", cluster_name=cluster_name, replicas=replicas)


def control_for(client):
    return SlurmControl({("default", CLUSTER): client})


def node_for(nodeset, ordinal, *states, reason=None):
    pod = new_nodeset_pod(nodeset, ordinal, "")
    return SlurmNode(get_node_name(pod), frozenset(states), reason=reason)


def test_update_node_with_pod_info():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(nodeset, 0, NodeState.IDLE)])
    control = control_for(client)

    control.update_node_with_pod_info(nodeset, pod)
    comment = client.nodes[get_node_name(pod)].comment
    assert comment is not None
    assert pod.name in comment
    assert pod.namespace in comment

    control.update_node_with_pod_info(nodeset, pod)
    assert len(client.updates) == 1


def test_update_node_with_pod_info_missing_node_tolerated():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient()
    control_for(client).update_node_with_pod_info(nodeset, pod)
    assert client.updates == []


def test_make_node_drain():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(nodeset, 0, NodeState.IDLE)])
    control_for(client).make_node_drain(nodeset, pod, "drain")
    node = client.nodes[get_node_name(pod)]
    assert NodeState.DRAIN in node.state
    assert node.reason == "slurm-operator: drain"


def test_make_node_drain_untolerated_error_raises():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient(fail_with=SlurmError("Forbidden"))
    with pytest.raises(SlurmError):
        control_for(client).make_node_drain(nodeset, pod, "drain")


def test_make_node_undrain():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(nodeset, 0, NodeState.IDLE, NodeState.DRAIN)])
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    assert NodeState.DRAIN not in client.nodes[get_node_name(pod)].state


def test_make_node_undrain_skips_foreign_drain():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient(
        [node_for(nodeset, 0, NodeState.IDLE, NodeState.DRAIN, reason="maintenance")]
    )
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    assert NodeState.DRAIN in client.nodes[get_node_name(pod)].state
    assert client.updates == []


def test_make_node_undrain_skips_undrained_node():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(nodeset, 0, NodeState.IDLE)])
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    assert client.updates == []


@pytest.mark.parametrize(
    "states, want",
    [
        ((NodeState.IDLE,), False),
        ((NodeState.DRAIN,), True),
    ],
)
def test_is_node_drain(states, want):
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(nodeset, 0, *states)])
    assert control_for(client).is_node_drain(nodeset, pod) is want


@pytest.mark.parametrize(
    "states, want",
    [
        ((NodeState.IDLE,), False),
        ((NodeState.IDLE, NodeState.DRAIN), True),
        ((NodeState.ALLOCATED, NodeState.DRAIN), False),
        ((NodeState.DOWN, NodeState.DRAIN), True),
    ],
)
def test_is_node_drained(states, want):
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(nodeset, 0, *states)])
    assert control_for(client).is_node_drained(nodeset, pod) is want


def test_drain_checks_without_client_report_true():
    nodeset = new_nodeset(cluster_name="other")
    pod = new_nodeset_pod(nodeset, 0, "")
    control = control_for(FakeSlurmClient())
    assert control.is_node_drain(nodeset, pod) is True
    assert control.is_node_drained(nodeset, pod) is True


def test_is_node_drain_raises_untolerated_error():
    nodeset = new_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient(fail_with=SlurmError("Forbidden"))
    with pytest.raises(SlurmError):
        control_for(client).is_node_drain(nodeset, pod)


def test_calculate_node_status_empty():
    nodeset = new_nodeset()
    client = FakeSlurmClient()
    assert control_for(client).calculate_node_status(nodeset, []) == SlurmNodeStatus()


def test_calculate_node_status_different_nodesets():
    nodeset = new_nodeset("foo")
    other = new_nodeset("baz")
    client = FakeSlurmClient(
        [node_for(nodeset, 0, NodeState.IDLE), node_for(other, 0, NodeState.IDLE)]
    )
    pods = [new_nodeset_pod(nodeset, 0, "")]
    status = control_for(client).calculate_node_status(nodeset, pods)
    assert status == SlurmNodeStatus(total=1, idle=1)
    assert client.refreshed is True


S = NodeState


@pytest.mark.parametrize(
    "node_states, want",
    [
        ([(S.IDLE,)], SlurmNodeStatus(total=1, idle=1)),
        ([(S.IDLE, S.DRAIN)], SlurmNodeStatus(total=1, idle=1, drain=1)),
        (
            [(S.ALLOCATED,), (S.DOWN,), (S.ERROR,), (S.FUTURE,), (S.IDLE,), (S.MIXED,), (S.UNKNOWN,)],
            SlurmNodeStatus(
                total=7, allocated=1, down=1, error=1, future=1, idle=1, mixed=1, unknown=1
            ),
        ),
        (
            [
                (S.COMPLETING,),
                (S.DRAIN,),
                (S.FAIL,),
                (S.INVALID,),
                (S.INVALID_REG,),
                (S.MAINTENANCE,),
                (S.NOT_RESPONDING,),
                (S.UNDRAIN,),
            ],
            SlurmNodeStatus(
                total=8,
                completing=1,
                drain=1,
                fail=1,
                invalid=1,
                invalid_reg=1,
                maintenance=1,
                not_responding=1,
                undrain=1,
            ),
        ),
        (
            [
                (S.ALLOCATED, S.COMPLETING),
                (S.DOWN, S.DRAIN),
                (S.ERROR, S.FAIL),
                (S.FUTURE, S.INVALID),
                (S.FUTURE, S.INVALID_REG),
                (S.IDLE, S.MAINTENANCE),
                (S.MIXED, S.NOT_RESPONDING),
                (S.UNKNOWN, S.UNDRAIN),
            ],
            SlurmNodeStatus(
                total=8,
                allocated=1,
                down=1,
                error=1,
                future=2,
                idle=1,
                mixed=1,
                unknown=1,
                completing=1,
                drain=1,
                fail=1,
                invalid=1,
                invalid_reg=1,
                maintenance=1,
                not_responding=1,
                undrain=1,
            ),
        ),
    ],
    ids=["only base", "base and flag", "all base", "all flags", "all states"],
)
def test_calculate_node_status(node_states, want):
    nodeset = new_nodeset()
    nodes = [node_for(nodeset, i, *states) for i, states in enumerate(node_states)]
    pods = [new_nodeset_pod(nodeset, i, "") for i in range(len(node_states))]
    client = FakeSlurmClient(nodes)
    assert control_for(client).calculate_node_status(nodeset, pods) == want


def test_calculate_node_status_tolerates_not_found():
    nodeset = new_nodeset()
    client = FakeSlurmClient(fail_with=SlurmError("No Content"))
    assert control_for(client).calculate_node_status(nodeset, []) == SlurmNodeStatus()


def test_get_node_names_filters_to_pods():
    nodeset = new_nodeset("foo")
    other = new_nodeset("baz")
    client = FakeSlurmClient(
        [node_for(nodeset, 0, NodeState.IDLE), node_for(other, 0, NodeState.IDLE)]
    )
    pods = [new_nodeset_pod(nodeset, 0, "")]
    assert control_for(client).get_node_names(nodeset, pods) == ["foo-0"]


def test_get_node_deadlines():
    nodeset = new_nodeset("bar")
    pod = new_nodeset_pod(nodeset, 0, "")
    pod2 = new_nodeset_pod(nodeset, 1, "")
    name0, name1 = get_node_name(pod), get_node_name(pod2)
    now = int(time.time())
    jobs = [
        SlurmJob(1, {"RUNNING"}, compress([name0]), now, 30 * 60),
        SlurmJob(2, {"RUNNING"}, compress([name0, name1]), now, 45 * 60),
        SlurmJob(3, {"RUNNING"}, compress([name0]), now, 3600),
        SlurmJob(4, {"COMPLETED"}, compress([name0, name1])),
        SlurmJob(5, {"COMPLETED"}, compress([name1])),
    ]
    client = FakeSlurmClient(
        [SlurmNode(name0, {NodeState.MIXED}), SlurmNode(name1, {NodeState.MIXED})], jobs
    )
    deadlines = control_for(client).get_node_deadlines(nodeset, [pod, pod2])

    start = datetime.fromtimestamp(now, tz=timezone.utc)
    for name in (name0, name1):
        assert deadlines[name] > start
    assert deadlines[name0] == start + timedelta(minutes=3600)
    assert deadlines[name1] == start + timedelta(minutes=45 * 60)


def test_get_node_deadlines_infinite_limit():
    nodeset = new_nodeset("bar")
    pod = new_nodeset_pod(nodeset, 0, "")
    now = int(time.time())
    jobs = [
        SlurmJob(1, {"RUNNING"}, "bar-0", now, 10),
        SlurmJob(2, {"RUNNING"}, "bar-0", now, None, time_limit_infinite=True),
    ]
    client = FakeSlurmClient([], jobs)
    deadlines = control_for(client).get_node_deadlines(nodeset, [pod])
    start = datetime.fromtimestamp(now, tz=timezone.utc)
    assert deadlines["bar-0"] - start > timedelta(days=365 * 200)


def test_get_node_deadlines_ignores_other_nodes_jobs():
    nodeset = new_nodeset("bar")
    pod = new_nodeset_pod(nodeset, 0, "")
    jobs = [SlurmJob(1, {"RUNNING"}, "other-0", int(time.time()), 10)]
    client = FakeSlurmClient([], jobs)
    assert control_for(client).get_node_deadlines(nodeset, [pod]) == {}


def test_get_node_deadlines_without_client():
    nodeset = new_nodeset("bar", cluster_name="missing")
    pod = new_nodeset_pod(nodeset, 0, "")
    assert control_for(FakeSlurmClient()).get_node_deadlines(nodeset, [pod]) == {}


def test_get_node_deadlines_bad_hostlist():
    nodeset = new_nodeset("bar")
    pod = new_nodeset_pod(nodeset, 0, "")
    jobs = [SlurmJob(1, {"RUNNING"}, "bar-[0-", int(time.time()), 10)]
    with pytest.raises(ValueError):
        control_for(FakeSlurmClient([], jobs)).get_node_deadlines(nodeset, [pod])


def test_get_node_deadlines_list_error_raises():
    nodeset = new_nodeset("bar")
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient(fail_with=SlurmError("Not Found"))
    with pytest.raises(SlurmError):
        control_for(client).get_node_deadlines(nodeset, [pod])


@pytest.mark.parametrize(
    "err, want",
    [
        (None, True),
        (SlurmError(""), False),
        (SlurmError("Not Found"), True),
        (SlurmError("No Content"), True),
        (SlurmError("Forbidden"), False),
    ],
    ids=["nil", "empty", "not found", "no content", "forbidden"],
)
def test_tolerate_error(err, want):
    assert tolerate_error(err) is want