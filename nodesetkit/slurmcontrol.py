"""Slurm node operations on behalf of the pods of a NodeSet."""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping, Protocol

from . import hostlist
from .identity import get_node_name
from .models import NodeSet, Pod

_log = logging.getLogger(__name__)

NODE_REASON_PREFIX = "slurm-operator:"
JOB_STATE_RUNNING = "RUNNING"

_INFINITE_DURATION = timedelta(microseconds=(2**63 - 1) // 1000)
_TOLERATED_MESSAGES = frozenset({"Not Found", "No Content"})


class SlurmError(Exception):
    """An error reported by a Slurm client."""


class NodeState(str, enum.Enum):
    """Base and flag states of a Slurm node."""

    ALLOCATED = "ALLOCATED"
    DOWN = "DOWN"
    ERROR = "ERROR"
    FUTURE = "FUTURE"
    IDLE = "IDLE"
    MIXED = "MIXED"
    UNKNOWN = "UNKNOWN"
    COMPLETING = "COMPLETING"
    DRAIN = "DRAIN"
    FAIL = "FAIL"
    INVALID = "INVALID"
    INVALID_REG = "INVALID_REG"
    MAINTENANCE = "MAINTENANCE"
    NOT_RESPONDING = "NOT_RESPONDING"
    UNDRAIN = "UNDRAIN"


@dataclass
class SlurmNode:
    """A Slurm node as reported by the cluster."""

    name: str
    state: frozenset[NodeState] = field(default_factory=frozenset)
    comment: str | None = None
    reason: str | None = None

    def __post_init__(self) -> None:
        self.state = frozenset(NodeState(value) for value in self.state)


@dataclass
class SlurmJob:
    """A Slurm job; start_time is in Unix seconds, time_limit in minutes."""

    job_id: int
    job_state: frozenset[str] = field(default_factory=frozenset)
    nodes: str | None = None
    start_time: int | None = None
    time_limit: int | None = None
    time_limit_infinite: bool = False

    def __post_init__(self) -> None:
        self.job_state = frozenset(self.job_state)


@dataclass(frozen=True)
class NodeUpdate:
    """A request to change a Slurm node."""

    state: tuple[NodeState, ...] | None = None
    reason: str | None = None
    comment: str | None = None


@dataclass
class SlurmNodeStatus:
    """Counts of a NodeSet's Slurm nodes by state."""

    total: int = 0

    allocated: int = 0
    down: int = 0
    error: int = 0
    future: int = 0
    idle: int = 0
    mixed: int = 0
    unknown: int = 0

    completing: int = 0
    drain: int = 0
    fail: int = 0
    invalid: int = 0
    invalid_reg: int = 0
    maintenance: int = 0
    not_responding: int = 0
    undrain: int = 0


_BASE_STATES = (
    (NodeState.ALLOCATED, "allocated"),
    (NodeState.DOWN, "down"),
    (NodeState.ERROR, "error"),
    (NodeState.FUTURE, "future"),
    (NodeState.IDLE, "idle"),
    (NodeState.MIXED, "mixed"),
    (NodeState.UNKNOWN, "unknown"),
)

_FLAG_STATES = (
    (NodeState.COMPLETING, "completing"),
    (NodeState.DRAIN, "drain"),
    (NodeState.FAIL, "fail"),
    (NodeState.INVALID, "invalid"),
    (NodeState.INVALID_REG, "invalid_reg"),
    (NodeState.MAINTENANCE, "maintenance"),
    (NodeState.NOT_RESPONDING, "not_responding"),
    (NodeState.UNDRAIN, "undrain"),
)

assert {name for _, name in _BASE_STATES + _FLAG_STATES} | {"total"} == {
    f.name for f in fields(SlurmNodeStatus)
}


class _SlurmClient(Protocol):
    def get_node(self, name: str) -> SlurmNode: ...

    def list_nodes(self, refresh: bool = False) -> list[SlurmNode]: ...

    def list_jobs(self) -> list[SlurmJob]: ...

    def update_node(self, name: str, update: NodeUpdate) -> None: ...


def tolerate_error(err: BaseException | None) -> bool:
    """Return True for no error and for "Not Found" or "No Content" errors."""
    if err is None:
        return True
    return str(err) in _TOLERATED_MESSAGES


def _pod_info(pod: Pod) -> dict[str, str]:
    return {"namespace": pod.namespace, "podName": pod.name}


def _parse_pod_info(comment: str | None) -> dict[str, str] | None:
    if not comment:
        return None
    try:
        data = json.loads(comment)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _pod_node_names(pods: Iterable[Pod]) -> set[str]:
    return {get_node_name(pod) for pod in pods}


class SlurmControl:
    """Drives the Slurm nodes that back a NodeSet's pods.

    ``clusters`` maps ``(namespace, cluster name)`` to a Slurm client.
    When a NodeSet's cluster has no client, operations do nothing.
    """

    def __init__(self, clusters: Mapping[tuple[str, str], _SlurmClient]) -> None:
        self._clusters = clusters

    def _lookup_client(self, nodeset: NodeSet) -> _SlurmClient | None:
        return self._clusters.get((nodeset.namespace, nodeset.cluster_name))

    def _get_node(self, client: _SlurmClient, pod: Pod) -> SlurmNode | None:
        """Fetch the pod's Slurm node; None when the error is tolerated."""
        try:
            return client.get_node(get_node_name(pod))
        except SlurmError as err:
            if tolerate_error(err):
                return None
            raise

    def _update_node(self, client: _SlurmClient, node: SlurmNode, update: NodeUpdate) -> None:
        try:
            client.update_node(node.name, update)
        except SlurmError as err:
            if not tolerate_error(err):
                raise

    def get_node_names(self, nodeset: NodeSet, pods: Iterable[Pod]) -> list[str]:
        """Return the names of registered Slurm nodes that belong to the pods."""
        client = self._lookup_client(nodeset)
        if client is None:
            _log.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return []
        wanted = _pod_node_names(pods)
        return [node.name for node in client.list_nodes() if node.name in wanted]

    def update_node_with_pod_info(self, nodeset: NodeSet, pod: Pod) -> None:
        """Record the pod's namespace and name in its Slurm node's comment."""
        client = self._lookup_client(nodeset)
        if client is None:
            _log.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return
        info = _pod_info(pod)
        if _parse_pod_info(node.comment) == info:
            _log.debug("Node %s already contains pod info, skipping update", node.name)
            return
        _log.info("Update Slurm Node %s with Kubernetes Pod info %s", node.name, info)
        self._update_node(client, node, NodeUpdate(comment=json.dumps(info)))

    def make_node_drain(self, nodeset: NodeSet, pod: Pod, reason: str) -> None:
        """Add the DRAIN state to the pod's Slurm node."""
        client = self._lookup_client(nodeset)
        if client is None:
            _log.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return
        _log.debug("make slurm node %s drain", node.name)
        update = NodeUpdate(state=(NodeState.DRAIN,), reason=f"{NODE_REASON_PREFIX} {reason}")
        self._update_node(client, node, update)

    def make_node_undrain(self, nodeset: NodeSet, pod: Pod, reason: str) -> None:
        """Remove the DRAIN state, unless something other than this operator drained it."""
        client = self._lookup_client(nodeset)
        if client is None:
            _log.debug("no client for nodeset %s/%s", nodeset.namespace, nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return
        node_reason = node.reason or ""
        if NodeState.DRAIN not in node.state or NodeState.UNDRAIN in node.state:
            _log.debug("Node %s is already undrained, skipping undrain request", node.name)
            return
        if node_reason and NODE_REASON_PREFIX not in node_reason:
            _log.info(
                "Node %s was drained but not by slurm-operator, skipping undrain request",
                node.name,
            )
            return
        _log.debug("make slurm node %s undrain", node.name)
        update = NodeUpdate(state=(NodeState.UNDRAIN,), reason=f"{NODE_REASON_PREFIX} {reason}")
        self._update_node(client, node, update)

    def is_node_drain(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Return True if the pod's Slurm node has the DRAIN state."""
        client = self._lookup_client(nodeset)
        if client is None:
            return True
        node = self._get_node(client, pod)
        if node is None:
            return True
        return NodeState.DRAIN in node.state

    def is_node_drained(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Return True if the pod's Slurm node is IDLE+DRAIN or DOWN+DRAIN."""
        client = self._lookup_client(nodeset)
        if client is None:
            return True
        node = self._get_node(client, pod)
        if node is None:
            return True
        base = NodeState.IDLE in node.state or NodeState.DOWN in node.state
        return base and NodeState.DRAIN in node.state

    def calculate_node_status(self, nodeset: NodeSet, pods: Iterable[Pod]) -> SlurmNodeStatus:
        """Count the pods' registered Slurm nodes by base and flag state."""
        status = SlurmNodeStatus()
        client = self._lookup_client(nodeset)
        if client is None:
            return status
        try:
            nodes = client.list_nodes(refresh=True)
        except SlurmError as err:
            if tolerate_error(err):
                return status
            raise

        wanted = _pod_node_names(pods)
        for node in nodes:
            if node.name not in wanted:
                continue
            status.total += 1
            for state, attribute in _BASE_STATES:
                if state in node.state:
                    setattr(status, attribute, getattr(status, attribute) + 1)
                    break
            for state, attribute in _FLAG_STATES:
                if state in node.state:
                    setattr(status, attribute, getattr(status, attribute) + 1)
        return status

    def get_node_deadlines(self, nodeset: NodeSet, pods: Iterable[Pod]) -> dict[str, datetime]:
        """Map each Slurm node to the latest end time of the running jobs on it."""
        deadlines: dict[str, datetime] = {}
        client = self._lookup_client(nodeset)
        if client is None:
            return deadlines

        wanted = _pod_node_names(pods)
        for job in client.list_jobs():
            if JOB_STATE_RUNNING not in job.job_state:
                continue
            try:
                job_nodes = hostlist.expand(job.nodes or "")
            except ValueError:
                _log.error("failed to expand hostlist of job %s", job.job_id)
                raise
            if wanted.isdisjoint(job_nodes):
                continue

            start = datetime.fromtimestamp(job.start_time or 0, tz=timezone.utc)
            limit = _INFINITE_DURATION if job.time_limit_infinite else timedelta(
                minutes=job.time_limit or 0
            )
            end = start + limit
            for name in job_nodes:
                current = deadlines.get(name)
                if current is None or end > current:
                    deadlines[name] = end
        return deadlines