"""Ordering of NodeSet pods by how readily they should be deleted."""

from __future__ import annotations

import functools
import re
from datetime import datetime

from .identity import get_ordinal
from .models import (
    ANNOTATION_POD_CORDON,
    ANNOTATION_POD_DEADLINE,
    ANNOTATION_POD_DELETION_COST,
    CONDITION_READY,
    CONDITION_TRUE,
    PHASE_PENDING,
    PHASE_RUNNING,
    PHASE_UNKNOWN,
    Pod,
)

_PHASE_WEIGHT = {PHASE_PENDING: 0, PHASE_UNKNOWN: 1, PHASE_RUNNING: 2}
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")
_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})


def _annotation_number(pod: Pod, key: str) -> int:
    value = pod.annotations.get(key, "")
    if _INTEGER_RE.fullmatch(value) is None:
        return 0
    return int(value)


def _annotation_time(pod: Pod, key: str) -> datetime | None:
    value = pod.annotations.get(key)
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _annotation_bool(pod: Pod, key: str) -> bool:
    return pod.annotations.get(key, "") in _TRUE_WORDS


def _times_equal(t1: datetime | None, t2: datetime | None) -> bool:
    if t1 is None or t2 is None:
        return t1 is None and t2 is None
    return t1 == t2


def _before(t1: datetime | None, t2: datetime | None) -> bool:
    if t2 is None:
        return False
    if t1 is None:
        return True
    return t1 < t2


def _ready_time(pod: Pod) -> datetime | None:
    if pod.is_ready():
        for condition in pod.conditions:
            if condition.type == CONDITION_READY and condition.status == CONDITION_TRUE:
                return condition.last_transition_time
    return None


def after_or_zero(t1: datetime | None, t2: datetime | None) -> bool:
    """Return True if t1 is after t2, treating a missing time as latest."""
    if t1 is None or t2 is None:
        return t1 is None
    return t1 > t2


def active_pods_less(pod1: Pod, pod2: Pod) -> bool:
    """Return True if pod1 should be preferred over pod2 for deletion."""
    if pod1.node_name != pod2.node_name and (not pod1.node_name or not pod2.node_name):
        return not pod1.node_name

    weight1 = _PHASE_WEIGHT.get(pod1.phase, 0)
    weight2 = _PHASE_WEIGHT.get(pod2.phase, 0)
    if weight1 != weight2:
        return weight1 < weight2

    if pod1.is_ready() != pod2.is_ready():
        return not pod1.is_ready()

    cost1 = _annotation_number(pod1, ANNOTATION_POD_DELETION_COST)
    cost2 = _annotation_number(pod2, ANNOTATION_POD_DELETION_COST)
    if cost1 != cost2:
        return cost1 < cost2

    deadline1 = _annotation_time(pod1, ANNOTATION_POD_DEADLINE)
    deadline2 = _annotation_time(pod2, ANNOTATION_POD_DEADLINE)
    if not _times_equal(deadline1, deadline2):
        return _before(deadline1, deadline2)

    cordon1 = _annotation_bool(pod1, ANNOTATION_POD_CORDON)
    cordon2 = _annotation_bool(pod2, ANNOTATION_POD_CORDON)
    if cordon1 or cordon2:
        return cordon1

    ordinal1, ordinal2 = get_ordinal(pod1), get_ordinal(pod2)
    if ordinal1 != ordinal2:
        return ordinal1 > ordinal2

    if pod1.is_ready() and pod2.is_ready():
        ready1, ready2 = _ready_time(pod1), _ready_time(pod2)
        if not _times_equal(ready1, ready2):
            return after_or_zero(ready1, ready2)

    if not _times_equal(pod1.creation_timestamp, pod2.creation_timestamp):
        return after_or_zero(pod1.creation_timestamp, pod2.creation_timestamp)

    return False


def _compare(pod1: Pod, pod2: Pod) -> int:
    if active_pods_less(pod1, pod2):
        return -1
    if active_pods_less(pod2, pod1):
        return 1
    return 0


def sort_active_pods(pods) -> list[Pod]:
    """Return the pods ordered from most to least preferred for deletion."""
    return sorted(pods or [], key=functools.cmp_to_key(_compare))


def split_active_pods(pods, partition: int) -> tuple[list[Pod], list[Pod]]:
    """Sort the pods and split them after the first partition entries."""
    ordered = sort_active_pods(pods)
    pivot = min(max(partition, 0), len(ordered))
    return ordered[:pivot], ordered[pivot:]