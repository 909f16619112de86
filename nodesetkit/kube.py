"""A small in-memory object store and event recorder for NodeSet objects."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Mapping

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class ApiError(Exception):
    """An error reported by the object store."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ApiError):
    """An object with the same kind, namespace and name already exists."""


class ConflictError(ApiError):
    """The object was modified concurrently and the write was rejected."""


@dataclass(frozen=True)
class Event:
    """An event recorded against an object."""

    kind: str
    namespace: str
    name: str
    type: str
    reason: str
    message: str


@dataclass
class EventRecorder:
    """Collects events in the order they are recorded."""

    events: list[Event] = field(default_factory=list)

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        """Record an event about obj."""
        self.events.append(
            Event(
                kind=type(obj).__name__,
                namespace=obj.namespace,
                name=obj.name,
                type=event_type,
                reason=reason,
                message=message,
            )
        )


class InMemoryClient:
    """Stores objects by kind, namespace and name.

    Objects are copied on the way in and on the way out, so callers never
    share state with the store. ``failures`` maps an operation name
    ("get", "create", "update", "delete") to the error that operation
    raises, which is useful to exercise error handling.
    """

    def __init__(self, *objects: Any, failures: Mapping[str, ApiError] | None = None) -> None:
        self._objects: dict[tuple[str, str, str], Any] = {}
        self._failures = dict(failures or {})
        for obj in objects:
            self._objects[self._key(obj)] = copy.deepcopy(obj)

    @staticmethod
    def _key(obj: Any) -> tuple[str, str, str]:
        return type(obj).__name__, obj.namespace, obj.name

    def _check(self, operation: str) -> None:
        failure = self._failures.get(operation)
        if failure is not None:
            raise failure

    def get(self, kind: str, namespace: str, name: str) -> Any:
        """Return a copy of the stored object."""
        self._check("get")
        try:
            return copy.deepcopy(self._objects[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(f'{kind} "{name}" not found') from None

    def create(self, obj: Any) -> None:
        """Store a new object."""
        self._check("create")
        kind, namespace, name = self._key(obj)
        if not name:
            raise ApiError(f"{kind}: name is required")
        if (kind, namespace, name) in self._objects:
            raise AlreadyExistsError(f'{kind} "{name}" already exists')
        self._objects[(kind, namespace, name)] = copy.deepcopy(obj)

    def update(self, obj: Any) -> None:
        """Replace an existing object."""
        self._check("update")
        key = self._key(obj)
        if key not in self._objects:
            raise NotFoundError(f'{key[0]} "{key[2]}" not found')
        self._objects[key] = copy.deepcopy(obj)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Remove an object."""
        self._check("delete")
        try:
            del self._objects[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(f'{kind} "{name}" not found') from None