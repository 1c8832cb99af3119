"""In-memory object store for cluster resources, plus the pod and network
attachment resources the controllers work with."""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from vmdhcp.apis import ObjectMeta

POD_READY = "Ready"
PULL_IF_NOT_PRESENT = "IfNotPresent"


class ApiError(Exception):
    """Base error for failed store operations."""

    def __init__(self, message: str, *, kind: str = "", name: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.name = name


class NotFoundError(ApiError, LookupError):
    """Raised when an object does not exist in the store."""


class AlreadyExistsError(ApiError):
    """Raised when creating an object whose name is already taken."""


@dataclass
class Container:
    name: str
    image: str = ""
    image_pull_policy: str = ""
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    capabilities: list[str] = field(default_factory=list)
    run_as_user: Optional[int] = None
    run_as_group: Optional[int] = None
    liveness_probe: Optional[dict[str, Any]] = None
    readiness_probe: Optional[dict[str, Any]] = None


@dataclass
class PodCondition:
    type: str
    status: str = ""


@dataclass
class Pod:
    """A pod; ``node_selector`` holds required node-affinity match expressions."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    service_account_name: str = ""
    node_selector: list[dict[str, Any]] = field(default_factory=list)
    init_containers: list[Container] = field(default_factory=list)
    containers: list[Container] = field(default_factory=list)
    conditions: list[PodCondition] = field(default_factory=list)

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def uid(self) -> str:
        return self.metadata.uid


@dataclass
class NetworkAttachmentDefinition:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    config: str = ""

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name


class ObjectStore:
    """A thread-safe store of objects of one resource kind.

    Objects are copied on the way in and out, so callers never share state
    with the store.
    """

    def __init__(self, resource: str, group: str = "", objects: Iterable[Any] = ()) -> None:
        self.resource = resource
        self.group = group
        self._objects: dict[tuple[str, str], Any] = {}
        self._lock = threading.RLock()
        for obj in objects:
            self.create(obj)

    @property
    def kind(self) -> str:
        return f"{self.resource}.{self.group}" if self.group else self.resource

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    @staticmethod
    def _key(obj: Any) -> tuple[str, str]:
        return obj.metadata.namespace, obj.metadata.name

    def _not_found(self, name: str) -> NotFoundError:
        return NotFoundError(f'{self.kind} "{name}" not found', kind=self.kind, name=name)

    def _stored(self, namespace: str, name: str) -> Any:
        try:
            return self._objects[(namespace, name)]
        except KeyError:
            raise self._not_found(name) from None

    def get(self, namespace: str, name: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._stored(namespace, name))

    def create(self, obj: Any) -> Any:
        key = self._key(obj)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(
                    f'{self.kind} "{key[1]}" already exists', kind=self.kind, name=key[1]
                )
            self._objects[key] = copy.deepcopy(obj)
            return copy.deepcopy(obj)

    def update(self, obj: Any) -> Any:
        key = self._key(obj)
        with self._lock:
            self._stored(*key)
            self._objects[key] = copy.deepcopy(obj)
            return copy.deepcopy(obj)

    def update_status(self, obj: Any) -> Any:
        """Replace only the status of a stored object and return the result."""
        if not hasattr(obj, "status"):
            raise TypeError(f"{type(obj).__name__} has no status")
        with self._lock:
            stored = self._stored(*self._key(obj))
            stored.status = copy.deepcopy(obj.status)
            return copy.deepcopy(stored)

    def delete(self, namespace: str, name: str) -> None:
        with self._lock:
            self._stored(namespace, name)
            del self._objects[(namespace, name)]

    def list(self, namespace: str, labels: Optional[Mapping[str, str]] = None) -> list[Any]:
        """Objects in a namespace (all namespaces if empty) matching every label."""
        wanted = dict(labels or {})
        with self._lock:
            return [
                copy.deepcopy(obj)
                for key, obj in sorted(self._objects.items())
                if (not namespace or key[0] == namespace)
                and all(obj.metadata.labels.get(k) == v for k, v in wanted.items())
            ]