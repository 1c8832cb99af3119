"""Resource types for IP pools and virtual machine network configurations."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

GROUP_NAME = "network.harvesterhci.io"
VERSION = "v1alpha1"


class ConditionStatus(str, Enum):
    """Status values a condition may carry."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A generic status condition attached to a resource."""

    type: str
    status: str = ""
    last_update_time: str = ""
    last_transition_time: str = ""
    reason: str = ""
    message: str = ""


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _status_text(status: Any) -> str:
    if isinstance(status, Enum):
        return str(status.value)
    return str(status)


def _conditions_of(obj: Any) -> list[Condition]:
    status = getattr(obj, "status", None)
    holder = status if hasattr(status, "conditions") else obj
    conditions = getattr(holder, "conditions", None)
    if not isinstance(conditions, list):
        raise TypeError(f"{type(obj).__name__} does not carry conditions")
    return conditions


@dataclass(frozen=True)
class Cond:
    """A named condition type that reads and writes conditions on a resource.

    The target may be a resource with a ``status.conditions`` list or a status
    object with a ``conditions`` list.
    """

    name: str

    def __str__(self) -> str:
        return self.name

    def _find(self, obj: Any) -> Optional[Condition]:
        return next((c for c in _conditions_of(obj) if c.type == self.name), None)

    def _find_or_create(self, obj: Any) -> Condition:
        condition = self._find(obj)
        if condition is None:
            condition = Condition(type=self.name)
            _conditions_of(obj).append(condition)
        return condition

    def _set(self, obj: Any, attribute: str, value: str) -> None:
        condition = self._find_or_create(obj)
        if getattr(condition, attribute) != value:
            setattr(condition, attribute, value)
            condition.last_update_time = _now()

    def set_status(self, obj: Any, status: Any) -> None:
        """Set the condition's status, creating the condition if needed."""
        self._set(obj, "status", _status_text(status))

    def get_status(self, obj: Any) -> str:
        """Return the condition's status, or an empty string if absent."""
        condition = self._find(obj)
        return condition.status if condition is not None else ""

    def reason(self, obj: Any, reason: str) -> None:
        self._set(obj, "reason", reason)

    def message(self, obj: Any, message: str) -> None:
        self._set(obj, "message", message)

    def is_true(self, obj: Any) -> bool:
        return self.get_status(obj) == ConditionStatus.TRUE.value

    def true(self, obj: Any) -> None:
        self.set_status(obj, ConditionStatus.TRUE)

    def false(self, obj: Any) -> None:
        self.set_status(obj, ConditionStatus.FALSE)


REGISTERED = Cond("Registered")
CACHE_READY = Cond("CacheReady")
AGENT_READY = Cond("AgentReady")
STOPPED = Cond("Stopped")
ALLOCATED = Cond("Allocated")
DISABLED = Cond("Disabled")


@dataclass
class ObjectMeta:
    """Identity and bookkeeping data shared by all resources."""

    namespace: str = ""
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    uid: str = ""
    deletion_timestamp: Optional[datetime] = None
    owner_references: list[dict[str, str]] = field(default_factory=list)


@dataclass
class Pool:
    start: str = ""
    end: str = ""
    exclude: list[str] = field(default_factory=list)


@dataclass
class IPv4Config:
    cidr: str = ""
    server_ip: str = ""
    pool: Pool = field(default_factory=Pool)
    router: str = ""
    dns: list[str] = field(default_factory=list)
    domain_name: Optional[str] = None
    domain_search: list[str] = field(default_factory=list)
    ntp: list[str] = field(default_factory=list)
    lease_time: Optional[int] = None


@dataclass
class IPPoolSpec:
    ipv4_config: IPv4Config = field(default_factory=IPv4Config)
    network_name: str = ""
    paused: Optional[bool] = None


@dataclass
class IPv4Status:
    allocated: Optional[dict[str, str]] = None
    used: int = 0
    available: int = 0


@dataclass
class PodReference:
    namespace: str = ""
    name: str = ""
    image: str = ""
    uid: str = ""


@dataclass
class IPPoolStatus:
    last_update: Optional[datetime] = None
    ipv4: Optional[IPv4Status] = None
    agent_pod_ref: Optional[PodReference] = None
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class IPPool:
    """An address pool backing one network attachment."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: IPPoolSpec = field(default_factory=IPPoolSpec)
    status: IPPoolStatus = field(default_factory=IPPoolStatus)

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name

    def deepcopy(self) -> IPPool:
        return copy.deepcopy(self)


class NetworkConfigState(str, Enum):
    ALLOCATED = "Allocated"
    PENDING = "Pending"


@dataclass
class NetworkConfig:
    network_name: str = ""
    mac_address: str = ""
    ip_address: Optional[str] = None


@dataclass
class NetworkConfigStatus:
    allocated_ip_address: str = ""
    mac_address: str = ""
    network_name: str = ""
    state: str = ""


@dataclass
class VirtualMachineNetworkConfigSpec:
    vm_name: str = ""
    network_configs: list[NetworkConfig] = field(default_factory=list)
    paused: Optional[bool] = None


@dataclass
class VirtualMachineNetworkConfigStatus:
    network_configs: list[NetworkConfigStatus] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class VirtualMachineNetworkConfig:
    """The network interfaces of one virtual machine that need addresses."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: VirtualMachineNetworkConfigSpec = field(
        default_factory=VirtualMachineNetworkConfigSpec
    )
    status: VirtualMachineNetworkConfigStatus = field(
        default_factory=VirtualMachineNetworkConfigStatus
    )

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name

    def deepcopy(self) -> VirtualMachineNetworkConfig:
        return copy.deepcopy(self)


def split_ref(ref: str) -> tuple[str, str]:
    """Split ``namespace/name`` at the last slash.

    A reference without a slash yields an empty namespace.
    """
    head, sep, tail = ref.rpartition("/")
    if not sep:
        return "", ref.strip()
    return head.strip(), tail.strip()