"""Agent pod construction and fixture builders for IP pool resources."""

from __future__ import annotations

import hashlib
import ipaddress
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional

from vmdhcp.apis import (
    AGENT_READY,
    CACHE_READY,
    GROUP_NAME,
    REGISTERED,
    STOPPED,
    Cond,
    IPPool,
    IPPoolStatus,
    IPv4Status,
    ObjectMeta,
    PodReference,
    split_ref,
)
from vmdhcp.config import DEFAULT_NETWORK_INTERFACE, Image
from vmdhcp.kube import (
    POD_READY,
    PULL_IF_NOT_PRESENT,
    Container,
    NetworkAttachmentDefinition,
    Pod,
    PodCondition,
)

MULTUS_NETWORKS_ANNOTATION_KEY = "k8s.v1.cni.cncf.io/networks"
HOLD_IPPOOL_AGENT_UPGRADE_ANNOTATION_KEY = "network.harvesterhci.io/hold-ippool-agent-upgrade"
IPPOOL_NAMESPACE_LABEL_KEY = GROUP_NAME + "/ippool-namespace"
IPPOOL_NAME_LABEL_KEY = GROUP_NAME + "/ippool-name"
VM_DHCP_CONTROLLER_LABEL_KEY = GROUP_NAME + "/vm-dhcp-controller"
CLUSTER_NETWORK_LABEL_KEY = GROUP_NAME + "/clusternetwork"

EXCLUDED_MARK = "EXCLUDED"
RESERVED_MARK = "RESERVED"

AGENT_SUFFIX = "agent"
RUN_AS_USER_ID = 0
RUN_AS_GROUP_ID = 0

SET_IP_ADDR_SCRIPT = """
#!/usr/bin/env sh
set -ex

ip address flush dev eth1
ip address add {server_ip}/{prefix_length} dev eth1
"""


@dataclass(frozen=True)
class Network:
    """One entry of the multus networks annotation."""

    namespace: str
    name: str
    interface_name: str

    def to_dict(self) -> dict[str, str]:
        return {"namespace": self.namespace, "name": self.name, "interface": self.interface_name}


def safe_agent_concat_name(namespace: str, name: str) -> str:
    """Name an agent pod, hashing the tail so it never exceeds 63 characters."""
    full = "-".join((namespace, name, AGENT_SUFFIX))
    if len(full) < 64:
        return full
    digest = hashlib.sha256(full.encode()).hexdigest()
    c = full[56]
    if "a" <= c <= "z" or "0" <= c <= "9":
        return f"{full[:57]}-{digest[:5]}"
    return f"{full[:56]}-{digest[:6]}"


def is_ip_in_between(ip: str, start: str, end: str) -> bool:
    """Whether ``ip`` lies in the inclusive range ``start``..``end``."""
    try:
        addr, low, high = (ipaddress.ip_address(x) for x in (ip, start, end))
    except ValueError:
        return False
    if not addr.version == low.version == high.version:
        return False
    return low <= addr <= high


def _prefix_length(cidr: str) -> int:
    try:
        return ipaddress.ip_network(cidr, strict=False).prefixlen
    except ValueError:
        raise ValueError(f"invalid CIDR address: {cidr}") from None


def _agent_container(name: str, image: str, **extra: Any) -> Container:
    return Container(
        name=name,
        image=image,
        capabilities=["NET_ADMIN"],
        run_as_user=RUN_AS_USER_ID,
        run_as_group=RUN_AS_GROUP_ID,
        **extra,
    )


def prepare_agent_pod(
    ip_pool: IPPool,
    no_dhcp: bool,
    agent_namespace: str,
    cluster_network: str,
    agent_service_account_name: str,
    agent_image: Image,
) -> Pod:
    """Build the agent pod that serves DHCP for ``ip_pool``.

    Raises ValueError if the pool's CIDR cannot be parsed.
    """
    name = safe_agent_concat_name(ip_pool.namespace, ip_pool.name)
    nad_namespace, nad_name = split_ref(ip_pool.spec.network_name)
    networks = [Network(nad_namespace, nad_name, DEFAULT_NETWORK_INTERFACE).to_dict()]
    config = ip_pool.spec.ipv4_config
    prefix_length = _prefix_length(config.cidr)

    args = ["--ippool-ref", f"{ip_pool.namespace}/{ip_pool.name}"]
    if no_dhcp:
        args.append("--dry-run")

    image = str(agent_image)
    script = SET_IP_ADDR_SCRIPT.format(server_ip=config.server_ip, prefix_length=prefix_length)

    return Pod(
        metadata=ObjectMeta(
            namespace=agent_namespace,
            name=name,
            annotations={
                MULTUS_NETWORKS_ANNOTATION_KEY: json.dumps(networks, separators=(",", ":")),
            },
            labels={
                VM_DHCP_CONTROLLER_LABEL_KEY: "agent",
                IPPOOL_NAMESPACE_LABEL_KEY: ip_pool.namespace,
                IPPOOL_NAME_LABEL_KEY: ip_pool.name,
            },
        ),
        service_account_name=agent_service_account_name,
        node_selector=[
            {"key": f"{GROUP_NAME}/{cluster_network}", "operator": "In", "values": ["true"]}
        ],
        init_containers=[
            _agent_container(
                "ip-setter",
                image,
                image_pull_policy=PULL_IF_NOT_PRESENT,
                command=["/bin/sh", "-c", script],
            )
        ],
        containers=[
            _agent_container(
                "agent",
                image,
                args=args,
                env={"VM_DHCP_AGENT_NAME": name},
                liveness_probe={"path": "/healthz", "port": 8080},
                readiness_probe={"path": "/readyz", "port": 8080},
            )
        ],
    )


def _set_condition(cond: Cond, target: Any, status: Any, reason: str, message: str) -> None:
    cond.set_status(target, status)
    cond.reason(target, reason)
    cond.message(target, message)


def _fill_pod_ref(ref: Optional[PodReference], namespace: str, name: str,
                  image: str, uid: str) -> PodReference:
    ref = ref if ref is not None else PodReference()
    ref.namespace, ref.name, ref.image, ref.uid = namespace, name, image, uid
    return ref


def sanitize_status(status: IPPoolStatus) -> None:
    """Clear every timestamp so that statuses can be compared."""
    status.last_update = None
    for condition in status.conditions:
        condition.last_transition_time = ""
        condition.last_update_time = ""


class IPPoolBuilder:
    """Fluent construction of an IPPool."""

    def __init__(self, namespace: str, name: str) -> None:
        self._pool = IPPool(metadata=ObjectMeta(namespace=namespace, name=name))

    def _ipv4_status(self) -> IPv4Status:
        if self._pool.status.ipv4 is None:
            self._pool.status.ipv4 = IPv4Status()
        return self._pool.status.ipv4

    def annotation(self, key: str, value: str) -> IPPoolBuilder:
        self._pool.metadata.annotations[key] = value
        return self

    def network_name(self, network_name: str) -> IPPoolBuilder:
        self._pool.spec.network_name = network_name
        return self

    def paused(self) -> IPPoolBuilder:
        self._pool.spec.paused = True
        return self

    def unpaused(self) -> IPPoolBuilder:
        self._pool.spec.paused = False
        return self

    def server_ip(self, server_ip: str) -> IPPoolBuilder:
        self._pool.spec.ipv4_config.server_ip = server_ip
        return self

    def cidr(self, cidr: str) -> IPPoolBuilder:
        self._pool.spec.ipv4_config.cidr = cidr
        return self

    def router(self, router: str) -> IPPoolBuilder:
        self._pool.spec.ipv4_config.router = router
        return self

    def pool_range(self, start: str, end: str) -> IPPoolBuilder:
        self._pool.spec.ipv4_config.pool.start = start
        self._pool.spec.ipv4_config.pool.end = end
        return self

    def exclude(self, *args: str) -> IPPoolBuilder:
        self._pool.spec.ipv4_config.pool.exclude.extend(args)
        return self

    def agent_pod_ref(self, namespace: str, name: str, image: str, uid: str) -> IPPoolBuilder:
        status = self._pool.status
        status.agent_pod_ref = _fill_pod_ref(status.agent_pod_ref, namespace, name, image, uid)
        return self

    def allocated(self, ip_address: str, mac_address: str) -> IPPoolBuilder:
        ipv4 = self._ipv4_status()
        if ipv4.allocated is None:
            ipv4.allocated = {}
        ipv4.allocated[ip_address] = mac_address
        return self

    def available(self, count: int) -> IPPoolBuilder:
        self._ipv4_status().available = count
        return self

    def used(self, count: int) -> IPPoolBuilder:
        self._ipv4_status().used = count
        return self

    def registered_condition(self, status: Any, reason: str, message: str) -> IPPoolBuilder:
        _set_condition(REGISTERED, self._pool, status, reason, message)
        return self

    def cache_ready_condition(self, status: Any, reason: str, message: str) -> IPPoolBuilder:
        _set_condition(CACHE_READY, self._pool, status, reason, message)
        return self

    def agent_ready_condition(self, status: Any, reason: str, message: str) -> IPPoolBuilder:
        _set_condition(AGENT_READY, self._pool, status, reason, message)
        return self

    def stopped_condition(self, status: Any, reason: str, message: str) -> IPPoolBuilder:
        _set_condition(STOPPED, self._pool, status, reason, message)
        return self

    def build(self) -> IPPool:
        return self._pool


class IPPoolStatusBuilder:
    """Fluent construction of an IPPoolStatus."""

    def __init__(self) -> None:
        self._status = IPPoolStatus()

    def agent_pod_ref(self, namespace: str, name: str, image: str, uid: str) -> IPPoolStatusBuilder:
        self._status.agent_pod_ref = _fill_pod_ref(
            self._status.agent_pod_ref, namespace, name, image, uid
        )
        return self

    def registered_condition(self, status: Any, reason: str, message: str) -> IPPoolStatusBuilder:
        _set_condition(REGISTERED, self._status, status, reason, message)
        return self

    def cache_ready_condition(self, status: Any, reason: str, message: str) -> IPPoolStatusBuilder:
        _set_condition(CACHE_READY, self._status, status, reason, message)
        return self

    def agent_ready_condition(self, status: Any, reason: str, message: str) -> IPPoolStatusBuilder:
        _set_condition(AGENT_READY, self._status, status, reason, message)
        return self

    def stopped_condition(self, status: Any, reason: str, message: str) -> IPPoolStatusBuilder:
        _set_condition(STOPPED, self._status, status, reason, message)
        return self

    def build(self) -> IPPoolStatus:
        return self._status


class PodBuilder:
    """Fluent construction of a Pod."""

    def __init__(self, namespace: str, name: str) -> None:
        self._pod = Pod(metadata=ObjectMeta(namespace=namespace, name=name))

    def container(self, name: str, repository: str, tag: str) -> PodBuilder:
        self._pod.containers.append(Container(name=name, image=f"{repository}:{tag}"))
        return self

    def pod_ready(self, ready: Any) -> PodBuilder:
        status = str(getattr(ready, "value", ready))
        existing = next((c for c in self._pod.conditions if c.type == POD_READY), None)
        if existing is None:
            self._pod.conditions.append(PodCondition(type=POD_READY, status=status))
        else:
            existing.status = status
        return self

    def build(self) -> Pod:
        return self._pod


class NetworkAttachmentDefinitionBuilder:
    """Fluent construction of a NetworkAttachmentDefinition."""

    def __init__(self, namespace: str, name: str) -> None:
        self._nad = NetworkAttachmentDefinition(
            metadata=ObjectMeta(namespace=namespace, name=name)
        )

    def label(self, key: str, value: str) -> NetworkAttachmentDefinitionBuilder:
        self._nad.metadata.labels[key] = value
        return self

    def build(self) -> NetworkAttachmentDefinition:
        return self._nad


def _as_dict(obj: Any) -> dict[str, Any]:
    return asdict(obj)


_ = datetime  # timestamps on statuses are datetime values