"""Reconciliation of IP pools: address management, caches and agent pods."""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

from vmdhcp.apis import (
    CACHE_READY,
    STOPPED,
    IPPool,
    IPPoolStatus,
    IPv4Status,
    PodReference,
    split_ref,
)
from vmdhcp.cache import CacheAllocator, NetworkNotFoundError
from vmdhcp.config import Image
from vmdhcp.ippool_common import (
    CLUSTER_NETWORK_LABEL_KEY,
    EXCLUDED_MARK,
    HOLD_IPPOOL_AGENT_UPGRADE_ANNOTATION_KEY,
    RESERVED_MARK,
    is_ip_in_between,
    prepare_agent_pod,
)
from vmdhcp.kube import POD_READY, AlreadyExistsError, NotFoundError, ObjectStore, Pod

CONTROLLER_NAME = "vm-dhcp-ippool-controller"

log = logging.getLogger(__name__)

_IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
_Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class ReconcileError(Exception):
    """Raised when a resource cannot be brought to its desired state yet."""


def _parse(text: str) -> Optional[_IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


@dataclass
class _Subnet:
    network: _Network
    start: _IPAddress
    end: _IPAddress
    allocated: set[_IPAddress] = field(default_factory=set)
    revoked: set[_IPAddress] = field(default_factory=set)

    def contains(self, ip: _IPAddress) -> bool:
        return ip.version == self.start.version and self.start <= ip <= self.end

    @property
    def size(self) -> int:
        return int(self.end) - int(self.start) + 1


@dataclass
class IPAllocator:
    """Tracks allocated and revoked addresses in the pool range of each network."""

    _subnets: dict[str, _Subnet] = field(default_factory=dict, init=False)
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )

    def _subnet(self, name: str) -> _Subnet:
        try:
            return self._subnets[name]
        except KeyError:
            raise NetworkNotFoundError(name) from None

    def new_ip_subnet(self, name: str, cidr: str, start: str, end: str) -> None:
        """Create the address range ``start``..``end`` inside ``cidr`` for a network."""
        try:
            network = ipaddress.ip_network(cidr, strict=False)
        except ValueError:
            raise ValueError(f"invalid CIDR address: {cidr}") from None
        low, high = _parse(start), _parse(end)
        if low is None or high is None:
            raise ValueError(f"invalid pool range {start!r}-{end!r}")
        if low not in network or high not in network:
            raise ValueError(f"pool range {start}-{end} is not within {cidr}")
        if low > high:
            raise ValueError(f"pool range start {start} is after end {end}")
        with self._lock:
            self._subnets[name] = _Subnet(network, low, high)

    def delete_ip_subnet(self, name: str) -> None:
        with self._lock:
            self._subnets.pop(name, None)

    def is_network_initialized(self, name: str) -> bool:
        with self._lock:
            return name in self._subnets

    def revoke_ip(self, name: str, ip: str) -> None:
        """Withhold an address from allocation; addresses outside the range are ignored."""
        with self._lock:
            subnet = self._subnet(name)
            addr = _parse(ip)
            if addr is not None and subnet.contains(addr):
                subnet.revoked.add(addr)

    def allocate_ip(self, name: str, ip: str) -> str:
        """Allocate ``ip``, or the first free address if it is empty or unspecified."""
        with self._lock:
            subnet = self._subnet(name)
            addr = _parse(ip) if ip else None
            if ip and addr is None:
                raise ValueError(f"invalid ip address {ip!r}")
            if addr is None or addr.is_unspecified:
                taken = subnet.allocated | subnet.revoked
                first = int(subnet.start)
                free = (
                    ipaddress.ip_address(n)
                    for n in range(first, first + subnet.size)
                    if ipaddress.ip_address(n) not in taken
                )
                addr = next(free, None)
                if addr is None:
                    raise ValueError(f"no more ip addresses available in network {name}")
            elif not subnet.contains(addr):
                raise ValueError(f"ip {addr} is not in the pool range of network {name}")
            elif addr in subnet.revoked:
                raise ValueError(f"ip {addr} is revoked in network {name}")
            elif addr in subnet.allocated:
                raise ValueError(f"ip {addr} is already allocated in network {name}")
            subnet.allocated.add(addr)
            return str(addr)

    def deallocate_ip(self, name: str, ip: str) -> None:
        with self._lock:
            subnet = self._subnet(name)
            addr = _parse(ip)
            if addr is None or addr not in subnet.allocated:
                raise ValueError(f"ip {ip} is not allocated in network {name}")
            subnet.allocated.discard(addr)

    def is_allocated(self, name: str, ip: str) -> bool:
        with self._lock:
            subnet = self._subnet(name)
            addr = _parse(ip)
            return addr is not None and addr in subnet.allocated

    def get_used(self, name: str) -> int:
        with self._lock:
            return len(self._subnet(name).allocated)

    def get_available(self, name: str) -> int:
        with self._lock:
            subnet = self._subnet(name)
            return subnet.size - len(subnet.allocated | subnet.revoked)


@dataclass
class MetricsRecorder:
    """Gauges describing pool usage and network config allocations."""

    ippool_used: dict[tuple[str, str, str], int] = field(default_factory=dict)
    ippool_available: dict[tuple[str, str, str], int] = field(default_factory=dict)
    vmnetcfg_status: dict[tuple[str, str, str, str, str], int] = field(default_factory=dict)
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )

    def update_ippool_used(self, name: str, cidr: str, network_name: str, used: int) -> None:
        with self._lock:
            self.ippool_used[(name, cidr, network_name)] = used

    def update_ippool_available(
        self, name: str, cidr: str, network_name: str, available: int
    ) -> None:
        with self._lock:
            self.ippool_available[(name, cidr, network_name)] = available

    def delete_ippool(self, name: str, cidr: str, network_name: str) -> None:
        with self._lock:
            self.ippool_used.pop((name, cidr, network_name), None)
            self.ippool_available.pop((name, cidr, network_name), None)

    def update_vmnetcfg_status(
        self, name: str, network_name: str, mac_address: str, ip_address: str, state: str
    ) -> None:
        with self._lock:
            self.vmnetcfg_status[(name, network_name, mac_address, ip_address, state)] = 1

    def delete_vmnetcfg_status(self, name: str) -> None:
        with self._lock:
            for key in [k for k in self.vmnetcfg_status if k[0] == name]:
                del self.vmnetcfg_status[key]


def is_pod_ready(pod: Pod) -> bool:
    """Whether the pod's Ready condition is true."""
    condition = next((c for c in pod.conditions if c.type == POD_READY), None)
    return condition is not None and condition.status == "True"


def _is_paused(ip_pool: IPPool) -> bool:
    return bool(ip_pool.spec.paused)


def _disabled(ip_pool: IPPool) -> ReconcileError:
    return ReconcileError(
        f"ippool {ip_pool.namespace}/{ip_pool.name} was administratively disabled"
    )


@dataclass
class Handler:
    """Reconciles IPPool objects."""

    agent_namespace: str = ""
    agent_image: Optional[Image] = None
    agent_service_account_name: str = ""
    no_agent: bool = False
    no_dhcp: bool = False

    cache_allocator: Optional[CacheAllocator] = None
    ip_allocator: Optional[IPAllocator] = None
    metrics_allocator: Optional[MetricsRecorder] = None

    ippool_client: Optional[ObjectStore] = None
    pod_client: Optional[ObjectStore] = None
    pod_cache: Optional[ObjectStore] = None
    nad_cache: Optional[ObjectStore] = None

    def on_change(self, key: str, ip_pool: Optional[IPPool]) -> Optional[IPPool]:
        """Bring the pool's status in line with the address manager."""
        if ip_pool is None or ip_pool.metadata.deletion_timestamp is not None:
            return None

        log.debug("ippool configuration %s has been changed: %s", key, ip_pool.spec.ipv4_config)
        pool_copy = ip_pool.deepcopy()
        config = ip_pool.spec.ipv4_config
        network = ip_pool.spec.network_name

        if _is_paused(ip_pool):
            log.info("try to cleanup cache and agent for ippool %s", key)
            self._cleanup(ip_pool)
            pool_copy.status.agent_pod_ref = None
            STOPPED.true(pool_copy)
            if pool_copy != ip_pool:
                return self.ippool_client.update_status(pool_copy)
            return ip_pool
        STOPPED.false(pool_copy)

        if not self.ip_allocator.is_network_initialized(network):
            CACHE_READY.false(pool_copy)
            CACHE_READY.reason(pool_copy, "NotInitialized")
            CACHE_READY.message(pool_copy, "")
            if pool_copy != ip_pool:
                log.warning("ipam for ippool %s/%s is not initialized",
                            ip_pool.namespace, ip_pool.name)
                return self.ippool_client.update_status(pool_copy)

        ipv4 = pool_copy.status.ipv4 if pool_copy.status.ipv4 is not None else IPv4Status()
        used = self.ip_allocator.get_used(network)
        available = self.ip_allocator.get_available(network)
        ipv4.used = used
        ipv4.available = available

        if self.metrics_allocator is not None:
            self.metrics_allocator.update_ippool_used(key, config.cidr, network, used)
            self.metrics_allocator.update_ippool_available(key, config.cidr, network, available)

        allocated = dict(ipv4.allocated or {})
        start, end = config.pool.start, config.pool.end
        if is_ip_in_between(config.server_ip, start, end):
            allocated[config.server_ip] = RESERVED_MARK
        if is_ip_in_between(config.router, start, end):
            allocated[config.router] = RESERVED_MARK
        for excluded in config.pool.exclude:
            allocated[excluded] = EXCLUDED_MARK
        ipv4.allocated = allocated or None
        pool_copy.status.ipv4 = ipv4

        if pool_copy != ip_pool:
            log.info("update ippool %s/%s", ip_pool.namespace, ip_pool.name)
            pool_copy.status.last_update = datetime.now(timezone.utc)
            return self.ippool_client.update_status(pool_copy)
        return ip_pool

    def on_remove(self, key: str, ip_pool: Optional[IPPool]) -> Optional[IPPool]:
        if ip_pool is None:
            return None
        log.debug("ippool configuration %s/%s has been removed", ip_pool.namespace, ip_pool.name)
        if self.no_agent:
            return ip_pool
        self._cleanup(ip_pool)
        return ip_pool

    def deploy_agent(self, ip_pool: IPPool, status: IPPoolStatus) -> IPPoolStatus:
        """Ensure an agent pod exists for the pool and record it in the status."""
        log.debug("deploy agent for ippool %s/%s", ip_pool.namespace, ip_pool.name)
        status = _copy_status(status)

        if _is_paused(ip_pool):
            raise _disabled(ip_pool)
        if self.no_agent:
            return status

        network_name = ip_pool.spec.network_name
        nad = self.nad_cache.get(*split_ref(network_name))
        cluster_network = nad.metadata.labels.get(CLUSTER_NETWORK_LABEL_KEY)
        if cluster_network is None:
            raise ReconcileError(f"could not find clusternetwork for nad {network_name}")

        ref = ip_pool.status.agent_pod_ref
        if ref is not None:
            if status.agent_pod_ref is None:
                status.agent_pod_ref = PodReference()
            status.agent_pod_ref.image = self._agent_image_for(ip_pool)
            try:
                pod = self.pod_cache.get(ref.namespace, ref.name)
            except NotFoundError:
                log.warning("agent pod %s missing, redeploying", ref.name)
            else:
                if pod.metadata.deletion_timestamp is not None:
                    raise ReconcileError(f"agent pod {ref.name} marked for deletion")
                if pod.uid != ref.uid:
                    raise ReconcileError(f"agent pod {ref.name} uid mismatch")
                return status

        agent = prepare_agent_pod(
            ip_pool,
            self.no_dhcp,
            self.agent_namespace,
            cluster_network,
            self.agent_service_account_name,
            self.agent_image,
        )
        if status.agent_pod_ref is None:
            status.agent_pod_ref = PodReference()
        status.agent_pod_ref.image = str(self.agent_image)

        try:
            created = self.pod_client.create(agent)
        except AlreadyExistsError:
            return status

        log.info("agent for ippool %s/%s has been deployed", ip_pool.namespace, ip_pool.name)
        status.agent_pod_ref.namespace = created.namespace
        status.agent_pod_ref.name = created.name
        status.agent_pod_ref.uid = created.uid
        return status

    def build_cache(self, ip_pool: IPPool, status: IPPoolStatus) -> IPPoolStatus:
        """Initialise address management and the MAC cache from the pool."""
        log.debug("build ipam for ippool %s/%s", ip_pool.namespace, ip_pool.name)
        status = _copy_status(status)

        if _is_paused(ip_pool):
            raise _disabled(ip_pool)
        if CACHE_READY.is_true(ip_pool):
            return status

        network = ip_pool.spec.network_name
        config = ip_pool.spec.ipv4_config
        log.info("initialize ipam for ippool %s/%s", ip_pool.namespace, ip_pool.name)
        self.ip_allocator.new_ip_subnet(network, config.cidr, config.pool.start, config.pool.end)
        log.info("initialize mac cache for ippool %s/%s", ip_pool.namespace, ip_pool.name)
        self.cache_allocator.new_mac_set(network)

        for ip in (config.server_ip, config.router, *config.pool.exclude):
            self.ip_allocator.revoke_ip(network, ip)
            log.debug("ip %s was revoked in ipam %s", ip, network)

        if ip_pool.status.ipv4 is not None:
            for ip, mac in (ip_pool.status.ipv4.allocated or {}).items():
                if mac in (EXCLUDED_MARK, RESERVED_MARK):
                    continue
                self.ip_allocator.allocate_ip(network, ip)
                self.cache_allocator.add_mac(network, mac, ip)
                log.info("previously allocated ip %s was re-allocated in ipam %s", ip, network)

        log.info("ipam and mac cache %s for ippool %s/%s has been updated",
                 network, ip_pool.namespace, ip_pool.name)
        return status

    def monitor_agent(self, ip_pool: IPPool, status: IPPoolStatus) -> IPPoolStatus:
        """Check that the recorded agent pod is current and ready, purging stale ones."""
        log.debug("monitor agent for ippool %s/%s", ip_pool.namespace, ip_pool.name)
        status = _copy_status(status)

        if _is_paused(ip_pool):
            raise _disabled(ip_pool)
        if self.no_agent:
            return status

        ref = ip_pool.status.agent_pod_ref
        if ref is None:
            raise ReconcileError(
                f"agent for ippool {ip_pool.namespace}/{ip_pool.name} is not deployed"
            )

        pod = self.pod_cache.get(ref.namespace, ref.name)
        image = pod.containers[0].image if pod.containers else ""
        if pod.uid != ref.uid or image != ref.image:
            if pod.metadata.deletion_timestamp is not None:
                raise ReconcileError(f"agent pod {pod.name} marked for deletion")
            self.pod_client.delete(pod.namespace, pod.name)
            raise ReconcileError(f"agent pod {pod.name} obsolete and purged")

        if not is_pod_ready(pod):
            raise ReconcileError(f"agent pod {pod.name} not ready")
        return status

    def _agent_image_for(self, ip_pool: IPPool) -> str:
        if HOLD_IPPOOL_AGENT_UPGRADE_ANNOTATION_KEY in ip_pool.metadata.annotations:
            return ip_pool.status.agent_pod_ref.image
        return str(self.agent_image)

    def _cleanup(self, ip_pool: IPPool) -> None:
        ref = ip_pool.status.agent_pod_ref
        if ref is None:
            return
        log.info("remove the backing agent %s/%s for ippool %s/%s",
                 ref.namespace, ref.name, ip_pool.namespace, ip_pool.name)
        try:
            self.pod_client.delete(ref.namespace, ref.name)
        except NotFoundError:
            pass

        network = ip_pool.spec.network_name
        self.ip_allocator.delete_ip_subnet(network)
        self.cache_allocator.delete_mac_set(network)
        if self.metrics_allocator is not None:
            self.metrics_allocator.delete_ippool(
                f"{ip_pool.namespace}/{ip_pool.name}",
                ip_pool.spec.ipv4_config.cidr,
                network,
            )


def _copy_status(status: IPPoolStatus) -> IPPoolStatus:
    pool = IPPool(status=status)
    return pool.deepcopy().status