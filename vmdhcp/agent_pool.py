"""Agent-side tracking of one IP pool: keeps DHCP leases in step with the pool's status."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from vmdhcp.apis import CACHE_READY, IPPool, IPv4Config, split_ref
from vmdhcp.ippool_common import EXCLUDED_MARK, RESERVED_MARK
from vmdhcp.kube import ApiError, NotFoundError, ObjectStore

MAX_REQUEUES = 5

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """A DHCP lease bound to one MAC address."""

    mac_address: str
    server_ip: str
    client_ip: str
    cidr: str
    router: str = ""
    dns: tuple[str, ...] = ()
    domain_name: Optional[str] = None
    domain_search: tuple[str, ...] = ()
    ntp: tuple[str, ...] = ()
    lease_time: Optional[int] = None


class LeaseStore:
    """A thread-safe set of DHCP leases keyed by MAC address."""

    def __init__(self) -> None:
        self._leases: dict[str, Lease] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._leases)

    def __contains__(self, mac_address: object) -> bool:
        with self._lock:
            return mac_address in self._leases

    def add_lease(
        self,
        mac_address: str,
        server_ip: str,
        client_ip: str,
        cidr: str,
        router: str = "",
        dns: Iterable[str] = (),
        domain_name: Optional[str] = None,
        domain_search: Iterable[str] = (),
        ntp: Iterable[str] = (),
        lease_time: Optional[int] = None,
    ) -> Lease:
        """Add a lease; raises ValueError if the MAC already holds one."""
        lease = Lease(
            mac_address=mac_address,
            server_ip=server_ip,
            client_ip=client_ip,
            cidr=cidr,
            router=router,
            dns=tuple(dns),
            domain_name=domain_name,
            domain_search=tuple(domain_search),
            ntp=tuple(ntp),
            lease_time=lease_time,
        )
        with self._lock:
            if mac_address in self._leases:
                raise ValueError(f"lease for mac {mac_address} already exists")
            self._leases[mac_address] = lease
        return lease

    def delete_lease(self, mac_address: str) -> None:
        """Remove a lease; raises LookupError if the MAC holds none."""
        with self._lock:
            if self._leases.pop(mac_address, None) is None:
                raise LookupError(f"lease for mac {mac_address} does not exist")

    def get_lease(self, mac_address: str) -> Lease:
        with self._lock:
            try:
                return self._leases[mac_address]
            except KeyError:
                raise LookupError(f"lease for mac {mac_address} does not exist") from None

    def leases(self) -> dict[str, Lease]:
        with self._lock:
            return dict(self._leases)


class EventAction(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Event:
    """A change notification for one IP pool."""

    key: str
    action: EventAction
    pool_name: str
    pool_network_name: str = ""

    @classmethod
    def for_pool(cls, ip_pool: IPPool, action: EventAction = EventAction.UPDATE) -> Event:
        return cls(
            key=f"{ip_pool.namespace}/{ip_pool.name}",
            action=action,
            pool_name=ip_pool.name,
            pool_network_name=ip_pool.spec.network_name,
        )


def filter_excluded_and_reserved(allocated: Mapping[str, str]) -> dict[str, str]:
    """Return the allocations that belong to real MAC addresses."""
    return {
        ip: mac for ip, mac in allocated.items() if mac not in (EXCLUDED_MARK, RESERVED_MARK)
    }


@dataclass
class PoolController:
    """Applies updates of the watched IP pool to the lease store.

    ``pool_cache`` maps each leased IP address to its MAC address.
    """

    store: ObjectStore
    pool_ref: tuple[str, str]
    lease_store: LeaseStore
    pool_cache: dict[str, str] = field(default_factory=dict)

    def update(self, ip_pool: IPPool) -> None:
        """Reconcile the lease store with the pool's allocations."""
        if not CACHE_READY.is_true(ip_pool):
            log.warning("ippool %s/%s is not ready", ip_pool.namespace, ip_pool.name)
            return
        if ip_pool.status.ipv4 is None:
            log.warning("ippool %s/%s status has no records", ip_pool.namespace, ip_pool.name)
            return
        allocated = filter_excluded_and_reserved(ip_pool.status.ipv4.allocated or {})
        self._reconcile(allocated, ip_pool.spec.ipv4_config)

    def _reconcile(self, latest: Mapping[str, str], config: IPv4Config) -> None:
        for ip, mac in list(self.pool_cache.items()):
            new_mac = latest.get(ip)
            if new_mac is None:
                log.info("remove %s", ip)
                self.lease_store.delete_lease(mac)
                del self.pool_cache[ip]
            elif new_mac != mac:
                log.info("set %s with new value %s", ip, new_mac)
                self.pool_cache[ip] = new_mac

        for ip, mac in latest.items():
            if ip in self.pool_cache:
                continue
            log.info("add %s with value %s", ip, mac)
            self.lease_store.add_lease(
                mac,
                config.server_ip,
                ip,
                config.cidr,
                config.router,
                config.dns,
                config.domain_name,
                config.domain_search,
                config.ntp,
                config.lease_time,
            )
            self.pool_cache[ip] = mac

    def sync(self, event: Event) -> None:
        """Handle one event; store failures other than a missing object propagate."""
        try:
            obj: Optional[IPPool] = self.store.get(*split_ref(event.key))
        except NotFoundError:
            obj = None

        if obj is None and event.action != EventAction.DELETE:
            log.info("IPPool %s does not exist anymore", event.key)
            return
        if event.pool_name != self.pool_ref[1]:
            log.debug("IPPool %s is not our target", event.key)
            return

        if event.action == EventAction.UPDATE and obj is not None:
            log.info("UPDATE %s/%s", obj.namespace, obj.name)
            try:
                self.update(obj)
            except (ValueError, LookupError) as err:
                log.error("failed to update DHCP lease store: %s", err)

    def process(self, events: Iterable[Event]) -> list[Event]:
        """Sync every event, retrying failures; return the events that were dropped."""
        dropped: list[Event] = []
        for event in events:
            for attempt in range(MAX_REQUEUES + 1):
                try:
                    self.sync(event)
                    break
                except ApiError as err:
                    if attempt < MAX_REQUEUES:
                        log.error("syncing IPPool %s: %s", event.key, err)
                        continue
                    log.error("dropping IPPool %r out of the queue: %s", event.key, err)
                    dropped.append(event)
        return dropped