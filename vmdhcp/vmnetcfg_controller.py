"""Reconciliation of virtual machine network configs: address allocation and release."""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from vmdhcp.apis import (
    ALLOCATED,
    CACHE_READY,
    DISABLED,
    Cond,
    IPv4Status,
    NetworkConfig,
    NetworkConfigState,
    NetworkConfigStatus,
    ObjectMeta,
    VirtualMachineNetworkConfig,
    VirtualMachineNetworkConfigStatus,
    split_ref,
)
from vmdhcp.cache import CacheAllocator
from vmdhcp.ippool_controller import IPAllocator, MetricsRecorder, ReconcileError
from vmdhcp.kube import ObjectStore

CONTROLLER_NAME = "vm-dhcp-vmnetcfg-controller"
IPV4_ZERO = "0.0.0.0"

log = logging.getLogger(__name__)


def find_ip_address_by_mac(statuses: Iterable[NetworkConfigStatus], mac_address: str) -> str:
    """Return the address recorded for ``mac_address``.

    Raises LookupError if no status carries an allocated address for it.
    """
    for status in statuses:
        if status.mac_address == mac_address and status.allocated_ip_address:
            return status.allocated_ip_address
    raise LookupError(f"could not find allocated ip for mac {mac_address}")


def _mark_all_pending(statuses: Iterable[NetworkConfigStatus]) -> None:
    for status in statuses:
        status.state = NetworkConfigState.PENDING


def sanitize_status(status: VirtualMachineNetworkConfigStatus) -> None:
    """Clear condition timestamps so that statuses can be compared."""
    for condition in status.conditions:
        condition.last_transition_time = ""
        condition.last_update_time = ""


@dataclass
class Handler:
    """Reconciles VirtualMachineNetworkConfig objects."""

    cache_allocator: Optional[CacheAllocator] = None
    ip_allocator: Optional[IPAllocator] = None
    metrics_allocator: Optional[MetricsRecorder] = None

    vmnetcfg_client: Optional[ObjectStore] = None
    ippool_client: Optional[ObjectStore] = None
    ippool_cache: Optional[ObjectStore] = None

    def on_change(
        self, key: str, vm_net_cfg: Optional[VirtualMachineNetworkConfig]
    ) -> Optional[VirtualMachineNetworkConfig]:
        """Track the paused flag in the Disabled condition, releasing addresses when paused."""
        if vm_net_cfg is None or vm_net_cfg.metadata.deletion_timestamp is not None:
            return None

        log.debug("vmnetcfg configuration %s has been changed: %s",
                  key, vm_net_cfg.spec.network_configs)
        cfg_copy = vm_net_cfg.deepcopy()

        if vm_net_cfg.spec.paused:
            log.info("try to cleanup ipam and cache, and update ippool status for vmnetcfg %s", key)
            self._cleanup(vm_net_cfg)
            DISABLED.true(cfg_copy)
            _mark_all_pending(cfg_copy.status.network_configs)
            if cfg_copy != vm_net_cfg:
                return self.vmnetcfg_client.update_status(cfg_copy)
            return vm_net_cfg

        DISABLED.false(cfg_copy)
        if cfg_copy != vm_net_cfg:
            return self.vmnetcfg_client.update_status(cfg_copy)
        return vm_net_cfg

    def allocate(
        self, vm_net_cfg: VirtualMachineNetworkConfig, status: VirtualMachineNetworkConfigStatus
    ) -> VirtualMachineNetworkConfigStatus:
        """Allocate an address for every network config and record it in the pools."""
        log.debug("allocate ip for vmnetcfg %s/%s", vm_net_cfg.namespace, vm_net_cfg.name)
        status = copy.deepcopy(status)

        if vm_net_cfg.spec.paused:
            raise ReconcileError(
                f"vmnetcfg {vm_net_cfg.namespace}/{vm_net_cfg.name} was administratively disabled"
            )

        statuses: list[NetworkConfigStatus] = []
        for nc in vm_net_cfg.spec.network_configs:
            pool_namespace, pool_name = split_ref(nc.network_name)
            ip_pool = self.ippool_cache.get(pool_namespace, pool_name)
            if not CACHE_READY.is_true(ip_pool):
                raise ReconcileError(f"ippool {pool_namespace}/{pool_name} is not ready")

            if self.cache_allocator.has_mac(nc.network_name, nc.mac_address):
                ip = self.cache_allocator.get_ip_by_mac(nc.network_name, nc.mac_address)
            else:
                desired = nc.ip_address if nc.ip_address is not None else IPV4_ZERO
                try:
                    desired = find_ip_address_by_mac(
                        vm_net_cfg.status.network_configs, nc.mac_address
                    )
                except LookupError:
                    pass
                ip = self.ip_allocator.allocate_ip(nc.network_name, desired)
                self.cache_allocator.add_mac(nc.network_name, nc.mac_address, ip)

            nc_status = NetworkConfigStatus(
                allocated_ip_address=ip,
                mac_address=nc.mac_address,
                network_name=nc.network_name,
                state=NetworkConfigState.ALLOCATED,
            )
            statuses.append(nc_status)

            if self.metrics_allocator is not None:
                self.metrics_allocator.update_vmnetcfg_status(
                    f"{vm_net_cfg.namespace}/{vm_net_cfg.name}",
                    nc_status.network_name,
                    nc_status.mac_address,
                    nc_status.allocated_ip_address,
                    NetworkConfigState.ALLOCATED.value,
                )

            pool_copy = ip_pool.deepcopy()
            ipv4 = pool_copy.status.ipv4 if pool_copy.status.ipv4 is not None else IPv4Status()
            if ipv4.allocated is None:
                ipv4.allocated = {}
            ipv4.allocated[ip] = nc.mac_address
            pool_copy.status.ipv4 = ipv4

            if pool_copy != ip_pool:
                log.info("update ippool %s/%s", ip_pool.namespace, ip_pool.name)
                pool_copy.status.last_update = datetime.now(timezone.utc)
                self.ippool_client.update_status(pool_copy)

        status.network_configs = statuses
        return status

    def on_remove(
        self, key: str, vm_net_cfg: Optional[VirtualMachineNetworkConfig]
    ) -> Optional[VirtualMachineNetworkConfig]:
        if vm_net_cfg is None:
            return None
        log.debug("vmnetcfg configuration %s/%s has been removed",
                  vm_net_cfg.namespace, vm_net_cfg.name)
        self._cleanup(vm_net_cfg)
        return vm_net_cfg

    def _cleanup(self, vm_net_cfg: VirtualMachineNetworkConfig) -> None:
        if self.metrics_allocator is not None:
            self.metrics_allocator.delete_vmnetcfg_status(
                f"{vm_net_cfg.namespace}/{vm_net_cfg.name}"
            )

        for nc_status in vm_net_cfg.status.network_configs:
            network = nc_status.network_name
            ip = nc_status.allocated_ip_address
            if self.ip_allocator.is_allocated(network, ip):
                self.ip_allocator.deallocate_ip(network, ip)
            if self.cache_allocator.has_mac(network, nc_status.mac_address):
                self.cache_allocator.delete_mac(network, nc_status.mac_address)

            ip_pool = self.ippool_cache.get(*split_ref(network))
            pool_copy = ip_pool.deepcopy()
            if pool_copy.status.ipv4 is not None and pool_copy.status.ipv4.allocated is not None:
                pool_copy.status.ipv4.allocated.pop(ip, None)
            if pool_copy != ip_pool:
                log.info("update ippool %s/%s", ip_pool.namespace, ip_pool.name)
                pool_copy.status.last_update = datetime.now(timezone.utc)
                self.ippool_client.update_status(pool_copy)


def _set_condition(cond: Cond, target: Any, status: Any, reason: str, message: str) -> None:
    cond.set_status(target, status)
    cond.reason(target, reason)
    cond.message(target, message)


def _network_config_status(ip_address: str, mac_address: str, network_name: str,
                           state: Any) -> NetworkConfigStatus:
    return NetworkConfigStatus(
        allocated_ip_address=ip_address,
        mac_address=mac_address,
        network_name=network_name,
        state=state,
    )


class VmNetCfgBuilder:
    """Fluent construction of a VirtualMachineNetworkConfig."""

    def __init__(self, namespace: str, name: str) -> None:
        self._cfg = VirtualMachineNetworkConfig(
            metadata=ObjectMeta(namespace=namespace, name=name)
        )

    def paused(self) -> VmNetCfgBuilder:
        self._cfg.spec.paused = True
        return self

    def unpaused(self) -> VmNetCfgBuilder:
        self._cfg.spec.paused = False
        return self

    def with_network_config(self, ip_address: str, mac_address: str,
                            network_name: str) -> VmNetCfgBuilder:
        self._cfg.spec.network_configs.append(
            NetworkConfig(
                network_name=network_name,
                mac_address=mac_address,
                ip_address=ip_address or None,
            )
        )
        return self

    def with_network_config_status(self, ip_address: str, mac_address: str,
                                   network_name: str, state: Any) -> VmNetCfgBuilder:
        self._cfg.status.network_configs.append(
            _network_config_status(ip_address, mac_address, network_name, state)
        )
        return self

    def allocated_condition(self, status: Any, reason: str, message: str) -> VmNetCfgBuilder:
        _set_condition(ALLOCATED, self._cfg, status, reason, message)
        return self

    def disabled_condition(self, status: Any, reason: str, message: str) -> VmNetCfgBuilder:
        _set_condition(DISABLED, self._cfg, status, reason, message)
        return self

    def build(self) -> VirtualMachineNetworkConfig:
        return self._cfg


class VmNetCfgStatusBuilder:
    """Fluent construction of a VirtualMachineNetworkConfigStatus."""

    def __init__(self) -> None:
        self._status = VirtualMachineNetworkConfigStatus()

    def with_network_config_status(self, ip_address: str, mac_address: str,
                                   network_name: str, state: Any) -> VmNetCfgStatusBuilder:
        self._status.network_configs.append(
            _network_config_status(ip_address, mac_address, network_name, state)
        )
        return self

    def build(self) -> VirtualMachineNetworkConfigStatus:
        return self._status