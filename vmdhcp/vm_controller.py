"""Derivation of network configs from virtual machine definitions."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional

from vmdhcp.apis import (
    NetworkConfig,
    ObjectMeta,
    VirtualMachineNetworkConfig,
    VirtualMachineNetworkConfigSpec,
)
from vmdhcp.kube import NotFoundError, ObjectStore

CONTROLLER_NAME = "vm-dhcp-vm-controller"
VM_LABEL_KEY = "harvesterhci.io/vmName"

log = logging.getLogger(__name__)


@dataclass
class Interface:
    """A network interface of a virtual machine."""

    name: str
    mac_address: str = ""


@dataclass
class VMNetwork:
    """A network a virtual machine attaches to; multus networks carry a name."""

    name: str
    multus_network_name: Optional[str] = None


@dataclass
class VirtualMachine:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    api_version: str = "kubevirt.io/v1"
    kind: str = "VirtualMachine"
    interfaces: list[Interface] = field(default_factory=list)
    networks: list[VMNetwork] = field(default_factory=list)

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name


def prepare_vmnetcfg(
    vm: VirtualMachine, network_configs: Mapping[str, NetworkConfig]
) -> VirtualMachineNetworkConfig:
    """Build the network config object owned by ``vm``."""
    return VirtualMachineNetworkConfig(
        metadata=ObjectMeta(
            namespace=vm.namespace,
            name=vm.name,
            labels={VM_LABEL_KEY: vm.name},
            owner_references=[
                {
                    "apiVersion": vm.api_version,
                    "kind": vm.kind,
                    "name": vm.name,
                    "uid": vm.metadata.uid,
                }
            ],
        ),
        spec=VirtualMachineNetworkConfigSpec(
            vm_name=vm.name,
            network_configs=list(network_configs.values()),
        ),
    )


@dataclass
class Handler:
    """Keeps one network config per virtual machine in step with its interfaces."""

    vmnetcfg_client: Optional[ObjectStore] = None
    vmnetcfg_cache: Optional[ObjectStore] = None

    def on_change(self, key: str, vm: Optional[VirtualMachine]) -> Optional[VirtualMachine]:
        if vm is None or vm.metadata.deletion_timestamp is not None:
            return None

        log.debug("vm configuration %s/%s has been changed", vm.namespace, vm.name)

        configs = {
            nic.name: NetworkConfig(mac_address=nic.mac_address)
            for nic in vm.interfaces
            if nic.mac_address
        }
        for network in vm.networks:
            if network.multus_network_name is None or network.name not in configs:
                continue
            configs[network.name].network_name = network.multus_network_name
        configs = {name: nc for name, nc in configs.items() if nc.network_name}

        vm_net_cfg = prepare_vmnetcfg(vm, configs)

        try:
            existing = self.vmnetcfg_cache.get(vm.namespace, vm.name)
        except NotFoundError:
            log.info("create vmnetcfg for vm %s", key)
            self.vmnetcfg_client.create(vm_net_cfg)
            return vm

        log.debug("vmnetcfg for vm %s already exists", key)
        updated = existing.deepcopy()
        updated.spec.network_configs = vm_net_cfg.spec.network_configs
        if updated != existing:
            log.info("update vmnetcfg %s/%s", updated.namespace, updated.name)
            self.vmnetcfg_client.update(updated)
        return vm