"""In-memory MAC to IP address caches, one set per network."""

from __future__ import annotations

import ipaddress
import threading
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Optional, Union

_IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class NetworkNotFoundError(LookupError):
    """Raised when a network has no MAC set."""

    def __init__(self, name: str) -> None:
        super().__init__(f"network {name} does not exist")
        self.name = name


class MACNotFoundError(LookupError):
    """Raised when a MAC address has no entry in a network."""

    def __init__(self, mac_address: str, name: str) -> None:
        super().__init__(f"mac {mac_address} not found in network {name}")
        self.mac_address = mac_address
        self.name = name


def _parse_ip(text: str) -> Optional[_IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _format_ip(ip: Optional[_IPAddress]) -> str:
    if ip is None:
        return "<nil>"
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


@dataclass
class CacheAllocator:
    """Maps MAC addresses to IP addresses within named networks.

    Addresses that cannot be parsed are kept and read back as ``"<nil>"``.
    """

    _cache: dict[str, dict[str, Optional[_IPAddress]]] = field(
        default_factory=dict, init=False
    )
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )

    def _macs(self, name: str) -> dict[str, Optional[_IPAddress]]:
        try:
            return self._cache[name]
        except KeyError:
            raise NetworkNotFoundError(name) from None

    def new_mac_set(self, name: str) -> None:
        """Create an empty MAC set for a network, replacing any existing one."""
        with self._lock:
            self._cache[name] = {}

    def delete_mac_set(self, name: str) -> None:
        with self._lock:
            self._cache.pop(name, None)

    def add_mac(self, name: str, mac_address: str, ip_address: str) -> None:
        with self._lock:
            self._macs(name)[mac_address] = _parse_ip(ip_address)

    def delete_mac(self, name: str, mac_address: str) -> None:
        with self._lock:
            self._macs(name).pop(mac_address, None)

    def has_mac(self, name: str, mac_address: str) -> bool:
        with self._lock:
            return mac_address in self._macs(name)

    def get_ip_by_mac(self, name: str, mac_address: str) -> str:
        with self._lock:
            macs = self._macs(name)
            if mac_address not in macs:
                raise MACNotFoundError(mac_address, name)
            return _format_ip(macs[mac_address])

    def list_all(self, name: str) -> dict[str, str]:
        """Return a copy of a network's MAC to IP mapping."""
        with self._lock:
            return {mac: _format_ip(ip) for mac, ip in self._macs(name).items()}


class CacheAllocatorBuilder:
    """Fluent construction of a CacheAllocator, mainly for fixtures."""

    def __init__(self) -> None:
        self._allocator = CacheAllocator()

    def mac_set(self, name: str) -> CacheAllocatorBuilder:
        self._allocator.new_mac_set(name)
        return self

    def add(self, name: str, mac_address: str, ip_address: str) -> CacheAllocatorBuilder:
        with suppress(NetworkNotFoundError):
            self._allocator.add_mac(name, mac_address, ip_address)
        return self

    def build(self) -> CacheAllocator:
        return self._allocator