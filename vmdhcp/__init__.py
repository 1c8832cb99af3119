"""Address management, MAC caches and reconcile steps for DHCP-served virtual machine networks."""

__version__ = "0.1.0"