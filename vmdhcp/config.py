"""Option sets for the controller and the agent."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

DEFAULT_NETWORK_INTERFACE = "eth1"


@dataclass(frozen=True)
class Image:
    """A container image reference made of repository and tag."""

    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"


def parse_image(text: str) -> Image:
    """Parse ``repository:tag``; exactly one colon is required."""
    tokens = text.split(":")
    if len(tokens) != 2:
        raise ValueError(f"error parsing agent image name {text!r}")
    return Image(tokens[0], tokens[1])


@dataclass
class ControllerOptions:
    no_agent: bool = False
    agent_namespace: str = ""
    agent_image: Optional[Image] = None
    agent_service_account_name: str = ""
    no_dhcp: bool = False


@dataclass
class AgentOptions:
    dry_run: bool = False
    nic: str = DEFAULT_NETWORK_INTERFACE
    kube_config_path: str = ""
    kube_context: str = ""
    ip_pool_ref: tuple[str, str] = ("", "")