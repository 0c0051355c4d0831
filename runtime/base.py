from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

LABEL_NETWORK = "besu.network"
LABEL_NODE = "besu.node"
LABEL_ROLE = "besu.role"


@dataclass
class ContainerSpec:
    """Everything needed to start one node container."""

    name: str
    image: str
    network: str
    command: List[str]
    static_ip: Optional[str] = None
    # host path -> container path
    volumes: Dict[str, str] = field(default_factory=dict)
    # host port -> container port
    ports: Dict[int, int] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerInfo:
    id: str
    name: str
    state: str
    ip_address: Optional[str] = None
    # container port -> host port
    ports: Dict[int, int] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state == "running"


@dataclass
class NetworkInfo:
    id: str
    name: str
    subnet: Optional[str] = None
    # container name -> IPv4 address on this network
    container_ips: Dict[str, str] = field(default_factory=dict)


class ContainerRuntime(ABC):
    """
    What the orchestrator needs from a container engine. Implementations may
    shell out to a CLI or talk to a client library; callers never depend on
    the transport. Failures are raised as ContainerRuntimeError.
    """

    @abstractmethod
    def create_network(self, name: str, subnet: Optional[str] = None) -> str:
        """Creates the network if absent and returns its id."""

    @abstractmethod
    def remove_network(self, name: str, remove_containers: bool = False) -> None:
        ...

    @abstractmethod
    def inspect_network(self, name: str) -> Optional[NetworkInfo]:
        """Returns None when the network does not exist."""

    @abstractmethod
    def run_container(self, spec: ContainerSpec) -> str:
        """Starts a detached container and returns its id."""

    @abstractmethod
    def stop_container(self, name: str) -> None:
        ...

    @abstractmethod
    def remove_container(self, name: str, force: bool = True) -> None:
        ...

    @abstractmethod
    def get_container_info(self, name: str) -> Optional[ContainerInfo]:
        """Returns None when the container does not exist."""

    @abstractmethod
    def list_containers(self, labels: Optional[Dict[str, str]] = None) -> List[ContainerInfo]:
        """Containers (running or not) carrying all the given labels."""
