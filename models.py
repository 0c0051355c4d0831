"""Network and node definitions plus the runtime records the orchestrator keeps."""
from __future__ import annotations

import enum
import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ConfigurationError, NodeStateError
from keys import Keypair

NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


class NodeRole(enum.Enum):
    BOOTNODE = "bootnode"
    SIGNER = "signer"
    MINER = "miner"
    NORMAL = "normal"
    RPC = "rpc"

    @classmethod
    def parse(cls, value: Any) -> "NodeRole":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"Unknown node role: {value!r}") from exc

    @property
    def produces_blocks(self) -> bool:
        return self in (NodeRole.SIGNER, NodeRole.MINER)


class NodeState(enum.Enum):
    CREATED = "created"
    STARTING = "starting"
    READY = "ready"
    PROPOSED = "proposed"
    ADMITTED = "admitted"
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    REMOVED = "removed"


_TRANSITIONS = {
    NodeState.CREATED: {NodeState.STARTING, NodeState.FAILED, NodeState.REMOVED},
    NodeState.STARTING: {NodeState.READY, NodeState.FAILED, NodeState.REMOVED},
    NodeState.READY: {NodeState.PROPOSED, NodeState.RUNNING, NodeState.FAILED, NodeState.REMOVED},
    NodeState.PROPOSED: {NodeState.ADMITTED, NodeState.PENDING, NodeState.REMOVED},
    NodeState.ADMITTED: {NodeState.RUNNING, NodeState.REMOVED},
    NodeState.PENDING: {NodeState.RUNNING, NodeState.REMOVED},
    NodeState.RUNNING: {NodeState.REMOVED},
    NodeState.FAILED: {NodeState.STARTING, NodeState.REMOVED},
    NodeState.REMOVED: set(),
}


@dataclass
class NodeDefinition:
    name: str
    role: NodeRole
    rpc_port: int
    p2p_port: int
    ip: Optional[str] = None
    keypair: Optional[Keypair] = None
    # None lets the network decide: only the first block producer goes into genesis.
    is_validator: Optional[bool] = None
    linked_to: Optional[str] = None

    def __post_init__(self) -> None:
        self.role = NodeRole.parse(self.role)

    @property
    def address(self) -> str:
        if self.keypair is None:
            raise ConfigurationError("Node has no key material yet", node=self.name)
        return self.keypair.address

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "NodeDefinition":
        try:
            return cls(
                name=payload["name"],
                role=NodeRole.parse(payload["role"]),
                rpc_port=int(payload["rpcPort"]),
                p2p_port=int(payload["p2pPort"]),
                ip=payload.get("ip"),
                is_validator=payload.get("isValidator"),
                linked_to=payload.get("linkedTo"),
            )
        except KeyError as exc:
            raise ConfigurationError(f"Node definition is missing {exc.args[0]!r}") from exc
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid node definition {payload!r}: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "role": self.role.value,
            "rpcPort": self.rpc_port,
            "p2pPort": self.p2p_port,
        }
        if self.ip is not None:
            data["ip"] = self.ip
        if self.is_validator is not None:
            data["isValidator"] = self.is_validator
        if self.linked_to is not None:
            data["linkedTo"] = self.linked_to
        if self.keypair is not None:
            data["address"] = self.keypair.address
        return data


@dataclass
class NetworkDefinition:
    name: str
    chain_id: int
    subnet: str
    block_period: int
    nodes: List[NodeDefinition] = field(default_factory=list)
    bootnode_enode: Optional[str] = None
    allocations: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "NetworkDefinition":
        try:
            return cls(
                name=payload["name"],
                chain_id=int(payload["chainId"]),
                subnet=payload["subnet"],
                block_period=int(payload.get("blockPeriod", 4)),
                nodes=[NodeDefinition.from_dict(node) for node in payload.get("nodes", [])],
                allocations=dict(payload.get("alloc", {})),
                bootnode_enode=payload.get("bootnodeEnode"),
            )
        except KeyError as exc:
            raise ConfigurationError(f"Network definition is missing {exc.args[0]!r}") from exc
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid network definition: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "chainId": self.chain_id,
            "subnet": self.subnet,
            "blockPeriod": self.block_period,
            "nodes": [node.to_dict() for node in self.nodes],
        }
        if self.allocations:
            data["alloc"] = dict(self.allocations)
        if self.bootnode_enode:
            data["bootnodeEnode"] = self.bootnode_enode
        return data

    def node(self, name: str) -> NodeDefinition:
        for node in self.nodes:
            if node.name == name:
                return node
        raise ConfigurationError(f"Unknown node {name!r}", network=self.name)

    @property
    def bootnode(self) -> NodeDefinition:
        bootnodes = [node for node in self.nodes if node.role is NodeRole.BOOTNODE]
        if len(bootnodes) != 1:
            raise ConfigurationError(
                f"Network must declare exactly one bootnode (found {len(bootnodes)})",
                network=self.name,
            )
        return bootnodes[0]

    def genesis_validators(self) -> List[NodeDefinition]:
        """
        Nodes whose addresses are baked into genesis: block producers flagged
        `is_validator`, or the first block producer when none is flagged.
        """
        producers = [node for node in self.nodes if node.role.produces_blocks]
        flagged = [node for node in producers if node.is_validator]
        if flagged:
            return flagged
        unset = [node for node in producers if node.is_validator is None]
        return unset[:1]

    def validate(self) -> None:
        """Checks the invariants a network must hold before anything starts."""
        if not self.name or not NAME_RE.match(self.name):
            raise ConfigurationError(f"Invalid network name {self.name!r}", network=self.name)
        if self.chain_id <= 0:
            raise ConfigurationError("Chain id must be a positive integer", network=self.name)
        if self.block_period <= 0:
            raise ConfigurationError("Block period must be positive", network=self.name)
        try:
            subnet = ipaddress.ip_network(self.subnet, strict=True)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid subnet {self.subnet!r}: {exc}", network=self.name) from exc
        if subnet.version != 4:
            raise ConfigurationError("Only IPv4 subnets are supported", network=self.name)

        self.bootnode

        seen_names: Dict[str, NodeDefinition] = {}
        seen_ports: Dict[int, str] = {}
        seen_ips: Dict[str, str] = {}
        for node in self.nodes:
            if not node.name or not NAME_RE.match(node.name):
                raise ConfigurationError(f"Invalid node name {node.name!r}", network=self.name, node=node.name)
            if node.name in seen_names:
                raise ConfigurationError("Duplicate node name", network=self.name, node=node.name)
            for port in (node.rpc_port, node.p2p_port):
                if not (0 < port <= 65535):
                    raise ConfigurationError(f"Invalid port {port}", network=self.name, node=node.name)
                if port in seen_ports:
                    raise ConfigurationError(
                        f"Port {port} already used by {seen_ports[port]}",
                        network=self.name,
                        node=node.name,
                    )
                seen_ports[port] = node.name
            if node.ip is not None:
                try:
                    address = ipaddress.ip_address(node.ip)
                except ValueError as exc:
                    raise ConfigurationError(f"Invalid IP {node.ip!r}", network=self.name, node=node.name) from exc
                if address not in subnet:
                    raise ConfigurationError(
                        f"IP {node.ip} is outside subnet {self.subnet}",
                        network=self.name,
                        node=node.name,
                    )
                if node.ip in seen_ips:
                    raise ConfigurationError(
                        f"IP {node.ip} already used by {seen_ips[node.ip]}",
                        network=self.name,
                        node=node.name,
                    )
                seen_ips[node.ip] = node.name
            if node.is_validator and not node.role.produces_blocks:
                raise ConfigurationError(
                    f"Only signer or miner nodes can be validators (role {node.role.value})",
                    network=self.name,
                    node=node.name,
                )
            if node.linked_to is not None and node.linked_to not in seen_names:
                raise ConfigurationError(
                    f"linkedTo {node.linked_to!r} must name a node declared earlier",
                    network=self.name,
                    node=node.name,
                )
            seen_names[node.name] = node

        if not self.genesis_validators():
            raise ConfigurationError("Clique requires at least one signer or miner validator", network=self.name)


@dataclass
class NodeRecord:
    """Runtime view of a node the orchestrator has provisioned."""

    definition: NodeDefinition
    network: str
    state: NodeState = NodeState.CREATED
    container_id: Optional[str] = None
    failure: Optional[str] = None
    # Outcome of the clique vote for nodes proposed after genesis.
    admitted: Optional[bool] = None
    history: List[NodeState] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.definition.name

    def transition(self, new_state: NodeState, *, reason: Optional[str] = None) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise NodeStateError(
                f"Illegal transition {self.state.value} -> {new_state.value}",
                network=self.network,
                node=self.name,
            )
        self.history.append(self.state)
        self.state = new_state
        self.failure = reason if new_state is NodeState.FAILED else None


@dataclass
class Deployment:
    """A started (or starting) network: its definition, genesis and node records."""

    definition: NetworkDefinition
    data_dir: str
    genesis_path: Optional[str] = None
    records: Dict[str, NodeRecord] = field(default_factory=dict)
    # Addresses baked into extraData; fixed once genesis exists.
    genesis_validators: List[str] = field(default_factory=list)
    # Known current signer set: genesis validators plus admitted nodes.
    signers: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.definition.name

    def record(self, name: str) -> NodeRecord:
        try:
            return self.records[name]
        except KeyError:
            raise ConfigurationError(f"Unknown node {name!r}", network=self.name) from None

    def nodes_in_state(self, *states: NodeState) -> List[NodeRecord]:
        return [self.records[node.name] for node in self.definition.nodes
                if node.name in self.records and self.records[node.name].state in states]
