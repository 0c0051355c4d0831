"""Per-node Besu TOML configuration, keyed by node role."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import config
from config import DockerSettings
from errors import ConfigurationError
from models import NetworkDefinition, NodeDefinition, NodeRole

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.toml"

BASE_APIS: Tuple[str, ...] = ("ETH", "NET", "WEB3")

ROLE_APIS: Dict[NodeRole, Tuple[str, ...]] = {
    NodeRole.BOOTNODE: BASE_APIS + ("ADMIN",),
    NodeRole.SIGNER: BASE_APIS + ("CLIQUE", "ADMIN", "MINER", "DEBUG"),
    NodeRole.MINER: BASE_APIS + ("CLIQUE", "ADMIN", "MINER"),
    NodeRole.NORMAL: BASE_APIS,
    NodeRole.RPC: BASE_APIS + ("ADMIN", "TXPOOL", "TRACE"),
}


def apis_for(role: NodeRole) -> Tuple[str, ...]:
    return ROLE_APIS[role]


@dataclass
class RenderedConfig:
    node: str
    path: Optional[str]
    text: str
    apis: Tuple[str, ...]
    bootnodes: List[str] = field(default_factory=list)
    mining: bool = False
    coinbase: Optional[str] = None


def _toml_string(value: str) -> str:
    # JSON string escaping is a valid TOML basic string.
    return json.dumps(value)


def _toml_list(values: Sequence[str]) -> str:
    return "[" + ", ".join(_toml_string(value) for value in values) + "]"


class ConfigRenderer:
    """
    Renders `config.toml` for a node and writes it into the node's data
    directory. Makes no network calls: everything it needs (bootnode enode,
    addresses) is passed in.
    """

    def __init__(self, docker_settings: Optional[DockerSettings] = None) -> None:
        self._docker = docker_settings or config.settings.docker

    def render_bootnode(self, node: NodeDefinition, network: NetworkDefinition, node_dir: Optional[str] = None) -> RenderedConfig:
        if node.role is not NodeRole.BOOTNODE:
            raise ConfigurationError(
                f"render_bootnode called for a {node.role.value} node", network=network.name, node=node.name
            )
        return self._render(node, network, [], node_dir)

    def render_node(
        self,
        node: NodeDefinition,
        network: NetworkDefinition,
        bootnode_enode: str,
        node_dir: Optional[str] = None,
        *,
        extra_peers: Sequence[str] = (),
    ) -> RenderedConfig:
        if node.role is NodeRole.BOOTNODE:
            raise ConfigurationError("Bootnode config takes no bootnode list", network=network.name, node=node.name)
        if not bootnode_enode:
            raise ConfigurationError("A bootnode enode is required", network=network.name, node=node.name)
        bootnodes = [bootnode_enode]
        for peer in extra_peers:
            if peer and peer not in bootnodes:
                bootnodes.append(peer)
        return self._render(node, network, bootnodes, node_dir)

    def _render(
        self,
        node: NodeDefinition,
        network: NetworkDefinition,
        bootnodes: List[str],
        node_dir: Optional[str],
    ) -> RenderedConfig:
        apis = apis_for(node.role)
        mining = node.role.produces_blocks
        coinbase = node.address if mining else None

        lines = [
            f"# Besu node {node.name} ({node.role.value}) on network {network.name}",
            "",
            f"genesis-file={_toml_string(self._docker.genesis_mount)}",
            f"network-id={network.chain_id}",
            "",
            "p2p-enabled=true",
            'p2p-host="0.0.0.0"',
            f"p2p-port={node.p2p_port}",
            "discovery-enabled=true",
            "max-peers=25",
        ]
        if bootnodes:
            lines.append(f"bootnodes={_toml_list(bootnodes)}")
        lines += [
            "",
            "rpc-http-enabled=true",
            'rpc-http-host="0.0.0.0"',
            f"rpc-http-port={self._docker.container_rpc_port}",
            'rpc-http-cors-origins=["*"]',
            f"rpc-http-api={_toml_list(apis)}",
            'host-allowlist=["*"]',
            "",
            f"miner-enabled={'true' if mining else 'false'}",
        ]
        if coinbase:
            lines.append(f"miner-coinbase={_toml_string(coinbase)}")
        lines += [
            "",
            'sync-mode="FULL"',
            'logging="INFO"',
            "",
        ]
        text = "\n".join(lines)

        path = None
        if node_dir is not None:
            os.makedirs(node_dir, exist_ok=True)
            path = os.path.join(node_dir, CONFIG_FILE)
            with open(path, "w", encoding="utf-8") as handle:
                handle.write(text)
            logger.info("Rendered %s config for %s/%s", node.role.value, network.name, node.name)

        return RenderedConfig(
            node=node.name,
            path=path,
            text=text,
            apis=apis,
            bootnodes=list(bootnodes),
            mining=mining,
            coinbase=coinbase,
        )
