"""
Sequenced lifecycle of a Besu/Clique network.

Startup is strictly sequential: the bootnode comes up first so its enode can
be handed to every other node, then the remaining nodes start one at a time,
each reaching Ready before the next one is touched. Nothing started is rolled
back on failure; `teardown` is the explicit cleanup.
"""
from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

import config
import keys
import rpc
from app.registry import NetworkRegistry
from clique.genesis import GENESIS_FILE, GenesisBuilder, GenesisDocument
from clique.membership import AdmissionResult, ConsensusMembershipManager, SignerEndpoint
from config import Settings
from errors import BesuTestnetError, ConfigurationError, ContainerRuntimeError, NodeNotReady, RpcError
from ip_allocator import IpAllocator
from models import Deployment, NetworkDefinition, NodeDefinition, NodeRecord, NodeRole, NodeState
from node_config import ConfigRenderer
from runtime.base import LABEL_NETWORK, LABEL_NODE, LABEL_ROLE, ContainerRuntime, ContainerSpec
from utils import Backoff

logger = logging.getLogger(__name__)

RpcFactory = Callable[[str, int], Any]

DEFINITION_FILE = "network.json"


@dataclass
class NodeStatus:
    name: str
    role: str
    state: str
    address: Optional[str]
    ip: Optional[str]
    rpc_port: int
    p2p_port: int
    container_state: Optional[str] = None
    block_number: Optional[int] = None
    peer_count: Optional[int] = None
    admitted: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@contextlib.contextmanager
def _annotate(network: str, node: Optional[str] = None) -> Iterator[None]:
    """Stamps escaping orchestrator errors with the network/node they concern."""
    try:
        yield
    except BesuTestnetError as exc:
        if exc.network is None:
            exc.network = network
        if node is not None and exc.node is None:
            exc.node = node
        raise


class NodeLifecycleOrchestrator:
    def __init__(
        self,
        runtime: ContainerRuntime,
        registry: Optional[NetworkRegistry] = None,
        *,
        settings: Optional[Settings] = None,
        rpc_factory: Optional[RpcFactory] = None,
        genesis_builder: Optional[GenesisBuilder] = None,
        config_renderer: Optional[ConfigRenderer] = None,
        ip_allocator: Optional[IpAllocator] = None,
        membership: Optional[ConsensusMembershipManager] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or config.settings
        self.runtime = runtime
        self.registry = registry if registry is not None else NetworkRegistry()
        self._rpc_factory = rpc_factory or (
            lambda host, port: rpc.client_for(host, port, timeout=self.settings.rpc.timeout)
        )
        self._sleep = sleep
        self.genesis_builder = genesis_builder or GenesisBuilder(
            self.settings.genesis, epoch_length=self.settings.network.epoch_length
        )
        self.config_renderer = config_renderer or ConfigRenderer(self.settings.docker)
        self.ip_allocator = ip_allocator or IpAllocator(
            runtime,
            data_root=self.settings.network.data_root,
            default_subnet=self.settings.network.default_subnet,
        )
        self.membership = membership or ConsensusMembershipManager(self.settings.consensus, sleep=sleep)

    # -- paths and naming -------------------------------------------------

    def network_dir(self, network_name: str) -> str:
        return os.path.abspath(os.path.join(self.settings.network.data_root, network_name))

    def node_dir(self, network_name: str, node_name: str) -> str:
        return os.path.join(self.network_dir(network_name), node_name)

    def container_name(self, network_name: str, node_name: str) -> str:
        return self.settings.docker.container_name_template.format(network=network_name, node=node_name)

    def client(self, node: NodeDefinition) -> Any:
        return self._rpc_factory(self.settings.rpc.host, node.rpc_port)

    # -- network lifecycle ------------------------------------------------

    def start_network(self, definition: NetworkDefinition) -> Deployment:
        """
        Brings up every declared node in order and returns the deployment.

        Raises ConfigurationError before touching anything when the definition
        is invalid; NodeNotReady, ResourceExhausted and ContainerRuntimeError
        abort the remaining sequence and leave started containers running.
        """
        name = definition.name
        with _annotate(name):
            definition.validate()
            if name in self.registry:
                raise ConfigurationError("Network is already running", network=name)

            declared = {node.name: node.ip for node in definition.nodes if node.ip is not None}
            self.ip_allocator.check_reservations(name, declared)

            network_dir = self.network_dir(name)
            os.makedirs(network_dir, exist_ok=True)
            for node_name, ip in declared.items():
                self.ip_allocator.reserve(node_name, name, ip)
            self.runtime.create_network(name, definition.subnet)

            for node in definition.nodes:
                node.keypair = keys.load_or_create(self.node_dir(name, node.name))

            validators = [node.address for node in definition.genesis_validators()]
            genesis = self.genesis_builder.load_or_build(
                network_dir,
                definition.chain_id,
                definition.block_period,
                validators,
                definition.allocations,
            )
            deployment = Deployment(
                definition=definition,
                data_dir=network_dir,
                genesis_path=os.path.join(network_dir, GENESIS_FILE),
                genesis_validators=genesis.validators,
                signers=list(genesis.validators),
            )
            for node in definition.nodes:
                deployment.records[node.name] = NodeRecord(definition=node, network=name)
            self.registry.register(deployment)
            self._save_definition(deployment)
            logger.info(
                "Starting network %s chainId=%s with %s node(s), %s genesis signer(s)",
                name,
                definition.chain_id,
                len(definition.nodes),
                len(deployment.genesis_validators),
            )

            bootnode = definition.bootnode
            self._start_bootnode(deployment, bootnode)
            for node in definition.nodes:
                if node is bootnode:
                    continue
                self._start_node(deployment, node)

        logger.info("Network %s is up", name)
        return deployment

    def add_node(self, network_name: str, node: NodeDefinition) -> NodeRecord:
        """Starts a new node on a running network, proposing it when it produces blocks."""
        with _annotate(network_name, node.name):
            deployment = self.registry.get(network_name)
            definition = deployment.definition
            if node.role is NodeRole.BOOTNODE:
                raise ConfigurationError("A network has exactly one bootnode", network=network_name, node=node.name)
            if not definition.bootnode_enode:
                raise ConfigurationError("Bootnode enode unknown; start the network first", network=network_name)

            candidate = copy.copy(definition)
            candidate.nodes = list(definition.nodes) + [node]
            candidate.validate()
            if node.ip is not None:
                self.ip_allocator.reserve(node.name, network_name, node.ip)

            node.keypair = keys.load_or_create(self.node_dir(network_name, node.name))
            definition.nodes.append(node)
            record = NodeRecord(definition=node, network=network_name)
            deployment.records[node.name] = record
            self._save_definition(deployment)
            self._start_node(deployment, node)
        return record

    def remove_node(self, network_name: str, node_name: str) -> Optional[AdmissionResult]:
        """
        Removes a node's container and IP mapping. A departing signer is voted
        out through the remaining signers; the returned result describes that
        vote (None for non-signers).
        """
        with _annotate(network_name, node_name):
            deployment = self.registry.get(network_name)
            definition = deployment.definition
            node = definition.node(node_name)
            record = deployment.record(node_name)
            if node.role is NodeRole.BOOTNODE:
                raise ConfigurationError("The bootnode cannot be removed", network=network_name, node=node_name)
            # Signers whose removal vote never passed stay in deployment.signers.
            present = {other.address for other in definition.nodes if other.keypair is not None}
            live_signers = [address for address in deployment.signers if address in present]
            is_signer = node.keypair is not None and node.address in live_signers
            if is_signer and len(live_signers) == 1:
                raise ConfigurationError("Refusing to remove the last validator", network=network_name, node=node_name)
            dependents = [other.name for other in definition.nodes if other.linked_to == node_name]
            if dependents:
                logger.warning("Nodes %s are linked to %s, which is being removed", dependents, node_name)

            container = self.container_name(network_name, node_name)
            self.runtime.stop_container(container)
            self.runtime.remove_container(container)
            self.ip_allocator.release(node_name, network_name)
            record.transition(NodeState.REMOVED)
            definition.nodes.remove(node)
            del deployment.records[node_name]
            self._save_definition(deployment)
            logger.info("Removed node %s from %s", node_name, network_name)

            if not is_signer:
                return None
            result = self.membership.propose_signer_removal(
                node.address, self._signer_endpoints(deployment), network=network_name
            )
            if result.admitted:
                deployment.signers.remove(node.address)
            return result

    def teardown(self, network_name: str, remove_data: bool = False) -> None:
        """Removes every container of the network and the network itself."""
        with _annotate(network_name):
            deployment = self.registry.find(network_name)
            for info in self.runtime.list_containers({LABEL_NETWORK: network_name}):
                self.runtime.remove_container(info.name)
            self.runtime.remove_network(network_name, remove_containers=True)
            if deployment is not None:
                for record in deployment.records.values():
                    if record.state is not NodeState.REMOVED:
                        record.transition(NodeState.REMOVED)
            self.registry.remove(network_name)
            if remove_data:
                network_dir = self.network_dir(network_name)
                if os.path.isdir(network_dir):
                    shutil.rmtree(network_dir)
                    logger.info("Deleted data directory %s", network_dir)
        logger.info("Network %s torn down", network_name)

    def status(self, network_name: Optional[str] = None) -> List[NodeStatus]:
        deployment = self.registry.get(network_name)
        statuses = []
        mappings = self.ip_allocator.mappings(deployment.name)
        for node in deployment.definition.nodes:
            record = deployment.records.get(node.name)
            with _annotate(deployment.name, node.name):
                info = self.runtime.get_container_info(self.container_name(deployment.name, node.name))
            status = NodeStatus(
                name=node.name,
                role=node.role.value,
                state=record.state.value if record else NodeState.CREATED.value,
                address=node.keypair.address if node.keypair else None,
                ip=(info.ip_address if info and info.ip_address else mappings.get(node.name)),
                rpc_port=node.rpc_port,
                p2p_port=node.p2p_port,
                container_state=info.state if info else None,
                admitted=record.admitted if record else None,
            )
            if info is not None and info.running:
                client = self.client(node)
                try:
                    status.block_number = client.block_number()
                    status.peer_count = client.peer_count()
                except RpcError as exc:
                    logger.debug("Status RPC for %s failed: %s", node.name, exc)
            statuses.append(status)
        return statuses

    def attach(self, network_name: str) -> Deployment:
        """
        Registers a network started by another process from the definition
        and genesis it left in its data directory. Node states reflect what
        the runtime reports now.
        """
        existing = self.registry.find(network_name)
        if existing is not None:
            return existing
        with _annotate(network_name):
            network_dir = self.network_dir(network_name)
            definition = NetworkDefinition.from_dict(self._read_json(os.path.join(network_dir, DEFINITION_FILE)))
            genesis = GenesisDocument.from_dict(self._read_json(os.path.join(network_dir, GENESIS_FILE)))
            for node in definition.nodes:
                node.keypair = keys.load_or_create(self.node_dir(network_name, node.name))

            deployment = Deployment(
                definition=definition,
                data_dir=network_dir,
                genesis_path=os.path.join(network_dir, GENESIS_FILE),
                genesis_validators=genesis.validators,
                signers=list(genesis.validators),
            )
            for node in definition.nodes:
                info = self.runtime.get_container_info(self.container_name(network_name, node.name))
                running = info is not None and info.running
                deployment.records[node.name] = NodeRecord(
                    definition=node,
                    network=network_name,
                    state=NodeState.RUNNING if running else NodeState.FAILED,
                    container_id=info.id if info else None,
                    failure=None if running else "container not running",
                )

            for endpoint in self._signer_endpoints(deployment):
                try:
                    deployment.signers = endpoint.client.clique_get_signers()
                    break
                except RpcError as exc:
                    logger.debug("Could not read signers through %s: %s", endpoint.name, exc)

            self.registry.register(deployment)
        logger.info("Attached to network %s (%s node(s))", network_name, len(definition.nodes))
        return deployment

    def _save_definition(self, deployment: Deployment) -> None:
        path = os.path.join(deployment.data_dir, DEFINITION_FILE)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(deployment.definition.to_dict(), handle, indent=2)

    @staticmethod
    def _read_json(path: str) -> Dict[str, Any]:
        if not os.path.exists(path):
            raise ConfigurationError(f"{path} not found; was the network started here?")
        with open(path, "r", encoding="utf-8") as handle:
            try:
                return json.load(handle)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"Corrupt {path}: {exc}") from exc

    # -- per-node sequencing ----------------------------------------------

    def _start_bootnode(self, deployment: Deployment, node: NodeDefinition) -> None:
        name = deployment.name
        with _annotate(name, node.name):
            record = deployment.record(node.name)
            self.config_renderer.render_bootnode(node, deployment.definition, self.node_dir(name, node.name))
            ip = self._run_container(deployment, record)
            self._wait_ready(deployment, record)

            try:
                advertised = self.client(node).enode()
            except RpcError as exc:
                record.transition(NodeState.FAILED, reason=str(exc))
                raise
            enode = keys.advertised_enode(advertised, self._container_ip(deployment, node) or ip)
            keys.write_enode(enode, self.node_dir(name, node.name))
            deployment.definition.bootnode_enode = enode
            self._save_definition(deployment)
            record.transition(NodeState.RUNNING)
            logger.info("Bootnode %s ready at %s", node.name, enode)

    def _start_node(self, deployment: Deployment, node: NodeDefinition) -> None:
        name = deployment.name
        definition = deployment.definition
        with _annotate(name, node.name):
            record = deployment.record(node.name)
            extra_peers = []
            if node.linked_to:
                extra_peers.append(self._peer_enode(deployment, definition.node(node.linked_to)))
            self.config_renderer.render_node(
                node,
                definition,
                definition.bootnode_enode,
                self.node_dir(name, node.name),
                extra_peers=extra_peers,
            )
            self._run_container(deployment, record)
            self._wait_ready(deployment, record)

            if node.role.produces_blocks and node.address not in deployment.genesis_validators:
                self._propose(deployment, record)
            record.transition(NodeState.RUNNING)

    def _run_container(self, deployment: Deployment, record: NodeRecord) -> str:
        node = record.definition
        name = deployment.name
        docker = self.settings.docker
        record.transition(NodeState.STARTING)
        ip = self.ip_allocator.get_or_assign(node.name, name)
        node_dir = self.node_dir(name, node.name)
        spec = ContainerSpec(
            name=self.container_name(name, node.name),
            image=docker.image,
            network=name,
            static_ip=ip,
            volumes={
                node_dir: docker.container_data_dir,
                deployment.genesis_path: docker.genesis_mount,
            },
            ports={
                node.rpc_port: docker.container_rpc_port,
                node.p2p_port: node.p2p_port,
            },
            labels={
                LABEL_NETWORK: name,
                LABEL_NODE: node.name,
                LABEL_ROLE: node.role.value,
            },
            command=[
                f"--config-file={docker.container_data_dir}/config.toml",
                f"--data-path={docker.container_data_dir}/database",
                f"--node-private-key-file={docker.container_data_dir}/{keys.KEY_FILE}",
            ],
        )
        try:
            record.container_id = self.runtime.run_container(spec)
        except ContainerRuntimeError as exc:
            record.transition(NodeState.FAILED, reason=str(exc))
            raise
        logger.info("Node %s/%s (%s) starting at %s", name, node.name, node.role.value, ip)
        return ip

    def _wait_ready(self, deployment: Deployment, record: NodeRecord) -> None:
        node = record.definition
        readiness = self.settings.readiness
        client = self.client(node)
        backoff = Backoff(max_attempts=readiness.max_attempts, interval=readiness.interval, sleep=self._sleep)
        result = backoff.poll(
            client.block_number,
            success=lambda block: block >= 0,
            label=f"readiness of {deployment.name}/{node.name}",
        )
        if not result.succeeded:
            reason = f"no eth_blockNumber answer after {result.attempts} attempts"
            if result.last_error is not None:
                reason += f" (last error: {result.last_error})"
            record.transition(NodeState.FAILED, reason=reason)
            logger.error("Node %s/%s never became ready: %s", deployment.name, node.name, reason)
            raise NodeNotReady(deployment.name, node.name, result.attempts)
        record.transition(NodeState.READY)
        logger.info("Node %s/%s ready at block %s", deployment.name, node.name, result.value)

    def _propose(self, deployment: Deployment, record: NodeRecord) -> None:
        node = record.definition
        record.transition(NodeState.PROPOSED)
        membership = self.membership
        result = membership.propose_new_signer(
            node.address, self._signer_endpoints(deployment, exclude=node.name), network=deployment.name
        )
        record.admitted = result.admitted
        if result.admitted:
            record.transition(NodeState.ADMITTED)
            if node.address not in deployment.signers:
                deployment.signers.append(node.address)
        else:
            record.transition(NodeState.PENDING)
            logger.warning(
                "Node %s/%s runs as a non-validating peer until its signer vote passes (%s error(s))",
                deployment.name,
                node.name,
                len(result.errors),
            )

    def _signer_endpoints(self, deployment: Deployment, exclude: Optional[str] = None) -> List[SignerEndpoint]:
        """Block producers started before now, in declaration order."""
        endpoints = []
        live = (NodeState.READY, NodeState.ADMITTED, NodeState.PENDING, NodeState.RUNNING)
        for record in deployment.nodes_in_state(*live):
            node = record.definition
            if node.name == exclude or not node.role.produces_blocks or node.keypair is None:
                continue
            endpoints.append(SignerEndpoint(name=node.name, address=node.address, client=self.client(node)))
        return endpoints

    def _container_ip(self, deployment: Deployment, node: NodeDefinition) -> Optional[str]:
        info = self.runtime.get_container_info(self.container_name(deployment.name, node.name))
        return info.ip_address if info else None

    def _peer_enode(self, deployment: Deployment, peer: NodeDefinition) -> str:
        if peer.role is NodeRole.BOOTNODE and deployment.definition.bootnode_enode:
            return deployment.definition.bootnode_enode
        ip = self.ip_allocator.lookup(peer.name, deployment.name)
        if ip is None or peer.keypair is None:
            raise ConfigurationError(
                f"Linked peer {peer.name!r} has no address yet", network=deployment.name, node=peer.name
            )
        return keys.format_enode(peer.keypair.public_key, ip, peer.p2p_port)
