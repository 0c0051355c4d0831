#!/usr/bin/env python3
"""
Command line front-end for the Besu/Clique testnet orchestrator.

  besu-testnet up network.json
  besu-testnet status net1
  besu-testnet add-node net1 node.json
  besu-testnet remove-node net1 miner2
  besu-testnet down net1 --remove-data
  besu-testnet genesis network.json
"""
import argparse
import json
import logging
import os
import sys

import besu_logging
import config
import keys
from app.container import ServiceContainer
from errors import BesuTestnetError, ConfigurationError
from models import NetworkDefinition, NodeDefinition

logger = logging.getLogger(__name__)


def _load_json(path):
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{path} is not valid JSON: {exc}") from exc


def _print(payload):
    print(json.dumps(payload, indent=2))


def cmd_up(args, container):
    definition = NetworkDefinition.from_dict(_load_json(args.definition))
    deployment = container.orchestrator.start_network(definition)
    _print(
        {
            "network": deployment.name,
            "bootnodeEnode": deployment.definition.bootnode_enode,
            "signers": deployment.signers,
            "nodes": {name: record.state.value for name, record in deployment.records.items()},
        }
    )


def cmd_status(args, container):
    container.orchestrator.attach(args.network)
    _print([status.to_dict() for status in container.orchestrator.status(args.network)])


def cmd_add_node(args, container):
    container.orchestrator.attach(args.network)
    node = NodeDefinition.from_dict(_load_json(args.node))
    record = container.orchestrator.add_node(args.network, node)
    _print({"node": record.name, "state": record.state.value, "admitted": record.admitted})


def cmd_remove_node(args, container):
    container.orchestrator.attach(args.network)
    result = container.orchestrator.remove_node(args.network, args.node)
    payload = {"node": args.node, "removed": True}
    if result is not None:
        payload["signerRemoved"] = result.admitted
        payload["votes"] = result.proposals
    _print(payload)


def cmd_down(args, container):
    container.orchestrator.teardown(args.network, remove_data=args.remove_data)
    _print({"network": args.network, "removed": True, "dataRemoved": args.remove_data})


def cmd_genesis(args, container):
    """
    Prints the genesis a definition would get. genesis.json is not written,
    but missing node key files are created under the data root.
    """
    definition = NetworkDefinition.from_dict(_load_json(args.definition))
    definition.validate()
    orchestrator = container.orchestrator
    for node in definition.nodes:
        node.keypair = keys.load_or_create(orchestrator.node_dir(definition.name, node.name))
    document = orchestrator.genesis_builder.build(
        definition.chain_id,
        definition.block_period,
        [node.address for node in definition.genesis_validators()],
        definition.allocations,
    )
    print(document.to_json())


def build_parser():
    parser = argparse.ArgumentParser(prog="besu-testnet", description="Besu/Clique private testnet orchestrator")
    parser.add_argument("--env", help="Settings environment (development, test, production)")
    parser.add_argument("--data-root", help="Directory holding per-network data")
    sub = parser.add_subparsers(dest="command", required=True)

    p_up = sub.add_parser("up", help="Start a network from a JSON definition")
    p_up.add_argument("definition", help="Path to the network definition JSON")
    p_up.set_defaults(func=cmd_up)

    p_status = sub.add_parser("status", help="Show node status for a network")
    p_status.add_argument("network")
    p_status.set_defaults(func=cmd_status)

    p_add = sub.add_parser("add-node", help="Add a node to a running network")
    p_add.add_argument("network")
    p_add.add_argument("node", help="Path to the node definition JSON")
    p_add.set_defaults(func=cmd_add_node)

    p_remove = sub.add_parser("remove-node", help="Remove a node from a running network")
    p_remove.add_argument("network")
    p_remove.add_argument("node", help="Node name")
    p_remove.set_defaults(func=cmd_remove_node)

    p_down = sub.add_parser("down", help="Remove all containers and the network")
    p_down.add_argument("network")
    p_down.add_argument("--remove-data", action="store_true", help="Also delete the network data directory")
    p_down.set_defaults(func=cmd_down)

    p_genesis = sub.add_parser("genesis", help="Print the genesis document for a definition")
    p_genesis.add_argument("definition")
    p_genesis.set_defaults(func=cmd_genesis)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    overrides = {}
    if args.data_root:
        overrides["network"] = {"data_root": os.path.abspath(args.data_root)}
    try:
        settings = config.reload_settings(env=args.env, overrides=overrides or None)
        besu_logging.configure(settings.logging)
        container = ServiceContainer.build(settings=settings)
        args.func(args, container)
    except KeyboardInterrupt:
        logger.info("Interrupted; containers started so far are left running")
        return 130
    except ConfigurationError as exc:
        logger.critical("Configuration error: %s", exc)
        return 2
    except BesuTestnetError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
