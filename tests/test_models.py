import pytest

from errors import ConfigurationError, NodeStateError
from models import NetworkDefinition, NodeDefinition, NodeRecord, NodeRole, NodeState


def _definition(nodes, **kwargs):
    payload = {"name": "net1", "chainId": 1337, "subnet": "10.5.0.0/16", "blockPeriod": 4, "nodes": nodes}
    payload.update(kwargs)
    return NetworkDefinition.from_dict(payload)


BASE_NODES = [
    {"name": "bootnode", "role": "bootnode", "rpcPort": 8545, "p2pPort": 30303},
    {"name": "miner1", "role": "miner", "rpcPort": 8546, "p2pPort": 30304},
    {"name": "normal1", "role": "normal", "rpcPort": 8547, "p2pPort": 30305},
]


def test_from_dict_parses_roles_and_validates():
    definition = _definition(BASE_NODES)
    definition.validate()
    assert [node.role for node in definition.nodes] == [NodeRole.BOOTNODE, NodeRole.MINER, NodeRole.NORMAL]
    assert definition.bootnode.name == "bootnode"


def test_to_dict_round_trip():
    definition = _definition(BASE_NODES, alloc={"0x" + "11" * 20: "5"})
    assert NetworkDefinition.from_dict(definition.to_dict()).to_dict() == definition.to_dict()


def test_genesis_validators_default_to_first_producer():
    nodes = BASE_NODES + [{"name": "signer2", "role": "signer", "rpcPort": 8548, "p2pPort": 30306}]
    definition = _definition(nodes)
    assert [node.name for node in definition.genesis_validators()] == ["miner1"]


def test_genesis_validators_follow_explicit_flags():
    nodes = [
        BASE_NODES[0],
        {"name": "miner1", "role": "miner", "rpcPort": 8546, "p2pPort": 30304, "isValidator": True},
        {"name": "signer2", "role": "signer", "rpcPort": 8548, "p2pPort": 30306, "isValidator": True},
        {"name": "signer3", "role": "signer", "rpcPort": 8549, "p2pPort": 30307},
    ]
    assert [node.name for node in _definition(nodes).genesis_validators()] == ["miner1", "signer2"]


@pytest.mark.parametrize(
    "nodes",
    [
        BASE_NODES[1:],
        BASE_NODES + [{"name": "boot2", "role": "bootnode", "rpcPort": 8600, "p2pPort": 30400}],
        BASE_NODES + [{"name": "miner1", "role": "normal", "rpcPort": 8600, "p2pPort": 30400}],
        BASE_NODES + [{"name": "dup-port", "role": "normal", "rpcPort": 8546, "p2pPort": 30400}],
        BASE_NODES + [{"name": "rpc-eq-p2p", "role": "normal", "rpcPort": 30400, "p2pPort": 30400}],
        BASE_NODES + [{"name": "outside", "role": "normal", "rpcPort": 8600, "p2pPort": 30400, "ip": "10.6.0.10"}],
        BASE_NODES + [{"name": "flagged", "role": "normal", "rpcPort": 8600, "p2pPort": 30400, "isValidator": True}],
        BASE_NODES + [{"name": "linked", "role": "normal", "rpcPort": 8600, "p2pPort": 30400, "linkedTo": "ghost"}],
        [BASE_NODES[0], BASE_NODES[2]],
        BASE_NODES + [{"name": "bad name!", "role": "normal", "rpcPort": 8600, "p2pPort": 30400}],
    ],
)
def test_invalid_definitions_rejected(nodes):
    with pytest.raises(ConfigurationError):
        _definition(nodes).validate()


def test_duplicate_ip_rejected():
    nodes = [
        dict(BASE_NODES[0], ip="10.5.0.20"),
        dict(BASE_NODES[1], ip="10.5.0.20"),
    ]
    with pytest.raises(ConfigurationError):
        _definition(nodes).validate()


def test_unknown_role_and_missing_fields_rejected():
    with pytest.raises(ConfigurationError):
        NodeDefinition.from_dict({"name": "x", "role": "archive", "rpcPort": 1, "p2pPort": 2})
    with pytest.raises(ConfigurationError):
        NodeDefinition.from_dict({"name": "x", "role": "normal", "rpcPort": 1})
    with pytest.raises(ConfigurationError):
        NetworkDefinition.from_dict({"name": "net1", "subnet": "10.5.0.0/16"})


def test_node_record_transitions():
    record = NodeRecord(definition=NodeDefinition("miner2", NodeRole.MINER, 8546, 30304), network="net1")
    for state in (NodeState.STARTING, NodeState.READY, NodeState.PROPOSED, NodeState.PENDING, NodeState.RUNNING):
        record.transition(state)
    assert record.state is NodeState.RUNNING
    assert record.history == [
        NodeState.CREATED,
        NodeState.STARTING,
        NodeState.READY,
        NodeState.PROPOSED,
        NodeState.PENDING,
    ]


def test_illegal_transition_raises_with_context():
    record = NodeRecord(definition=NodeDefinition("normal1", NodeRole.NORMAL, 8547, 30305), network="net1")
    with pytest.raises(NodeStateError) as excinfo:
        record.transition(NodeState.RUNNING)
    assert excinfo.value.node == "normal1"
    assert excinfo.value.network == "net1"


def test_failed_transition_keeps_reason():
    record = NodeRecord(definition=NodeDefinition("normal1", NodeRole.NORMAL, 8547, 30305), network="net1")
    record.transition(NodeState.STARTING)
    record.transition(NodeState.FAILED, reason="timeout")
    assert record.failure == "timeout"
