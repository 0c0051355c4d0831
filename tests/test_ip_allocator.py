import ipaddress
import json
from unittest.mock import MagicMock

import pytest

from errors import ConfigurationError, ContainerRuntimeError, ResourceExhausted
from ip_allocator import MAPPINGS_FILE, IpAllocator
from runtime.base import NetworkInfo
from tests.fakes import InMemoryRuntime


@pytest.fixture()
def runtime():
    fake = InMemoryRuntime()
    fake.create_network("net1", "10.5.0.0/16")
    return fake


@pytest.fixture()
def allocator(runtime, tmp_path):
    return IpAllocator(runtime, data_root=str(tmp_path), default_subnet="10.120.0.0/16")


def test_first_assignment_starts_at_dot_ten(allocator):
    assert allocator.get_or_assign("bootnode", "net1") == "10.5.0.10"
    assert allocator.get_or_assign("miner1", "net1") == "10.5.0.11"


def test_get_or_assign_is_idempotent(allocator):
    first = allocator.get_or_assign("miner1", "net1")
    assert allocator.get_or_assign("miner1", "net1") == first
    assert allocator.mappings("net1") == {"miner1": first}


def test_mapping_store_format(allocator, tmp_path):
    allocator.get_or_assign("miner1", "net1")
    records = json.loads((tmp_path / "net1" / MAPPINGS_FILE).read_text())
    assert len(records) == 1
    assert records[0]["nodeName"] == "miner1"
    assert records[0]["networkName"] == "net1"
    assert records[0]["ipAddress"] == "10.5.0.10"
    assert "assignedAt" in records[0]


def test_mappings_survive_new_allocator(allocator, runtime, tmp_path):
    ip = allocator.get_or_assign("miner1", "net1")
    fresh = IpAllocator(runtime, data_root=str(tmp_path))
    assert fresh.get_or_assign("miner1", "net1") == ip
    assert fresh.get_or_assign("normal1", "net1") != ip


def test_skips_addresses_used_by_running_containers(allocator, runtime):
    runtime.networks["net1"].container_ips["stray"] = "10.5.0.10"
    assert allocator.get_or_assign("miner1", "net1") == "10.5.0.11"


def test_falls_back_to_secondary_range_then_exhausts(allocator, runtime, tmp_path):
    records = [
        {"nodeName": f"n{host}", "networkName": "net1", "ipAddress": f"10.5.0.{host}", "assignedAt": ""}
        for host in range(10, 255)
    ]
    (tmp_path / "net1").mkdir()
    (tmp_path / "net1" / MAPPINGS_FILE).write_text(json.dumps(records))

    assert allocator.get_or_assign("overflow", "net1") == "10.5.1.1"

    for host in range(2, 255):
        runtime.networks["net1"].container_ips[f"c{host}"] = f"10.5.1.{host}"
    with pytest.raises(ResourceExhausted) as excinfo:
        allocator.get_or_assign("one-too-many", "net1")
    assert excinfo.value.network == "net1"
    assert excinfo.value.node == "one-too-many"


def test_small_subnet_has_no_secondary_range():
    candidates = list(IpAllocator.candidates(ipaddress.ip_network("192.168.7.0/24")))
    assert candidates[0] == "192.168.7.10"
    assert candidates[-1] == "192.168.7.254"
    assert len(candidates) == 245


def test_unknown_subnet_uses_default(tmp_path):
    runtime = MagicMock()
    runtime.inspect_network.side_effect = ContainerRuntimeError("daemon down")
    allocator = IpAllocator(runtime, data_root=str(tmp_path), default_subnet="10.120.0.0/16")
    assert allocator.get_or_assign("miner1", "ghost") == "10.120.0.10"


def test_network_without_ipam_uses_default(tmp_path):
    runtime = MagicMock()
    runtime.inspect_network.return_value = NetworkInfo(id="x", name="bare", subnet=None)
    allocator = IpAllocator(runtime, data_root=str(tmp_path), default_subnet="10.120.0.0/16")
    assert allocator.get_or_assign("miner1", "bare") == "10.120.0.10"


def test_reserve_and_release(allocator):
    assert allocator.reserve("bootnode", "net1", "10.5.0.10") == "10.5.0.10"
    assert allocator.get_or_assign("miner1", "net1") == "10.5.0.11"
    with pytest.raises(ConfigurationError):
        allocator.reserve("normal1", "net1", "10.5.0.10")
    with pytest.raises(ConfigurationError):
        allocator.reserve("bootnode", "net1", "10.5.0.99")

    assert allocator.release("bootnode", "net1") == "10.5.0.10"
    assert allocator.release("bootnode", "net1") is None
    assert allocator.get_or_assign("normal1", "net1") == "10.5.0.10"


def test_corrupt_store_is_configuration_error(allocator, tmp_path):
    (tmp_path / "net1").mkdir()
    (tmp_path / "net1" / MAPPINGS_FILE).write_text("{not json")
    with pytest.raises(ConfigurationError):
        allocator.get_or_assign("miner1", "net1")


def test_check_reservations_records_nothing(allocator):
    allocator.get_or_assign("bootnode", "net1")
    allocator.check_reservations("net1", {"bootnode": "10.5.0.10", "miner1": "10.5.0.50"})
    assert allocator.mappings("net1") == {"bootnode": "10.5.0.10"}

    with pytest.raises(ConfigurationError):
        allocator.check_reservations("net1", {"miner1": "10.5.0.10"})
    with pytest.raises(ConfigurationError):
        allocator.check_reservations("net1", {"bootnode": "10.5.0.99"})
    with pytest.raises(ConfigurationError):
        allocator.check_reservations("net1", {"miner1": "not-an-ip"})
    assert allocator.mappings("net1") == {"bootnode": "10.5.0.10"}
