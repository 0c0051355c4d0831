"""
Static IPv4 assignment for node containers.

Mappings are persisted per network in `<data_root>/<network>/ip-mappings.json`
as a list of `{nodeName, networkName, ipAddress, assignedAt}` records.

The store is rewritten as a whole on every change. A lock serializes callers
inside one process, but two processes allocating for the same network can
still race and hand out the same address; use one allocator per network.
"""
from __future__ import annotations

import datetime
import ipaddress
import json
import logging
import os
import threading
from typing import Dict, Iterable, List, Optional, Set

import config
from errors import ConfigurationError, ContainerRuntimeError, ResourceExhausted
from runtime.base import ContainerRuntime

logger = logging.getLogger(__name__)

MAPPINGS_FILE = "ip-mappings.json"

PRIMARY_FIRST_HOST = 10
LAST_HOST = 254
SECONDARY_FIRST_HOST = 1


class IpAllocator:
    def __init__(
        self,
        runtime: Optional[ContainerRuntime] = None,
        data_root: Optional[str] = None,
        default_subnet: Optional[str] = None,
    ) -> None:
        self._runtime = runtime
        self._data_root = data_root or config.settings.network.data_root
        self._default_subnet = default_subnet or config.settings.network.default_subnet
        self._lock = threading.Lock()

    def _store_path(self, network_name: str) -> str:
        return os.path.join(self._data_root, network_name, MAPPINGS_FILE)

    def _load(self, network_name: str) -> List[Dict[str, str]]:
        path = self._store_path(network_name)
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as handle:
            try:
                records = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"Corrupt IP mapping store {path}: {exc}", network=network_name) from exc
        if not isinstance(records, list):
            raise ConfigurationError(f"IP mapping store {path} is not a list", network=network_name)
        return records

    def _save(self, network_name: str, records: List[Dict[str, str]]) -> None:
        path = self._store_path(network_name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(records, handle, indent=2)
        os.replace(tmp_path, path)

    @staticmethod
    def _record(node_name: str, network_name: str, ip: str) -> Dict[str, str]:
        return {
            "nodeName": node_name,
            "networkName": network_name,
            "ipAddress": ip,
            "assignedAt": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

    def mappings(self, network_name: str) -> Dict[str, str]:
        """node name -> ip for every persisted mapping of the network."""
        with self._lock:
            return {record["nodeName"]: record["ipAddress"] for record in self._load(network_name)}

    def lookup(self, node_name: str, network_name: str) -> Optional[str]:
        return self.mappings(network_name).get(node_name)

    def _network_view(self, network_name: str):
        """Returns (subnet, addresses used by live containers)."""
        subnet_text = None
        in_use: Set[str] = set()
        if self._runtime is not None:
            try:
                info = self._runtime.inspect_network(network_name)
            except ContainerRuntimeError as exc:
                logger.warning("Could not inspect network %s: %s", network_name, exc)
                info = None
            if info is not None:
                subnet_text = info.subnet
                in_use.update(info.container_ips.values())
        if not subnet_text:
            logger.warning(
                "Subnet of network %s unknown; falling back to %s", network_name, self._default_subnet
            )
            subnet_text = self._default_subnet
        try:
            subnet = ipaddress.ip_network(subnet_text, strict=False)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid subnet {subnet_text!r}: {exc}", network=network_name) from exc
        return subnet, in_use

    @staticmethod
    def candidates(subnet: ipaddress.IPv4Network) -> Iterable[str]:
        """Primary range .10-.254 of the first /24, then .1-.254 of the next one."""
        base = int(subnet.network_address)
        for offset in range(PRIMARY_FIRST_HOST, LAST_HOST + 1):
            address = ipaddress.ip_address(base + offset)
            if address in subnet:
                yield str(address)
        for offset in range(SECONDARY_FIRST_HOST, LAST_HOST + 1):
            address = ipaddress.ip_address(base + 256 + offset)
            if address in subnet:
                yield str(address)

    def get_or_assign(self, node_name: str, network_name: str) -> str:
        with self._lock:
            records = self._load(network_name)
            for record in records:
                if record["nodeName"] == node_name:
                    return record["ipAddress"]

            subnet, in_use = self._network_view(network_name)
            taken = {record["ipAddress"] for record in records} | in_use
            for candidate in self.candidates(subnet):
                if candidate not in taken:
                    records.append(self._record(node_name, network_name, candidate))
                    self._save(network_name, records)
                    logger.info("Assigned %s to %s/%s", candidate, network_name, node_name)
                    return candidate

        raise ResourceExhausted(f"No free address left in {subnet}", network=network_name, node=node_name)

    @staticmethod
    def _normalize(ip: str, network_name: str, node_name: str) -> str:
        try:
            return str(ipaddress.ip_address(ip))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid IP {ip!r}", network=network_name, node=node_name) from exc

    @staticmethod
    def _conflict(records: List[Dict[str, str]], node_name: str, address: str, network_name: str) -> bool:
        """Raises when `address` cannot go to `node_name`; True when the exact mapping already exists."""
        for record in records:
            if record["nodeName"] == node_name:
                if record["ipAddress"] != address:
                    raise ConfigurationError(
                        f"Node already mapped to {record['ipAddress']}", network=network_name, node=node_name
                    )
                return True
            if record["ipAddress"] == address:
                raise ConfigurationError(
                    f"IP {address} already assigned to {record['nodeName']}", network=network_name, node=node_name
                )
        return False

    def check_reservations(self, network_name: str, wanted: Dict[str, str]) -> None:
        """
        Validates node -> ip reservations against the persisted mappings
        without recording anything.
        """
        with self._lock:
            records = self._load(network_name)
            for node_name, ip in wanted.items():
                self._conflict(records, node_name, self._normalize(ip, network_name, node_name), network_name)

    def reserve(self, node_name: str, network_name: str, ip: str) -> str:
        """Records an explicitly chosen address for a node."""
        address = self._normalize(ip, network_name, node_name)
        with self._lock:
            records = self._load(network_name)
            if self._conflict(records, node_name, address, network_name):
                return address
            records.append(self._record(node_name, network_name, address))
            self._save(network_name, records)
        logger.info("Reserved %s for %s/%s", address, network_name, node_name)
        return address

    def release(self, node_name: str, network_name: str) -> Optional[str]:
        with self._lock:
            records = self._load(network_name)
            kept = [record for record in records if record["nodeName"] != node_name]
            if len(kept) == len(records):
                return None
            released = next(record["ipAddress"] for record in records if record["nodeName"] == node_name)
            self._save(network_name, kept)
        logger.info("Released %s from %s/%s", released, network_name, node_name)
        return released
