from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import config
from config import GenesisSettings
from errors import ConfigurationError
from utils import normalize_address, strip_hex_prefix, to_wei_hex

logger = logging.getLogger(__name__)

GENESIS_FILE = "genesis.json"

EXTRA_VANITY_BYTES = 32
EXTRA_SEAL_BYTES = 65
ADDRESS_BYTES = 20

FORK_BLOCKS = (
    "homesteadBlock",
    "eip150Block",
    "eip155Block",
    "eip158Block",
    "byzantiumBlock",
    "constantinopleBlock",
    "petersburgBlock",
    "istanbulBlock",
    "berlinBlock",
    "londonBlock",
)

# Well-known development accounts derived from the public test mnemonic.
# Prefunded for convenience only; disabled with genesis.seed_test_accounts.
TEST_ACCOUNTS = (
    "0xfe3b557e8fb62b89f4916b721be55ceb828dbd73",
    "0x627306090abab3a6e1400e9345bc60c78a8bef57",
    "0xf17f52151ebef6c7334fad080c5704d77216b732",
)

Balance = Union[int, str]


def encode_extra_data(validator_addresses: Sequence[str]) -> str:
    """32 zero bytes, the signer addresses back to back, then a 65-byte zero seal."""
    signers = "".join(strip_hex_prefix(normalize_address(address)) for address in validator_addresses)
    return "0x" + "00" * EXTRA_VANITY_BYTES + signers + "00" * EXTRA_SEAL_BYTES


def decode_extra_data(extra_data: str) -> List[str]:
    raw = bytes.fromhex(strip_hex_prefix(extra_data))
    body = raw[EXTRA_VANITY_BYTES:len(raw) - EXTRA_SEAL_BYTES]
    if len(raw) < EXTRA_VANITY_BYTES + EXTRA_SEAL_BYTES or len(body) % ADDRESS_BYTES:
        raise ValueError(f"Malformed clique extraData ({len(raw)} bytes)")
    return ["0x" + body[i:i + ADDRESS_BYTES].hex() for i in range(0, len(body), ADDRESS_BYTES)]


@dataclass
class GenesisDocument:
    chain_id: int
    block_period: int
    epoch_length: int
    create_empty_blocks: bool
    extra_data: str
    gas_limit: str
    difficulty: str
    alloc: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @property
    def validators(self) -> List[str]:
        return decode_extra_data(self.extra_data)

    def to_dict(self) -> Dict[str, Any]:
        chain_config: Dict[str, Any] = {"chainId": self.chain_id}
        for fork in FORK_BLOCKS:
            chain_config[fork] = 0
        chain_config["clique"] = {
            "blockperiodseconds": self.block_period,
            "epochlength": self.epoch_length,
            "createemptyblocks": self.create_empty_blocks,
        }
        return {
            "config": chain_config,
            "nonce": "0x0",
            "timestamp": "0x0",
            "extraData": self.extra_data,
            "gasLimit": self.gas_limit,
            "difficulty": self.difficulty,
            "mixHash": "0x" + "00" * 32,
            "coinbase": "0x" + "00" * ADDRESS_BYTES,
            "alloc": {address: dict(entry) for address, entry in self.alloc.items()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "GenesisDocument":
        try:
            chain_config = payload["config"]
            clique = chain_config["clique"]
            return cls(
                chain_id=int(chain_config["chainId"]),
                block_period=int(clique["blockperiodseconds"]),
                epoch_length=int(clique["epochlength"]),
                create_empty_blocks=bool(clique.get("createemptyblocks", True)),
                extra_data=payload["extraData"],
                gas_limit=payload["gasLimit"],
                difficulty=payload["difficulty"],
                alloc={address: dict(entry) for address, entry in payload.get("alloc", {}).items()},
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Unreadable clique genesis document: {exc}") from exc


class GenesisBuilder:
    """Builds Clique genesis documents. Pure: the same inputs give the same JSON."""

    def __init__(self, genesis_settings: Optional[GenesisSettings] = None, *, epoch_length: Optional[int] = None) -> None:
        self._settings = genesis_settings or config.settings.genesis
        self._epoch_length = epoch_length or config.settings.network.epoch_length

    def build(
        self,
        chain_id: int,
        period: int,
        validator_addresses: Sequence[str],
        allocations: Optional[Mapping[str, Balance]] = None,
    ) -> GenesisDocument:
        if not validator_addresses:
            raise ConfigurationError("Clique genesis needs at least one validator address")
        if chain_id <= 0:
            raise ConfigurationError(f"Invalid chain id {chain_id}")
        if period <= 0:
            raise ConfigurationError(f"Invalid block period {period}")

        validators = self._validators(validator_addresses)
        alloc = self._alloc(validators, allocations or {})
        document = GenesisDocument(
            chain_id=chain_id,
            block_period=period,
            epoch_length=self._epoch_length,
            create_empty_blocks=self._settings.create_empty_blocks,
            extra_data=encode_extra_data(validators),
            gas_limit=self._settings.gas_limit,
            difficulty=self._settings.difficulty,
            alloc=alloc,
        )
        logger.debug(
            "Built clique genesis chainId=%s period=%s validators=%s accounts=%s",
            chain_id,
            period,
            len(validators),
            len(alloc),
        )
        return document

    def _validators(self, validator_addresses: Iterable[str]) -> List[str]:
        validators: List[str] = []
        for address in validator_addresses:
            try:
                normalized = normalize_address(address)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
            if normalized in validators:
                raise ConfigurationError(f"Validator {normalized} listed twice")
            validators.append(normalized)
        if self._settings.sort_validators:
            validators.sort()
        return validators

    def _alloc(self, validators: Sequence[str], allocations: Mapping[str, Balance]) -> Dict[str, Dict[str, str]]:
        alloc: Dict[str, Dict[str, str]] = {}
        for address in validators:
            alloc[address] = {"balance": self._settings.validator_balance}
        if self._settings.seed_test_accounts:
            for address in TEST_ACCOUNTS:
                alloc.setdefault(address, {"balance": self._settings.test_account_balance})

        explicit: Dict[str, str] = {}
        for address, balance in allocations.items():
            try:
                normalized = normalize_address(address)
                wei = to_wei_hex(balance)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid allocation {address!r}: {exc}") from exc
            if normalized in explicit:
                raise ConfigurationError(f"Allocation for {normalized} given twice")
            explicit[normalized] = wei
        for address, wei in explicit.items():
            alloc[address] = {"balance": wei}
        return alloc

    def write(self, document: GenesisDocument, network_dir: str) -> str:
        os.makedirs(network_dir, exist_ok=True)
        path = os.path.join(network_dir, GENESIS_FILE)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(document.to_json())
        logger.info("Wrote genesis for chainId=%s to %s", document.chain_id, path)
        return path

    def load_or_build(
        self,
        network_dir: str,
        chain_id: int,
        period: int,
        validator_addresses: Sequence[str],
        allocations: Optional[Mapping[str, Balance]] = None,
    ) -> GenesisDocument:
        """
        Returns the network's persisted genesis, building and writing it only
        when none exists yet. A persisted genesis is never regenerated.
        """
        path = os.path.join(network_dir, GENESIS_FILE)
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as handle:
                try:
                    payload = json.load(handle)
                except json.JSONDecodeError as exc:
                    raise ConfigurationError(f"Corrupt genesis file {path}: {exc}") from exc
            document = GenesisDocument.from_dict(payload)
            if document.chain_id != chain_id:
                raise ConfigurationError(
                    f"Existing genesis at {path} has chainId {document.chain_id}, expected {chain_id}"
                )
            logger.info("Reusing existing genesis %s", path)
            return document
        document = self.build(chain_id, period, validator_addresses, allocations)
        self.write(document, network_dir)
        return document
