"""
Account key material for Besu nodes.

Each node gets a secp256k1 keypair. The private key doubles as the node's
P2P identity (its enode id is the uncompressed public key) and as the Clique
signer key, so the address derived from it is what goes into genesis.
"""
from __future__ import annotations

import ipaddress
import logging
import os
import re
import secrets
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1

from errors import ConfigurationError

logger = logging.getLogger(__name__)

KEY_FILE = "key"
ADDRESS_FILE = "address"
PUBLIC_KEY_FILE = "publicKey"
ENODE_FILE = "enode"

_PRIVATE_KEY_RE = re.compile(r"^[0-9a-f]{64}$")
_PUBLIC_KEY_RE = re.compile(r"^[0-9a-f]{128}$")


def keccak256(data: bytes) -> bytes:
    digest = keccak.new(digest_bits=256)
    digest.update(data)
    return digest.digest()


@dataclass(frozen=True)
class Keypair:
    private_key: str  # 64 hex chars, no prefix
    public_key: str  # 128 hex chars (x || y), no 04 prefix
    address: str  # lowercase, 0x-prefixed

    @property
    def checksum_address(self) -> str:
        return to_checksum_address(self.address)

    def __repr__(self) -> str:
        return f"Keypair(address={self.address!r})"


def _normalize_private_key(private_key: str) -> str:
    value = private_key.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    if not _PRIVATE_KEY_RE.match(value):
        raise ConfigurationError("Private key must be 32 bytes of hex")
    scalar = int(value, 16)
    if not (0 < scalar < secp256k1.N):
        raise ConfigurationError("Private key is outside the secp256k1 group order")
    return value


def from_private_key(private_key: str) -> Keypair:
    """Derives the public key and address for a hex private key."""
    key_hex = _normalize_private_key(private_key)
    x, y = secp256k1.privtopub(bytes.fromhex(key_hex))
    public = x.to_bytes(32, "big") + y.to_bytes(32, "big")
    address = "0x" + keccak256(public)[-20:].hex()
    return Keypair(private_key=key_hex, public_key=public.hex(), address=address)


def generate() -> Keypair:
    while True:
        candidate = secrets.token_bytes(32)
        if 0 < int.from_bytes(candidate, "big") < secp256k1.N:
            return from_private_key(candidate.hex())


def to_checksum_address(address: str) -> str:
    """EIP-55 mixed-case rendering of an address."""
    plain = address.lower()
    if plain.startswith("0x"):
        plain = plain[2:]
    if len(plain) != 40:
        raise ValueError(f"Invalid Ethereum address: {address!r}")
    digest = keccak256(plain.encode("ascii")).hex()
    return "0x" + "".join(
        char.upper() if char.isalpha() and int(digest[index], 16) >= 8 else char
        for index, char in enumerate(plain)
    )


def write_keypair(keypair: Keypair, node_dir: str) -> None:
    """Writes the key, address and publicKey artifacts into a node directory."""
    os.makedirs(node_dir, exist_ok=True)
    artifacts = {
        KEY_FILE: keypair.private_key,
        ADDRESS_FILE: keypair.address[2:],
        PUBLIC_KEY_FILE: keypair.public_key,
    }
    for filename, content in artifacts.items():
        with open(os.path.join(node_dir, filename), "w", encoding="utf-8") as handle:
            handle.write(content)


def load_or_create(node_dir: str) -> Keypair:
    """
    Returns the keypair stored in `node_dir`, generating one on first use.

    An existing `key` file always wins: the address and publicKey artifacts are
    re-derived from it and rewritten, so a node keeps its identity (and its
    place in genesis) across restarts.
    """
    key_path = os.path.join(node_dir, KEY_FILE)
    if os.path.exists(key_path):
        with open(key_path, "r", encoding="utf-8") as handle:
            keypair = from_private_key(handle.read())
        logger.debug("Reusing key material in %s (%s)", node_dir, keypair.address)
    else:
        keypair = generate()
        logger.info("Generated key material in %s (%s)", node_dir, keypair.address)
    write_keypair(keypair, node_dir)
    return keypair


@dataclass(frozen=True)
class Enode:
    node_id: str
    host: str
    port: int
    query: str = ""

    def __str__(self) -> str:
        url = f"enode://{self.node_id}@{self.host}:{self.port}"
        return f"{url}?{self.query}" if self.query else url

    @property
    def has_wildcard_host(self) -> bool:
        try:
            return ipaddress.ip_address(self.host).is_unspecified
        except ValueError:
            return False

    def with_host(self, host: str) -> "Enode":
        return Enode(node_id=self.node_id, host=host, port=self.port, query=self.query)


def parse_enode(url: str) -> Enode:
    parts = urlsplit(url.strip())
    if parts.scheme != "enode" or not parts.username or parts.hostname is None:
        raise ValueError(f"Invalid enode URL: {url!r}")
    node_id = parts.username.lower()
    if not _PUBLIC_KEY_RE.match(node_id):
        raise ValueError(f"Invalid enode node id in {url!r}")
    try:
        port = parts.port
    except ValueError as exc:
        raise ValueError(f"Invalid enode port in {url!r}") from exc
    if port is None:
        raise ValueError(f"Enode URL has no port: {url!r}")
    return Enode(node_id=node_id, host=parts.hostname, port=port, query=parts.query)


def format_enode(public_key: str, host: str, port: int) -> str:
    return str(Enode(node_id=public_key.lower(), host=host, port=port))


def advertised_enode(url: str, container_ip: Optional[str]) -> str:
    """
    Replaces a wildcard listen host (0.0.0.0 or ::) with the container's
    address so peers on the Docker network can dial it.
    """
    enode = parse_enode(url)
    if enode.has_wildcard_host and container_ip:
        logger.debug("Rewriting wildcard enode host %s to %s", enode.host, container_ip)
        return str(enode.with_host(container_ip))
    return str(enode)


def write_enode(enode: str, node_dir: str) -> None:
    with open(os.path.join(node_dir, ENODE_FILE), "w", encoding="utf-8") as handle:
        handle.write(enode)
