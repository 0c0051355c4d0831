"""Environment-aware configuration for the Besu testnet orchestrator."""
from __future__ import annotations

import copy
import ipaddress
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from errors import ConfigurationError


DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "networks")


@dataclass
class DockerSettings:
    image: str = "hyperledger/besu:latest"
    binary: str = "docker"
    container_data_dir: str = "/data"
    genesis_mount: str = "/genesis.json"
    container_rpc_port: int = 8545
    container_name_template: str = "{network}-{node}"

    def validate(self) -> None:
        if not self.image:
            raise ConfigurationError("Besu Docker image must be configured.")
        if not self.binary:
            raise ConfigurationError("Docker binary must be configured.")
        if not self.container_data_dir.startswith("/"):
            raise ConfigurationError("Container data dir must be an absolute path.")
        if not (0 < self.container_rpc_port <= 65535):
            raise ConfigurationError(f"Invalid container RPC port: {self.container_rpc_port}")
        if "{network}" not in self.container_name_template or "{node}" not in self.container_name_template:
            raise ConfigurationError("Container name template must reference {network} and {node}.")


@dataclass
class RpcSettings:
    host: str = "127.0.0.1"
    timeout: float = 5.0

    def validate(self) -> None:
        if not self.host:
            raise ConfigurationError("RPC host must be provided.")
        if self.timeout <= 0:
            raise ConfigurationError("RPC timeout must be positive.")


@dataclass
class ReadinessSettings:
    max_attempts: int = 30
    interval: float = 5.0

    def validate(self) -> None:
        if self.max_attempts <= 0:
            raise ConfigurationError(f"Readiness max_attempts must be positive (got {self.max_attempts}).")
        if self.interval < 0:
            raise ConfigurationError(f"Readiness interval cannot be negative (got {self.interval}).")


@dataclass
class ConsensusSettings:
    proposal_pause: float = 2.0
    settle_delay: float = 5.0
    admission_attempts: int = 1
    admission_interval: float = 5.0

    def validate(self) -> None:
        for name, value in asdict(self).items():
            if value < 0:
                raise ConfigurationError(f"Consensus setting '{name}' cannot be negative (got {value}).")
        if self.admission_attempts < 1:
            raise ConfigurationError("Consensus admission_attempts must be at least 1.")


@dataclass
class NetworkSettings:
    data_root: str = DATA_DIR
    # Used when the runtime cannot report a network's subnet.
    default_subnet: str = "10.120.0.0/16"
    default_chain_id: int = 1337
    block_period: int = 4
    epoch_length: int = 30000

    def validate(self) -> None:
        if not self.data_root:
            raise ConfigurationError("Network data_root must be configured.")
        try:
            subnet = ipaddress.ip_network(self.default_subnet)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid default subnet {self.default_subnet!r}: {exc}") from exc
        if subnet.version != 4:
            raise ConfigurationError("Default subnet must be IPv4.")
        if self.default_chain_id <= 0:
            raise ConfigurationError("Default chain id must be positive.")
        if self.block_period <= 0:
            raise ConfigurationError("Block period must be positive.")
        if self.epoch_length <= 0:
            raise ConfigurationError("Epoch length must be positive.")


@dataclass
class GenesisSettings:
    gas_limit: str = "0x1fffffffffffff"
    difficulty: str = "0x1"
    validator_balance: str = "0x200000000000000000000000000000000"
    create_empty_blocks: bool = True
    # Prefunds the well-known development accounts; safe to disable.
    seed_test_accounts: bool = True
    test_account_balance: str = "0x200000000000000000000000000000000"
    sort_validators: bool = False

    def validate(self) -> None:
        for name in ("gas_limit", "difficulty", "validator_balance", "test_account_balance"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.startswith("0x"):
                raise ConfigurationError(f"Genesis {name} must be a 0x-prefixed hex string.")
            try:
                int(value, 16)
            except ValueError as exc:
                raise ConfigurationError(f"Genesis {name} is not valid hex: {value!r}") from exc


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    datefmt: str = "%Y-%m-%d %H:%M:%S"
    third_party_level: str = "WARNING"

    def validate(self) -> None:
        if not self.level:
            raise ConfigurationError("Logging level must be provided.")
        if not self.format:
            raise ConfigurationError("Logging format must be provided.")


@dataclass
class Settings:
    env: str
    docker: DockerSettings
    rpc: RpcSettings
    readiness: ReadinessSettings
    consensus: ConsensusSettings
    network: NetworkSettings
    genesis: GenesisSettings
    logging: LoggingSettings

    def validate(self) -> None:
        self.docker.validate()
        self.rpc.validate()
        self.readiness.validate()
        self.consensus.validate()
        self.network.validate()
        self.genesis.validate()
        self.logging.validate()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "env": self.env,
            "docker": asdict(self.docker),
            "rpc": asdict(self.rpc),
            "readiness": asdict(self.readiness),
            "consensus": asdict(self.consensus),
            "network": asdict(self.network),
            "genesis": asdict(self.genesis),
            "logging": asdict(self.logging),
        }


BASE_DEFAULTS: Dict[str, Any] = {
    "docker": asdict(DockerSettings()),
    "rpc": asdict(RpcSettings()),
    "readiness": asdict(ReadinessSettings()),
    "consensus": asdict(ConsensusSettings()),
    "network": asdict(NetworkSettings()),
    "genesis": asdict(GenesisSettings()),
    "logging": asdict(LoggingSettings()),
}

ENVIRONMENT_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "development": {},
    "test": {
        "logging": {"level": "DEBUG"},
        "rpc": {"timeout": 1.0},
        "readiness": {"max_attempts": 3, "interval": 0.0},
        "consensus": {
            "proposal_pause": 0.0,
            "settle_delay": 0.0,
            "admission_attempts": 1,
            "admission_interval": 0.0,
        },
    },
    "production": {
        "logging": {"level": "WARNING"},
        "readiness": {"max_attempts": 60},
    },
}


def _as_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


_ENV_VALUE_CASTERS: Dict[str, Any] = {
    "BESU_IMAGE": ("docker", "image", str),
    "BESU_DOCKER_BINARY": ("docker", "binary", str),
    "BESU_CONTAINER_DATA_DIR": ("docker", "container_data_dir", str),
    "BESU_RPC_HOST": ("rpc", "host", str),
    "BESU_RPC_TIMEOUT": ("rpc", "timeout", float),
    "BESU_READY_ATTEMPTS": ("readiness", "max_attempts", int),
    "BESU_READY_INTERVAL": ("readiness", "interval", float),
    "BESU_PROPOSAL_PAUSE": ("consensus", "proposal_pause", float),
    "BESU_SETTLE_DELAY": ("consensus", "settle_delay", float),
    "BESU_ADMISSION_ATTEMPTS": ("consensus", "admission_attempts", int),
    "BESU_DATA_ROOT": ("network", "data_root", str),
    "BESU_DEFAULT_SUBNET": ("network", "default_subnet", str),
    "BESU_CHAIN_ID": ("network", "default_chain_id", int),
    "BESU_BLOCK_PERIOD": ("network", "block_period", int),
    "BESU_GAS_LIMIT": ("genesis", "gas_limit", str),
    "BESU_SEED_TEST_ACCOUNTS": ("genesis", "seed_test_accounts", _as_bool),
    "BESU_SORT_VALIDATORS": ("genesis", "sort_validators", _as_bool),
    "BESU_LOG_LEVEL": ("logging", "level", str),
    "BESU_LOG_FORMAT": ("logging", "format", str),
    "BESU_LOG_DATEFMT": ("logging", "datefmt", str),
    "BESU_LOG_THIRD_PARTY_LEVEL": ("logging", "third_party_level", str),
}


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _overrides_from_env() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_key, (section, key, caster) in _ENV_VALUE_CASTERS.items():
        raw = os.environ.get(env_key)
        if raw is None:
            continue
        try:
            parsed = caster(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Failed to coerce environment variable {env_key}: {exc}") from exc
        overrides.setdefault(section, {})[key] = parsed
    return overrides


def _settings_from_dict(env: str, payload: Dict[str, Any]) -> Settings:
    try:
        return Settings(
            env=env,
            docker=DockerSettings(**payload["docker"]),
            rpc=RpcSettings(**payload["rpc"]),
            readiness=ReadinessSettings(**payload["readiness"]),
            consensus=ConsensusSettings(**payload["consensus"]),
            network=NetworkSettings(**payload["network"]),
            genesis=GenesisSettings(**payload["genesis"]),
            logging=LoggingSettings(**payload["logging"]),
        )
    except TypeError as exc:
        raise ConfigurationError(f"Unknown configuration key: {exc}") from exc


def load_settings(env: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Settings:
    env_name = (env or os.environ.get("BESU_ENV", "development")).lower()
    base = copy.deepcopy(BASE_DEFAULTS)
    env_specific = ENVIRONMENT_OVERRIDES.get(env_name, {})
    base = _deep_merge(base, copy.deepcopy(env_specific))
    base = _deep_merge(base, _overrides_from_env())
    if overrides:
        base = _deep_merge(base, copy.deepcopy(overrides))
    settings_obj = _settings_from_dict(env_name, base)
    settings_obj.validate()
    return settings_obj


def _sync_exports(current: Settings) -> None:
    global LOGGING
    LOGGING = current.logging


def reload_settings(env: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Settings:
    global settings
    settings = load_settings(env=env or settings.env, overrides=overrides)
    _sync_exports(settings)
    return settings


settings: Settings = load_settings()
_sync_exports(settings)

__all__ = [
    "settings",
    "load_settings",
    "reload_settings",
    "Settings",
    "DockerSettings",
    "RpcSettings",
    "ReadinessSettings",
    "ConsensusSettings",
    "NetworkSettings",
    "GenesisSettings",
    "LoggingSettings",
    "LOGGING",
]
