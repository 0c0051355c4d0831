"""Dependency wiring helpers for the Besu testnet orchestrator."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import config
import rpc
from app.registry import NetworkRegistry
from clique.genesis import GenesisBuilder
from clique.membership import ConsensusMembershipManager
from errors import DependencyError
from ip_allocator import IpAllocator
from node_config import ConfigRenderer
from orchestrator import NodeLifecycleOrchestrator
from runtime.base import ContainerRuntime
from runtime.docker_cli import DockerCliRuntime


@dataclass
class ServiceContainer:
    """Simple dependency container to ease testing and wiring."""

    settings: config.Settings
    logger: logging.Logger
    runtime: ContainerRuntime
    registry: NetworkRegistry
    rpc_factory: Callable[[str, int], Any]
    orchestrator: NodeLifecycleOrchestrator
    overrides: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        *,
        settings: Optional[config.Settings] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "ServiceContainer":
        resolved_settings = settings or config.settings
        override_map = overrides or {}

        logger: logging.Logger = override_map.get("logger") or logging.getLogger("app.container")
        runtime = override_map.get("runtime") or DockerCliRuntime(resolved_settings.docker)
        if not isinstance(runtime, ContainerRuntime):
            raise DependencyError(f"runtime override must be a ContainerRuntime, got {type(runtime).__name__}")
        registry = override_map.get("registry") or NetworkRegistry()
        rpc_factory = override_map.get("rpc_factory") or (
            lambda host, port: rpc.client_for(host, port, timeout=resolved_settings.rpc.timeout)
        )
        if not callable(rpc_factory):
            raise DependencyError("rpc_factory override must be callable")
        sleep = override_map.get("sleep")

        orchestrator_kwargs: Dict[str, Any] = {
            "settings": resolved_settings,
            "rpc_factory": rpc_factory,
            "genesis_builder": override_map.get("genesis_builder")
            or GenesisBuilder(resolved_settings.genesis, epoch_length=resolved_settings.network.epoch_length),
            "config_renderer": override_map.get("config_renderer") or ConfigRenderer(resolved_settings.docker),
            "ip_allocator": override_map.get("ip_allocator")
            or IpAllocator(
                runtime,
                data_root=resolved_settings.network.data_root,
                default_subnet=resolved_settings.network.default_subnet,
            ),
        }
        if sleep is not None:
            orchestrator_kwargs["sleep"] = sleep
        orchestrator_kwargs["membership"] = override_map.get("membership") or ConsensusMembershipManager(
            resolved_settings.consensus, **({"sleep": sleep} if sleep is not None else {})
        )
        orchestrator = override_map.get("orchestrator") or NodeLifecycleOrchestrator(
            runtime, registry, **orchestrator_kwargs
        )

        logger.debug(
            "Wired orchestrator env=%s runtime=%s data_root=%s",
            resolved_settings.env,
            type(runtime).__name__,
            resolved_settings.network.data_root,
        )
        return cls(
            settings=resolved_settings,
            logger=logger,
            runtime=runtime,
            registry=registry,
            rpc_factory=rpc_factory,
            orchestrator=orchestrator,
            overrides=override_map,
        )

    def get(self, name: str) -> Any:
        if name in self.overrides:
            return self.overrides[name]
        component = getattr(self, name, None)
        if component is None:
            raise DependencyError(f"Unknown component requested: {name}")
        return component
