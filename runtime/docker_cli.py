"""ContainerRuntime backed by the `docker` command line."""
from __future__ import annotations

import json
import logging
import subprocess
from typing import Any, Callable, Dict, List, Optional

import config
from config import DockerSettings
from errors import ContainerRuntimeError

from .base import ContainerInfo, ContainerRuntime, ContainerSpec, NetworkInfo

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("no such", "not found")


def _is_not_found(stderr: str) -> bool:
    lowered = (stderr or "").lower()
    return any(marker in lowered for marker in _NOT_FOUND_MARKERS)


class DockerCliRuntime(ContainerRuntime):
    """
    Drives Docker through its CLI. Every call is synchronous and has no
    timeout of its own; callers bound the overall operation.
    """

    def __init__(
        self,
        docker_settings: Optional[DockerSettings] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._settings = docker_settings or config.settings.docker
        self._runner = runner

    def _run(self, *args: str, allow_missing: bool = False) -> Optional[str]:
        command = [self._settings.binary, *args]
        logger.debug("Running %s", " ".join(command))
        try:
            completed = self._runner(command, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise ContainerRuntimeError(
                f"Docker binary {self._settings.binary!r} not found", command=command, stderr=str(exc)
            ) from exc
        except OSError as exc:
            raise ContainerRuntimeError(f"Failed to run docker: {exc}", command=command, stderr=str(exc)) from exc
        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            if allow_missing and _is_not_found(stderr):
                return None
            raise ContainerRuntimeError(
                f"docker {args[0]} exited with {completed.returncode}: {stderr}",
                command=command,
                stderr=stderr,
            )
        return (completed.stdout or "").strip()

    def _inspect(self, *args: str) -> Optional[List[Dict[str, Any]]]:
        output = self._run(*args, allow_missing=True)
        if output is None:
            return None
        try:
            payload = json.loads(output or "[]")
        except json.JSONDecodeError as exc:
            raise ContainerRuntimeError(f"Unparseable docker inspect output: {exc}", stderr=output) from exc
        return payload or None

    def create_network(self, name: str, subnet: Optional[str] = None) -> str:
        existing = self.inspect_network(name)
        if existing is not None:
            logger.info("Docker network %s already exists (%s)", name, existing.subnet)
            return existing.id
        args = ["network", "create", "--driver", "bridge"]
        if subnet:
            args += ["--subnet", subnet]
        network_id = self._run(*args, name) or ""
        logger.info("Created docker network %s subnet=%s", name, subnet)
        return network_id

    def remove_network(self, name: str, remove_containers: bool = False) -> None:
        if remove_containers:
            ids = self._run("ps", "-aq", "--filter", f"network={name}", allow_missing=True) or ""
            for container_id in ids.split():
                self._run("rm", "-f", container_id, allow_missing=True)
        if self._run("network", "rm", name, allow_missing=True) is None:
            logger.debug("Docker network %s was already gone", name)
        else:
            logger.info("Removed docker network %s", name)

    def inspect_network(self, name: str) -> Optional[NetworkInfo]:
        payload = self._inspect("network", "inspect", name)
        if not payload:
            return None
        data = payload[0]
        subnet = None
        for entry in (data.get("IPAM") or {}).get("Config") or []:
            if entry.get("Subnet"):
                subnet = entry["Subnet"]
                break
        container_ips: Dict[str, str] = {}
        for container_id, entry in (data.get("Containers") or {}).items():
            address = (entry.get("IPv4Address") or "").split("/")[0]
            if address:
                container_ips[entry.get("Name") or container_id] = address
        return NetworkInfo(id=data.get("Id", ""), name=data.get("Name", name), subnet=subnet, container_ips=container_ips)

    def run_container(self, spec: ContainerSpec) -> str:
        args = ["run", "-d", "--name", spec.name, "--network", spec.network]
        if spec.static_ip:
            args += ["--ip", spec.static_ip]
        for host_path, container_path in spec.volumes.items():
            args += ["-v", f"{host_path}:{container_path}"]
        for host_port, container_port in spec.ports.items():
            args += ["-p", f"{host_port}:{container_port}"]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        args.append(spec.image)
        args += spec.command
        container_id = self._run(*args) or ""
        logger.info("Started container %s (%s) ip=%s", spec.name, container_id[:12], spec.static_ip)
        return container_id

    def stop_container(self, name: str) -> None:
        if self._run("stop", name, allow_missing=True) is None:
            logger.debug("Container %s not found when stopping", name)

    def remove_container(self, name: str, force: bool = True) -> None:
        args = ["rm"] + (["-f"] if force else []) + [name]
        if self._run(*args, allow_missing=True) is None:
            logger.debug("Container %s not found when removing", name)

    def get_container_info(self, name: str) -> Optional[ContainerInfo]:
        payload = self._inspect("inspect", "--type", "container", name)
        if not payload:
            return None
        return self._container_info(payload[0])

    def list_containers(self, labels: Optional[Dict[str, str]] = None) -> List[ContainerInfo]:
        args = ["ps", "-a", "--format", "{{.Names}}"]
        for key, value in (labels or {}).items():
            args += ["--filter", f"label={key}={value}"]
        names = (self._run(*args) or "").split()
        infos = []
        for name in names:
            info = self.get_container_info(name)
            if info is not None:
                infos.append(info)
        return infos

    @staticmethod
    def _container_info(data: Dict[str, Any]) -> ContainerInfo:
        settings_block = data.get("NetworkSettings") or {}
        ip_address = None
        for network in (settings_block.get("Networks") or {}).values():
            if network.get("IPAddress"):
                ip_address = network["IPAddress"]
                break
        ports: Dict[int, int] = {}
        for container_port, bindings in (settings_block.get("Ports") or {}).items():
            if not bindings:
                continue
            try:
                ports[int(container_port.split("/")[0])] = int(bindings[0]["HostPort"])
            except (KeyError, ValueError, IndexError):
                logger.debug("Skipping unparseable port binding %s=%r", container_port, bindings)
        return ContainerInfo(
            id=data.get("Id", ""),
            name=(data.get("Name") or "").lstrip("/"),
            state=(data.get("State") or {}).get("Status", "unknown"),
            ip_address=ip_address,
            ports=ports,
            labels=dict((data.get("Config") or {}).get("Labels") or {}),
        )
