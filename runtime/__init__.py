"""Container runtime abstraction and its Docker CLI implementation."""

from .base import ContainerInfo, ContainerRuntime, ContainerSpec, NetworkInfo
from .docker_cli import DockerCliRuntime

__all__ = [
    "ContainerInfo",
    "ContainerRuntime",
    "ContainerSpec",
    "NetworkInfo",
    "DockerCliRuntime",
]
