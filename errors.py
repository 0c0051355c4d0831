"""Central exception hierarchy for the Besu testnet orchestrator."""
from __future__ import annotations

from typing import Optional


class BesuTestnetError(Exception):
    """Base exception for all custom errors raised by the orchestrator.

    Carries the network and node the failure concerns so callers can report
    them without parsing the message.
    """

    def __init__(self, message: str, *, network: Optional[str] = None, node: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.network = network
        self.node = node

    def __str__(self) -> str:
        context = []
        if self.network:
            context.append(f"network={self.network}")
        if self.node:
            context.append(f"node={self.node}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConfigurationError(BesuTestnetError):
    """Raised when settings or a network definition fail validation."""


class ResourceExhausted(BesuTestnetError):
    """Raised when no free address is left in a network's subnet."""


class NodeNotReady(BesuTestnetError):
    """Raised when a node's RPC endpoint never answered within the polling budget."""

    def __init__(self, network: str, node: str, attempts: int) -> None:
        super().__init__(
            f"Node did not answer eth_blockNumber after {attempts} attempts",
            network=network,
            node=node,
        )
        self.attempts = attempts


class ContainerRuntimeError(BesuTestnetError):
    """Raised when the container runtime rejects a command. Keeps its output verbatim."""

    def __init__(
        self,
        message: str,
        *,
        command: Optional[list] = None,
        stderr: Optional[str] = None,
        network: Optional[str] = None,
        node: Optional[str] = None,
    ) -> None:
        super().__init__(message, network=network, node=node)
        self.command = command
        self.stderr = stderr


class RpcError(BesuTestnetError):
    """Raised for JSON-RPC transport failures and error responses."""

    def __init__(self, url: str, method: str, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(f"{method} via {url} failed: {message}")
        self.url = url
        self.method = method
        self.code = code


class ConsensusProposalError(BesuTestnetError):
    """Describes a failed clique vote. Collected and logged, never raised."""

    def __init__(self, message: str, *, proposer: Optional[str] = None, network: Optional[str] = None, node: Optional[str] = None) -> None:
        super().__init__(message, network=network, node=node)
        self.proposer = proposer


class NodeStateError(BesuTestnetError):
    """Raised on an illegal node lifecycle transition."""


class DependencyError(BesuTestnetError):
    """Raised when dependency wiring or injection fails."""
