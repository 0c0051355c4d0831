"""Minimal JSON-RPC 2.0 client for the Besu HTTP endpoint."""
from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Optional

import requests

import config
from errors import RpcError
from utils import normalize_address, parse_hex_quantity

logger = logging.getLogger(__name__)


class BesuRpcClient:
    """
    Thin wrapper over one node's JSON-RPC endpoint. Every failure, transport
    or protocol, surfaces as RpcError so polling loops can treat them alike.
    """

    def __init__(self, url: str, timeout: Optional[float] = None, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.timeout = timeout if timeout is not None else config.settings.rpc.timeout
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params or [], "id": next(self._ids)}
        try:
            response = self._session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as exc:
            raise RpcError(self.url, method, str(exc)) from exc
        except ValueError as exc:
            raise RpcError(self.url, method, f"invalid JSON response: {exc}") from exc

        if not isinstance(body, dict):
            raise RpcError(self.url, method, f"unexpected response {body!r}")
        if body.get("error"):
            error = body["error"]
            if isinstance(error, dict):
                raise RpcError(self.url, method, error.get("message", "unknown error"), code=error.get("code"))
            raise RpcError(self.url, method, str(error))
        if "result" not in body:
            raise RpcError(self.url, method, "response carries no result")
        return body["result"]

    def block_number(self) -> int:
        result = self.call("eth_blockNumber")
        try:
            return parse_hex_quantity(result)
        except ValueError as exc:
            raise RpcError(self.url, "eth_blockNumber", str(exc)) from exc

    def peer_count(self) -> int:
        result = self.call("net_peerCount")
        try:
            return parse_hex_quantity(result)
        except ValueError as exc:
            raise RpcError(self.url, "net_peerCount", str(exc)) from exc

    def node_info(self) -> Dict[str, Any]:
        result = self.call("admin_nodeInfo")
        if not isinstance(result, dict):
            raise RpcError(self.url, "admin_nodeInfo", f"unexpected result {result!r}")
        return result

    def enode(self) -> str:
        enode = self.node_info().get("enode")
        if not enode:
            raise RpcError(self.url, "admin_nodeInfo", "node info has no enode")
        return enode

    def clique_get_signers(self, block: str = "latest") -> List[str]:
        result = self.call("clique_getSigners", [block])
        if not isinstance(result, list):
            raise RpcError(self.url, "clique_getSigners", f"unexpected result {result!r}")
        try:
            return [normalize_address(address) for address in result]
        except ValueError as exc:
            raise RpcError(self.url, "clique_getSigners", str(exc)) from exc

    def clique_propose(self, address: str, authorize: bool = True) -> bool:
        return bool(self.call("clique_propose", [address, authorize]))

    def __repr__(self) -> str:
        return f"BesuRpcClient({self.url!r})"


def client_for(host: str, port: int, timeout: Optional[float] = None) -> BesuRpcClient:
    return BesuRpcClient(f"http://{host}:{port}", timeout=timeout)
