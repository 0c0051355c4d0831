import unittest
from unittest.mock import MagicMock

import requests

from errors import RpcError
from rpc import BesuRpcClient, client_for


def _response(body=None, status_error=None, json_error=None):
    response = MagicMock()
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = body
    return response


class TestBesuRpcClient(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.client = BesuRpcClient("http://127.0.0.1:8545", timeout=2.0, session=self.session)

    def _reply(self, **kwargs):
        self.session.post.return_value = _response(**kwargs)

    def test_call_posts_jsonrpc_envelope(self):
        self._reply(body={"jsonrpc": "2.0", "id": 1, "result": "0x10"})
        self.assertEqual(self.client.block_number(), 16)
        url = self.session.post.call_args.args[0]
        kwargs = self.session.post.call_args.kwargs
        self.assertEqual(url, "http://127.0.0.1:8545")
        self.assertEqual(kwargs["json"]["method"], "eth_blockNumber")
        self.assertEqual(kwargs["json"]["jsonrpc"], "2.0")
        self.assertEqual(kwargs["timeout"], 2.0)

    def test_request_ids_increase(self):
        self._reply(body={"result": "0x1"})
        self.client.peer_count()
        first = self.session.post.call_args.kwargs["json"]["id"]
        self.client.peer_count()
        second = self.session.post.call_args.kwargs["json"]["id"]
        self.assertEqual(second, first + 1)

    def test_transport_error_becomes_rpc_error(self):
        self.session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with self.assertRaises(RpcError) as ctx:
            self.client.block_number()
        self.assertEqual(ctx.exception.method, "eth_blockNumber")
        self.assertEqual(ctx.exception.url, "http://127.0.0.1:8545")

    def test_http_error_becomes_rpc_error(self):
        self._reply(status_error=requests.exceptions.HTTPError("503"))
        with self.assertRaises(RpcError):
            self.client.block_number()

    def test_invalid_json_becomes_rpc_error(self):
        self._reply(json_error=ValueError("no json"))
        with self.assertRaises(RpcError):
            self.client.block_number()

    def test_jsonrpc_error_carries_code(self):
        self._reply(body={"error": {"code": -32601, "message": "Method not enabled"}})
        with self.assertRaises(RpcError) as ctx:
            self.client.clique_propose("0x" + "11" * 20, True)
        self.assertEqual(ctx.exception.code, -32601)
        self.assertIn("Method not enabled", str(ctx.exception))

    def test_missing_result_is_error(self):
        self._reply(body={"jsonrpc": "2.0", "id": 1})
        with self.assertRaises(RpcError):
            self.client.call("eth_chainId")

    def test_enode_from_node_info(self):
        enode = "enode://" + "ab" * 64 + "@0.0.0.0:30303"
        self._reply(body={"result": {"enode": enode, "id": "x"}})
        self.assertEqual(self.client.enode(), enode)

    def test_signers_are_normalized(self):
        self._reply(body={"result": ["0xFE3B557E8FB62B89F4916B721BE55CEB828DBD73"]})
        self.assertEqual(self.client.clique_get_signers(), ["0xfe3b557e8fb62b89f4916b721be55ceb828dbd73"])
        params = self.session.post.call_args.kwargs["json"]["params"]
        self.assertEqual(params, ["latest"])

    def test_propose_params(self):
        self._reply(body={"result": True})
        address = "0x" + "22" * 20
        self.assertTrue(self.client.clique_propose(address, False))
        self.assertEqual(self.session.post.call_args.kwargs["json"]["params"], [address, False])

    def test_bad_quantity_is_rpc_error(self):
        self._reply(body={"result": "latest"})
        with self.assertRaises(RpcError):
            self.client.block_number()


def test_client_for_builds_url():
    client = client_for("127.0.0.1", 8551, timeout=3.0)
    assert client.url == "http://127.0.0.1:8551"
    assert client.timeout == 3.0
