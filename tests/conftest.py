from __future__ import annotations

import inspect
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from chainrpc.client import Web3
from chainrpc.config import ClientConfig
from chainrpc.reader import ChainReader
from chainrpc.rpc import JsonRpcClient

NODE_URL = "http://node.test"


class RpcFault(Exception):
    """Raised by a mock handler to answer with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class MockNode:
    """
    In-process JSON-RPC node behind httpx.MockTransport.

    Handlers are registered per method, either as a fixed result or as a
    callable receiving the positional params (sync or async). Every request
    body is recorded; batch answers can be returned in reverse order.
    """

    def __init__(self) -> None:
        self.handlers: Dict[str, Any] = {}
        self.bodies: List[Any] = []
        self.calls: List[str] = []
        self.reverse_batches = False
        self.http_failures: List[int] = []

    def on(self, method: str, handler: Any) -> None:
        self.handlers[method] = handler

    def count(self, method: str) -> int:
        return sum(1 for m in self.calls if m == method)

    def params(self, method: str) -> List[List[Any]]:
        out: List[List[Any]] = []
        for body in self.bodies:
            for item in body if isinstance(body, list) else [body]:
                if item.get("method") == method:
                    out.append(item.get("params", []))
        return out

    async def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.bodies.append(body)
        if self.http_failures:
            return httpx.Response(self.http_failures.pop(0), text="upstream unavailable")
        if isinstance(body, list):
            answers = [await self._answer(item) for item in body]
            if self.reverse_batches:
                answers.reverse()
            return httpx.Response(200, json=answers)
        return httpx.Response(200, json=await self._answer(body))

    async def _answer(self, req: Dict[str, Any]) -> Dict[str, Any]:
        method = req["method"]
        self.calls.append(method)
        if method not in self.handlers:
            return _error(req["id"], -32601, f"the method {method} does not exist/is not available")
        handler = self.handlers[method]
        try:
            result = handler(*req.get("params", [])) if callable(handler) else handler
            if inspect.isawaitable(result):
                result = await result
        except RpcFault as e:
            return _error(req["id"], e.code, e.message, e.data)
        return {"jsonrpc": "2.0", "id": req["id"], "result": result}


def _error(req_id: Any, code: int, message: str, data: Any = None) -> Dict[str, Any]:
    err: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": "2.0", "id": req_id, "error": err}


def block_hash(number: int, fork: int = 0) -> str:
    return "0x%064x" % ((fork << 128) + number + 1)


def tx_hash(n: int) -> str:
    return "0x" + ("%02x" % n) * 32


class FakeChain:
    """
    Minimal chain model on top of MockNode: a canonical hash per height, a
    head, receipts by transaction hash, and nonce counters per account.
    """

    def __init__(self, node: MockNode, head: int = 0) -> None:
        self.node = node
        self.head = head
        self.fork: Dict[int, int] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.finalized: Optional[int] = None
        self.safe: Optional[int] = None
        self.reject_tags: bool = False
        self.latest_nonce: Dict[str, int] = {}
        self.pending_nonce: Dict[str, int] = {}

        node.on("eth_blockNumber", lambda: hex(self.head))
        node.on("eth_getBlockByNumber", self._block)
        node.on("eth_getTransactionReceipt", lambda h: self.receipts.get(h))
        node.on("eth_getTransactionCount", self._count)
        node.on("eth_chainId", "0x539")

    def hash_at(self, number: int) -> str:
        return block_hash(number, self.fork.get(number, 0))

    def reorg(self, number: int) -> None:
        self.fork[number] = self.fork.get(number, 0) + 1

    def include(self, txh: str, number: int, status: int = 1) -> None:
        self.receipts[txh] = {
            "transactionHash": txh,
            "blockNumber": hex(number),
            "blockHash": self.hash_at(number),
            "transactionIndex": "0x0",
            "status": hex(status),
            "logs": [],
        }

    def _block(self, tag: str, full: bool = False) -> Optional[Dict[str, Any]]:
        if tag in ("finalized", "safe"):
            if self.reject_tags:
                raise RpcFault(-32602, f"invalid block tag {tag}")
            n = self.finalized if tag == "finalized" else self.safe
            if n is None:
                return None
        elif tag in ("latest", "pending"):
            n = self.head
        elif tag == "earliest":
            n = 0
        else:
            n = int(tag, 16)
        if n > self.head:
            return None
        return {
            "number": hex(n),
            "hash": self.hash_at(n),
            "parentHash": self.hash_at(n - 1) if n else "0x" + "00" * 32,
            "timestamp": hex(1_700_000_000 + n * 12),
            "gasLimit": hex(30_000_000),
            "gasUsed": hex(15_000_000),
            "baseFeePerGas": hex(10**9),
            "transactions": [],
        }

    def _count(self, address: str, tag: str) -> str:
        key = address.lower()
        table = self.pending_nonce if tag == "pending" else self.latest_nonce
        return hex(table.get(key, self.latest_nonce.get(key, 0)))


@pytest.fixture
def node() -> MockNode:
    return MockNode()


@pytest.fixture
def chain(node: MockNode) -> FakeChain:
    return FakeChain(node)


@pytest.fixture
async def rpc(node: MockNode):
    client = JsonRpcClient(
        NODE_URL,
        max_retries=2,
        backoff_base_sec=0,
        backoff_max_sec=0,
        transport=httpx.MockTransport(node.handle),
    )
    yield client
    await client.aclose()


@pytest.fixture
def reader(rpc: JsonRpcClient) -> ChainReader:
    return ChainReader(rpc)


@pytest.fixture
async def make_web3(node: MockNode):
    created: List[Web3] = []

    def _make(**overrides: Any) -> Web3:
        values: Dict[str, Any] = {"url": NODE_URL, "backoff_base_sec": 0, "backoff_max_sec": 0}
        values.update(overrides)
        w3 = Web3(ClientConfig(**values), transport=httpx.MockTransport(node.handle))
        created.append(w3)
        return w3

    yield _make
    for w3 in created:
        await w3.aclose()


@pytest.fixture
def web3(make_web3: Callable[..., Web3]) -> Web3:
    return make_web3()
