"""Shared fixtures: in-process fake node and price API."""

import asyncio

import orjson
import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from chainfeed.config import FeedConfig, ReconnectPolicy, RetryPolicy


def make_raw_block(number: int, tx_count: int = 2) -> dict:
    """Block as a node returns it for eth_getBlockByNumber(n, true)."""
    return {
        "number": hex(number),
        "hash": f"0x{number:064x}",
        "parentHash": f"0x{number - 1:064x}",
        "timestamp": hex(1_700_000_000 + number * 12),
        "miner": "0x95222290dd7278aa3ddd389cc1e1d165cc4bafe5",
        "gasLimit": hex(30_000_000),
        "gasUsed": hex(12_345_678),
        "baseFeePerGas": hex(7_000_000_000),
        "size": "0x1a2b",
        "transactions": [
            {
                "hash": f"0x{number:032x}{i:032x}",
                "from": "0x1111111111111111111111111111111111111111",
                "to": "0x2222222222222222222222222222222222222222",
                "value": hex(10**18),
                "gas": hex(21_000),
                "gasPrice": hex(8_000_000_000),
                "nonce": hex(i),
                "input": "0x",
                "blockNumber": hex(number),
            }
            for i in range(tx_count)
        ],
    }


class FakeNode:
    """
    JSON-RPC node over WebSocket.

    Serves eth_subscribe/eth_unsubscribe/eth_getBlockByNumber/eth_blockNumber
    and lets tests push newHeads notifications or drop connections.
    """

    def __init__(self):
        self.blocks: dict[int, dict] = {}
        self.failing: set[int] = set()
        self.requests: list[tuple[str, list]] = []
        self.unsubscribed: list[str] = []
        self.connections = 0

        self._sockets: set[web.WebSocketResponse] = set()
        self._subscriptions: dict[web.WebSocketResponse, str] = {}
        self._sub_counter = 0
        self.subscribed = asyncio.Event()

        self.app = web.Application()
        self.app.router.add_get("/", self.handler)
        self.server = TestServer(self.app)

    @property
    def url(self) -> str:
        return str(self.server.make_url("/")).replace("http://", "ws://", 1)

    def add_block(self, number: int, **fields) -> dict:
        raw = make_raw_block(number)
        raw.update(fields)
        self.blocks[number] = raw
        return raw

    def methods(self, name: str) -> list[list]:
        return [params for method, params in self.requests if method == name]

    async def handler(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.connections += 1
        self._sockets.add(ws)

        try:
            async for msg in ws:
                if msg.type not in (WSMsgType.TEXT, WSMsgType.BINARY):
                    continue
                req = orjson.loads(msg.data)
                await ws.send_bytes(orjson.dumps(self._respond(ws, req)))
        finally:
            self._sockets.discard(ws)
            self._subscriptions.pop(ws, None)
        return ws

    def _respond(self, ws, req: dict) -> dict:
        method, params = req["method"], req.get("params", [])
        self.requests.append((method, params))
        reply = {"jsonrpc": "2.0", "id": req["id"]}

        if method == "eth_subscribe":
            self._sub_counter += 1
            sub_id = hex(0xabc000 + self._sub_counter)
            self._subscriptions[ws] = sub_id
            self.subscribed.set()
            reply["result"] = sub_id
        elif method == "eth_unsubscribe":
            self.unsubscribed.append(params[0])
            self._subscriptions.pop(ws, None)
            reply["result"] = True
        elif method == "eth_blockNumber":
            reply["result"] = hex(max(self.blocks, default=0))
        elif method == "eth_getBlockByNumber":
            number = int(params[0], 16)
            if number in self.failing:
                reply["error"] = {"code": -32000, "message": f"header not found for {number}"}
            else:
                reply["result"] = self.blocks.get(number)
        else:
            reply["error"] = {"code": -32601, "message": "the method does not exist"}
        return reply

    async def push_header(self, number: int, **fields) -> None:
        """Send a newHeads notification to every live subscription."""
        header = {"number": hex(number), "hash": f"0x{number:064x}"}
        header.update(fields)
        await self.push_raw_header(header)

    async def push_raw_header(self, header: dict) -> None:
        for ws, sub_id in list(self._subscriptions.items()):
            await ws.send_str(orjson.dumps({
                "jsonrpc": "2.0",
                "method": "eth_subscription",
                "params": {"subscription": sub_id, "result": header},
            }).decode())

    async def send_frame(self, frame: dict) -> None:
        """Send an arbitrary frame to every connected socket."""
        for ws in list(self._sockets):
            await ws.send_bytes(orjson.dumps(frame))

    async def wait_subscribed(self, timeout: float = 2.0) -> None:
        await asyncio.wait_for(self.subscribed.wait(), timeout)
        self.subscribed.clear()

    async def drop_connections(self) -> None:
        for ws in list(self._subscriptions):
            await ws.close()


class PriceAPI:
    """Spot price endpoint with a few misbehaving routes."""

    def __init__(self):
        self.hits = 0
        self.app = web.Application()
        self.app.router.add_get("/spot", self.spot)
        self.app.router.add_get("/missing", self.missing)
        self.app.router.add_get("/not-json", self.not_json)
        self.app.router.add_get("/not-numeric", self.not_numeric)
        self.app.router.add_get("/error", self.error)
        self.app.router.add_get("/slow", self.slow)
        self.app.router.add_get("/garbled-error", self.garbled_error)
        self.app.router.add_get("/numeric", self.numeric)
        self.server = TestServer(self.app)
        self.amount = "1234.56"

    def url(self, path: str = "/spot") -> str:
        return str(self.server.make_url(path))

    async def spot(self, request):
        self.hits += 1
        return web.json_response({"data": {"base": "ETH", "currency": "USD", "amount": self.amount}})

    async def missing(self, request):
        self.hits += 1
        return web.json_response({"data": {"base": "ETH", "currency": "USD"}})

    async def not_json(self, request):
        self.hits += 1
        return web.Response(text="<html>maintenance</html>")

    async def not_numeric(self, request):
        self.hits += 1
        return web.json_response({"data": {"amount": "n/a"}})

    async def error(self, request):
        self.hits += 1
        return web.json_response({"errors": [{"id": "internal_server_error"}]}, status=500)

    async def garbled_error(self, request):
        self.hits += 1
        return web.Response(status=503, body=b"\xff\xfe\xfa oops")

    async def numeric(self, request):
        self.hits += 1
        return web.json_response({"data": {"base": "ETH", "currency": "USD", "amount": 1234.56}})

    async def slow(self, request):
        self.hits += 1
        await asyncio.sleep(1.0)
        return web.json_response({"data": {"amount": "1.0"}})


@pytest.fixture
async def node():
    fake = FakeNode()
    await fake.server.start_server()
    yield fake
    await fake.server.close()


@pytest.fixture
async def price_api():
    fake = PriceAPI()
    await fake.server.start_server()
    yield fake
    await fake.server.close()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def fast_reconnect() -> ReconnectPolicy:
    return ReconnectPolicy(max_attempts=2, base_delay=0.01, max_delay=0.01)


@pytest.fixture
def config(node, price_api, fast_retry, fast_reconnect) -> FeedConfig:
    return FeedConfig(
        node_url=node.url,
        price_url=price_api.url(),
        poll_interval=0.02,
        fetch_timeout=1.0,
        retry=fast_retry,
        reconnect=fast_reconnect,
    )
