"""
RPC client for EVM nodes over a single WebSocket connection.

Supports:
- Concurrent calls multiplexed by JSON-RPC request id
- eth_subscribe / eth_unsubscribe with per-subscription queues
- Connect with retries and exponential backoff (ReconnectPolicy)
- Per-call timeout
"""

import asyncio
from typing import Any, Optional

import aiohttp
import orjson
import structlog

from .config import ReconnectPolicy
from .errors import BlockNotFound, ConnectionLost, FetchError, ParseError, RPCError

logger = structlog.get_logger()

# Notifications buffered per unknown subscription id
EARLY_NOTIFICATION_LIMIT = 100


class Subscription:
    """
    Notifications for one eth_subscribe id.

    get() returns the next notification result, or raises ConnectionLost
    once the socket has gone away.
    """

    def __init__(self, subscription_id: str, kind: str):
        self.id = subscription_id
        self.kind = kind
        self._queue: asyncio.Queue = asyncio.Queue()

    def _push(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def get(self) -> Any:
        item = await self._queue.get()
        if isinstance(item, ConnectionLost):
            raise item
        return item


class RPCClient:
    """
    Async JSON-RPC client for EVM nodes over WebSocket.

    Features:
    - One aiohttp session and socket per client
    - Background reader routes responses by id and notifications by
      subscription id
    - Pending calls and subscriptions fail with ConnectionLost when the
      socket closes
    """

    def __init__(
        self,
        endpoint: str,
        timeout: Optional[float] = 10.0,
        reconnect: Optional[ReconnectPolicy] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.reconnect = reconnect or ReconnectPolicy()

        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._request_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._early: dict[str, list[Any]] = {}

    async def __aenter__(self):
        try:
            await self.connect()
        except ConnectionLost:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def connect(self) -> None:
        """Open the socket, retrying per the reconnect policy."""
        if self.connected:
            return

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        attempt = 0
        while True:
            try:
                self._ws = await self._session.ws_connect(self.endpoint, heartbeat=30.0)
                break
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                if self.reconnect.exhausted(attempt):
                    raise ConnectionLost(
                        f"Could not connect to {self.endpoint} after {attempt + 1} attempts: {e}"
                    ) from e
                wait_time = self.reconnect.delay(attempt)
                logger.warning(
                    "Node connection failed, retrying",
                    url=self.endpoint,
                    attempt=attempt + 1,
                    max_attempts=self.reconnect.max_attempts,
                    wait_time=wait_time,
                    error=str(e),
                )
                attempt += 1
                await asyncio.sleep(wait_time)

        self._reader = asyncio.create_task(self._read_loop())
        logger.info("Connected to node", url=self.endpoint)

    async def close(self) -> None:
        """Close the socket and, if we created it, the session."""
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._fail_all(ConnectionLost("Client closed"))
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _read_loop(self) -> None:
        """Route incoming frames until the socket closes."""
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Node socket error", url=self.endpoint, error=str(ws.exception()))
                    break
        finally:
            logger.info("Node socket closed", url=self.endpoint, close_code=ws.close_code)
            self._fail_all(ConnectionLost(f"Connection to {self.endpoint} closed"))

    def _dispatch(self, raw: Any) -> None:
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            logger.warning("Dropping undecodable frame", error=str(e))
            return
        if not isinstance(data, dict):
            logger.warning("Dropping unexpected frame", frame_type=type(data).__name__)
            return

        if data.get("method") == "eth_subscription":
            params = data.get("params")
            subscription_id = params.get("subscription") if isinstance(params, dict) else None
            if not isinstance(subscription_id, str):
                logger.warning("Dropping malformed notification", params_type=type(params).__name__)
                return
            sub = self._subscriptions.get(subscription_id)
            if sub is not None:
                sub._push(params.get("result"))
            else:
                # may arrive before subscribe() has registered the id
                early = self._early.setdefault(subscription_id, [])
                if len(early) < EARLY_NOTIFICATION_LIMIT:
                    early.append(params.get("result"))
            return

        request_id = data.get("id")
        if not isinstance(request_id, (int, str)) or isinstance(request_id, bool):
            logger.warning("Dropping frame without a usable id", id_type=type(request_id).__name__)
            return

        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return

        if data.get("error") is not None:
            error = data["error"]
            if isinstance(error, dict):
                future.set_exception(RPCError(f"RPC error: {error.get('message')}", code=error.get("code")))
            else:
                future.set_exception(RPCError(f"RPC error: {error}"))
        else:
            future.set_result(data.get("result"))

    def _fail_all(self, error: ConnectionLost) -> None:
        """Fail pending calls and end every subscription."""
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

        self._early.clear()
        subscriptions, self._subscriptions = self._subscriptions, {}
        for sub in subscriptions.values():
            sub._push(error)

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Make a single RPC call and wait for its response."""
        if not self.connected:
            raise ConnectionLost(f"Not connected to {self.endpoint}")

        request_id = self._next_request_id()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": request_id,
        }

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._ws.send_bytes(orjson.dumps(payload))
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError as e:
            raise FetchError(f"{method} timed out after {self.timeout}s") from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ConnectionLost(f"{method} failed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def get_block_number(self) -> int:
        """Get the latest block number."""
        result = await self._call("eth_blockNumber", [])
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise ParseError(f"Bad eth_blockNumber result: {result!r}") from e

    async def get_block(self, block_number: int, full_transactions: bool = True) -> dict:
        """Get block by number.

        Args:
            block_number: Block number to fetch
            full_transactions: If True, include full tx objects. If False, just hashes.
        """
        result = await self._call("eth_getBlockByNumber", [hex(block_number), full_transactions])
        if result is None:
            raise BlockNotFound(block_number)
        return result

    async def subscribe(self, kind: str = "newHeads") -> Subscription:
        """Start an eth_subscribe stream."""
        subscription_id = await self._call("eth_subscribe", [kind])
        if not isinstance(subscription_id, str):
            raise ParseError(f"Bad eth_subscribe result: {subscription_id!r}")

        sub = Subscription(subscription_id, kind)
        self._subscriptions[subscription_id] = sub
        for item in self._early.pop(subscription_id, []):
            sub._push(item)
        logger.info("Subscribed", kind=kind, subscription_id=subscription_id)
        return sub

    async def unsubscribe(self, sub: Subscription) -> bool:
        """Stop a subscription. Returns the node's answer."""
        self._subscriptions.pop(sub.id, None)
        self._early.pop(sub.id, None)
        result = await self._call("eth_unsubscribe", [sub.id])
        logger.info("Unsubscribed", kind=sub.kind, subscription_id=sub.id)
        return bool(result)
