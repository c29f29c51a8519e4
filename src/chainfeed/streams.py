"""
Observable sequences for the dashboard.

Both sources are async iterators: nothing happens until the consumer starts
iterating, and closing the iterator (aclose(), leaving an aclosing() block,
or cancelling the consuming task) tears everything down.

- get_block_source: newHeads notification -> full block with transactions
- get_price_source: interval tick -> spot price

Fetches run concurrently, so emissions follow completion order, not the
order of the triggering events.
"""

import asyncio
from contextlib import AsyncExitStack, aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import structlog
from pydantic import ValidationError

from .config import FeedConfig
from .errors import ConnectionLost, FeedError, ParseError
from .models import Block, BlockHeader
from .policy import guarded
from .prices import PriceFetcher
from .rpc import RPCClient

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")

_SOURCE_DONE = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


async def interval(period: float) -> AsyncIterator[int]:
    """
    Yield 0, 1, 2, ... one per `period` seconds, first after one period.

    Ticks sit on an absolute grid (start + n * period), so time spent by
    the consumer does not shift later ticks.
    """
    loop = asyncio.get_running_loop()
    start = loop.time()
    tick = 0
    while True:
        delay = start + (tick + 1) * period - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        yield tick
        tick += 1


async def merge_map(
    source: AsyncIterator[T],
    fn: Callable[[T], Awaitable[R]],
) -> AsyncIterator[R]:
    """
    Start fn(item) for every item of `source` as soon as it arrives and
    yield results in completion order.

    An exception from `source` or from fn is re-raised to the consumer.
    Closing the result cancels pending calls and closes `source`.
    """
    results: asyncio.Queue = asyncio.Queue()
    tasks: set[asyncio.Task] = set()
    in_flight = 0

    async def run(item: T) -> None:
        nonlocal in_flight
        try:
            value: Any = await fn(item)
        except Exception as e:
            value = _Failure(e)
        in_flight -= 1
        results.put_nowait(value)

    async def pump() -> None:
        nonlocal in_flight
        try:
            async for item in source:
                in_flight += 1
                task = asyncio.create_task(run(item))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except Exception as e:
            results.put_nowait(_Failure(e))
        else:
            results.put_nowait(_SOURCE_DONE)

    pump_task = asyncio.create_task(pump())
    source_done = False

    try:
        while not (source_done and in_flight == 0 and results.empty()):
            value = await results.get()
            if value is _SOURCE_DONE:
                source_done = True
                continue
            if isinstance(value, _Failure):
                raise value.error
            yield value
    finally:
        pump_task.cancel()
        for task in list(tasks):
            task.cancel()
        await asyncio.gather(pump_task, *tasks, return_exceptions=True)
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()


async def _headers(client: RPCClient, config: FeedConfig) -> AsyncIterator[BlockHeader]:
    """
    newHeads notifications, re-subscribing after the socket drops.

    client.connect() applies the reconnect policy and raises ConnectionLost
    once it is exhausted, which ends this sequence.
    """
    sub = None
    try:
        while True:
            await client.connect()
            try:
                sub = await client.subscribe("newHeads")
                while True:
                    raw = await sub.get()
                    try:
                        header = BlockHeader.model_validate(raw)
                    except ValidationError as e:
                        logger.error("Dropping malformed header", error=str(e))
                        continue
                    logger.debug("New block header", block_number=header.number)
                    yield header
            except ConnectionLost as e:
                sub = None
                logger.warning(
                    "Lost node subscription, reconnecting",
                    url=config.node_url,
                    wait_time=config.reconnect.base_delay,
                    error=str(e),
                )
                await asyncio.sleep(config.reconnect.base_delay)
    finally:
        if sub is not None and client.connected:
            try:
                await client.unsubscribe(sub)
            except FeedError as e:
                logger.warning("Failed to unsubscribe", subscription_id=sub.id, error=str(e))


async def _block_stream(config: FeedConfig, client: Optional[RPCClient]) -> AsyncIterator[Optional[Block]]:
    async with AsyncExitStack() as stack:
        if client is None:
            client = RPCClient(
                config.node_url,
                timeout=config.fetch_timeout,
                reconnect=config.reconnect,
            )
            stack.push_async_callback(client.close)

        async def fetch(number: int) -> Block:
            raw = await client.get_block(number, full_transactions=True)
            try:
                return Block.model_validate(raw)
            except ValidationError as e:
                raise ParseError(f"Unexpected block {number}: {e.errors()[0]['msg']}") from e

        async def fetch_block(header: BlockHeader) -> Optional[Block]:
            block = await guarded(
                lambda: fetch(header.number),
                policy=config.on_error,
                retry=config.retry,
                event="Failed to fetch block",
                block_number=header.number,
            )
            if block is not None:
                logger.debug("Fetched block", block_number=block.number, tx_count=block.tx_count)
            return block

        async with aclosing(merge_map(_headers(client, config), fetch_block)) as blocks:
            async for block in blocks:
                yield block


async def _price_stream(
    poll_interval: float,
    config: FeedConfig,
    fetcher: Optional[PriceFetcher],
) -> AsyncIterator[Optional[float]]:
    async with AsyncExitStack() as stack:
        if fetcher is None:
            fetcher = await stack.enter_async_context(PriceFetcher(config))

        async def fetch_price(tick: int) -> Optional[float]:
            price = await fetcher.fetch()
            logger.debug("Price tick", tick=tick, price=price)
            return price

        async with aclosing(merge_map(interval(poll_interval), fetch_price)) as prices:
            async for price in prices:
                yield price


def get_block_source(
    config: Optional[FeedConfig] = None,
    client: Optional[RPCClient] = None,
) -> AsyncIterator[Optional[Block]]:
    """
    Sequence of full blocks, one per newHeads notification.

    Each emitted block has the number of the header that triggered it.
    Under the default suppress policy a failed fetch yields None and the
    sequence carries on. The sequence cannot be restarted: call again for
    a new subscription.

    A client passed in is left open on close; otherwise the source owns
    its connection.
    """
    return _block_stream(config or FeedConfig(), client)


def get_price_source(
    poll_interval: float,
    config: Optional[FeedConfig] = None,
    fetcher: Optional[PriceFetcher] = None,
) -> AsyncIterator[Optional[float]]:
    """
    Sequence of spot prices, one fetch per `poll_interval` seconds.

    A fetch starts on every tick regardless of earlier fetches still in
    flight. Failed fetches yield None under the default suppress policy.
    """
    if poll_interval <= 0:
        raise ValueError(f"poll_interval must be positive, got {poll_interval}")
    return _price_stream(poll_interval, config or FeedConfig(), fetcher)
