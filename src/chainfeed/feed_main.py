#!/usr/bin/env python3
"""
Feed watcher CLI.

Subscribes to the block and price sources and logs every emission, so the
feed can be checked without a UI.

Usage:
    python -m chainfeed.feed_main

    python -m chainfeed.feed_main --poll-interval 5 --on-error retry

    python -m chainfeed.feed_main --no-blocks --price-url https://api.coinbase.com/v2/prices/BTC-USD/spot

Settings not given on the command line come from CHAINFEED_* environment
variables (or a .env file), then from the built-in defaults.
"""

import argparse
import asyncio
import logging
import signal
from contextlib import aclosing

import structlog

from .config import ErrorPolicy, FeedConfig, load_config
from .errors import FeedError
from .rpc import RPCClient
from .streams import get_block_source, get_price_source


def configure_logging(level: str = "info") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Watch new Ethereum blocks and the ETH/USD spot price"
    )

    parser.add_argument(
        "--node-url",
        help="Node WebSocket JSON-RPC endpoint",
    )

    parser.add_argument(
        "--price-url",
        help="Spot price endpoint",
    )

    parser.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between price polls (default: 10)",
    )

    parser.add_argument(
        "--fetch-timeout",
        type=float,
        help="Per-request timeout in seconds (default: 10)",
    )

    parser.add_argument(
        "--on-error",
        choices=[p.value for p in ErrorPolicy],
        help="What to do when a fetch fails (default: suppress)",
    )

    parser.add_argument(
        "--stats-interval",
        type=float,
        default=30.0,
        help="Seconds between stats logging (default: 30)",
    )

    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )

    sources = parser.add_mutually_exclusive_group()
    sources.add_argument("--no-blocks", action="store_true", help="Only watch the price")
    sources.add_argument("--no-prices", action="store_true", help="Only watch blocks")

    return parser.parse_args(argv)


class FeedWatcher:
    """
    Runs the enabled sources until a shutdown signal.

    Features:
    - One task per source, cancelled on SIGINT/SIGTERM
    - Periodic stats: emissions and empty emissions per source
    """

    def __init__(
        self,
        config: FeedConfig,
        watch_blocks: bool = True,
        watch_prices: bool = True,
        stats_interval: float = 30.0,
    ):
        self.config = config
        self.watch_blocks = watch_blocks
        self.watch_prices = watch_prices
        self.stats_interval = stats_interval

        self.counts = {"blocks": 0, "blocks_empty": 0, "prices": 0, "prices_empty": 0}
        self._shutdown_event = asyncio.Event()

    async def run(self) -> None:
        self._setup_signal_handlers()

        tasks = []
        if self.watch_blocks:
            tasks.append(asyncio.create_task(self._watch_blocks()))
        if self.watch_prices:
            tasks.append(asyncio.create_task(self._watch_prices()))
        tasks.append(asyncio.create_task(self._stats_logger_loop()))

        logger.info(
            "Feed watcher starting",
            node_url=self.config.node_url if self.watch_blocks else None,
            price_url=self.config.price_url if self.watch_prices else None,
            poll_interval=self.config.poll_interval,
            on_error=self.config.on_error.value,
        )

        try:
            await self._shutdown_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Feed watcher stopped", **self.counts)

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.stop)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(signal.SIGINT, lambda s, f: self.stop())
            signal.signal(signal.SIGTERM, lambda s, f: self.stop())

    def stop(self) -> None:
        logger.info("Shutdown signal received")
        self._shutdown_event.set()

    async def _watch_blocks(self) -> None:
        try:
            async with RPCClient(
                self.config.node_url,
                timeout=self.config.fetch_timeout,
                reconnect=self.config.reconnect,
            ) as client:
                head = await client.get_block_number()
                logger.info("Node head", block_number=head)

                async with aclosing(get_block_source(self.config, client=client)) as blocks:
                    async for block in blocks:
                        if block is None:
                            self.counts["blocks_empty"] += 1
                            continue
                        self.counts["blocks"] += 1
                        logger.info(
                            "Block",
                            block_number=block.number,
                            hash=block.hash,
                            tx_count=block.tx_count,
                            gas_used=block.gas_used,
                        )
        except FeedError as e:
            logger.error("Block source stopped", error=str(e))
            self.stop()

    async def _watch_prices(self) -> None:
        try:
            async with aclosing(get_price_source(self.config.poll_interval, self.config)) as prices:
                async for price in prices:
                    if price is None:
                        self.counts["prices_empty"] += 1
                        continue
                    self.counts["prices"] += 1
                    logger.info("Price", price=price)
        except FeedError as e:
            logger.error("Price source stopped", error=str(e))
            self.stop()

    async def _stats_logger_loop(self) -> None:
        """Periodically log stats."""
        while True:
            await asyncio.sleep(self.stats_interval)
            logger.info("Stats", **self.counts)


async def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_level)

    config = load_config(
        node_url=args.node_url,
        price_url=args.price_url,
        poll_interval=args.poll_interval,
        fetch_timeout=args.fetch_timeout,
        on_error=args.on_error,
    )

    watcher = FeedWatcher(
        config,
        watch_blocks=not args.no_blocks,
        watch_prices=not args.no_prices,
        stats_interval=args.stats_interval,
    )
    await watcher.run()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
