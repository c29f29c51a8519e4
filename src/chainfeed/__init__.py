"""
Chainfeed: block and spot-price sequences for a dashboard.
"""

from .config import ErrorPolicy, FeedConfig, ReconnectPolicy, RetryPolicy, load_config
from .errors import (
    BlockNotFound,
    ConnectionLost,
    FeedError,
    FetchError,
    ParseError,
    PriceFetchError,
    RPCError,
)
from .models import Block, BlockHeader, PriceQuote, Transaction
from .prices import PriceFetcher, fetch_latest_price
from .rpc import RPCClient, Subscription
from .streams import get_block_source, get_price_source, interval, merge_map

__all__ = [
    "ErrorPolicy",
    "FeedConfig",
    "ReconnectPolicy",
    "RetryPolicy",
    "load_config",
    "BlockNotFound",
    "ConnectionLost",
    "FeedError",
    "FetchError",
    "ParseError",
    "PriceFetchError",
    "RPCError",
    "Block",
    "BlockHeader",
    "PriceQuote",
    "Transaction",
    "PriceFetcher",
    "fetch_latest_price",
    "RPCClient",
    "Subscription",
    "get_block_source",
    "get_price_source",
    "interval",
    "merge_map",
]
