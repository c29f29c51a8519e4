"""
Exceptions raised by the feed when a fetch goes wrong.

Only FeedError subclasses are subject to the configured error policy;
anything else is a bug and propagates.
"""

from typing import Optional


class FeedError(Exception):
    """Base class for fetch failures."""
    pass


class FetchError(FeedError):
    """Transport failed: connection, HTTP status or timeout."""
    pass


class ConnectionLost(FetchError):
    """Node WebSocket closed or could not be opened."""
    pass


class ParseError(FeedError):
    """Response did not have the expected shape."""
    pass


class RPCError(FeedError):
    """Node answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class BlockNotFound(RPCError):
    """Node returned null for a block it announced."""

    def __init__(self, block_number: int):
        super().__init__(f"Block {block_number} not found")
        self.block_number = block_number


class PriceFetchError(FeedError):
    """Price API request or parse failed."""
    pass
