"""
Price fetcher: reads the ETH/USD spot price from the price API.

Used by the price source on every tick and exposed on its own.
"""

import asyncio
from typing import Optional

import aiohttp
import orjson
import structlog
from pydantic import ValidationError

from .config import FeedConfig
from .errors import PriceFetchError
from .models import PriceQuote
from .policy import guarded

logger = structlog.get_logger()


class PriceFetcher:
    """
    Fetches the spot price with one GET per call.

    Features:
    - Optional shared aiohttp session (otherwise one is opened per context)
    - Request timeout from config.fetch_timeout
    - Error policy from config.on_error; by default failures log and
      return None
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or FeedConfig()
        self._session = session
        self._owns_session = False

    async def __aenter__(self):
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    @property
    def url(self) -> str:
        return self.config.price_url

    async def fetch_once(self) -> float:
        """One raw attempt. Raises PriceFetchError on any failure."""
        if self._session is None:
            raise RuntimeError("PriceFetcher has no session; use it as an async context manager")

        timeout = aiohttp.ClientTimeout(total=self.config.fetch_timeout)

        try:
            async with self._session.get(self.url, timeout=timeout) as resp:
                if resp.status != 200:
                    raise PriceFetchError(f"HTTP {resp.status}: {await resp.text(errors='replace')}")
                body = await resp.read()
        except asyncio.TimeoutError as e:
            raise PriceFetchError(f"Price request timed out after {self.config.fetch_timeout}s") from e
        except aiohttp.ClientError as e:
            raise PriceFetchError(f"Price request failed: {e}") from e

        try:
            quote = PriceQuote.model_validate(orjson.loads(body))
        except orjson.JSONDecodeError as e:
            raise PriceFetchError(f"Price response is not JSON: {e}") from e
        except ValidationError as e:
            raise PriceFetchError(f"Unexpected price response: {e.errors()[0]['msg']}") from e

        logger.debug("Fetched price", price=quote.price, currency=quote.data.currency)
        return quote.price

    async def fetch(self) -> Optional[float]:
        """One fetch under the configured error policy."""
        return await guarded(
            self.fetch_once,
            policy=self.config.on_error,
            retry=self.config.retry,
            event="Failed to fetch price",
            url=self.url,
        )


async def fetch_latest_price(
    config: Optional[FeedConfig] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> Optional[float]:
    """
    Fetch the current spot price.

    Returns None when the fetch fails (under the default suppress policy),
    so callers must treat None as an expected outcome.
    """
    async with PriceFetcher(config, session=session) as fetcher:
        return await fetcher.fetch()
