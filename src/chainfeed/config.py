"""
Feed configuration.

Endpoints, poll interval, timeouts and the error/retry/reconnect policies
live here instead of module globals so tests can point at fakes.

Values are resolved in order: defaults, then .env / environment, then
explicit overrides passed to load_config().
"""

import os
from enum import Enum
from typing import Any, Optional

import dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Public mainnet node (WebSocket JSON-RPC)
DEFAULT_NODE_URL = "wss://mainnet.eth.aragon.network/ws"

# Coinbase spot price: https://developers.coinbase.com/api/v2#prices
DEFAULT_PRICE_URL = "https://api.coinbase.com/v2/prices/ETH-USD/spot"

ENV_PREFIX = "CHAINFEED_"


class ErrorPolicy(str, Enum):
    """What to do when a single fetch fails."""
    SUPPRESS = "suppress"
    PROPAGATE = "propagate"
    RETRY = "retry"


class RetryPolicy(BaseModel):
    """Backoff for ErrorPolicy.RETRY: base_delay * 2**attempt, capped."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** attempt, self.max_delay)


class ReconnectPolicy(BaseModel):
    """
    Reconnect behaviour for the node WebSocket.

    max_attempts=None retries forever. The counter resets after every
    successful reconnect.
    """
    model_config = ConfigDict(frozen=True)

    max_attempts: Optional[int] = Field(default=5, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** attempt, self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


class FeedConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_url: str = Field(default=DEFAULT_NODE_URL, description="Node WebSocket JSON-RPC endpoint")
    price_url: str = Field(default=DEFAULT_PRICE_URL, description="Spot price endpoint")
    poll_interval: float = Field(default=10.0, gt=0, description="Seconds between price polls")
    fetch_timeout: Optional[float] = Field(default=10.0, gt=0, description="Per-request timeout. None disables it")
    on_error: ErrorPolicy = ErrorPolicy.SUPPRESS
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    reconnect: ReconnectPolicy = Field(default_factory=ReconnectPolicy)

    @field_validator("node_url")
    @classmethod
    def _check_node_url(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("node_url must be a ws:// or wss:// URL")
        return value

    @field_validator("price_url")
    @classmethod
    def _check_price_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("price_url must be an http:// or https:// URL")
        return value


def _from_env(environ: dict[str, str]) -> dict[str, Any]:
    """Collect config values from CHAINFEED_* variables."""
    values: dict[str, Any] = {}

    simple = {
        "NODE_URL": "node_url",
        "PRICE_URL": "price_url",
        "POLL_INTERVAL": "poll_interval",
        "FETCH_TIMEOUT": "fetch_timeout",
        "ON_ERROR": "on_error",
    }
    for suffix, key in simple.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw:
            values[key] = raw

    # "none" / "off" disables the timeout
    if str(values.get("fetch_timeout", "")).lower() in ("none", "off"):
        values["fetch_timeout"] = None

    retry_max = environ.get(ENV_PREFIX + "RETRY_MAX")
    if retry_max:
        values["retry"] = {"max_retries": retry_max}

    reconnect_max = environ.get(ENV_PREFIX + "RECONNECT_MAX")
    if reconnect_max:
        attempts = None if reconnect_max.lower() in ("none", "forever") else reconnect_max
        values["reconnect"] = {"max_attempts": attempts}

    return values


def load_config(env_file: Optional[str] = None, **overrides: Any) -> FeedConfig:
    """
    Build a FeedConfig from .env, the environment and overrides.

    Overrides set to None are ignored so CLI flags can be passed straight
    through. Raises pydantic.ValidationError on bad values.
    """
    dotenv.load_dotenv(env_file)

    values = _from_env(dict(os.environ))
    values.update({k: v for k, v in overrides.items() if v is not None})

    return FeedConfig(**values)
