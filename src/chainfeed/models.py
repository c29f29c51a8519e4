"""
Values emitted by the feed.

Design principles:
- Typed access to the fields a dashboard renders
- Everything else the node returns is kept as-is (extra fields allowed)
- Hex quantities decoded to int, timestamps to UTC datetime
"""

from datetime import datetime, timezone
from typing import Any, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator


def hex_to_int(value: Any) -> Any:
    """Decode a JSON-RPC quantity ("0x1b4") to int. Other values pass through."""
    if isinstance(value, str) and value.startswith(("0x", "0X")):
        return int(value, 16)
    return value


def hex_to_datetime(value: Any) -> Any:
    """Decode a unix timestamp quantity to an aware UTC datetime."""
    value = hex_to_int(value)
    if isinstance(value, int):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            # pydantic only turns ValueError into a ValidationError
            raise ValueError(f"timestamp {value} out of range") from e
    return value


class Transaction(BaseModel):
    """
    A transaction as returned inside a full block.

    from/to are Python keywords, so they map to from_address/to_address.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    hash: str
    from_address: str = Field(alias="from")
    to_address: Optional[str] = Field(default=None, alias="to", description="None for contract creation")
    value: int = 0
    gas: int = 0
    gas_price: Optional[int] = Field(default=None, alias="gasPrice")
    nonce: int = 0
    input: str = "0x"

    @field_validator("value", "gas", "gas_price", "nonce", mode="before")
    @classmethod
    def _decode_quantity(cls, value: Any) -> Any:
        return hex_to_int(value)

    @property
    def is_contract_creation(self) -> bool:
        return self.to_address is None


class BlockHeader(BaseModel):
    """Payload of a newHeads notification. Only the number is required."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    number: int
    hash: Optional[str] = None
    parent_hash: Optional[str] = Field(default=None, alias="parentHash")
    timestamp: Optional[datetime] = None

    @field_validator("number", mode="before")
    @classmethod
    def _decode_number(cls, value: Any) -> Any:
        return hex_to_int(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _decode_timestamp(cls, value: Any) -> Any:
        return hex_to_datetime(value)


class Block(BaseModel):
    """
    A block fetched with full transactions (eth_getBlockByNumber(n, true)).

    The exact shape is the node's contract; fields not listed here are
    still available via model_extra.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    number: int = Field(description="Block height")
    hash: str = Field(description="Block hash")
    parent_hash: str = Field(alias="parentHash")
    timestamp: datetime = Field(description="Block timestamp (UTC)")
    miner: Optional[str] = None

    gas_limit: int = Field(alias="gasLimit")
    gas_used: int = Field(alias="gasUsed")
    base_fee_per_gas: Optional[int] = Field(default=None, alias="baseFeePerGas", description="Absent before London")

    transactions: list[Transaction] = Field(default_factory=list)

    @field_validator("number", "gas_limit", "gas_used", "base_fee_per_gas", mode="before")
    @classmethod
    def _decode_quantity(cls, value: Any) -> Any:
        return hex_to_int(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _decode_timestamp(cls, value: Any) -> Any:
        return hex_to_datetime(value)

    @property
    def tx_count(self) -> int:
        return len(self.transactions)

    def to_json(self) -> bytes:
        """Serialize for the UI. Uses compact JSON and wire field names."""
        return orjson.dumps(self.model_dump(by_alias=True), default=str)


class PriceData(BaseModel):
    model_config = ConfigDict(extra="allow")

    amount: str
    base: Optional[str] = None
    currency: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _accept_number(cls, value: Any) -> Any:
        # some APIs send the amount as a JSON number
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("amount")
    @classmethod
    def _check_numeric(cls, value: str) -> str:
        float(value)  # ValueError -> ValidationError
        return value


class PriceQuote(BaseModel):
    """Spot price response envelope: {"data": {"amount": "1234.56", ...}}."""
    model_config = ConfigDict(extra="allow")

    data: PriceData

    @property
    def price(self) -> float:
        return float(self.data.amount)
