from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _parse_quantity(value: Any) -> Any:
    if isinstance(value, str) and value.startswith(("0x", "0X")):
        return int(value, 16)
    return value


class EthRpcError(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None

    model_config = ConfigDict(extra="allow")


class EthRpcResponse(BaseModel):
    jsonrpc: str
    id: Union[int, str, None] = None
    result: Optional[Any] = None
    error: Optional[EthRpcError] = None

    model_config = ConfigDict(extra="allow")


class EthTransaction(BaseModel):
    hash: str
    to: Optional[str] = None
    value: int = 0
    gas_price: Optional[int] = Field(default=None, alias="gasPrice")
    block_number: Optional[int] = Field(default=None, alias="blockNumber")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("value", "gas_price", "block_number", mode="before")
    @classmethod
    def parse_quantities(cls, value: Any) -> Any:
        return _parse_quantity(value)


class EthBlock(BaseModel):
    number: int
    timestamp: int
    hash: Optional[str] = None
    transactions: List[Union[EthTransaction, str]] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("number", "timestamp", mode="before")
    @classmethod
    def parse_quantities(cls, value: Any) -> Any:
        return _parse_quantity(value)


__all__ = ["EthBlock", "EthRpcError", "EthRpcResponse", "EthTransaction"]
