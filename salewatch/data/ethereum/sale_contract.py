from __future__ import annotations

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector

TODAY_SIGNATURE = "today()"
DAILY_TOTALS_SIGNATURE = "dailyTotals(uint256)"

TODAY_SELECTOR = function_signature_to_4byte_selector(TODAY_SIGNATURE)
DAILY_TOTALS_SELECTOR = function_signature_to_4byte_selector(DAILY_TOTALS_SIGNATURE)


def encode_today_call() -> bytes:
    return TODAY_SELECTOR


def encode_daily_totals_call(day: int) -> bytes:
    return DAILY_TOTALS_SELECTOR + encode(["uint256"], [int(day)])


def decode_daily_totals_args(data: bytes) -> int:
    (day,) = decode(["uint256"], data[4:])
    return int(day)


def encode_uint(value: int) -> bytes:
    return encode(["uint256"], [int(value)])


def decode_uint(data: bytes) -> int:
    (value,) = decode(["uint256"], data)
    return int(value)


__all__ = [
    "DAILY_TOTALS_SELECTOR",
    "TODAY_SELECTOR",
    "decode_daily_totals_args",
    "decode_uint",
    "encode_daily_totals_call",
    "encode_today_call",
    "encode_uint",
]
