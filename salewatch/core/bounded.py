from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from salewatch.core.exceptions import UpstreamUnavailable

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout: Optional[float], context: str) -> T:
    """Await an external call for at most ``timeout`` seconds.

    Expiry is reported as ``UpstreamUnavailable`` so it lands in the same
    failure class as a dropped connection.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise UpstreamUnavailable(f"{context} timed out after {timeout}s") from exc


__all__ = ["bounded"]
