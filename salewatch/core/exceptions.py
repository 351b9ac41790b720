from __future__ import annotations

from typing import Optional


class ProviderMisconfigured(RuntimeError):
    pass


class TransientFetchFailure(RuntimeError):
    """A network or RPC call failed; the cycle is skipped and retried on the next tick."""


class UpstreamError(TransientFetchFailure):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamRateLimited(UpstreamError):
    pass


class UpstreamBadResponse(UpstreamError):
    pass


class UpstreamUnavailable(UpstreamError):
    pass


class CircuitBreakerOpen(UpstreamError):
    pass


class PartialReadAbort(TransientFetchFailure):
    """A multi-step on-chain read failed part way; nothing from it is used."""


class IndexMiss(LookupError):
    pass
