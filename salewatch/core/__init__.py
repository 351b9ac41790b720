from salewatch.core.bounded import bounded
from salewatch.core.exceptions import (
    CircuitBreakerOpen,
    IndexMiss,
    PartialReadAbort,
    ProviderMisconfigured,
    TransientFetchFailure,
    UpstreamBadResponse,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from salewatch.core.fixtures import fixture_dir, load_fixture
from salewatch.core.http_client import CircuitBreaker, HttpClient, RateLimiter
from salewatch.core.request_spec import JsonRpcSpec, RequestSpec

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "HttpClient",
    "IndexMiss",
    "JsonRpcSpec",
    "PartialReadAbort",
    "ProviderMisconfigured",
    "RateLimiter",
    "RequestSpec",
    "TransientFetchFailure",
    "UpstreamBadResponse",
    "UpstreamError",
    "UpstreamRateLimited",
    "UpstreamUnavailable",
    "bounded",
    "fixture_dir",
    "load_fixture",
]
