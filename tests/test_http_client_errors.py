import asyncio

import httpx
import pytest

from salewatch.core.bounded import bounded
from salewatch.core.exceptions import (
    CircuitBreakerOpen,
    TransientFetchFailure,
    UpstreamBadResponse,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from salewatch.core.http_client import CircuitBreaker, HttpClient, RateLimiter
from salewatch.core.request_spec import JsonRpcSpec, RequestSpec


def _make_spec() -> RequestSpec:
    return RequestSpec(
        method="GET",
        base_url="https://example.com",
        path="/test",
        query={"symbol": "EOSETH", "unused": None},
        headers={},
    )


async def _run_error_case(handler, exc_type, max_retries=0):
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as async_client:
        client = HttpClient("test", async_client=async_client, max_retries=max_retries, rps=1000)
        with pytest.raises(exc_type) as excinfo:
            await client.request(_make_spec())
    return excinfo.value


def test_rate_limited():
    exc = asyncio.run(_run_error_case(lambda request: httpx.Response(429), UpstreamRateLimited))
    assert exc.status_code == 429


def test_upstream_error():
    exc = asyncio.run(_run_error_case(lambda request: httpx.Response(503), UpstreamBadResponse))
    assert exc.status_code == 503


def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"code": -1121, "msg": "Invalid symbol."})

    asyncio.run(_run_error_case(handler, UpstreamBadResponse, max_retries=3))
    assert len(calls) == 1


def test_transport_error_becomes_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    exc = asyncio.run(_run_error_case(handler, UpstreamUnavailable))
    assert isinstance(exc.__cause__, httpx.ConnectError)
    assert isinstance(exc, TransientFetchFailure)


def test_invalid_json_is_bad_response():
    asyncio.run(_run_error_case(lambda request: httpx.Response(200, content=b"<html>"), UpstreamBadResponse))


def test_retry_after_then_success():
    responses = [httpx.Response(429, headers={"Retry-After": "0"}), httpx.Response(200, json={"ok": True})]

    async def scenario():
        transport = httpx.MockTransport(lambda request: responses.pop(0))
        async with httpx.AsyncClient(transport=transport) as async_client:
            client = HttpClient("test", async_client=async_client, max_retries=1, rps=1000)
            return await client.request(_make_spec())

    assert asyncio.run(scenario()) == {"ok": True}


def test_query_and_json_body_are_sent():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x1"})

    async def scenario():
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as async_client:
            client = HttpClient("test", async_client=async_client, rps=1000)
            await client.request(_make_spec())
            rpc = JsonRpcSpec(base_url="https://node.example", path="/", method="eth_blockNumber", params=[], request_id=1)
            return await client.request(rpc)

    assert asyncio.run(scenario())["result"] == "0x1"
    assert seen[0].url.params["symbol"] == "EOSETH"
    assert "unused" not in seen[0].url.params
    assert seen[1].method == "POST"
    assert b"eth_blockNumber" in seen[1].content


def test_circuit_breaker_opens_after_repeated_failures():
    async def scenario():
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as async_client:
            client = HttpClient("test", async_client=async_client, max_retries=0, rps=1000)
            for _ in range(5):
                with pytest.raises(UpstreamBadResponse):
                    await client.request(_make_spec())
            with pytest.raises(CircuitBreakerOpen):
                await client.request(_make_spec())

    asyncio.run(scenario())


def test_bounded_timeout_is_transient():
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(UpstreamUnavailable, match="eth_call timed out"):
        asyncio.run(bounded(slow(), 0.01, "eth_call"))


def test_circuit_breaker_half_opens_after_cooldown():
    now = [100.0]
    breaker = CircuitBreaker(threshold=2, cooldown_sec=10, clock=lambda: now[0])
    breaker.failed()
    assert not breaker.is_open
    breaker.failed()
    assert breaker.is_open
    with pytest.raises(CircuitBreakerOpen):
        breaker.check("test")

    now[0] = 110.0
    assert not breaker.is_open
    breaker.check("test")


def test_rate_limiter_reports_wait_when_empty():
    now = [0.0]
    limiter = RateLimiter(2.0, clock=lambda: now[0])
    assert limiter._take() == 0.0
    assert limiter._take() == 0.0
    assert limiter._take() == pytest.approx(0.5)

    now[0] = 0.5
    assert limiter._take() == 0.0
