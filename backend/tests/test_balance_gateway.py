import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from giftpool.core.balance_cache import BalanceCache
from giftpool.core.errors import UpstreamUnavailable
from giftpool.integrations.reloadly import FloatBalance, ReloadlyClient
from giftpool.services.float_balance import CachedFloatBalanceGateway


AUTH_URL = "https://auth.test/oauth/token"
BASE_URL = "https://giftcards.test"


def _client(handler, retries: int = 2) -> ReloadlyClient:
    return ReloadlyClient(
        client_id="id",
        client_secret="secret",
        base_url=BASE_URL,
        auth_url=AUTH_URL,
        audience=BASE_URL,
        timeout=1.0,
        retries=retries,
        backoff=0.0,
        transport=httpx.MockTransport(handler),
    )


class Upstream:
    """Scripted Reloadly: token endpoint plus a queue of balance answers."""

    def __init__(self, *balance_responses: httpx.Response) -> None:
        self.balance_responses = list(balance_responses)
        self.token_calls = 0
        self.balance_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == AUTH_URL:
            self.token_calls += 1
            body = json.loads(request.content)
            assert body["grant_type"] == "client_credentials"
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["Accept"] == "application/com.reloadly.giftcards-v1+json"
        self.balance_calls += 1
        response = self.balance_responses.pop(0) if len(self.balance_responses) > 1 else self.balance_responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.mark.anyio
async def test_get_balance_parses_payload():
    upstream = Upstream(httpx.Response(200, json={"balance": 123.456, "currencyCode": "EUR"}))
    balance = await _client(upstream).get_balance()
    assert balance.amount == Decimal("123.46")
    assert balance.currency_code == "EUR"


@pytest.mark.anyio
async def test_get_balance_reads_float_and_currency_fallbacks():
    upstream = Upstream(httpx.Response(200, json={"float": "42", "currency": "GBP"}))
    balance = await _client(upstream).get_balance()
    assert balance.amount == Decimal("42.00")
    assert balance.currency_code == "GBP"


@pytest.mark.anyio
async def test_currency_defaults_to_usd():
    upstream = Upstream(httpx.Response(200, json={"balance": 5}))
    balance = await _client(upstream).get_balance()
    assert balance.currency_code == "USD"


@pytest.mark.anyio
async def test_token_is_cached_between_calls():
    upstream = Upstream(httpx.Response(200, json={"balance": 10}))
    client = _client(upstream)
    await client.get_balance()
    await client.get_balance()
    assert upstream.token_calls == 1
    assert upstream.balance_calls == 2


@pytest.mark.anyio
async def test_retries_server_errors_then_succeeds():
    upstream = Upstream(
        httpx.Response(503),
        httpx.Response(502),
        httpx.Response(200, json={"balance": 77}),
    )
    balance = await _client(upstream, retries=2).get_balance()
    assert balance.amount == Decimal("77.00")
    assert upstream.balance_calls == 3


@pytest.mark.anyio
async def test_exhausted_retries_raise_upstream_unavailable():
    upstream = Upstream(httpx.Response(500))
    with pytest.raises(UpstreamUnavailable):
        await _client(upstream, retries=1).get_balance()
    assert upstream.balance_calls == 2


@pytest.mark.anyio
async def test_timeouts_are_failures():
    upstream = Upstream(httpx.ReadTimeout("too slow"))
    with pytest.raises(UpstreamUnavailable):
        await _client(upstream, retries=1).get_balance()


@pytest.mark.anyio
async def test_client_error_is_not_a_zero_balance():
    upstream = Upstream(httpx.Response(403, json={"message": "forbidden"}))
    with pytest.raises(UpstreamUnavailable):
        await _client(upstream).get_balance()
    assert upstream.balance_calls == 1


@pytest.mark.anyio
async def test_malformed_body_raises():
    upstream = Upstream(httpx.Response(200, json={"unexpected": True}))
    with pytest.raises(UpstreamUnavailable):
        await _client(upstream).get_balance()


@pytest.mark.anyio
async def test_missing_credentials_raise_without_calling_upstream():
    upstream = Upstream(httpx.Response(200, json={"balance": 1}))
    client = ReloadlyClient(
        client_id="",
        client_secret="",
        base_url=BASE_URL,
        auth_url=AUTH_URL,
        transport=httpx.MockTransport(upstream),
    )
    with pytest.raises(UpstreamUnavailable):
        await client.get_balance()
    assert upstream.token_calls == 0


class ScriptedSource:
    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls = 0

    async def get_balance(self) -> FloatBalance:
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _reading(amount: str, age_s: float = 0.0) -> FloatBalance:
    return FloatBalance(
        amount=Decimal(amount),
        currency_code="USD",
        fetched_at=datetime.now(timezone.utc) - timedelta(seconds=age_s),
    )


@pytest.mark.anyio
async def test_fresh_snapshot_is_served_from_cache():
    source = ScriptedSource(_reading("80.00"))
    gateway = CachedFloatBalanceGateway(source, BalanceCache(enabled=False), max_age_seconds=30)
    first = await gateway.get_balance()
    second = await gateway.get_balance()
    assert first.amount == second.amount == Decimal("80.00")
    assert source.calls == 1


@pytest.mark.anyio
async def test_stale_snapshot_is_refreshed():
    cache = BalanceCache(enabled=False)
    await cache.set_snapshot(_reading("80.00", age_s=31).to_snapshot())
    source = ScriptedSource(_reading("60.00"))
    gateway = CachedFloatBalanceGateway(source, cache, max_age_seconds=30)
    balance = await gateway.get_balance()
    assert balance.amount == Decimal("60.00")
    assert source.calls == 1


@pytest.mark.anyio
async def test_stale_snapshot_never_used_after_failed_refresh():
    cache = BalanceCache(enabled=False)
    await cache.set_snapshot(_reading("80.00", age_s=31).to_snapshot())
    source = ScriptedSource(UpstreamUnavailable())
    gateway = CachedFloatBalanceGateway(source, cache, max_age_seconds=30)
    with pytest.raises(UpstreamUnavailable):
        await gateway.get_balance()
    assert await cache.get_snapshot() is None


@pytest.mark.anyio
async def test_never_fetched_and_upstream_down():
    gateway = CachedFloatBalanceGateway(ScriptedSource(UpstreamUnavailable()), BalanceCache(enabled=False))
    with pytest.raises(UpstreamUnavailable):
        await gateway.get_balance()


@pytest.mark.anyio
async def test_refresh_bypasses_fresh_snapshot():
    source = ScriptedSource(_reading("80.00"), _reading("20.00"))
    gateway = CachedFloatBalanceGateway(source, BalanceCache(enabled=False), max_age_seconds=30)
    await gateway.get_balance()
    refreshed = await gateway.refresh()
    assert refreshed.amount == Decimal("20.00")
    assert (await gateway.get_balance()).amount == Decimal("20.00")


@pytest.mark.anyio
async def test_cache_uses_redis_when_available():
    cache = BalanceCache(enabled=True, allow_memory_fallback=False)
    mock_redis = AsyncMock()
    mock_redis.get = AsyncMock(return_value=json.dumps(_reading("55.00").to_snapshot()))
    mock_redis.setex = AsyncMock(return_value=True)
    cache._redis = mock_redis

    snapshot = await cache.get_snapshot()
    assert FloatBalance.from_snapshot(snapshot).amount == Decimal("55.00")

    ok = await cache.set_snapshot({"amount": "1.00"}, ttl=30)
    assert ok is True
    mock_redis.setex.assert_awaited_once()
    assert mock_redis.setex.await_args.args[1] == 30


@pytest.mark.anyio
async def test_cache_unreachable_redis_falls_back_to_memory():
    cache = BalanceCache(redis_dsn="redis://nonexistent:6379", enabled=True)
    assert await cache.set_snapshot({"amount": "3.00"}) is True
    assert await cache.get_snapshot() == {"amount": "3.00"}
    stats = await cache.get_stats()
    assert stats["redis_connected"] is False
    assert stats["connect_failures"] >= 1


@pytest.mark.anyio
async def test_cache_without_fallback_reports_miss():
    cache = BalanceCache(redis_dsn="redis://nonexistent:6379", enabled=True, allow_memory_fallback=False)
    assert await cache.set_snapshot({"amount": "3.00"}) is False
    assert await cache.get_snapshot() is None
