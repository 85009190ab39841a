"""Tests for batched quote lookup from the Redis price cache."""

import asyncio
import json

import pytest

from chartvolt.services.prices import PriceSource, Quote

from factories import set_quote


class SlowRedis:
    async def mget(self, keys):
        await asyncio.sleep(5)
        return [None] * len(keys)


class BrokenRedis:
    async def mget(self, keys):
        raise ConnectionError("connection refused")


class TestFetchPrices:
    async def test_reads_bid_and_ask(self, redis, prices) -> None:
        await set_quote(redis, "EURUSD", bid=1.0841, ask=1.0843)

        quotes = await prices.fetch_prices(["eurusd"])

        assert quotes == {"EURUSD": Quote(bid=1.0841, ask=1.0843)}
        assert quotes["EURUSD"].mid == pytest.approx(1.0842)

    async def test_falls_back_to_exchange_last_price(self, redis, prices) -> None:
        await redis.set("price:bybit:SOLUSDT", json.dumps({"price": "142.5"}))
        await redis.set("price:kraken:XRPUSDT", "0.61")

        quotes = await prices.fetch_prices(["SOLUSDT", "XRPUSDT"])

        assert quotes["SOLUSDT"] == Quote(bid=142.5, ask=142.5)
        assert quotes["XRPUSDT"] == Quote(bid=0.61, ask=0.61)

    async def test_missing_and_malformed_symbols_are_absent(self, redis, prices) -> None:
        await set_quote(redis, "BTCUSDT", bid=64000, ask=64010)
        await redis.set("quote:ETHUSDT", "not json")
        await redis.set("quote:DOGEUSDT", json.dumps({"bid": 0, "ask": 0.1}))

        quotes = await prices.fetch_prices(["BTCUSDT", "ETHUSDT", "DOGEUSDT", "ADAUSDT"])

        assert set(quotes) == {"BTCUSDT"}

    async def test_no_symbols(self, prices) -> None:
        assert await prices.fetch_prices([]) == {}

    async def test_without_redis(self) -> None:
        assert await PriceSource(None, timeout=1).fetch_prices(["BTCUSDT"]) == {}

    async def test_timeout_returns_empty(self) -> None:
        assert await PriceSource(SlowRedis(), timeout=0.05).fetch_prices(["BTCUSDT"]) == {}

    async def test_connection_error_returns_empty(self) -> None:
        assert await PriceSource(BrokenRedis(), timeout=1).fetch_prices(["BTCUSDT"]) == {}
