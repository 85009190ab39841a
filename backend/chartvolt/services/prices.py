"""
Price Source

Batched bid/ask lookup from the Redis price cache. One MGET per batch,
bounded by a timeout. Symbols without a usable quote are simply absent
from the result; a failed or slow fetch returns an empty map.

Key layout:
    quote:{SYMBOL}            -> {"bid": ..., "ask": ...}
    price:{exchange}:{SYMBOL} -> {"price": ...} (last trade, used as bid=ask)
"""

from dataclasses import dataclass
from typing import Iterable, Optional
import asyncio
import json
import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chartvolt.core.config import settings
from chartvolt.core.exceptions import TransientExternalError

logger = logging.getLogger(__name__)

EXCHANGES = ("binance", "bybit", "kraken")


@dataclass(frozen=True)
class Quote:
    bid: float
    ask: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2


class PriceSource:
    """Reads quotes for many symbols in one round trip"""

    def __init__(self, redis: Optional[Redis], timeout: Optional[float] = None):
        self.redis = redis
        self.timeout = timeout if timeout is not None else settings.PRICE_FETCH_TIMEOUT_SECONDS

    async def fetch_prices(self, symbols: Iterable[str]) -> dict[str, Quote]:
        wanted = sorted({s.upper() for s in symbols if s})
        if not wanted:
            return {}
        if self.redis is None:
            logger.warning(f"Price cache unavailable, no quotes for {len(wanted)} symbols")
            return {}

        keys = []
        for symbol in wanted:
            keys.append(f"quote:{symbol}")
            keys.extend(f"price:{exchange}:{symbol}" for exchange in EXCHANGES)

        try:
            values = await self._mget(keys)
        except TransientExternalError as e:
            logger.warning(f"No quotes for {len(wanted)} symbols: {e}")
            return {}

        stride = 1 + len(EXCHANGES)
        quotes: dict[str, Quote] = {}
        for index, symbol in enumerate(wanted):
            chunk = values[index * stride:(index + 1) * stride]
            quote = _parse_quote(chunk[0])
            if quote is None:
                for raw in chunk[1:]:
                    quote = _parse_last_price(raw)
                    if quote is not None:
                        break
            if quote is None:
                logger.debug(f"No quote cached for {symbol}")
                continue
            quotes[symbol] = quote

        return quotes

    async def _mget(self, keys: list[str]) -> list:
        try:
            return await asyncio.wait_for(self.redis.mget(keys), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransientExternalError(f"price fetch timed out after {self.timeout}s")
        except (RedisError, OSError) as e:
            raise TransientExternalError(f"price fetch failed: {e}")


def _load(raw) -> object:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        return None


def _positive(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _parse_quote(raw) -> Optional[Quote]:
    data = _load(raw)
    if not isinstance(data, dict):
        return None
    bid = _positive(data.get("bid"))
    ask = _positive(data.get("ask"))
    if bid is None or ask is None:
        return None
    return Quote(bid=bid, ask=ask)


def _parse_last_price(raw) -> Optional[Quote]:
    data = _load(raw)
    if isinstance(data, dict):
        price = _positive(data.get("price") or data.get("p"))
    else:
        price = _positive(data)
    if price is None:
        return None
    return Quote(bid=price, ask=price)
