from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
import httpx

from ..config import PricesConfig, WSOL_MINT
from ..db import Database
from ..models import Resolution


logger = logging.getLogger(__name__)

SOURCE_IDENTITY = "identity"
SOURCE_DEXSCREENER = "dexscreener"
SOURCE_JUPITER = "jupiter"
SOURCE_BIRDEYE = "birdeye"
SOURCE_COINGECKO = "coingecko"
SOURCE_LAST_TRADE = "last_trade"

_SOURCE_ERRORS = (
    httpx.HTTPError,
    aiosqlite.Error,
    ValueError,
    KeyError,
    TypeError,
    AttributeError,
)


def price_key(asset_id: str) -> str:
    return f"price:{asset_id}"


REFERENCE_USD_KEY = "price:reference:usd"


def _positive(value: Any) -> Optional[float]:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if v > 0 else None


class PriceResolver:
    """Ordered waterfall of price sources; prices are in the reference currency.

    Every public method returns a ``Resolution``; an unresolved price is never a number.
    """

    def __init__(
        self,
        cfg: PricesConfig,
        cache,
        db: Optional[Database] = None,
        reference_mint: str = WSOL_MINT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._cfg = cfg
        self._cache = cache
        self._db = db
        self._ref_mint = reference_mint
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "PriceResolver":
        self._open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _open(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._cfg.source_timeout_s, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(
        self, url: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None
    ) -> Any:
        resp = await self._open().get(url, params=params, headers=headers)
        resp.raise_for_status()
        return resp.json()

    # ---------------------- reference asset ----------------------

    async def reference_usd(self) -> Resolution:
        cached = await self._cache.get(REFERENCE_USD_KEY)
        if cached:
            return Resolution(value=float(cached["value"]), source=cached["source"])
        for source, fn in (
            (SOURCE_DEXSCREENER, self._dexscreener_usd),
            (SOURCE_JUPITER, self._jupiter_usd),
            (SOURCE_COINGECKO, self._coingecko_usd),
        ):
            try:
                value = await fn(self._ref_mint)
            except _SOURCE_ERRORS as e:
                logger.debug("Reference price source %s failed: %s", source, e)
                continue
            if value is not None:
                await self._cache.set(
                    REFERENCE_USD_KEY, {"value": value, "source": source}, ttl=self._cfg.cache_ttl_s
                )
                return Resolution(value=value, source=source)
        logger.warning("Reference USD price unresolved from every source")
        return Resolution()

    async def historical_reference_usd(self, date: str) -> Resolution:
        """USD price of the reference asset on a UTC calendar day (YYYY-MM-DD)."""
        if self._db is not None:
            stored = await self._db.get_reference_price(date)
            if stored is not None:
                return Resolution(value=stored, source="store")
        key = f"price:reference:usd:{date}"
        cached = await self._cache.get(key)
        if cached and cached.get("value") is not None:
            return Resolution(value=float(cached["value"]), source=cached["source"])
        value: Optional[float] = None
        if not cached:
            try:
                day = datetime.strptime(date, "%Y-%m-%d")
                data = await self._get_json(
                    f"{self._cfg.coingecko_url}/coins/{self._cfg.reference_coingecko_id}/history",
                    params={"date": day.strftime("%d-%m-%Y"), "localization": "false"},
                )
                value = _positive(
                    ((data.get("market_data") or {}).get("current_price") or {}).get("usd")
                )
            except _SOURCE_ERRORS as e:
                logger.debug("Historical reference price for %s failed: %s", date, e)
            if value is None:
                # remember the miss so later runs skip the network for this day
                await self._cache.set(
                    key, {"value": None, "source": SOURCE_COINGECKO}, ttl=self._cfg.history_miss_ttl_s
                )
        if value is None:
            return await self._nearest_reference_usd(date)
        await self._cache.set(
            key, {"value": value, "source": SOURCE_COINGECKO}, ttl=self._cfg.history_ttl_s
        )
        if self._db is not None:
            await self._db.upsert_reference_price(date, value, SOURCE_COINGECKO)
        return Resolution(value=value, source=SOURCE_COINGECKO)

    async def _nearest_reference_usd(self, date: str) -> Resolution:
        if self._db is not None:
            try:
                nearest = await self._db.get_closest_reference_price(date)
            except aiosqlite.Error as e:
                logger.debug("Closest stored reference price for %s failed: %s", date, e)
                nearest = None
            if nearest is not None:
                return Resolution(value=nearest, source="store_nearest")
        return await self.reference_usd()

    # ---------------------- sources ----------------------

    async def _best_pair(self, asset_id: str) -> Optional[Dict[str, Any]]:
        data = await self._get_json(f"{self._cfg.dexscreener_url}/tokens/{asset_id}")
        pairs = [
            p
            for p in (data.get("pairs") or [])
            if (p.get("baseToken") or {}).get("address") == asset_id
        ]
        if not pairs:
            return None
        return max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))

    async def _dexscreener_usd(self, asset_id: str) -> Optional[float]:
        pair = await self._best_pair(asset_id)
        return _positive(pair.get("priceUsd")) if pair else None

    async def _dexscreener(self, asset_id: str, ref_usd: Optional[float]) -> Optional[float]:
        pair = await self._best_pair(asset_id)
        if pair is None:
            return None
        if (pair.get("quoteToken") or {}).get("address") == self._ref_mint:
            return _positive(pair.get("priceNative"))
        usd = _positive(pair.get("priceUsd"))
        if usd is None or not ref_usd:
            return None
        return usd / ref_usd

    async def _jupiter_prices(self, asset_ids: List[str], vs_ref: bool) -> Dict[str, float]:
        params: Dict[str, Any] = {"ids": ",".join(asset_ids)}
        if vs_ref:
            params["vsToken"] = self._ref_mint
        data = await self._get_json(self._cfg.jupiter_url, params=params)
        out: Dict[str, float] = {}
        for asset_id, item in (data.get("data") or {}).items():
            if not item:
                continue
            value = _positive(item.get("price"))
            if value is not None:
                out[asset_id] = value
        return out

    async def _jupiter_usd(self, asset_id: str) -> Optional[float]:
        return (await self._jupiter_prices([asset_id], vs_ref=False)).get(asset_id)

    async def _jupiter(self, asset_id: str, ref_usd: Optional[float]) -> Optional[float]:
        return (await self._jupiter_prices([asset_id], vs_ref=True)).get(asset_id)

    async def _birdeye(self, asset_id: str, ref_usd: Optional[float]) -> Optional[float]:
        if not self._cfg.birdeye_api_key or not ref_usd:
            return None
        data = await self._get_json(
            f"{self._cfg.birdeye_url}/defi/price",
            params={"address": asset_id},
            headers={"X-API-KEY": self._cfg.birdeye_api_key, "x-chain": "solana"},
        )
        usd = _positive((data.get("data") or {}).get("value"))
        return usd / ref_usd if usd is not None else None

    async def _coingecko_usd(self, asset_id: str) -> Optional[float]:
        cg_id = self._cfg.reference_coingecko_id
        data = await self._get_json(
            f"{self._cfg.coingecko_url}/simple/price",
            params={"ids": cg_id, "vs_currencies": "usd"},
        )
        return _positive((data.get(cg_id) or {}).get("usd"))

    async def _last_trade(self, asset_id: str, ref_usd: Optional[float]) -> Optional[float]:
        if self._db is None:
            return None
        return await self._db.get_last_trade_price(asset_id)

    # ---------------------- waterfall ----------------------

    async def _waterfall(self, asset_id: str, ref_usd: Optional[float]) -> Resolution:
        for source, fn in (
            (SOURCE_DEXSCREENER, self._dexscreener),
            (SOURCE_JUPITER, self._jupiter),
            (SOURCE_BIRDEYE, self._birdeye),
            (SOURCE_LAST_TRADE, self._last_trade),
        ):
            try:
                value = await fn(asset_id, ref_usd)
            except _SOURCE_ERRORS as e:
                logger.debug("Price source %s failed for %s: %s", source, asset_id, e)
                continue
            if value is not None:
                return Resolution(value=value, source=source)
        return Resolution()

    async def _store(self, asset_id: str, res: Resolution) -> None:
        await self._cache.set(
            price_key(asset_id), {"value": res.value, "source": res.source}, ttl=self._cfg.cache_ttl_s
        )

    async def price(self, asset_id: str) -> Resolution:
        if asset_id == self._ref_mint:
            return Resolution(value=1.0, source=SOURCE_IDENTITY)
        cached = await self._cache.get(price_key(asset_id))
        if cached:
            return Resolution(value=float(cached["value"]), source=cached["source"])
        ref_usd = await self.reference_usd()
        res = await self._waterfall(asset_id, ref_usd.value)
        if res.resolved:
            await self._store(asset_id, res)
        return res

    async def price_many(self, asset_ids: Iterable[str]) -> Dict[str, Resolution]:
        """Batch variant: reference price fetched once, one bulk call per chunk, then per-asset fallback."""
        ids = list(dict.fromkeys(a for a in asset_ids if a))
        out: Dict[str, Resolution] = {}
        if self._ref_mint in ids:
            out[self._ref_mint] = Resolution(value=1.0, source=SOURCE_IDENTITY)
            ids.remove(self._ref_mint)
        if not ids:
            return out

        cached = await self._cache.mget([price_key(a) for a in ids])
        missing: List[str] = []
        for asset_id, data in zip(ids, cached):
            if data:
                out[asset_id] = Resolution(value=float(data["value"]), source=data["source"])
            else:
                missing.append(asset_id)
        if not missing:
            return out

        ref_usd = (await self.reference_usd()).value
        size = self._cfg.batch_size
        for i in range(0, len(missing), size):
            chunk = missing[i : i + size]
            try:
                bulk = await self._jupiter_prices(chunk, vs_ref=True)
            except _SOURCE_ERRORS as e:
                logger.warning("Bulk price lookup failed n=%d err=%s", len(chunk), e)
                bulk = {}
            for asset_id, value in bulk.items():
                if asset_id in chunk:
                    res = Resolution(value=value, source=SOURCE_JUPITER)
                    out[asset_id] = res
                    await self._store(asset_id, res)

        rest = [a for a in missing if a not in out]
        sem = asyncio.Semaphore(self._cfg.fallback_concurrency)

        async def _one(asset_id: str) -> None:
            async with sem:
                res = await self._waterfall(asset_id, ref_usd)
            out[asset_id] = res
            if res.resolved:
                await self._store(asset_id, res)

        await asyncio.gather(*(_one(a) for a in rest))
        unresolved = sum(1 for a in missing if not out[a].resolved)
        logger.info(
            "Prices resolved=%d unresolved=%d (cached=%d)",
            len(out) - unresolved,
            unresolved,
            len(ids) - len(missing),
        )
        return out
