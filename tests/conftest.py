from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List, Optional

import httpx
import pytest

from wallet_pnl.cache import MemoryCache
from wallet_pnl.config import Settings, WSOL_MINT, USDC_MINT
from wallet_pnl.db import Database
from wallet_pnl.models import NormalizedEvent, Resolution


ACCOUNT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
OTHER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
POOL = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"
MINT_A = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
MINT_B = "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm"
LAMPORTS = 1_000_000_000


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        helius={"api_key": "test-key", "requests_per_second": 4},
        ingestion={
            "signature_page_size": 3,
            "enrich_batch_size": 2,
            "parallel_batches": 2,
            "max_signatures": 100,
            "max_retries": 2,
            "retry_base_delay_s": 0,
            "retry_max_delay_s": 0,
        },
        storage={"sqlite_path": str(tmp_path / "test.db")},
    )


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache(prefix="t:")


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "store.db"))
    await database.init_schema()
    yield database
    await database.close()


class FakePrices:
    """Price source stub returning fixed reference prices."""

    def __init__(self, prices: Optional[Dict[str, float]] = None) -> None:
        self.prices = prices or {}
        self.calls: List[List[str]] = []

    async def price_many(self, asset_ids):
        ids = list(asset_ids)
        self.calls.append(ids)
        return {
            a: Resolution(value=self.prices[a], source="fake") if a in self.prices else Resolution()
            for a in ids
        }


def event(
    id: str,
    ts: int,
    kind: str,
    units: float,
    ref: float,
    fee: float = 0.0,
    asset: str = MINT_A,
    symbol: str = "AAA",
    estimated: bool = False,
) -> NormalizedEvent:
    return NormalizedEvent(
        id=id,
        timestamp=ts,
        kind=kind,
        asset_id=asset,
        asset_symbol=symbol,
        asset_amount=units,
        ref_amount=ref,
        fee_ref_amount=fee,
        is_estimated=estimated,
    )


def swap_record(
    signature: str,
    timestamp: int,
    mint: str = MINT_A,
    units: float = 100.0,
    sol: float = 1.0,
    buy: bool = True,
    account: str = ACCOUNT,
    fee_lamports: int = 5000,
    symbol: str = "AAA",
    account_data: bool = True,
    tagged: bool = True,
) -> Dict[str, Any]:
    """Enriched swap record in the indexer's shape."""
    lamports = int(sol * LAMPORTS)
    token = {
        "fromUserAccount": POOL if buy else account,
        "toUserAccount": account if buy else POOL,
        "tokenAmount": units,
        "mint": mint,
        "tokenSymbol": symbol,
        "tokenStandard": "Fungible",
    }
    native = {
        "fromUserAccount": account if buy else POOL,
        "toUserAccount": POOL if buy else account,
        "amount": lamports,
    }
    record: Dict[str, Any] = {
        "signature": signature,
        "timestamp": timestamp,
        "type": "SWAP" if tagged else "UNKNOWN",
        "source": "JUPITER" if tagged else "UNKNOWN",
        "fee": fee_lamports,
        "feePayer": account,
        "nativeTransfers": [native],
        "tokenTransfers": [token],
        "accountData": [],
        "instructions": [],
    }
    if account_data:
        change = -lamports if buy else lamports
        record["accountData"] = [{"account": account, "nativeBalanceChange": change - fee_lamports}]
    return record


def now_ts() -> int:
    return int(time.time())


def signature_items(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"signature": r["signature"], "blockTime": r["timestamp"], "err": None} for r in records
    ]


class FakeUpstream:
    """httpx.MockTransport handler speaking the indexer's RPC and enrichment endpoints."""

    def __init__(
        self,
        signatures: Optional[List[Dict[str, Any]]] = None,
        records: Optional[Dict[str, Dict[str, Any]]] = None,
        assets: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> None:
        self.signatures = signatures or []
        self.records = records or {}
        self.assets = assets or {}
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None  # when set, signature pages wait on it

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]], **kw) -> "FakeUpstream":
        upstream = cls(**kw)
        upstream.load(records)
        return upstream

    def load(self, records: List[Dict[str, Any]]) -> None:
        ordered = sorted(records, key=lambda r: r["timestamp"], reverse=True)
        self.signatures = signature_items(ordered)
        self.records = {r["signature"]: r for r in records}

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)

    def _rpc(self, method: str, result: Any) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": method, "result": result})

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path.endswith("/transactions"):
            sigs = body["transactions"]
            self.calls.append(("transactions", sigs))
            return httpx.Response(200, json=[self.records.get(s) for s in sigs])

        method, params = body["method"], body["params"]
        self.calls.append((method, params))
        if method == "getSignaturesForAddress":
            if self.gate is not None:
                await self.gate.wait()
            opts = params[1]
            start = 0
            if opts.get("before"):
                names = [s["signature"] for s in self.signatures]
                start = names.index(opts["before"]) + 1
            return self._rpc(method, self.signatures[start : start + opts["limit"]])
        if method == "getAssetBatch":
            return self._rpc(method, [self.assets.get(i) for i in params["ids"]])
        return httpx.Response(404)


def pair(base: str, quote: str, native: float, usd: float, liquidity: float = 1000.0):
    return {
        "baseToken": {"address": base},
        "quoteToken": {"address": quote},
        "priceNative": str(native),
        "priceUsd": str(usd),
        "liquidity": {"usd": liquidity},
    }


class PriceFeeds:
    """Routes DexScreener, Jupiter and CoinGecko requests to in-memory tables."""

    def __init__(self) -> None:
        self.dex: Dict[str, List[Dict[str, Any]]] = {}
        self.jup_ref: Dict[str, float] = {}
        self.jup_usd: Dict[str, float] = {}
        self.cg_usd: float = 0.0
        self.history: Dict[str, float] = {}
        self.down: set = set()
        self.calls: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path
        self.calls.append(host)
        if host in self.down:
            return httpx.Response(500)
        if host == "api.dexscreener.com":
            return httpx.Response(200, json={"pairs": self.dex.get(path.rsplit("/", 1)[-1], [])})
        if host == "lite-api.jup.ag":
            ids = request.url.params["ids"].split(",")
            table = self.jup_ref if "vsToken" in request.url.params else self.jup_usd
            return httpx.Response(
                200, json={"data": {i: {"id": i, "price": str(table[i])} for i in ids if i in table}}
            )
        if host == "api.coingecko.com":
            if path.endswith("/simple/price"):
                return httpx.Response(200, json={"solana": {"usd": self.cg_usd}} if self.cg_usd else {})
            price = self.history.get(request.url.params["date"])
            return httpx.Response(200, json={"market_data": {"current_price": {"usd": price}}} if price else {})
        return httpx.Response(404)


@pytest.fixture
def feeds() -> PriceFeeds:
    f = PriceFeeds()
    f.dex[WSOL_MINT] = [pair(WSOL_MINT, USDC_MINT, 1.0, 100.0)]
    return f


def das_asset(asset_id: str, symbol: str, name: str = "", decimals: int = 6) -> Dict[str, Any]:
    return {
        "id": asset_id,
        "content": {"metadata": {"symbol": symbol, "name": name or symbol}},
        "token_info": {"symbol": symbol, "decimals": decimals},
    }


__all__ = [
    "ACCOUNT",
    "OTHER",
    "POOL",
    "MINT_A",
    "MINT_B",
    "LAMPORTS",
    "WSOL_MINT",
    "USDC_MINT",
    "FakePrices",
    "FakeUpstream",
    "PriceFeeds",
    "das_asset",
    "pair",
    "event",
    "signature_items",
    "swap_record",
    "now_ts",
]
