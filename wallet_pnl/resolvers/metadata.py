from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from ..cache import LRUCache
from ..config import MetadataConfig
from ..errors import UpstreamError
from ..ingestion.client import HeliusClient
from ..models import AssetMetadata


logger = logging.getLogger(__name__)

UNKNOWN_SYMBOL = "UNKNOWN"
UNKNOWN_NAME = "Unknown Token"


def metadata_key(asset_id: str) -> str:
    return f"token:{asset_id}:metadata"


def placeholder(asset_id: str) -> AssetMetadata:
    return AssetMetadata(
        asset_id=asset_id, symbol=UNKNOWN_SYMBOL, name=UNKNOWN_NAME, decimals=9, known=False
    )


def parse_asset(asset_id: str, raw: Optional[Dict[str, Any]]) -> AssetMetadata:
    if not raw:
        return placeholder(asset_id)
    content = raw.get("content") or {}
    meta = content.get("metadata") or {}
    token_info = raw.get("token_info") or {}
    symbol = (meta.get("symbol") or token_info.get("symbol") or "").strip()
    name = (meta.get("name") or "").strip()
    decimals = token_info.get("decimals")
    if not symbol:
        return placeholder(asset_id)
    return AssetMetadata(
        asset_id=asset_id,
        symbol=symbol,
        name=name or symbol,
        decimals=int(decimals) if decimals is not None else 9,
        known=True,
    )


class MetadataResolver:
    """Two tiers in front of the batch lookup: bounded in-process LRU, then the shared cache.

    Unknown assets are cached with a short ttl so they are retried on later runs.
    Upstream failures degrade to placeholders.
    """

    def __init__(self, client: HeliusClient, cache, cfg: MetadataConfig) -> None:
        self._client = client
        self._cache = cache
        self._cfg = cfg
        self._lru: LRUCache[AssetMetadata] = LRUCache(cfg.lru_size)

    def _ttl(self, meta: AssetMetadata) -> int:
        return self._cfg.known_ttl_s if meta.known else self._cfg.unknown_ttl_s

    async def _remember(self, meta: AssetMetadata) -> None:
        ttl = self._ttl(meta)
        self._lru.put(meta.asset_id, meta, ttl=ttl)
        await self._cache.set(
            metadata_key(meta.asset_id),
            {
                "asset_id": meta.asset_id,
                "symbol": meta.symbol,
                "name": meta.name,
                "decimals": meta.decimals,
                "known": meta.known,
            },
            ttl=ttl,
        )

    async def _lookup(self, asset_ids: List[str]) -> Dict[str, AssetMetadata]:
        out: Dict[str, AssetMetadata] = {}
        size = self._cfg.batch_size
        for i in range(0, len(asset_ids), size):
            chunk = asset_ids[i : i + size]
            try:
                raws = await self._client.get_asset_batch(chunk)
            except UpstreamError as e:
                logger.warning("Metadata batch lookup failed n=%d err=%s", len(chunk), e)
                raws = []
            by_id = {
                r.get("id"): r for r in raws if isinstance(r, dict) and r.get("id")
            }
            for asset_id in chunk:
                out[asset_id] = parse_asset(asset_id, by_id.get(asset_id))
        return out

    async def resolve_many(
        self, asset_ids: Iterable[str], bypass_cache: bool = False
    ) -> Dict[str, AssetMetadata]:
        ids = list(dict.fromkeys(a for a in asset_ids if a))
        result: Dict[str, AssetMetadata] = {}
        misses: List[str] = []

        if bypass_cache:
            misses = ids
        else:
            for asset_id in ids:
                hit = self._lru.get(asset_id)
                if hit is not None:
                    result[asset_id] = hit
                else:
                    misses.append(asset_id)
            if misses:
                cached = await self._cache.mget([metadata_key(a) for a in misses])
                still: List[str] = []
                for asset_id, data in zip(misses, cached):
                    if data:
                        meta = AssetMetadata(**data)
                        self._lru.put(asset_id, meta, ttl=self._ttl(meta))
                        result[asset_id] = meta
                    else:
                        still.append(asset_id)
                misses = still

        if misses:
            fetched = await self._lookup(misses)
            for meta in fetched.values():
                await self._remember(meta)
            result.update(fetched)
            unknown = sum(1 for m in fetched.values() if not m.known)
            logger.info("Metadata fetched=%d unknown=%d", len(fetched), unknown)
        return result

    async def resolve(self, asset_id: str) -> AssetMetadata:
        return (await self.resolve_many([asset_id]))[asset_id]

    async def retry_unknown(self, asset_ids: Iterable[str]) -> Dict[str, AssetMetadata]:
        """One cache-bypassing attempt for assets still unknown; returns the newly known ones."""
        ids = list(asset_ids)
        if not ids:
            return {}
        fresh = await self.resolve_many(ids, bypass_cache=True)
        recovered = {a: m for a, m in fresh.items() if m.known}
        if recovered:
            logger.info("Recovered metadata for %d/%d unknown assets", len(recovered), len(ids))
        return recovered
