from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import IngestionConfig
from ..coordinator import CancelToken
from ..errors import TooManyTransactionsError
from .client import HeliusClient


logger = logging.getLogger(__name__)

FoundCallback = Callable[[int], Awaitable[None]]
FetchedCallback = Callable[[int, int], Awaitable[None]]


@dataclass(slots=True)
class FetchResult:
    signatures: List[str]  # newest first
    records: List[Dict[str, Any]]
    newest_signature: Optional[str]
    failed_skipped: int = 0


class ActivityFetcher:
    """Two-phase retrieval: signature scan, then batched enrichment."""

    def __init__(self, client: HeliusClient, cfg: IngestionConfig) -> None:
        self._client = client
        self._cfg = cfg

    async def collect_signatures(
        self,
        account: str,
        token: CancelToken,
        on_found: Optional[FoundCallback] = None,
        until: Optional[str] = None,
        now: Optional[float] = None,
    ) -> tuple[List[str], int]:
        """Walk backwards through the account history inside the lookback window.

        Returns (signatures newest first, count of failed transactions skipped).
        Stops at the first signature older than the window, at ``until``, or on a
        short page. Exceeding ``max_signatures`` raises instead of truncating.
        """
        boundary = (now if now is not None else time.time()) - self._cfg.lookback_days * 86400
        page_size = self._cfg.signature_page_size
        seen: set[str] = set()
        out: List[str] = []
        failed = 0
        before: Optional[str] = None

        while True:
            token.raise_if_cancelled()
            page = await self._client.get_signatures(
                account, before=before, limit=page_size, token=token
            )
            token.raise_if_cancelled()
            done = False
            for item in page:
                sig = item.get("signature")
                if not sig:
                    continue
                if until is not None and sig == until:
                    done = True
                    break
                block_time = item.get("blockTime")
                if block_time is not None and block_time < boundary:
                    done = True
                    break
                if sig in seen:
                    continue
                seen.add(sig)
                if item.get("err") is not None and self._cfg.skip_failed:
                    failed += 1
                    continue
                out.append(sig)
                if len(out) > self._cfg.max_signatures:
                    raise TooManyTransactionsError(len(out), self._cfg.max_signatures)

            if on_found is not None:
                await on_found(len(out))
            if done or len(page) < page_size:
                break
            last = page[-1].get("signature")
            if not last or last == before:
                break
            before = last

        logger.info(
            "Signature scan %s found=%d failed_skipped=%d", account, len(out), failed
        )
        return out, failed

    async def fetch_transactions(
        self,
        signatures: List[str],
        token: CancelToken,
        on_fetched: Optional[FetchedCallback] = None,
    ) -> List[Dict[str, Any]]:
        """Enrich signatures in parallel groups of batches; results come back unordered."""
        size = self._cfg.enrich_batch_size
        batches = [signatures[i : i + size] for i in range(0, len(signatures), size)]
        group = self._cfg.parallel_batches
        total = len(signatures)
        fetched = 0
        records: List[Dict[str, Any]] = []

        for i in range(0, len(batches), group):
            token.raise_if_cancelled()
            chunk = batches[i : i + group]
            results = await asyncio.gather(
                *(self._client.get_transactions(b, token=token) for b in chunk)
            )
            # in-flight results are discarded once cancellation is observed
            token.raise_if_cancelled()
            for batch, bodies in zip(chunk, results):
                fetched += len(batch)
                dropped = 0
                for body in bodies:
                    if body is None:
                        dropped += 1
                        continue
                    records.append(body)
                if dropped:
                    logger.warning("Enrichment returned %d empty bodies in batch", dropped)
            if on_fetched is not None:
                await on_fetched(fetched, total)

        return records

    async def fetch_all(
        self,
        account: str,
        token: CancelToken,
        on_found: Optional[FoundCallback] = None,
        on_fetched: Optional[FetchedCallback] = None,
        until: Optional[str] = None,
    ) -> FetchResult:
        signatures, failed = await self.collect_signatures(
            account, token, on_found=on_found, until=until
        )
        records = await self.fetch_transactions(signatures, token, on_fetched=on_fetched)
        return FetchResult(
            signatures=signatures,
            records=records,
            newest_signature=signatures[0] if signatures else None,
            failed_skipped=failed,
        )
