from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional

from ..cache import wallet_key, wallet_pattern
from ..classifier import TransactionClassifier
from ..config import Settings
from ..coordinator import CancelToken
from ..db import Database
from ..errors import InvalidAccountError, NoActivityError
from ..ingestion.client import is_valid_account
from ..ingestion.fetcher import ActivityFetcher
from ..models import COMPLETED, RUNNING, NormalizedEvent, PnlResult
from ..progress import ProgressReporter
from ..resolvers.metadata import UNKNOWN_SYMBOL, MetadataResolver
from ..resolvers.price import PriceResolver
from .insights import InsightsGenerator
from .pnl_engine import PnlEngine


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AnalysisOutcome:
    account: str
    summary: Dict[str, Any]
    highlights: List[Dict[str, Any]] = field(default_factory=list)
    counts: Dict[str, Any] = field(default_factory=dict)
    reused: bool = False


def summary_payload(result: PnlResult) -> Dict[str, Any]:
    data = asdict(result.summary)
    data["net_flow"] = {**asdict(result.net_flow), "net": result.net_flow.net}
    return data


class AccountAnalyzer:
    """One account, end to end: scan, enrich, classify, FIFO, persist, highlight."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        cache,
        fetcher: ActivityFetcher,
        classifier: TransactionClassifier,
        metadata: MetadataResolver,
        prices: PriceResolver,
        engine: PnlEngine,
        insights: InsightsGenerator,
    ) -> None:
        self._settings = settings
        self._db = db
        self._cache = cache
        self._fetcher = fetcher
        self._classifier = classifier
        self._metadata = metadata
        self._prices = prices
        self._engine = engine
        self._insights = insights

    def _is_fresh(self, prev: Dict[str, Any]) -> bool:
        if prev["status"] != COMPLETED or not prev.get("summary"):
            return False
        window_ms = self._settings.orchestrator.reuse_window_hours * 3600 * 1000
        return (prev.get("completed_at") or 0) >= time.time() * 1000 - window_ms

    async def run(
        self,
        account: str,
        token: CancelToken,
        progress: ProgressReporter,
        force: bool = False,
    ) -> AnalysisOutcome:
        if not is_valid_account(account):
            raise InvalidAccountError(f"Invalid account address: {account!r}")
        started = time.monotonic()
        await progress.report("connect", 0.0, "Connecting to indexer")

        prev = await self._db.get_analysis(account)
        if prev is not None and not force and self._is_fresh(prev):
            logger.info("Reusing analysis for %s completed_at=%s", account, prev.get("completed_at"))
            return AnalysisOutcome(
                account=account,
                summary=prev["summary"],
                highlights=await self._db.get_highlights(account),
                counts={"events": prev.get("events_processed", 0)},
                reused=True,
            )

        until: Optional[str] = None
        if prev is not None and not force and prev["status"] == COMPLETED:
            until = prev.get("newest_signature")

        await self._db.upsert_analysis(
            account,
            RUNNING,
            progress=progress.percent,
            stage="connect",
            started_at=int(time.time() * 1000),
            error_reason=None,
            error_message=None,
        )
        await self._cache.delete_pattern(wallet_pattern(account))
        await progress.report("connect", 1.0, "Connected")

        # scan
        async def on_found(n: int) -> None:
            await progress.report("scan", 0.1, f"Found {n} transactions", found=n)

        async def on_fetched(done: int, total: int) -> None:
            frac = 0.1 + 0.9 * (done / total if total else 1.0)
            await progress.report(
                "scan", frac, f"Fetched {done}/{total} transactions", fetched=done, total=total
            )

        fetched = await self._fetcher.fetch_all(
            account, token, on_found=on_found, on_fetched=on_fetched, until=until
        )
        if not fetched.signatures and until is None:
            raise NoActivityError(
                f"No activity found for {account} in the last "
                f"{self._settings.ingestion.lookback_days} days"
            )
        await self._db.upsert_analysis(
            account,
            RUNNING,
            progress=progress.percent,
            stage="scan",
            signatures_found=len(fetched.signatures),
            transactions_fetched=len(fetched.records),
        )

        # parse
        token.raise_if_cancelled()
        await progress.report("parse", 0.0, "Classifying transactions")
        records = list(reversed(fetched.records))  # oldest first
        batch = self._classifier.classify_many(records, account)
        events = batch.events
        if until is not None:
            boundary = time.time() - self._settings.ingestion.lookback_days * 86400
            stored = [e for e in await self._db.load_events(account) if e.timestamp >= boundary]
            events = stored + events
        await progress.report(
            "parse",
            0.6,
            f"Classified {len(batch.events)} trading events",
            processed=len(batch.events),
            skipped=sum(batch.skipped.values()),
        )
        events = await self._apply_metadata(events)
        await progress.report("parse", 1.0, "Resolved token metadata")

        # calculate
        async def on_calc(frac: float, message: str) -> None:
            await progress.report("calculate", frac, message)

        result = await self._engine.calculate(events, account, on_progress=on_calc)
        await self._retry_unknown(result)

        # save
        token.raise_if_cancelled()
        await progress.report("save", 0.0, "Saving transactions")
        await self._db.upsert_transactions(account, events)
        await progress.report("save", 0.3, "Saving positions")
        await self._db.upsert_positions(account, result.positions.values())
        await progress.report("save", 0.6, "Saving daily P&L")
        usd = await self._daily_usd(result, token, progress)
        await self._db.upsert_daily(account, result.daily, usd)
        await progress.report("save", 1.0, "Saved")

        # finalize
        await progress.report("finalize", 0.0, "Generating highlights")
        ref_usd = await self._prices.reference_usd()
        highlights = self._insights.generate(result, ref_usd.value)
        await self._db.upsert_highlights(account, highlights)
        summary = summary_payload(result)
        counts = {
            "signatures": len(fetched.signatures),
            "records": len(fetched.records),
            "events": len(events),
            "skipped": batch.skipped,
            "duplicates": batch.duplicates,
            "failed_skipped": fetched.failed_skipped,
        }
        newest = fetched.newest_signature or (prev or {}).get("newest_signature")
        await self._db.upsert_analysis(
            account,
            COMPLETED,
            progress=100,
            stage="finalize",
            events_processed=len(events),
            newest_signature=newest,
            summary_json=json.dumps(summary),
            completed_at=int(time.time() * 1000),
        )
        highlight_rows = [asdict(h) for h in highlights]
        await self._warm(account, summary, highlight_rows, result)
        logger.info(
            "Analysis %s done in %.1fs events=%d positions=%d",
            account,
            time.monotonic() - started,
            len(events),
            len(result.positions),
        )
        return AnalysisOutcome(
            account=account, summary=summary, highlights=highlight_rows, counts=counts
        )

    async def _apply_metadata(self, events: List[NormalizedEvent]) -> List[NormalizedEvent]:
        if not events:
            return events
        metas = await self._metadata.resolve_many(e.asset_id for e in events)
        out: List[NormalizedEvent] = []
        for e in events:
            meta = metas.get(e.asset_id)
            if meta is not None and meta.known and meta.symbol != e.asset_symbol:
                e = replace(e, asset_symbol=meta.symbol)
            out.append(e)
        return out

    async def _retry_unknown(self, result: PnlResult) -> None:
        top_n = self._settings.metadata.unknown_retry_top_n
        unknown = [p for p in result.positions.values() if p.asset_symbol == UNKNOWN_SYMBOL]
        if not unknown or top_n <= 0:
            return
        unknown.sort(key=lambda p: abs(p.total_pnl), reverse=True)
        recovered = await self._metadata.retry_unknown(p.asset_id for p in unknown[:top_n])
        for asset_id, meta in recovered.items():
            result.positions[asset_id].asset_symbol = meta.symbol

    async def _daily_usd(
        self, result: PnlResult, token: CancelToken, progress: ProgressReporter
    ) -> Dict[str, float]:
        days = [d.date for d in result.daily]
        out: Dict[str, float] = {}
        group = 4
        for i in range(0, len(days), group):
            token.raise_if_cancelled()
            chunk = days[i : i + group]
            results = await asyncio.gather(
                *(self._prices.historical_reference_usd(day) for day in chunk)
            )
            for day, res in zip(chunk, results):
                if res.resolved:
                    out[day] = res.value
            done = i + len(chunk)
            await progress.report(
                "save", 0.6 + 0.3 * done / len(days), f"Priced {done}/{len(days)} days"
            )
        return out

    async def _warm(
        self,
        account: str,
        summary: Dict[str, Any],
        highlights: List[Dict[str, Any]],
        result: PnlResult,
    ) -> None:
        ttl = self._settings.orchestrator.summary_cache_ttl_s
        await self._cache.set(wallet_key(account, "summary"), summary, ttl=ttl)
        await self._cache.set(wallet_key(account, "highlights"), highlights, ttl=ttl)
        await self._cache.set(
            wallet_key(account, "daily"), [asdict(d) for d in result.daily], ttl=ttl
        )
