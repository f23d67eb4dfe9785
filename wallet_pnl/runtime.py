from __future__ import annotations

import logging
from typing import Optional

import httpx

from .cache import build_cache
from .classifier import TransactionClassifier
from .config import Settings
from .coordinator import ConcurrencyCoordinator
from .db import Database
from .ingestion.client import HeliusClient
from .ingestion.fetcher import ActivityFetcher
from .orchestrator import AnalysisOrchestrator
from .progress import ProgressHub
from .resolvers.metadata import MetadataResolver
from .resolvers.price import PriceResolver
from .services.analyzer import AccountAnalyzer
from .services.insights import InsightsGenerator
from .services.pnl_engine import PnlEngine


logger = logging.getLogger(__name__)


class AnalysisRuntime:
    """Wires the pipeline for one process and owns the lifecycle of its resources."""

    def __init__(
        self,
        settings: Settings,
        cache=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        price_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.db = Database(settings.storage.sqlite_path)
        self.cache = cache if cache is not None else build_cache(settings.cache)
        self.coordinator = ConcurrencyCoordinator(settings.helius.requests_per_second)

        self.client = HeliusClient(
            settings.helius, settings.ingestion, self.coordinator.permits, transport=transport
        )
        self.prices = PriceResolver(
            settings.prices,
            self.cache,
            db=self.db,
            reference_mint=settings.classifier.reference_mint,
            transport=price_transport,
        )
        self.metadata = MetadataResolver(self.client, self.cache, settings.metadata)
        self.classifier = TransactionClassifier(settings.classifier)
        self.engine = PnlEngine(
            settings.engine,
            prices=self.prices,
            quote_assets=settings.classifier.quote_mints,
            implausible_ref_amount=settings.classifier.implausible_ref_amount,
        )
        self.analyzer = AccountAnalyzer(
            settings,
            self.db,
            self.cache,
            ActivityFetcher(self.client, settings.ingestion),
            self.classifier,
            self.metadata,
            self.prices,
            self.engine,
            InsightsGenerator(),
        )
        self.hub = ProgressHub(self.cache, ttl_s=settings.orchestrator.progress_ttl_s)
        self.orchestrator = AnalysisOrchestrator(self.coordinator, self.analyzer, self.db, self.hub)

    async def start(self) -> None:
        if not self.settings.helius.api_key:
            logger.warning("helius.api_key is not set; analyses will fail with reason=configuration")
        await self.db.init_schema()
        logger.info(
            "Runtime started permits=%d lookback_days=%d",
            self.coordinator.permits.capacity,
            self.settings.ingestion.lookback_days,
        )

    async def stop(self) -> None:
        await self.orchestrator.shutdown()
        await self.client.close()
        await self.prices.close()
        await self.cache.close()
        await self.db.close()
        logger.info("Runtime stopped")
