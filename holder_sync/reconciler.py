"""Chooses and persists the canonical holder count for one pool."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from web3 import Web3

from holder_sync.config import ChainConfig, Settings
from holder_sync.database import MetricsStore
from holder_sync.errors import InvalidContractAddress
from holder_sync.indexer import PaginatedIndexerClient
from holder_sync.models import (
    Found,
    HolderMetric,
    MetricStatus,
    Pool,
    ReconcileOutcome,
    ScrapeResult,
)
from holder_sync.overrides import OverrideRegistry
from holder_sync.scraper import ExplorerPageScraper

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Precedence, strictly in order:

    1. override registry hit (no network)
    2. fresh stored value inside the freshness window (no network)
    3. explorer scrape success
    4. indexer success
    5. keep whatever is stored (no write)

    A not-found result is never written, so a positive stored count can
    only be replaced by another positive count.
    """

    def __init__(
        self,
        store: MetricsStore,
        scraper: ExplorerPageScraper,
        indexer: PaginatedIndexerClient,
        overrides: OverrideRegistry,
        settings: Settings,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.scraper = scraper
        self.indexer = indexer
        self.overrides = overrides
        self.freshness = timedelta(hours=settings.freshness_hours)
        self.clock = clock

    def is_fresh(self, metric: Optional[HolderMetric]) -> bool:
        if metric is None or metric.status != MetricStatus.SUCCESS:
            return False
        return self.clock() - metric.updated_at < self.freshness

    async def _write(self, pool: Pool, result: Found) -> ReconcileOutcome:
        await self.store.upsert_metric(pool.id, result.count, MetricStatus.SUCCESS, updated_at=self.clock())
        logger.info(f"[Pool {pool.id}] Stored {result.count:,} holders from {result.source}")
        return ReconcileOutcome(
            pool_id=pool.id,
            holders_count=result.count,
            status=MetricStatus.SUCCESS,
            source=result.source,
            written=True,
            truncated=result.truncated,
            network_calls=result.source != "override",
        )

    async def reconcile(self, pool: Pool, chain: ChainConfig) -> ReconcileOutcome:
        """
        Produce (and persist, when warranted) the holder count for ``pool``.

        Raises:
            InvalidContractAddress: if the pool's address is not a 20-byte hex address
        """
        raw_address = (pool.contract_address or "").strip()
        address = raw_address.lower()
        if not Web3.is_address(address):
            raise InvalidContractAddress(raw_address)

        existing = await self.store.get_metric(pool.id)

        override = self.overrides.lookup(address)
        if override is not None:
            logger.info(f"[Pool {pool.id}] Using verified override for {address}")
            return await self._write(pool, Found(count=override, source="override"))

        if self.is_fresh(existing):
            logger.info(f"[Pool {pool.id}] Stored count is fresh ({existing.updated_at.isoformat()}), skipping fetch")
            return ReconcileOutcome(
                pool_id=pool.id,
                holders_count=existing.holders_count,
                status=existing.status,
                source="cache",
            )

        rate_limited = False
        results: List[ScrapeResult] = []

        scraped = await self.scraper.fetch_holder_count(address, chain)
        results.append(scraped)
        if isinstance(scraped, Found):
            return await self._write(pool, scraped)
        rate_limited = rate_limited or scraped.rate_limited

        indexed = await self.indexer.fetch_holder_count(address, chain)
        results.append(indexed)
        if isinstance(indexed, Found):
            outcome = await self._write(pool, indexed)
            return outcome.model_copy(update={"rate_limited": rate_limited})
        rate_limited = rate_limited or indexed.rate_limited

        reasons = ", ".join(f"{r.source}={r.reason}" for r in results)
        network_calls = any(r.reason != "unavailable" for r in results)
        if existing is not None:
            logger.warning(
                f"[Pool {pool.id}] No source produced a count ({reasons}); "
                f"keeping stored {existing.holders_count:,}"
            )
            return ReconcileOutcome(
                pool_id=pool.id,
                holders_count=existing.holders_count,
                status=MetricStatus.UNKNOWN,
                source="previous",
                rate_limited=rate_limited,
                network_calls=network_calls,
            )

        logger.warning(f"[Pool {pool.id}] No source produced a count ({reasons}); nothing stored")
        return ReconcileOutcome(
            pool_id=pool.id,
            holders_count=0,
            status=MetricStatus.UNKNOWN,
            source="none",
            rate_limited=rate_limited,
            network_calls=network_calls,
        )
