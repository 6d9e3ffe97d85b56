"""Batch driver: reconciles every eligible pool."""

import asyncio
import logging
import time
import traceback
from typing import Callable, Optional

import requests

from holder_sync.chains import ChainRouter
from holder_sync.config import ChainConfig, Settings, get_settings
from holder_sync.database import MetricsStore
from holder_sync.errors import HolderSyncError, PoolNotFound, UnsupportedChain
from holder_sync.indexer import PaginatedIndexerClient
from holder_sync.models import BatchSummary, MetricStatus, Pool, ReconcileOutcome
from holder_sync.overrides import OverrideRegistry
from holder_sync.reconciler import Reconciler
from holder_sync.scraper import ExplorerPageScraper
from holder_sync.transport import HostRateLimiter, build_session

logger = logging.getLogger(__name__)


class BatchScheduler:
    """
    Runs the reconciler over all active pools.

    Pools are handed to ``max_workers`` workers (1 = strictly sequential).
    Request spacing is enforced per host by the shared rate limiter.
    """

    def __init__(
        self,
        store: MetricsStore,
        reconciler: Reconciler,
        router: ChainRouter,
        settings: Settings,
        on_outcome: Optional[Callable[[ReconcileOutcome], None]] = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.router = router
        self.settings = settings
        self.on_outcome = on_outcome
        self.max_workers = max(1, settings.max_workers)
        self._stop_requested = False
        self._running = False
        self._networked = 0

    @property
    def running(self) -> bool:
        return self._running

    def stop(self):
        """Stop scheduling further pools; in-flight pools finish normally."""
        self._stop_requested = True

    async def resolve_chain(self, pool: Pool) -> ChainConfig:
        chain = await self.store.get_chain(pool.chain_id)
        if chain is None:
            raise UnsupportedChain(f"<unknown chain id {pool.chain_id}>")
        return self.router.resolve(chain.name)

    async def reconcile_one(self, pool_id: str) -> ReconcileOutcome:
        """
        Reconcile a single pool.

        Raises:
            PoolNotFound: unknown pool id
            UnsupportedChain: pool's chain has no routing
            InvalidContractAddress: pool has no usable contract address
        """
        pool = await self.store.get_pool(pool_id)
        if pool is None:
            raise PoolNotFound(pool_id)
        chain = await self.resolve_chain(pool)
        outcome = await self.reconciler.reconcile(pool, chain)
        if self.on_outcome is not None:
            self.on_outcome(outcome)
        return outcome

    async def _maybe_pause(self, outcome: ReconcileOutcome):
        """Longer pause after every ``batch_pause_every`` pools that hit the network."""
        if not outcome.network_calls or self.settings.batch_pause_every <= 0:
            return
        self._networked += 1
        if self._networked % self.settings.batch_pause_every == 0 and self.settings.batch_pause_seconds > 0:
            logger.info(f"Pausing {self.settings.batch_pause_seconds:.0f}s after {self._networked} networked pools")
            await asyncio.sleep(self.settings.batch_pause_seconds)

    async def _process(self, pool: Pool, summary: BatchSummary):
        summary.attempted += 1
        try:
            chain = await self.resolve_chain(pool)
            outcome = await self.reconciler.reconcile(pool, chain)
        except HolderSyncError as e:
            logger.error(f"[Pool {pool.id}] Skipping: {e}")
            summary.failed += 1
            summary.failed_pools.append(pool.id)
            return
        except Exception as e:
            logger.error(f"[Pool {pool.id}] Unexpected error: {e}")
            logger.error(f"[Pool {pool.id}] Full traceback:\n{traceback.format_exc()}")
            summary.failed += 1
            summary.failed_pools.append(pool.id)
            return

        if self.on_outcome is not None:
            self.on_outcome(outcome)

        if outcome.source == "cache":
            summary.skipped += 1
        elif outcome.status == MetricStatus.SUCCESS:
            summary.succeeded += 1
        else:
            summary.failed += 1
            summary.failed_pools.append(pool.id)

        if outcome.rate_limited:
            logger.warning(f"[Pool {pool.id}] Provider throttled us; affected hosts are backing off")

        await self._maybe_pause(outcome)

    async def _worker(self, queue: "asyncio.Queue[Pool]", summary: BatchSummary):
        while not self._stop_requested:
            try:
                pool = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process(pool, summary)
            finally:
                queue.task_done()

    async def reconcile_all_pools(self) -> BatchSummary:
        """Reconcile every active pool with a contract address."""
        if self._running:
            raise RuntimeError("A batch is already running")

        self._running = True
        self._stop_requested = False
        self._networked = 0
        started = time.monotonic()
        summary = BatchSummary()

        try:
            pools = await self.store.get_active_pools()
            logger.info(f"Reconciling holder counts for {len(pools)} pools with {self.max_workers} worker(s)...")

            queue: asyncio.Queue = asyncio.Queue()
            for pool in pools:
                queue.put_nowait(pool)

            workers = [
                asyncio.create_task(self._worker(queue, summary))
                for _ in range(min(self.max_workers, max(1, len(pools))))
            ]
            try:
                await asyncio.gather(*workers)
            except asyncio.CancelledError:
                for worker in workers:
                    worker.cancel()
                summary.cancelled = True
                raise

            summary.cancelled = self._stop_requested and summary.attempted < len(pools)
        finally:
            summary.duration_seconds = round(time.monotonic() - started, 2)
            self._running = False
            logger.info(
                f"Holder reconciliation finished: {summary.succeeded} succeeded, "
                f"{summary.skipped} fresh, {summary.failed} failed "
                f"of {summary.attempted} attempted in {summary.duration_seconds}s"
                + (" (cancelled)" if summary.cancelled else "")
            )

        return summary


def build_scheduler(
    store: MetricsStore,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
    overrides: Optional[OverrideRegistry] = None,
    on_outcome: Optional[Callable[[ReconcileOutcome], None]] = None,
) -> BatchScheduler:
    """Wire the pipeline components from settings."""
    settings = settings or get_settings()
    session = session or build_session(settings.user_agent)
    limiter = HostRateLimiter(default_interval=settings.request_delay_seconds)
    router = ChainRouter(settings.get_chain_overrides())

    reconciler = Reconciler(
        store=store,
        scraper=ExplorerPageScraper(session, settings, limiter),
        indexer=PaginatedIndexerClient(session, settings, limiter),
        overrides=overrides or OverrideRegistry(),
        settings=settings,
    )
    if not settings.indexer_enabled:
        logger.info("MORALIS_API_KEY not set; indexer fallback disabled")
    return BatchScheduler(store, reconciler, router, settings, on_outcome=on_outcome)
