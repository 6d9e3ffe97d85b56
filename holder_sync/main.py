"""FastAPI application for the pool holder-count sync service."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.gzip import GZipMiddleware
from cachetools import TTLCache
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

from holder_sync.config import get_settings
from holder_sync.database import db
from holder_sync.errors import InvalidContractAddress, PoolNotFound, UnsupportedChain
from holder_sync.models import BatchSummary, HealthResponse, HolderMetricResponse, ReconcileOutcome
from holder_sync.scheduler import BatchScheduler, build_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Response cache (TTL = 30 seconds)
response_cache: TTLCache = TTLCache(maxsize=500, ttl=30)

# Prometheus metrics
REQUEST_COUNT = Counter(
    'holder_sync_requests_total',
    'Total requests',
    ['method', 'endpoint', 'status']
)
RECONCILE_COUNT = Counter(
    'holder_sync_reconciliations_total',
    'Pool reconciliations by winning source and resulting status',
    ['source', 'status']
)
RATE_LIMITED_COUNT = Counter(
    'holder_sync_rate_limited_total',
    'Reconciliations that hit provider rate limiting'
)
BATCH_DURATION = Histogram(
    'holder_sync_batch_duration_seconds',
    'Duration of full reconciliation batches',
    buckets=(10, 30, 60, 120, 300, 600, 1200, 3600)
)
LAST_BATCH = Gauge(
    'holder_sync_last_batch_pools',
    'Pool totals of the last finished batch',
    ['result']
)
BATCH_IN_PROGRESS = Gauge(
    'holder_sync_batch_in_progress',
    'Whether a batch is running (1=yes, 0=no)'
)

# Pipeline and background task references
scheduler: Optional[BatchScheduler] = None
sync_task: Optional[asyncio.Task] = None
batch_task: Optional[asyncio.Task] = None


def record_outcome(outcome: ReconcileOutcome):
    """Per-pool metrics hook for the scheduler."""
    RECONCILE_COUNT.labels(source=outcome.source, status=outcome.status.value).inc()
    if outcome.rate_limited:
        RATE_LIMITED_COUNT.inc()
    response_cache.pop(f"holders_{outcome.pool_id}", None)


async def run_batch() -> BatchSummary:
    """Run one batch and export its totals."""
    BATCH_IN_PROGRESS.set(1)
    try:
        summary = await scheduler.reconcile_all_pools()
    finally:
        BATCH_IN_PROGRESS.set(0)

    BATCH_DURATION.observe(summary.duration_seconds)
    LAST_BATCH.labels(result="attempted").set(summary.attempted)
    LAST_BATCH.labels(result="succeeded").set(summary.succeeded)
    LAST_BATCH.labels(result="skipped").set(summary.skipped)
    LAST_BATCH.labels(result="failed").set(summary.failed)
    return summary


async def start_background_sync():
    """Run a batch every ``sync_interval_hours``."""
    settings = get_settings()
    interval = max(60.0, settings.sync_interval_hours * 3600)
    while True:
        try:
            if not scheduler.running:
                await run_batch()
        except asyncio.CancelledError:
            logger.info("Background sync task cancelled")
            raise
        except Exception as e:
            logger.error(f"Background sync error: {e}")

        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler, sync_task

    # Startup
    logger.info("Starting holder-count sync service...")
    settings = get_settings()

    logger.info(f"Freshness window: {settings.freshness_hours}h")
    logger.info(f"Indexer enabled: {settings.indexer_enabled}")
    logger.info(f"Request delay: {settings.request_delay_seconds}s, workers: {settings.max_workers}")

    await db.connect()
    logger.info("Database connected (WAL mode enabled)")

    scheduler = build_scheduler(db, settings, on_outcome=record_outcome)

    if settings.enable_background_sync:
        sync_task = asyncio.create_task(start_background_sync())
        logger.info("Background sync started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    scheduler.stop()

    for task in (sync_task, batch_task):
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    await db.close()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Pool Holder Count Sync",
    description="Reconciles per-pool token holder counts from explorers, an indexer and verified overrides",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Middleware to track request metrics."""
    response = await call_next(request)

    if request.url.path != "/metrics":
        route = request.scope.get("route")
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status=response.status_code
        ).inc()

    return response


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint for Kubernetes probes."""
    try:
        return HealthResponse(
            status="healthy",
            active_pools=await db.count_active_pools(),
            batch_in_progress=scheduler.running,
            indexer_enabled=get_settings().indexer_enabled,
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unavailable")


@app.get("/holders/{pool_id}", response_model=HolderMetricResponse)
async def get_holders(pool_id: str):
    """
    Get the stored holder count for a pool.

    Cached for 30 seconds; invalidated when the pool is reconciled.
    """
    cache_key = f"holders_{pool_id}"
    if cache_key in response_cache:
        return response_cache[cache_key]

    metric = await db.get_metric(pool_id)
    if metric is None:
        raise HTTPException(status_code=404, detail=f"No holder count stored for pool {pool_id}")

    response = HolderMetricResponse(**metric.model_dump())
    response_cache[cache_key] = response
    return response


@app.post("/reconcile", status_code=202)
async def trigger_batch():
    """Start a full reconciliation batch in the background."""
    global batch_task

    if scheduler.running or (batch_task is not None and not batch_task.done()):
        raise HTTPException(status_code=409, detail="A batch is already running")

    batch_task = asyncio.create_task(run_batch())
    return {"started": True, "requested_at": time.time()}


@app.delete("/reconcile")
async def cancel_batch():
    """Stop scheduling further pools in the running batch."""
    if not scheduler.running:
        return {"cancelled": False}
    scheduler.stop()
    return {"cancelled": True}


@app.post("/reconcile/{pool_id}", response_model=ReconcileOutcome)
async def trigger_pool(pool_id: str):
    """Reconcile a single pool and return the chosen value."""
    try:
        return await scheduler.reconcile_one(pool_id)
    except PoolNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (UnsupportedChain, InvalidContractAddress) as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"Error reconciling pool {pool_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to reconcile pool")


@app.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
