"""Cursor-paginated token owners client (Moralis)."""

import logging
from typing import Optional

import requests

from holder_sync.config import ChainConfig, Settings
from holder_sync.errors import IndexerPartialFailure, NetworkError, RateLimited
from holder_sync.models import Found, IndexerResult, NotFound, ScrapeResult
from holder_sync.transport import HostRateLimiter, fetch

logger = logging.getLogger(__name__)

SOURCE = "indexer"


class PaginatedIndexerClient:
    """
    Counts holders by walking the owners endpoint page by page.

    The walk stops when a page comes back short, the cursor runs out, or
    ``max_pages`` pages have been read. Past the cap the count is an
    undercount and the result is flagged ``truncated``.
    """

    def __init__(
        self,
        session: requests.Session,
        settings: Settings,
        limiter: Optional[HostRateLimiter] = None,
    ):
        self.session = session
        self.api_key = settings.moralis_api_key
        self.page_size = settings.indexer_page_size
        self.max_pages = settings.indexer_max_pages
        self.timeout = settings.http_timeout_seconds
        self.backoff_seconds = settings.rate_limit_backoff_seconds
        self.page_delay = settings.indexer_page_delay_seconds
        self.limiter = limiter

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def owners_url(self, contract_address: str, chain: ChainConfig) -> str:
        return f"{chain.api_base_url.rstrip('/')}/erc20/{contract_address}/owners"

    async def count_holders(self, contract_address: str, chain: ChainConfig) -> IndexerResult:
        """
        Walk the owners pages and sum the entries.

        Raises:
            IndexerPartialFailure: if any page fails; no partial sum is returned
        """
        url = self.owners_url(contract_address, chain)
        headers = {"X-API-Key": self.api_key or "", "Accept": "application/json"}
        if self.limiter is not None:
            self.limiter.ensure_bucket(HostRateLimiter.host_of(url), self.page_delay)

        total = 0
        pages = 0
        cursor: Optional[str] = None
        page_full = False

        while pages < self.max_pages:
            params = {"chain": chain.indexer_chain, "limit": self.page_size, "order": "DESC"}
            if cursor:
                params["cursor"] = cursor

            try:
                response = await fetch(
                    self.session,
                    url,
                    timeout=self.timeout,
                    params=params,
                    headers=headers,
                    limiter=self.limiter,
                    backoff_seconds=self.backoff_seconds,
                )
                payload = response.json()
            except (NetworkError, ValueError) as e:
                raise IndexerPartialFailure(pages + 1, e)

            entries = (payload.get("result") or []) if isinstance(payload, dict) else None
            if not isinstance(entries, list):
                raise IndexerPartialFailure(pages + 1, ValueError("Malformed owners payload"))

            pages += 1
            total += len(entries)
            cursor = payload.get("cursor") or None
            page_full = len(entries) >= self.page_size

            logger.debug(f"[{chain.name}] Owners page {pages}: {len(entries)} entries, total {total}")

            if not cursor or not page_full:
                break

        truncated = pages >= self.max_pages and bool(cursor) and page_full
        return IndexerResult(count=total, pages=pages, truncated=truncated)

    async def fetch_holder_count(self, contract_address: str, chain: ChainConfig) -> ScrapeResult:
        """Count holders, collapsing any failure to ``NotFound``."""
        if not self.available:
            return NotFound(source=SOURCE, reason="unavailable")

        try:
            result = await self.count_holders(contract_address, chain)
        except IndexerPartialFailure as e:
            if isinstance(e.cause, RateLimited):
                logger.warning(f"[{chain.name}] Indexer rate limited for {contract_address} on page {e.page}")
                return NotFound(source=SOURCE, reason="rate_limited")
            logger.warning(f"[{chain.name}] Indexer failed for {contract_address}: {e}")
            return NotFound(source=SOURCE, reason="indexer_error")

        if result.count <= 0:
            return NotFound(source=SOURCE, reason="empty")

        if result.truncated:
            logger.info(
                f"[{chain.name}] Owners for {contract_address} capped at {self.max_pages} pages "
                f"({result.count:,} holders, possibly truncated)"
            )
        return Found(
            count=result.count,
            source=SOURCE,
            detail=f"{result.pages} pages",
            truncated=result.truncated,
        )
