"""Error taxonomy for the holder-count pipeline."""

from typing import Optional


class HolderSyncError(Exception):
    """Base class for pipeline errors."""


class UnsupportedChain(HolderSyncError):
    """Chain name has no explorer/indexer routing entry."""

    def __init__(self, chain_name: str):
        self.chain_name = chain_name
        super().__init__(f"Unsupported chain: {chain_name!r}")


class PoolNotFound(HolderSyncError):
    def __init__(self, pool_id: str):
        self.pool_id = pool_id
        super().__init__(f"Pool not found: {pool_id}")


class InvalidContractAddress(HolderSyncError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Invalid contract address: {address!r}")


class NetworkError(HolderSyncError):
    """Timeout, connection failure or non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimited(NetworkError):
    """HTTP 429 or an explicit block/captcha page."""

    def __init__(self, message: str, retry_after: Optional[float] = None, status_code: Optional[int] = 429):
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code)


class ParseNotFound(HolderSyncError):
    """No extraction rule produced a holder count."""


class IndexerPartialFailure(HolderSyncError):
    """A page request failed mid-pagination; the partial sum is discarded."""

    def __init__(self, page: int, cause: Exception):
        self.page = page
        self.cause = cause
        super().__init__(f"Indexer failed on page {page}: {cause}")
