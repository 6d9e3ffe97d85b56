"""Chain routing: explorer and indexer endpoints per supported chain."""

import logging
from typing import Dict, Iterable, List, Optional

from holder_sync.config import ChainConfig
from holder_sync.errors import UnsupportedChain

logger = logging.getLogger(__name__)

MORALIS_API_BASE = "https://deep-index.moralis.io/api/v2.2"

# Explorer markup families. "basescan" renders the count under a heading as
# "17,365 (0.00%)"; "etherscan" exposes it in the meta description and the
# token-holders link.
FLAVOR_ETHERSCAN = "etherscan"
FLAVOR_BASESCAN = "basescan"

DEFAULT_CHAINS: List[ChainConfig] = [
    ChainConfig(name="ethereum", scraper_base_url="https://etherscan.io",
                api_base_url=MORALIS_API_BASE, indexer_chain="0x1", flavor=FLAVOR_ETHERSCAN),
    ChainConfig(name="base", scraper_base_url="https://basescan.org",
                api_base_url=MORALIS_API_BASE, indexer_chain="0x2105", flavor=FLAVOR_BASESCAN),
    ChainConfig(name="arbitrum", scraper_base_url="https://arbiscan.io",
                api_base_url=MORALIS_API_BASE, indexer_chain="0xa4b1", flavor=FLAVOR_ETHERSCAN),
    ChainConfig(name="optimism", scraper_base_url="https://optimistic.etherscan.io",
                api_base_url=MORALIS_API_BASE, indexer_chain="0xa", flavor=FLAVOR_ETHERSCAN),
    ChainConfig(name="polygon", scraper_base_url="https://polygonscan.com",
                api_base_url=MORALIS_API_BASE, indexer_chain="0x89", flavor=FLAVOR_ETHERSCAN),
    ChainConfig(name="bsc", scraper_base_url="https://bscscan.com",
                api_base_url=MORALIS_API_BASE, indexer_chain="0x38", flavor=FLAVOR_ETHERSCAN),
]

CHAIN_ALIASES = {
    "eth": "ethereum",
    "mainnet": "ethereum",
    "binance": "bsc",
    "bnb": "bsc",
    "matic": "polygon",
}


class ChainRouter:
    """Maps a chain name to its explorer/indexer endpoints."""

    def __init__(self, overrides: Optional[Iterable[ChainConfig]] = None):
        self._chains: Dict[str, ChainConfig] = {c.name: c for c in DEFAULT_CHAINS}
        for config in overrides or []:
            key = config.name.strip().lower()
            if key in self._chains:
                logger.info(f"[{key}] Routing overridden: {config.scraper_base_url}")
            self._chains[key] = config.model_copy(update={"name": key})

    @staticmethod
    def normalize(chain_name: str) -> str:
        key = (chain_name or "").strip().lower()
        return CHAIN_ALIASES.get(key, key)

    def resolve(self, chain_name: str) -> ChainConfig:
        """
        Resolve routing for a chain.

        Raises:
            UnsupportedChain: if the chain is not in the routing table
        """
        config = self._chains.get(self.normalize(chain_name))
        if config is None:
            raise UnsupportedChain(chain_name)
        return config

    def supported(self) -> List[str]:
        return sorted(self._chains)
