"""Manually verified holder counts for contracts that defeat live counting."""

from types import MappingProxyType
from typing import Mapping, Optional

# Lower-cased contract address -> verified holder count.
# stETH: ~550k holders, far past the indexer page cap and aggressively rate limited.
VERIFIED_HOLDER_COUNTS: Mapping[str, int] = MappingProxyType({
    "0xae7ab96520de3a18e5e111b5eaab095312d7fe84": 547477,
})


class OverrideRegistry:
    """O(1) lookup of verified counts. Immutable once built."""

    def __init__(self, entries: Optional[Mapping[str, int]] = None):
        table = VERIFIED_HOLDER_COUNTS if entries is None else entries
        self._entries = MappingProxyType({k.lower(): int(v) for k, v in table.items()})

    def lookup(self, contract_address: Optional[str]) -> Optional[int]:
        if not contract_address:
            return None
        return self._entries.get(contract_address.strip().lower())

    def __contains__(self, contract_address: str) -> bool:
        return self.lookup(contract_address) is not None

    def __len__(self) -> int:
        return len(self._entries)
