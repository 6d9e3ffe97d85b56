"""Explorer token-page scraper for holder counts."""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import requests
from bs4 import BeautifulSoup, Tag

from holder_sync.chains import FLAVOR_BASESCAN, FLAVOR_ETHERSCAN
from holder_sync.config import ChainConfig, Settings
from holder_sync.errors import NetworkError, ParseNotFound, RateLimited
from holder_sync.models import Found, NotFound, ScrapeResult
from holder_sync.transport import HostRateLimiter, fetch, looks_blocked

logger = logging.getLogger(__name__)

SOURCE = "explorer"

# Comma-grouped ("17,365") or plain integer
NUMBER = r"(\d{1,3}(?:,\d{3})+|\d+)"
NUMBER_RE = re.compile(NUMBER)

HOLDERS_LABEL_RE = re.compile(r"holders?[:\s]+" + NUMBER, re.IGNORECASE)
COUNT_THEN_LABEL_RE = re.compile(NUMBER + r"\s+(?:addresses|holders)", re.IGNORECASE)

BASESCAN_HEADING_RE = re.compile(r"Holders\s*</h\d>\s*<[^>]+>\s*" + NUMBER + r"\s*\(", re.IGNORECASE)
BASESCAN_TEXT_RE = re.compile(r"Holders\s+" + NUMBER + r"\s*\(", re.IGNORECASE)
PERCENT_SUFFIX_RE = re.compile(NUMBER + r"\s*\(\d+(?:\.\d+)?%\)")
ETHERSCAN_META_RE = re.compile(r"Holders?:\s*" + NUMBER, re.IGNORECASE)

HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
BLOCK_TAGS = {"div", "p", "li", "section", "article", "td", "dd", "dt", "span"}
SUMMARY_SELECTORS = ".card-body, #ContentPlaceHolder1_divSummary"

# How far back from an "N (P%)" match to look for the word "holders"
PERCENT_CONTEXT_CHARS = 200


def parse_count(text: Optional[str]) -> Optional[int]:
    """Parse a comma-grouped integer; only strictly positive values count."""
    if not text:
        return None
    try:
        value = int(text.replace(",", "").strip())
    except ValueError:
        return None
    return value if value > 0 else None


def first_count(text: str, pattern: re.Pattern = NUMBER_RE) -> Optional[int]:
    for match in pattern.finditer(text):
        count = parse_count(match.group(1))
        if count is not None:
            return count
    return None


@dataclass
class PageContext:
    """Parsed explorer page handed to each extraction rule."""
    html: str
    flavor: str
    soup: BeautifulSoup

    @classmethod
    def parse(cls, html: str, flavor: str) -> "PageContext":
        return cls(html=html, flavor=flavor, soup=BeautifulSoup(html, "html.parser"))


@dataclass(frozen=True)
class ExtractionRule:
    """One step of the cascade: ``applies`` gates ``extract``."""
    name: str
    applies: Callable[[PageContext], bool]
    extract: Callable[[PageContext], Optional[int]]


# --- chain-specific high-confidence rules ---

def _extract_basescan(page: PageContext) -> Optional[int]:
    """Basescan shows "Holders" in a heading followed by "17,365 (0.00%)"."""
    count = first_count(page.html, BASESCAN_HEADING_RE) or first_count(
        page.soup.get_text(" ", strip=True), BASESCAN_TEXT_RE
    )
    if count:
        return count

    for match in PERCENT_SUFFIX_RE.finditer(page.html):
        before = page.html[max(0, match.start() - PERCENT_CONTEXT_CHARS):match.start()]
        if "holders" in before.lower():
            count = parse_count(match.group(1))
            if count:
                return count
    return None


def _extract_etherscan(page: PageContext) -> Optional[int]:
    """Etherscan puts "Holders: 1,234" in the meta description and a summary row."""
    for meta in page.soup.find_all("meta"):
        if meta.get("name", "").lower() == "description" or meta.get("property", "").lower() == "og:description":
            count = first_count(meta.get("content", ""), ETHERSCAN_META_RE)
            if count:
                return count

    row = page.soup.select_one("#ContentPlaceHolder1_tr_tokenHolders")
    if row is not None:
        return first_count(row.get_text(" ", strip=True))
    return None


# --- generic rules ---

def _extract_from_heading(page: PageContext) -> Optional[int]:
    for heading in page.soup.find_all(HEADING_TAGS):
        if "holders" not in heading.get_text(" ", strip=True).lower():
            continue
        sibling = heading.find_next_sibling()
        if sibling is None:
            continue
        count = first_count(sibling.get_text(" ", strip=True))
        if count:
            return count
    return None


def _match_holder_text(text: str) -> Optional[int]:
    return first_count(text, HOLDERS_LABEL_RE) or first_count(text, COUNT_THEN_LABEL_RE)


def _block_ancestors(node) -> Iterable[Tag]:
    parent = node.parent
    hops = 0
    while parent is not None and parent.name not in ("body", "html", "[document]") and hops < 2:
        if parent.name in BLOCK_TAGS:
            hops += 1
            yield parent
        parent = parent.parent


def _extract_from_text(page: PageContext) -> Optional[int]:
    label = re.compile(r"holders|addresses", re.IGNORECASE)
    for node in page.soup.find_all(string=label):
        for block in _block_ancestors(node):
            count = _match_holder_text(block.get_text(" ", strip=True))
            if count:
                return count
    return None


def _extract_from_summary(page: PageContext) -> Optional[int]:
    for card in page.soup.select(SUMMARY_SELECTORS):
        text = card.get_text(" ", strip=True)
        if "holders" not in text.lower():
            continue
        count = _match_holder_text(text)
        if count:
            return count
    return None


DEFAULT_RULES: Tuple[ExtractionRule, ...] = (
    ExtractionRule("basescan_inline", lambda p: p.flavor == FLAVOR_BASESCAN, _extract_basescan),
    ExtractionRule("etherscan_summary", lambda p: p.flavor == FLAVOR_ETHERSCAN, _extract_etherscan),
    ExtractionRule("heading_sibling", lambda p: True, _extract_from_heading),
    ExtractionRule("text_pattern", lambda p: True, _extract_from_text),
    ExtractionRule("summary_card", lambda p: True, _extract_from_summary),
)


def extract_holder_count(
    html: str,
    flavor: str = FLAVOR_ETHERSCAN,
    rules: Sequence[ExtractionRule] = DEFAULT_RULES,
) -> Tuple[int, str]:
    """
    Run the extraction cascade over explorer markup.

    Rules are tried in order; the first one returning a strictly positive
    integer wins.

    Returns:
        (holder_count, rule_name)

    Raises:
        ParseNotFound: if every applicable rule came up empty
    """
    page = PageContext.parse(html, flavor)
    for rule in rules:
        if not rule.applies(page):
            continue
        count = rule.extract(page)
        if count is not None and count > 0:
            return count, rule.name
    raise ParseNotFound(f"No holder count found by {len(rules)} rules")


class ExplorerPageScraper:
    """Fetches ``{scraper_base_url}/token/{address}`` and extracts the holder count."""

    def __init__(
        self,
        session: requests.Session,
        settings: Settings,
        limiter: Optional[HostRateLimiter] = None,
        rules: Sequence[ExtractionRule] = DEFAULT_RULES,
    ):
        self.session = session
        self.settings = settings
        self.limiter = limiter
        self.rules: List[ExtractionRule] = list(rules)

    def token_url(self, contract_address: str, chain: ChainConfig) -> str:
        return f"{chain.scraper_base_url.rstrip('/')}/token/{contract_address}"

    async def _fetch_page(self, url: str) -> str:
        """Fetch with retries on transient failures; never retries rate limiting."""
        attempts = 1 + max(0, self.settings.scrape_retries)
        for attempt in range(attempts):
            try:
                response = await fetch(
                    self.session,
                    url,
                    timeout=self.settings.http_timeout_seconds,
                    limiter=self.limiter,
                    backoff_seconds=self.settings.rate_limit_backoff_seconds,
                )
                return response.text
            except RateLimited:
                raise
            except NetworkError as e:
                transient = e.status_code is None or e.status_code >= 500
                if not transient or attempt == attempts - 1:
                    raise
                wait = self.settings.request_delay_seconds * (attempt + 1)
                logger.warning(f"Retrying {url} in {wait:.1f}s, attempt {attempt + 1}: {e}")
                await asyncio.sleep(wait)

    async def fetch_holder_count(self, contract_address: str, chain: ChainConfig) -> ScrapeResult:
        """
        Scrape the explorer token page.

        Network errors, non-2xx responses, block pages and an exhausted
        cascade all collapse to ``NotFound``; never raises for those.
        """
        url = self.token_url(contract_address, chain)
        logger.info(f"[{chain.name}] Fetching holder count from {url}")

        try:
            html = await self._fetch_page(url)
        except RateLimited as e:
            logger.warning(f"[{chain.name}] Explorer rate limited for {contract_address}: {e}")
            return NotFound(source=SOURCE, reason="rate_limited")
        except NetworkError as e:
            logger.warning(f"[{chain.name}] Explorer fetch failed for {contract_address}: {e}")
            return NotFound(source=SOURCE, reason="network")

        try:
            count, rule_name = extract_holder_count(html, chain.flavor, self.rules)
        except ParseNotFound:
            if looks_blocked(html):
                if self.limiter is not None:
                    self.limiter.penalize(url, self.settings.rate_limit_backoff_seconds)
                logger.warning(f"[{chain.name}] Explorer served a block page for {contract_address}")
                return NotFound(source=SOURCE, reason="rate_limited")
            logger.warning(f"[{chain.name}] No holder count on explorer page for {contract_address}")
            return NotFound(source=SOURCE, reason="parse")

        logger.info(f"[{chain.name}] Found {count:,} holders for {contract_address} via {rule_name}")
        return Found(count=count, source=SOURCE, detail=rule_name)
