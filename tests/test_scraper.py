import time

import pytest
import requests

from holder_sync.chains import ChainRouter
from holder_sync.errors import ParseNotFound
from holder_sync.scraper import (
    DEFAULT_RULES,
    ExplorerPageScraper,
    ExtractionRule,
    extract_holder_count,
    parse_count,
)
from holder_sync.transport import HostRateLimiter

from conftest import SPARK_USDC

BASESCAN_PAGE = """
<html><head><title>Spark USDC Vault | Basescan</title></head>
<body>
  <div class="card">
    <h4 class="text-cap">Holders</h4>
    <div>17,365 (0.00%)</div>
  </div>
</body></html>
"""

ETHERSCAN_PAGE = """
<html><head>
  <meta name="description" content="Steakhouse USDC (steakUSDC) Token Tracker on Etherscan shows the price of the Token, total supply, Holders: 2,914 and updated information.">
</head>
<body><div id="ContentPlaceHolder1_divSummary">Token</div></body></html>
"""


def test_parse_count_strips_grouping():
    assert parse_count("17,365") == 17365
    assert parse_count("1,234,567") == 1234567
    assert parse_count("42") == 42


def test_parse_count_rejects_zero_and_garbage():
    assert parse_count("0") is None
    assert parse_count("") is None
    assert parse_count(None) is None
    assert parse_count("n/a") is None


def test_heading_sibling_with_percentage():
    count, rule = extract_holder_count("<h4>Holders</h4><div>17,365 (0.00%)</div>", "etherscan")
    assert count == 17365
    assert rule == "heading_sibling"


def test_basescan_rule_runs_first_for_base():
    count, rule = extract_holder_count(BASESCAN_PAGE, "basescan")
    assert count == 17365
    assert rule == "basescan_inline"


def test_basescan_percentage_near_holders_label():
    html = '<div><span>Holders</span><span class="x">  4,021 (0.12%)</span></div>'
    count, rule = extract_holder_count(html, "basescan")
    assert count == 4021
    assert rule == "basescan_inline"


def test_etherscan_meta_description():
    count, rule = extract_holder_count(ETHERSCAN_PAGE, "etherscan")
    assert count == 2914
    assert rule == "etherscan_summary"


def test_etherscan_holders_row():
    html = """
    <div id="ContentPlaceHolder1_tr_tokenHolders">
      <h4>Holders</h4><div><div>  12,001 <span>(~0.003%)</span></div></div>
    </div>
    """
    count, rule = extract_holder_count(html, "etherscan")
    assert count == 12001
    assert rule == "etherscan_summary"


def test_text_pattern_label_then_number():
    html = "<div><p>Some token</p><span>Total Holders: 2,500</span></div>"
    count, rule = extract_holder_count(html, "etherscan")
    assert count == 2500
    assert rule == "text_pattern"


def test_text_pattern_number_then_addresses():
    html = "<section><div>Held by 8,120 addresses</div></section>"
    count, rule = extract_holder_count(html, "etherscan")
    assert count == 8120
    assert rule == "text_pattern"


def test_summary_card_rule():
    rules = [r for r in DEFAULT_RULES if r.name == "summary_card"]
    html = '<div class="card-body"><b>Holders</b> 3,300 addresses</div>'
    assert extract_holder_count(html, "etherscan", rules) == (3300, "summary_card")


def test_zero_is_not_a_count():
    with pytest.raises(ParseNotFound):
        extract_holder_count("<h4>Holders</h4><div>0</div>", "etherscan")


def test_nothing_found_raises():
    with pytest.raises(ParseNotFound):
        extract_holder_count("<html><body><p>Token tracker</p></body></html>", "basescan")


def test_extra_rule_can_be_prepended():
    custom = ExtractionRule("fixed", lambda page: "magic" in page.html, lambda page: 99)
    count, rule = extract_holder_count("<p>magic</p><h4>Holders</h4><div>5</div>", "etherscan", (custom, *DEFAULT_RULES))
    assert (count, rule) == (99, "fixed")


# --- ExplorerPageScraper ---

@pytest.fixture
def base_chain():
    return ChainRouter().resolve("base")


@pytest.mark.asyncio
async def test_scraper_found(settings, session, make_response, base_chain):
    session.get.return_value = make_response(text=BASESCAN_PAGE)
    scraper = ExplorerPageScraper(session, settings)

    result = await scraper.fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is True
    assert result.count == 17365
    assert result.source == "explorer"
    assert session.get.call_args.args[0] == f"https://basescan.org/token/{SPARK_USDC}"
    assert session.get.call_args.kwargs["timeout"] == settings.http_timeout_seconds


@pytest.mark.asyncio
async def test_scraper_http_error_is_not_found(settings, session, make_response, base_chain):
    session.get.return_value = make_response(status_code=404, text="not found")
    result = await ExplorerPageScraper(session, settings).fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is False
    assert result.count == 0
    assert result.reason == "network"


@pytest.mark.asyncio
async def test_scraper_timeout_is_not_found(settings, session, base_chain):
    session.get.side_effect = requests.Timeout("read timed out")
    result = await ExplorerPageScraper(session, settings).fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is False
    assert result.reason == "network"


@pytest.mark.asyncio
async def test_scraper_parse_failure(settings, session, make_response, base_chain):
    session.get.return_value = make_response(text="<html><body>Token</body></html>")
    result = await ExplorerPageScraper(session, settings).fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is False
    assert result.reason == "parse"


@pytest.mark.asyncio
async def test_scraper_429_is_rate_limited_without_retry(settings, session, make_response, base_chain):
    settings = settings.model_copy(update={"scrape_retries": 3})
    session.get.return_value = make_response(status_code=429)
    result = await ExplorerPageScraper(session, settings).fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is False
    assert result.rate_limited is True
    assert session.get.call_count == 1


@pytest.mark.asyncio
async def test_scraper_block_page_is_rate_limited(settings, session, make_response, base_chain):
    session.get.return_value = make_response(text="<html><title>Just a moment...</title></html>")
    limiter = HostRateLimiter(default_interval=0)
    result = await ExplorerPageScraper(session, settings, limiter).fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is False
    assert result.reason == "rate_limited"


@pytest.mark.asyncio
async def test_scraper_retries_transient_failure(settings, session, make_response, base_chain):
    settings = settings.model_copy(update={"scrape_retries": 1})
    session.get.side_effect = [requests.ConnectionError("reset"), make_response(text=BASESCAN_PAGE)]

    result = await ExplorerPageScraper(session, settings).fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is True
    assert result.count == 17365
    assert session.get.call_count == 2


CLOUDFLARE_PAGE = (
    "<html><head><title>Attention Required! | Cloudflare</title></head>"
    '<body><div class="g-recaptcha"></div></body></html>'
)


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [403, 503])
async def test_scraper_error_status_block_page_backs_off(settings, session, make_response, base_chain, status_code):
    settings = settings.model_copy(update={"scrape_retries": 2, "rate_limit_backoff_seconds": 30.0})
    session.get.return_value = make_response(status_code=status_code, text=CLOUDFLARE_PAGE)
    limiter = HostRateLimiter(default_interval=0)

    result = await ExplorerPageScraper(session, settings, limiter).fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is False
    assert result.reason == "rate_limited"
    assert session.get.call_count == 1
    bucket = limiter.ensure_bucket("basescan.org", 0)
    assert bucket._blocked_until - time.monotonic() > 20


@pytest.mark.asyncio
async def test_scraper_plain_503_is_still_retried(settings, session, make_response, base_chain):
    settings = settings.model_copy(update={"scrape_retries": 1})
    session.get.side_effect = [make_response(status_code=503, text="upstream error"), make_response(text=BASESCAN_PAGE)]

    result = await ExplorerPageScraper(session, settings).fetch_holder_count(SPARK_USDC, base_chain)

    assert result.found is True
    assert session.get.call_count == 2
