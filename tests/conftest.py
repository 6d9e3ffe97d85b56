from unittest.mock import MagicMock

import pytest
import pytest_asyncio
import requests

from holder_sync.config import Settings
from holder_sync.database import MetricsStore
from holder_sync.scheduler import build_scheduler

STETH = "0xAe7ab96520DE3A18E5e111B5EaAb095312D7fE84"
SPARK_USDC = "0x7bfa7c4f149e7415b73bdedfe609237e29cbf34a"
STEAK_USDC = "0xbeef01735c132ada46aa9aa4c54623caa92a64cb"


@pytest.fixture
def settings(tmp_path):
    """Fast, network-free settings: no delays, no retries, indexer disabled."""
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "holders.db"),
        moralis_api_key=None,
        request_delay_seconds=0,
        indexer_page_delay_seconds=0,
        rate_limit_backoff_seconds=0,
        scrape_retries=0,
        batch_pause_every=0,
        enable_background_sync=False,
        chains_config=None,
    )


@pytest.fixture
def indexer_settings(settings):
    return settings.model_copy(update={"moralis_api_key": "test-key"})


@pytest_asyncio.fixture
async def store(settings):
    metrics_store = MetricsStore(db_path=settings.database_path)
    await metrics_store.connect()
    await metrics_store.register_chain("chain-eth", "Ethereum")
    await metrics_store.register_chain("chain-base", "Base")
    await metrics_store.register_chain("chain-sol", "Solana")
    yield metrics_store
    await metrics_store.close()


@pytest.fixture
def make_response():
    """Factory for fake ``requests.Response`` objects."""
    def _make(status_code=200, text="", payload=None, headers=None):
        response = MagicMock()
        response.status_code = status_code
        response.text = text
        response.headers = headers or {}
        if isinstance(payload, Exception):
            response.json.side_effect = payload
        else:
            response.json.return_value = payload
        return response
    return _make


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def owners_page(make_response):
    """Fake owners-endpoint page with ``size`` entries."""
    def _page(size, cursor=None):
        return make_response(payload={
            "result": [{"owner_address": f"0x{i:040x}"} for i in range(size)],
            "cursor": cursor,
        })
    return _page


@pytest.fixture
def pipeline(store, settings, session):
    return build_scheduler(store, settings, session=session)
