from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from holder_sync import main
from holder_sync.database import MetricsStore

from conftest import SPARK_USDC, STETH


@pytest.fixture
def client(settings, monkeypatch):
    store = MetricsStore(db_path=settings.database_path)
    monkeypatch.setattr(main, "db", store)
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    monkeypatch.setattr(main, "batch_task", None)
    main.response_cache.clear()

    with TestClient(main.app) as test_client:
        portal = test_client.portal
        portal.call(store.register_chain, "chain-eth", "Ethereum")
        portal.call(store.register_chain, "chain-sol", "Solana")
        portal.call(store.register_pool, "pool-steth", STETH, "chain-eth")
        portal.call(store.register_pool, "pool-sol", SPARK_USDC, "chain-sol")
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["active_pools"] == 2
    assert body["batch_in_progress"] is False
    assert body["indexer_enabled"] is False


def test_holders_missing_is_404(client):
    assert client.get("/holders/pool-steth").status_code == 404


def test_reconcile_pool_then_read(client):
    response = client.post("/reconcile/pool-steth")
    assert response.status_code == 200
    outcome = response.json()
    assert outcome["source"] == "override"
    assert outcome["holders_count"] == 547477
    assert outcome["status"] == "success"

    holders = client.get("/holders/pool-steth")
    assert holders.status_code == 200
    assert holders.json()["holders_count"] == 547477


def test_reconcile_unknown_pool_is_404(client):
    assert client.post("/reconcile/nope").status_code == 404


def test_reconcile_unsupported_chain_is_422(client):
    response = client.post("/reconcile/pool-sol")
    assert response.status_code == 422
    assert "Solana" in response.json()["detail"]


def test_cancel_without_batch(client):
    assert client.delete("/reconcile").json() == {"cancelled": False}


def test_batch_trigger_accepted(client):
    response = client.post("/reconcile")
    assert response.status_code == 202
    assert response.json()["started"] is True


def test_metrics_exposed(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "holder_sync_requests_total" in response.text


def test_batch_trigger_refused_while_task_pending(client):
    pending = MagicMock()
    pending.done.return_value = False
    main.batch_task = pending
    try:
        response = client.post("/reconcile")
    finally:
        main.batch_task = None

    assert response.status_code == 409
