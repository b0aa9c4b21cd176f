"""Health endpoint tests."""

from fastapi.testclient import TestClient

from fake_elasticsearch import FakeElasticsearch


def test_liveness_returns_200(client: TestClient) -> None:
    """Liveness endpoint returns 200 OK."""
    response = client.get("/api/v1/health/live")
    assert response.status_code == 200


def test_liveness_returns_status(client: TestClient) -> None:
    """Liveness endpoint returns alive status."""
    response = client.get("/api/v1/health/live")
    data = response.json()
    assert "status" in data
    assert data["status"] == "alive"


def test_readiness_ready_when_store_and_index_up(client: TestClient) -> None:
    """Readiness reports ready with both checks passing."""
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert {c["name"]: c["status"] for c in data["checks"]} == {"store": "ok", "index": "ok"}


def test_readiness_stays_ready_without_index(
    client: TestClient, es: FakeElasticsearch
) -> None:
    """An unavailable index is reported but does not fail readiness."""
    es.available = False
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    index_check = next(c for c in response.json()["checks"] if c["name"] == "index")
    assert index_check["status"] == "failed"
    assert index_check["required"] is False


def test_search_health_reports_document_count(client: TestClient) -> None:
    """Search health exposes index availability and size."""
    response = client.get("/api/v1/search/health")
    assert response.status_code == 200
    assert response.json() == {"index_available": True, "document_count": 0}


def test_search_health_when_index_down(client: TestClient, es: FakeElasticsearch) -> None:
    """Search health reports an unavailable index without a count."""
    es.available = False
    response = client.get("/api/v1/search/health")
    assert response.json() == {"index_available": False, "document_count": None}
